"""
Monitoring Module for Binlog Flashback

Prometheus metrics for rollback runs and position searches.

Usage:
    from src.monitoring import FlashbackMetrics

    metrics = FlashbackMetrics()
    metrics.record_statement(database="shop", table="orders", source_kind="INSERT")
    metrics.start_server(9090)
"""

from src.monitoring.metrics import FlashbackMetrics

__all__ = [
    "FlashbackMetrics",
]
