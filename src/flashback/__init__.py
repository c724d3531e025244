"""
Binlog Flashback Module

This module generates SQL that reverts row changes recorded in a MySQL
binlog, and maps wall-clock time windows onto binlog coordinates.

Main components:
- synthesizer: Compensating SQL generation for one row change
- catalog: Table column/primary key introspection and caching
- processor: Stream walking, table context tracking and filtering
- locator: Time window to binlog position search

Usage:
    from src.flashback import ChangeStreamProcessor, PositionLocator, TableCatalog
    from src.flashback.source import BinlogServer

    server = BinlogServer(settings)

    # Revert everything from a coordinate up to a stop coordinate
    processor = ChangeStreamProcessor(server, TableCatalog(settings))
    summary = processor.run(Coordinate("mysql-bin.000042", 4), TableFilter(), sink,
                            stop=Coordinate("mysql-bin.000042", 98765))

    # Find where a time window starts
    result = PositionLocator(server).locate(TimeWindow(start=1714550400.0))
"""

from src.flashback.catalog import TableCatalog
from src.flashback.exceptions import (
    ArgumentError,
    CatalogError,
    FlashbackError,
    StreamConnectionError,
)
from src.flashback.locator import PositionLocator
from src.flashback.models import Coordinate, LocateResult, TableFilter, TableMetadata, TimeWindow
from src.flashback.processor import ChangeStreamProcessor
from src.flashback.synthesizer import CompensationSynthesizer

__all__ = [
    "CompensationSynthesizer",
    "TableCatalog",
    "ChangeStreamProcessor",
    "PositionLocator",
    "Coordinate",
    "LocateResult",
    "TableFilter",
    "TableMetadata",
    "TimeWindow",
    "FlashbackError",
    "ArgumentError",
    "CatalogError",
    "StreamConnectionError",
]

__version__ = "1.0.0"
