"""
Binlog Flashback Tool

Generates SQL that reverts row changes captured in a MySQL binlog, and finds
the binlog coordinates matching a wall-clock time window:
- Live rollback generation from a coordinate (or the current position)
- Bounded rollback generation between two coordinates
- Database/table filtering
- Time-to-position lookup producing a ready-to-use rollback command

Usage:
    flashback -H db1 -u admin -p secret rollback -f mysql-bin.000042 -s 1337 -d shop -t orders
    flashback -H db1 -u admin -p secret rollback -f mysql-bin.000042 -s 4 --stop-position 98765
    flashback -H db1 -u admin -p secret locate --start-time "2024-05-01 10:00:00" --end-time "2024-05-01 10:05:00"
    flashback --config flashback.yaml --vault locate --start-time "2024-05-01 10:00:00"
"""

import argparse
import json
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from hvac.exceptions import VaultError

from src.flashback.catalog import TableCatalog
from src.flashback.channel import CancellationToken
from src.flashback.exceptions import ArgumentError, StreamConnectionError
from src.flashback.locator import PositionLocator
from src.flashback.models import Coordinate, TableFilter, TimeWindow
from src.flashback.processor import ChangeStreamProcessor
from src.flashback.sinks import MODE_BOUNDED, MODE_LIVE, FanOutSink, LoggingSink, ScriptFileSink
from src.flashback.source import BinlogServer
from src.monitoring.metrics import FlashbackMetrics
from src.utils.config import FlashbackConfig, load_config
from src.utils.run_context import RunContext, get_run_id, setup_run_logging
from src.utils.vault_client import VaultClient

logger = logging.getLogger(__name__)

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


class StructuredJSONFormatter(logging.Formatter):
    """JSON formatter with run id support."""

    def format(self, record):
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'run_id': getattr(record, 'run_id', None) or get_run_id(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        # Add extra fields
        if hasattr(record, 'database'):
            log_data['database'] = record.database
        if hasattr(record, 'table'):
            log_data['table'] = record.table
        if hasattr(record, 'coordinate'):
            log_data['coordinate'] = record.coordinate

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def configure_logging(verbose: bool = False) -> None:
    """Install console (and optionally JSON) handlers on the root logger."""
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)

    for handler in list(root.handlers):
        if getattr(handler, "_flashback", False):
            root.removeHandler(handler)

    if os.getenv('JSON_LOGGING', 'false').lower() == 'true':
        handler = logging.StreamHandler()
        handler.setFormatter(StructuredJSONFormatter())
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(run_id)s] - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
    handler._flashback = True
    setup_run_logging(handler)
    root.addHandler(handler)


def parse_time(value: Optional[str], name: str) -> Optional[datetime]:
    """
    Parse a local wall-clock time.

    Raises:
        ArgumentError: If the value does not match YYYY-MM-DD HH:MM:SS
    """
    if value is None:
        return None
    try:
        return datetime.strptime(value, TIME_FORMAT)
    except ValueError:
        raise ArgumentError(f"Invalid {name} '{value}', expected format YYYY-MM-DD HH:MM:SS")


def split_names(values: Optional[List[str]]) -> List[str]:
    """Flatten repeated and comma separated name options."""
    names: List[str] = []
    for value in values or []:
        names.extend(part.strip() for part in value.split(",") if part.strip())
    return names


class FlashbackTool:
    """Main flashback tool."""

    def __init__(
        self,
        config: FlashbackConfig,
        metrics: Optional[FlashbackMetrics] = None,
        server: Optional[BinlogServer] = None,
        catalog: Optional[TableCatalog] = None
    ):
        """
        Initialize the tool.

        Args:
            config: Validated configuration
            metrics: Optional Prometheus metrics
            server: Binlog server access (built from config if not provided)
            catalog: Table catalog (built from config if not provided)
        """
        self.config = config
        self.metrics = metrics
        settings = config.mysql.connection_settings()
        self.server = server or BinlogServer(settings)
        self.catalog = catalog or TableCatalog(settings)

        logger.debug("FlashbackTool initialized")

    def rollback(
        self,
        start: Optional[Coordinate],
        stop: Optional[Coordinate],
        filters: TableFilter,
        output: Optional[str],
        cancel: Optional[CancellationToken] = None
    ) -> Dict[str, Any]:
        """
        Generate rollback SQL for the stream starting at ``start``.

        Args:
            start: Start coordinate, None for the server's current position
            stop: Optional inclusive stop coordinate
            filters: Database/table filter
            output: Script file path; empty to log statements only
            cancel: Cancellation token

        Returns:
            Run summary dictionary
        """
        mode = MODE_BOUNDED if stop else MODE_LIVE
        sinks = [LoggingSink()]
        if output:
            sinks.append(ScriptFileSink(
                output,
                source_file=start.file_name if start else None,
                mode=mode
            ))
        sink = FanOutSink(*sinks)

        processor = ChangeStreamProcessor(self.server, self.catalog, metrics=self.metrics)
        try:
            summary = processor.run(start, filters, sink, stop=stop, cancel=cancel)
        finally:
            sink.close()
            self.catalog.close()

        results = summary.to_dict()
        results["mode"] = mode
        results["output"] = output or None
        return results

    def locate(self, window: TimeWindow, filters: TableFilter) -> Dict[str, Any]:
        """
        Find the binlog coordinates bounding ``window``.

        Returns:
            Lookup result dictionary including a rollback command
        """
        locator = PositionLocator(self.server, metrics=self.metrics)
        result = locator.locate(window, filters)

        report = result.to_dict()
        report["rollback_command"] = result.rollback_command(
            self.config.mysql.host, self.config.mysql.port, self.config.mysql.user
        )
        return report


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flashback",
        description="Binlog rollback SQL generator and position finder",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    # Connection options
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("-H", "--host", help="MySQL host")
    parser.add_argument("-P", "--port", type=int, help="MySQL port (default 3306)")
    parser.add_argument("-u", "--user", help="MySQL user")
    parser.add_argument("-p", "--password", help="MySQL password")
    parser.add_argument("--vault", action="store_true", help="Read MySQL credentials from Vault")
    parser.add_argument("--metrics-port", type=int, help="Expose Prometheus metrics on this port")
    parser.add_argument("--pushgateway", help="Push metrics to this Pushgateway when done")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    rollback_parser = subparsers.add_parser("rollback", help="Generate rollback SQL from the binlog")
    rollback_parser.add_argument("-f", "--file", help="Binlog file to start from (default: current)")
    rollback_parser.add_argument("-s", "--start-position", type=int, help="Start position within --file")
    rollback_parser.add_argument("--stop-file", help="Binlog file of the stop position (default: --file)")
    rollback_parser.add_argument("--stop-position", type=int, help="Last position to revert (inclusive)")
    rollback_parser.add_argument("-d", "--databases", action="append", help="Databases (comma separated)")
    rollback_parser.add_argument("-t", "--tables", action="append", help="Tables (comma separated)")
    rollback_parser.add_argument("-o", "--output", help="Output script (default rollback.sql, '' for none)")

    locate_parser = subparsers.add_parser("locate", help="Find binlog positions for a time window")
    locate_parser.add_argument("--start-time", help="Window start (YYYY-MM-DD HH:MM:SS)")
    locate_parser.add_argument("--end-time", help="Window end (YYYY-MM-DD HH:MM:SS)")
    locate_parser.add_argument("-d", "--databases", action="append", help="Databases (comma separated)")
    locate_parser.add_argument("-t", "--tables", action="append", help="Tables (comma separated)")

    return parser


def build_config(args: argparse.Namespace) -> FlashbackConfig:
    """
    Merge config file, environment, Vault and command line.

    Raises:
        ArgumentError: If the result is incomplete or invalid
    """
    config = load_config(args.config)

    if args.host:
        config.mysql.host = args.host
    if args.port is not None:
        config.mysql.port = args.port
    if args.user:
        config.mysql.user = args.user
    if args.password is not None:
        config.mysql.password = args.password
    if args.metrics_port is not None:
        config.metrics_port = args.metrics_port
    if args.pushgateway:
        config.pushgateway_url = args.pushgateway
    if args.vault:
        config.vault_enabled = True

    databases = split_names(args.databases)
    tables = split_names(args.tables)
    if databases:
        config.databases = databases
    if tables:
        config.tables = tables

    if args.command == "rollback" and args.output is not None:
        config.output = args.output

    if config.vault_enabled and (not config.mysql.user or config.mysql.password is None):
        with VaultClient(mount_point=config.vault_mount_point) as vault:
            credentials = vault.mysql_credentials()
        config.mysql.user = config.mysql.user or credentials["username"]
        if config.mysql.password is None:
            config.mysql.password = credentials["password"]
        config.mysql.host = config.mysql.host or credentials.get("host")
        if "port" in credentials and args.port is None:
            config.mysql.port = int(credentials["port"])

    config.mysql.validate()
    return config


def rollback_coordinates(args: argparse.Namespace):
    """
    Validate and build the start/stop coordinates of a rollback.

    Raises:
        ArgumentError: On inconsistent position options
    """
    if args.start_position is not None and args.start_position < 0:
        raise ArgumentError("Start position must not be negative")
    if args.stop_position is not None and args.stop_position < 0:
        raise ArgumentError("Stop position must not be negative")
    if args.start_position is not None and not args.file:
        raise ArgumentError("--start-position requires --file")

    start = None
    if args.file:
        # 0 means "beginning of the file"
        start = Coordinate(args.file, args.start_position or 4)

    stop = None
    if args.stop_position is not None or args.stop_file:
        stop_file = args.stop_file or args.file
        if not stop_file:
            raise ArgumentError("--stop-position requires --stop-file or --file")
        if args.stop_position is None:
            raise ArgumentError("--stop-file requires --stop-position")
        stop = Coordinate(stop_file, args.stop_position)
        if start is not None and stop < start:
            raise ArgumentError(f"Stop coordinate {stop} is before start coordinate {start}")

    return start, stop


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(args.verbose)

    if not args.command:
        parser.print_help()
        return EXIT_USAGE

    with RunContext():
        try:
            config = build_config(args)
            filters = TableFilter.from_iterables(config.databases, config.tables)

            if args.command == "rollback":
                start, stop = rollback_coordinates(args)
            else:
                window = TimeWindow.from_datetimes(
                    parse_time(args.start_time, "start time"),
                    parse_time(args.end_time, "end time")
                )
        except ArgumentError as e:
            logger.error(f"Argument error: {e}")
            return EXIT_USAGE
        except (VaultError, ValueError) as e:
            logger.error(f"Failed to load credentials: {e}")
            return EXIT_FAILURE

        metrics = FlashbackMetrics()
        if config.metrics_port:
            metrics.start_server(config.metrics_port)

        tool = FlashbackTool(config, metrics=metrics)

        try:
            if args.command == "rollback":
                cancel = CancellationToken()
                previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: cancel.cancel())
                logger.info("Rollback generation started, press Ctrl+C to stop...")
                try:
                    results = tool.rollback(start, stop, filters, config.output, cancel=cancel)
                finally:
                    signal.signal(signal.SIGINT, previous_handler)
                print(json.dumps(results, indent=2))

            elif args.command == "locate":
                report = tool.locate(window, filters)
                print(json.dumps(report, indent=2))
                if not report["found"]:
                    logger.info("No binlog position matches the requested time window")

            return EXIT_OK

        except StreamConnectionError as e:
            logger.error(f"Binlog connection failed: {e}", exc_info=args.verbose)
            if e.last_coordinate is not None:
                logger.error(
                    f"Last processed event: {e.last_coordinate}. Restart with an explicit "
                    f"-f/-s at or before the table map preceding it to resume"
                )
            return EXIT_FAILURE

        except Exception as e:
            logger.error(f"Error: {e}", exc_info=args.verbose)
            return EXIT_FAILURE

        finally:
            if config.pushgateway_url:
                try:
                    metrics.push(config.pushgateway_url)
                except Exception as e:
                    logger.warning(f"Metrics were not pushed: {e}")


if __name__ == "__main__":
    sys.exit(main())
