"""
Change Stream Processor for Binlog Flashback

Walks the binlog from a start coordinate, keeps track of the table each row
event belongs to, and emits one compensating statement per captured row
change, in stream order.
"""

import logging
from typing import Optional

from src.flashback.catalog import TableCatalog
from src.flashback.channel import DEFAULT_CAPACITY, CancellationToken, EventChannel
from src.flashback.exceptions import CatalogError, StreamConnectionError
from src.flashback.models import (
    ChangeKind,
    CompensatingStatement,
    Coordinate,
    RowChangeEvent,
    RunSummary,
    TableDefine,
    TableFilter,
)
from src.flashback.sinks import StatementSink
from src.flashback.source import STREAM_CONNECT_TIMEOUT, BinlogServer
from src.flashback.synthesizer import CompensationSynthesizer
from src.monitoring.metrics import FlashbackMetrics

logger = logging.getLogger(__name__)


class ChangeStreamProcessor:
    """
    Turns a binlog stream into compensating SQL.

    Holds a single live table context, replaced by every table map event.
    Row events are only interpreted against the context that immediately
    precedes them.
    """

    def __init__(
        self,
        server: BinlogServer,
        catalog: TableCatalog,
        synthesizer: Optional[CompensationSynthesizer] = None,
        metrics: Optional[FlashbackMetrics] = None,
        channel_capacity: int = DEFAULT_CAPACITY
    ):
        """
        Initialize the processor.

        Args:
            server: Binlog server to stream from
            catalog: Per-run table metadata catalog
            synthesizer: SQL synthesizer (default instance if not provided)
            metrics: Optional Prometheus metrics
            channel_capacity: Bound of the reader-to-processor channel
        """
        self.server = server
        self.catalog = catalog
        self.synthesizer = synthesizer or CompensationSynthesizer()
        self.metrics = metrics
        self.channel_capacity = channel_capacity

        self._context: Optional[TableDefine] = None
        self._context_active = False
        self._failed_tables = set()
        self._summary = RunSummary()

    def run(
        self,
        start: Optional[Coordinate],
        filters: TableFilter,
        sink: StatementSink,
        stop: Optional[Coordinate] = None,
        cancel: Optional[CancellationToken] = None
    ) -> RunSummary:
        """
        Stream events and emit compensating statements.

        Runs until cancelled, until the stream ends, or, when ``stop`` is
        given, until the first event past it.

        Args:
            start: Coordinate to start from; None streams from the server's current position
            filters: Database/table filter
            sink: Statement destination
            stop: Last coordinate to process (inclusive)
            cancel: Cancellation token

        Returns:
            RunSummary for the run

        Raises:
            StreamConnectionError: If the stream cannot be opened or is lost
        """
        self._summary = RunSummary()
        self._context = None
        self._context_active = False

        logger.info(
            f"Starting binlog rollback from {start or 'current server position'}"
            + (f" until {stop}" if stop else " (live)")
        )

        stream = self.server.open_stream(
            start=start,
            blocking=stop is None,
            connect_timeout=STREAM_CONNECT_TIMEOUT
        )
        channel = EventChannel(stream, capacity=self.channel_capacity).start()

        try:
            for record in channel.drain(cancel):
                # File names sort chronologically, so coordinates order lexically
                if stop is not None and record.coordinate > stop:
                    logger.info(f"Reached stop coordinate {stop}")
                    break

                # Artificial events sent on connect carry no position
                if self._summary.first_coordinate is None and record.coordinate.offset > 0:
                    self._summary.first_coordinate = record.coordinate
                    if start is None:
                        sink.write_comment(
                            f"Streaming from binlog file: {record.coordinate.file_name}\n"
                            f"Start position: {record.coordinate.offset}"
                        )

                self.handle(record, filters, sink)
                self._summary.last_coordinate = record.coordinate

                if stop is not None and record.coordinate == stop:
                    logger.info(f"Reached stop coordinate {stop}")
                    break

        except StreamConnectionError as e:
            e.last_coordinate = self._summary.last_coordinate
            logger.error(f"Binlog stream failed after {self._summary.last_coordinate}: {e}")
            raise

        finally:
            stream.disconnect()
            channel.close()
            self._summary.cancelled = bool(cancel and cancel.cancelled)

        logger.info(
            f"Rollback run finished: {self._summary.statements} statements, "
            f"{self._summary.events_dropped} row events dropped"
        )
        return self._summary

    def handle(self, record, filters: TableFilter, sink: StatementSink) -> None:
        """Dispatch one stream record."""
        if self.metrics:
            self.metrics.update_last_event_timestamp(record.timestamp)

        if isinstance(record, TableDefine):
            self._on_table_define(record, filters)
        elif isinstance(record, RowChangeEvent):
            self._on_row_event(record, sink)

    def _on_table_define(self, event: TableDefine, filters: TableFilter) -> None:
        self._context = event
        self._context_active = False

        accepted = filters.accepts(event.database, event.table)
        logger.debug(f"Table filter check: {event.qualified_name} -> {accepted}")
        if not accepted:
            return

        key = event.qualified_name
        if key in self._failed_tables:
            return

        if self.catalog.get(event.database, event.table) is None:
            try:
                self.catalog.resolve(event.database, event.table)
            except CatalogError as e:
                logger.error(f"Dropping events for {key}: {e}")
                self._failed_tables.add(key)
                self._summary.tables_failed.append(key)
                if self.metrics:
                    self.metrics.record_table_resolution("failure")
                return

            self._summary.tables_resolved.append(key)
            if self.metrics:
                self.metrics.record_table_resolution("success")

        self._context_active = True

    def _on_row_event(self, event: RowChangeEvent, sink: StatementSink) -> None:
        context = self._context
        if context is None or not self._context_active:
            self._drop("filtered")
            return

        if (context.database, context.table) != (event.database, event.table):
            # Row events must directly follow the table map of their table
            logger.error(
                f"Row event for {event.qualified_name} at {event.coordinate} does not follow "
                f"its table map (current table: {context.qualified_name}); dropping it"
            )
            self._drop("out_of_order")
            return

        metadata = self.catalog.get(event.database, event.table)
        if metadata is None:
            logger.warning(f"No table metadata for {event.qualified_name}")
            self._drop("no_metadata")
            return

        for row in event.rows:
            if event.kind is ChangeKind.UPDATE:
                before, after = row
            elif event.kind is ChangeKind.INSERT:
                before, after = None, row
            else:
                before, after = row, None

            sql = self.synthesizer.synthesize(
                event.kind, event.database, event.table, metadata, before=before, after=after
            )
            if sql is None:
                if event.kind is ChangeKind.UPDATE:
                    self._summary.noop_updates += 1
                else:
                    self._drop("empty_row")
                continue

            sink.write(CompensatingStatement(
                sql=sql,
                coordinate=event.coordinate,
                timestamp=event.timestamp,
                database=event.database,
                table=event.table,
                source_kind=event.kind
            ))
            self._summary.statements += 1
            if self.metrics:
                self.metrics.record_statement(event.database, event.table, event.kind.value)

    def _drop(self, reason: str) -> None:
        self._summary.events_dropped += 1
        if self.metrics:
            self.metrics.record_dropped_event(reason)
