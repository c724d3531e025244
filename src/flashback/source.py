"""
Binlog Source Adapter

Wraps the mysql-replication ``BinLogStreamReader`` and turns its events into
the typed records used by the processor and the locator. Also lists the
binlog files available on the server.
"""

import logging
import random
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import pymysql
from pymysqlreplication import BinLogStreamReader
from pymysqlreplication.row_event import (
    DeleteRowsEvent,
    TableMapEvent,
    UpdateRowsEvent,
    WriteRowsEvent,
)

from src.flashback.exceptions import StreamConnectionError
from src.flashback.models import (
    BINLOG_START_OFFSET,
    ChangeKind,
    Coordinate,
    LogEvent,
    RowChangeEvent,
    StreamRecord,
    TableDefine,
)

logger = logging.getLogger(__name__)

# Connect timeouts in seconds
PROBE_CONNECT_TIMEOUT = 5
STREAM_CONNECT_TIMEOUT = 300


def _row_image(values: Dict[str, Any]) -> Tuple[Any, ...]:
    # Decoded rows are dicts in column order
    return tuple(values.values())


def convert_event(event: Any, file_name: str) -> StreamRecord:
    """
    Convert a decoded binlog event into a stream record.

    Args:
        event: pymysqlreplication event
        file_name: Binlog file the event was read from

    Returns:
        TableDefine, RowChangeEvent or LogEvent
    """
    log_pos = event.packet.log_pos
    offset = max(log_pos - event.event_size, 0) if log_pos else 0
    coordinate = Coordinate(file_name, offset)
    timestamp = int(event.timestamp or 0)

    if isinstance(event, TableMapEvent):
        return TableDefine(
            coordinate=coordinate,
            timestamp=timestamp,
            database=event.schema,
            table=event.table
        )

    if isinstance(event, WriteRowsEvent):
        return RowChangeEvent(
            coordinate=coordinate,
            timestamp=timestamp,
            kind=ChangeKind.INSERT,
            database=event.schema,
            table=event.table,
            rows=tuple(_row_image(row["values"]) for row in event.rows)
        )

    if isinstance(event, UpdateRowsEvent):
        return RowChangeEvent(
            coordinate=coordinate,
            timestamp=timestamp,
            kind=ChangeKind.UPDATE,
            database=event.schema,
            table=event.table,
            rows=tuple(
                (_row_image(row["before_values"]), _row_image(row["after_values"]))
                for row in event.rows
            )
        )

    if isinstance(event, DeleteRowsEvent):
        return RowChangeEvent(
            coordinate=coordinate,
            timestamp=timestamp,
            kind=ChangeKind.DELETE,
            database=event.schema,
            table=event.table,
            rows=tuple(_row_image(row["values"]) for row in event.rows)
        )

    return LogEvent(coordinate=coordinate, timestamp=timestamp)


class BinlogEventStream:
    """
    One replication connection reading events from a start coordinate.

    Iterating yields stream records until the server has no more events
    (non-blocking) or the stream is disconnected.
    """

    def __init__(self, reader: Any):
        self._reader = reader
        self._closed = False

    def __iter__(self) -> Iterator[StreamRecord]:
        try:
            for event in self._reader:
                if self._closed:
                    return
                yield convert_event(event, self._reader.log_file)
        except (pymysql.MySQLError, OSError) as e:
            if self._closed:
                return
            raise StreamConnectionError(f"Binlog stream lost: {e}") from e

    @property
    def current_file(self) -> Optional[str]:
        return self._reader.log_file

    def disconnect(self) -> None:
        """Close the replication connection; safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        try:
            self._reader.close()
        except (pymysql.MySQLError, OSError) as e:
            logger.warning(f"Error while disconnecting binlog stream: {e}")


class BinlogServer:
    """Access to a MySQL server's binlog: file listing and event streams."""

    def __init__(
        self,
        connection_settings: Dict[str, Any],
        server_id: Optional[int] = None,
        reader_factory: Optional[Callable[..., Any]] = None,
        connect: Optional[Callable[..., Any]] = None
    ):
        """
        Initialize server access.

        Args:
            connection_settings: PyMySQL connection keyword arguments
            server_id: Replica server id to register with (random if omitted)
            reader_factory: Stream reader factory (defaults to BinLogStreamReader)
            connect: Connection factory (defaults to pymysql.connect)
        """
        self.connection_settings = dict(connection_settings)
        # Must not collide with another replica attached to the same source
        self.server_id = server_id or random.randint(100000, 2 ** 31 - 1)
        self._reader_factory = reader_factory or BinLogStreamReader
        self._connect = connect or pymysql.connect

    def list_log_files(self) -> List[Tuple[str, int]]:
        """
        List binlog files on the server, newest first.

        Returns:
            List of (file name, size) tuples

        Raises:
            StreamConnectionError: If the server cannot be queried
        """
        try:
            conn = self._connect(**self.connection_settings)
            try:
                with conn.cursor() as cursor:
                    cursor.execute("SHOW BINARY LOGS")
                    rows = cursor.fetchall()
            finally:
                conn.close()
        except pymysql.MySQLError as e:
            raise StreamConnectionError(f"Failed to list binlog files: {e}") from e

        files = [(row[0], int(row[1])) for row in rows]
        # Reverse lexical order is newest first under the standard naming scheme
        files.sort(key=lambda item: item[0], reverse=True)
        logger.debug(f"Found {len(files)} binlog files")
        return files

    def open_stream(
        self,
        start: Optional[Coordinate] = None,
        blocking: bool = True,
        connect_timeout: int = STREAM_CONNECT_TIMEOUT
    ) -> BinlogEventStream:
        """
        Open a replication stream.

        Args:
            start: Coordinate to start from; None means the server's current position
            blocking: Wait for new events instead of stopping at the end of the log
            connect_timeout: Connection timeout in seconds

        Returns:
            BinlogEventStream
        """
        settings = dict(self.connection_settings)
        settings["connect_timeout"] = connect_timeout

        kwargs: Dict[str, Any] = {
            "connection_settings": settings,
            "server_id": self.server_id,
            "blocking": blocking,
            "resume_stream": True,
        }
        if start is not None:
            kwargs["log_file"] = start.file_name
            kwargs["log_pos"] = max(start.offset, BINLOG_START_OFFSET)

        logger.debug(
            f"Opening binlog stream at {start or 'current server position'} "
            f"(blocking={blocking}, timeout={connect_timeout}s)"
        )
        try:
            reader = self._reader_factory(**kwargs)
        except (pymysql.MySQLError, OSError) as e:
            raise StreamConnectionError(f"Failed to open binlog stream: {e}") from e

        return BinlogEventStream(reader)
