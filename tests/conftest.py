"""
Pytest configuration and shared fixtures.

Provides in-memory stand-ins for the binlog server and the table catalog so
the processor and locator can be exercised without a MySQL server.
"""

from typing import Dict, Iterable, List, Optional

import pytest

from src.flashback.exceptions import CatalogError, StreamConnectionError
from src.flashback.models import (
    ChangeKind,
    Coordinate,
    LogEvent,
    RowChangeEvent,
    TableDefine,
    TableMetadata,
)


def table_define(file_name: str, offset: int, timestamp: int, database: str, table: str) -> TableDefine:
    return TableDefine(Coordinate(file_name, offset), timestamp, database=database, table=table)


def row_event(
    file_name: str,
    offset: int,
    timestamp: int,
    kind: ChangeKind,
    database: str,
    table: str,
    rows: Iterable
) -> RowChangeEvent:
    return RowChangeEvent(
        Coordinate(file_name, offset),
        timestamp,
        kind=kind,
        database=database,
        table=table,
        rows=tuple(rows)
    )


def log_event(file_name: str, offset: int, timestamp: int) -> LogEvent:
    return LogEvent(Coordinate(file_name, offset), timestamp)


class FakeStream:
    """Iterable stream of prepared records with a disconnect flag."""

    def __init__(self, records: List, fail_after: Optional[int] = None):
        self.records = records
        self.fail_after = fail_after
        self.disconnected = False

    def __iter__(self):
        for index, record in enumerate(self.records):
            if self.fail_after is not None and index >= self.fail_after:
                raise StreamConnectionError("Binlog stream lost: connection reset")
            if self.disconnected:
                return
            yield record
        if self.fail_after is not None and self.fail_after >= len(self.records):
            raise StreamConnectionError("Binlog stream lost: connection reset")

    def disconnect(self):
        self.disconnected = True


class FakeBinlogServer:
    """
    Binlog server holding synthetic files.

    A stream opened at a coordinate yields the records of that file from the
    offset on, then the records of every newer file, like a real stream
    crossing rotations.
    """

    def __init__(
        self,
        files: Dict[str, List],
        fail_on: Iterable[str] = (),
        fail_after: Optional[int] = None
    ):
        self.files = files
        self.fail_on = set(fail_on)
        self.fail_after = fail_after
        self.opened: List[Dict] = []
        self.streams: List[FakeStream] = []

    def list_log_files(self):
        return sorted(((name, len(records)) for name, records in self.files.items()), reverse=True)

    def open_stream(self, start=None, blocking=True, connect_timeout=300):
        self.opened.append({"start": start, "blocking": blocking, "connect_timeout": connect_timeout})

        names = sorted(self.files)
        if start is None:
            # A server-position stream replays everything, connect events included
            start = Coordinate(names[0], 0)
        if start.file_name in self.fail_on:
            raise StreamConnectionError(f"Failed to open binlog stream at {start}")

        records = []
        for name in names:
            if name < start.file_name:
                continue
            for record in self.files[name]:
                if name == start.file_name and record.coordinate.offset < start.offset:
                    continue
                records.append(record)

        stream = FakeStream(records, fail_after=self.fail_after)
        self.streams.append(stream)
        return stream


class FakeCatalog:
    """Catalog answering from a fixed table map."""

    def __init__(self, tables: Dict[str, TableMetadata], failing: Iterable[str] = ()):
        self.tables = tables
        self.failing = set(failing)
        self.resolve_calls: List[str] = []
        self.closed = False
        self._cache: Dict[str, TableMetadata] = {}

    def get(self, database: str, table: str) -> Optional[TableMetadata]:
        return self._cache.get(f"{database}.{table}")

    def resolve(self, database: str, table: str) -> TableMetadata:
        key = f"{database}.{table}"
        self.resolve_calls.append(key)
        if key in self.failing or key not in self.tables:
            raise CatalogError(f"Failed to load metadata for {key}", database, table)
        self._cache[key] = self.tables[key]
        return self._cache[key]

    def close(self):
        self.closed = True


@pytest.fixture
def orders_metadata():
    """Orders table with a single column primary key."""
    return TableMetadata(columns=("id", "status", "amount", "note"), primary_keys=("id",))


@pytest.fixture
def fake_catalog(orders_metadata):
    return FakeCatalog({
        "mydb.orders": orders_metadata,
        "other.x": TableMetadata(columns=("id", "v"), primary_keys=("id",)),
        "shop.users": TableMetadata(columns=("id", "name"), primary_keys=("id",)),
    })


@pytest.fixture
def timed_binlog_files():
    """
    Three binlog files spanning [100, 200), [200, 300) and [300, now).

    Offset 4 of each file holds an untimestamped rotate event.
    """
    f1, f2, f3 = "binlog.000001", "binlog.000002", "binlog.000003"
    return {
        f1: [
            log_event(f1, 4, 0),
            log_event(f1, 120, 100),
            table_define(f1, 200, 150, "mydb", "orders"),
            log_event(f1, 300, 190),
        ],
        f2: [
            log_event(f2, 4, 0),
            table_define(f2, 120, 200, "mydb", "orders"),
            log_event(f2, 200, 220),
            table_define(f2, 300, 250, "shop", "users"),
            log_event(f2, 400, 260),
            log_event(f2, 500, 280),
        ],
        f3: [
            log_event(f3, 4, 0),
            log_event(f3, 120, 300),
            log_event(f3, 200, 350),
        ],
    }
