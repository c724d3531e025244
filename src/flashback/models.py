"""
Data Models for Binlog Flashback

Typed records flowing between the binlog decoder adapter, the change stream
processor and the position locator.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple, Union

from src.flashback.exceptions import ArgumentError

# Every binlog file starts with a 4 byte magic header; the first event follows it.
BINLOG_START_OFFSET = 4

RowImage = Sequence[Any]


@dataclass(frozen=True, order=True)
class Coordinate:
    """A (file, offset) point in the binlog."""

    file_name: str
    offset: int

    def __str__(self) -> str:
        return f"{self.file_name}:{self.offset}"


@dataclass(frozen=True)
class TableMetadata:
    """
    Column layout of a table as reported by the server.

    Attributes:
        columns: Column names in server order (matches row image order)
        primary_keys: Ordered primary key columns, possibly empty
    """

    columns: Tuple[str, ...]
    primary_keys: Tuple[str, ...] = ()

    @property
    def has_primary_key(self) -> bool:
        return bool(self.primary_keys)


class ChangeKind(Enum):
    """Row change types carried by binlog row events."""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class LogEvent:
    """Any binlog event; only its position and time are of interest."""

    coordinate: Coordinate
    timestamp: int


@dataclass(frozen=True)
class TableDefine(LogEvent):
    """Table map event announcing the table of the row events that follow."""

    database: str = ""
    table: str = ""

    @property
    def qualified_name(self) -> str:
        return f"{self.database}.{self.table}"


@dataclass(frozen=True)
class RowChangeEvent(LogEvent):
    """
    Decoded row event.

    For INSERT and DELETE each entry of ``rows`` is one row image. For UPDATE
    each entry is a ``(before, after)`` pair of row images.
    """

    kind: ChangeKind = ChangeKind.INSERT
    database: str = ""
    table: str = ""
    rows: Tuple[Any, ...] = ()

    @property
    def qualified_name(self) -> str:
        return f"{self.database}.{self.table}"


StreamRecord = Union[LogEvent, TableDefine, RowChangeEvent]


@dataclass(frozen=True)
class CompensatingStatement:
    """SQL undoing one captured row change."""

    sql: str
    coordinate: Coordinate
    timestamp: int
    database: str
    table: str
    source_kind: ChangeKind


@dataclass(frozen=True)
class TableFilter:
    """
    Database/table selection.

    A table passes only if both its database and its table name pass. An empty
    set places no restriction on its dimension; a non-empty set requires an
    exact match.
    """

    databases: FrozenSet[str] = frozenset()
    tables: FrozenSet[str] = frozenset()

    @classmethod
    def from_iterables(
        cls,
        databases: Optional[Iterable[str]] = None,
        tables: Optional[Iterable[str]] = None
    ) -> "TableFilter":
        return cls(
            databases=frozenset(d for d in (databases or []) if d),
            tables=frozenset(t for t in (tables or []) if t)
        )

    def accepts(self, database: str, table: str) -> bool:
        database_ok = not self.databases or database in self.databases
        table_ok = not self.tables or table in self.tables
        return database_ok and table_ok

    @property
    def is_unrestricted(self) -> bool:
        return not self.databases and not self.tables


@dataclass(frozen=True)
class TimeWindow:
    """
    Wall-clock window in epoch seconds.

    Raises:
        ArgumentError: If neither bound is set or start is after end
    """

    start: Optional[float] = None
    end: Optional[float] = None

    def __post_init__(self):
        if self.start is None and self.end is None:
            raise ArgumentError("At least one of start time or end time must be specified")
        if self.start is not None and self.end is not None and self.start > self.end:
            raise ArgumentError("Start time must not be after end time")

    @classmethod
    def from_datetimes(
        cls,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> "TimeWindow":
        return cls(
            start=start.timestamp() if start is not None else None,
            end=end.timestamp() if end is not None else None
        )


@dataclass(frozen=True)
class FileTimeRange:
    """Time span [start_time, end_time) covered by one binlog file."""

    file_name: str
    start_time: float
    end_time: float

    def contains(self, instant: Optional[float]) -> bool:
        if instant is None:
            return False
        return self.start_time <= instant < self.end_time


class PositionRole(Enum):
    RANGE_START = "range_start"
    RANGE_END = "range_end"


@dataclass(frozen=True)
class PositionResult:
    """A resolved side of a time window."""

    coordinate: Coordinate
    timestamp: float
    role: PositionRole

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file": self.coordinate.file_name,
            "offset": self.coordinate.offset,
            "timestamp": datetime.fromtimestamp(self.timestamp).strftime("%Y-%m-%d %H:%M:%S"),
        }


@dataclass
class LocateResult:
    """Outcome of a position search; a side is None when not requested or not found."""

    range_start: Optional[PositionResult] = None
    range_end: Optional[PositionResult] = None
    window: Optional[TimeWindow] = None
    earliest_file: Optional[str] = None

    @property
    def found(self) -> bool:
        if self.window is None:
            return self.range_start is not None or self.range_end is not None
        start_ok = self.window.start is None or self.range_start is not None
        end_ok = self.window.end is None or self.range_end is not None
        return start_ok and end_ok

    def rollback_command(self, host: str, port: int, user: str) -> Optional[str]:
        """Build a rollback invocation covering the resolved range."""
        if self.range_start is None and self.range_end is None:
            return None

        parts = [
            "python scripts/flashback.py",
            f"-H {host} -P {port} -u {user} -p <password>",
            "rollback",
        ]
        if self.range_start is not None:
            parts.append(
                f"-f {self.range_start.coordinate.file_name} "
                f"-s {self.range_start.coordinate.offset}"
            )
        elif self.earliest_file is not None:
            # Open start: everything up to the end, from the oldest retained file
            parts.append(f"-f {self.earliest_file} -s {BINLOG_START_OFFSET}")
        else:
            # Without a start the rollback would begin at the live position
            return None
        if self.range_end is not None:
            parts.append(
                f"--stop-file {self.range_end.coordinate.file_name} "
                f"--stop-position {self.range_end.coordinate.offset}"
            )
        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "found": self.found,
            "range_start": self.range_start.to_dict() if self.range_start else None,
            "range_end": self.range_end.to_dict() if self.range_end else None,
        }


@dataclass
class RunSummary:
    """Counters describing one processor run."""

    statements: int = 0
    events_dropped: int = 0
    noop_updates: int = 0
    tables_resolved: List[str] = field(default_factory=list)
    tables_failed: List[str] = field(default_factory=list)
    first_coordinate: Optional[Coordinate] = None
    last_coordinate: Optional[Coordinate] = None
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "statements": self.statements,
            "events_dropped": self.events_dropped,
            "noop_updates": self.noop_updates,
            "tables_resolved": list(self.tables_resolved),
            "tables_failed": list(self.tables_failed),
            "first_coordinate": str(self.first_coordinate) if self.first_coordinate else None,
            "last_coordinate": str(self.last_coordinate) if self.last_coordinate else None,
            "cancelled": self.cancelled,
        }
