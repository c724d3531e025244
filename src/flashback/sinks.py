"""
Statement Sinks

Destinations for compensating statements: a rollback script file, the log,
or several of them at once.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union

from src.flashback.models import CompensatingStatement

logger = logging.getLogger(__name__)

MODE_LIVE = "live monitoring"
MODE_BOUNDED = "bounded range"


class StatementSink:
    """Receives statements one at a time, in stream order."""

    def write(self, statement: CompensatingStatement) -> None:
        raise NotImplementedError

    def write_comment(self, text: str) -> None:
        """Record an informational note; ignored by default."""

    def close(self) -> None:
        """Release resources; nothing to do by default."""


class ListSink(StatementSink):
    """Collects statements in memory."""

    def __init__(self):
        self.statements: List[CompensatingStatement] = []
        self.comments: List[str] = []

    def write(self, statement: CompensatingStatement) -> None:
        self.statements.append(statement)

    def write_comment(self, text: str) -> None:
        self.comments.append(text)

    @property
    def sql(self) -> List[str]:
        return [s.sql for s in self.statements]


class LoggingSink(StatementSink):
    """Logs every statement at INFO."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def write(self, statement: CompensatingStatement) -> None:
        self.log.info(
            f"Rollback SQL ({statement.source_kind.value}@{statement.coordinate}): {statement.sql}",
            extra={
                "database": statement.database,
                "table": statement.table,
                "coordinate": str(statement.coordinate),
            }
        )

    def write_comment(self, text: str) -> None:
        self.log.info(text)


class ScriptFileSink(StatementSink):
    """
    Rollback script writer.

    The file starts with a header comment block, followed by one terminated
    statement per line. Every write is flushed so a live run can be tailed
    and an interrupted run leaves a usable script.
    """

    def __init__(
        self,
        path: Union[str, Path],
        source_file: Optional[str] = None,
        mode: str = MODE_LIVE
    ):
        """
        Create the script file and write its header.

        Args:
            path: Output file path (overwritten)
            source_file: Binlog file the run starts from, if fixed
            mode: Run mode shown in the header
        """
        self.path = Path(path)
        self._file = open(self.path, "w", encoding="utf-8")
        self._write_header(source_file, mode)
        logger.info(f"Writing rollback script to {self.path}")

    def _write_header(self, source_file: Optional[str], mode: str) -> None:
        lines = [
            "-- Rollback SQL script",
            f"-- Generated at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        ]
        if source_file:
            lines.append(f"-- Binlog file: {source_file}")
        lines.append(f"-- Mode: {mode}")
        self._file.write("\n".join(lines) + "\n\n")
        self._file.flush()

    def write(self, statement: CompensatingStatement) -> None:
        sql = statement.sql if statement.sql.endswith(";") else statement.sql + ";"
        self._file.write(sql + "\n")
        self._file.flush()

    def write_comment(self, text: str) -> None:
        for line in text.splitlines():
            self._file.write(f"-- {line}\n")
        self._file.flush()

    def close(self) -> None:
        if not self._file.closed:
            self._file.close()


class FanOutSink(StatementSink):
    """Delivers each statement to several sinks in order."""

    def __init__(self, *sinks: StatementSink):
        self.sinks = list(sinks)

    def write(self, statement: CompensatingStatement) -> None:
        for sink in self.sinks:
            sink.write(statement)

    def write_comment(self, text: str) -> None:
        for sink in self.sinks:
            sink.write_comment(text)

    def close(self) -> None:
        for sink in self.sinks:
            sink.close()
