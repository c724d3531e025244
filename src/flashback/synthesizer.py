"""
Compensation Synthesizer for Binlog Flashback

Generates compensating SQL (DELETE/INSERT/UPDATE) that undoes a single
captured row change. Pure string building; no I/O.
"""

import json
import logging
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, List, Optional, Tuple

from src.flashback.models import ChangeKind, RowImage, TableMetadata

logger = logging.getLogger(__name__)

# MySQL string literal escapes (backslash escapes are on unless
# NO_BACKSLASH_ESCAPES is set on the session running the script).
_STRING_ESCAPES = {
    "\\": "\\\\",
    "'": "\\'",
    "\0": "\\0",
    "\n": "\\n",
    "\r": "\\r",
    "\x1a": "\\Z",
}


def quote_identifier(name: str) -> str:
    """Backtick-quote an identifier."""
    return "`" + name.replace("`", "``") + "`"


def escape_string(text: str) -> str:
    return "".join(_STRING_ESCAPES.get(ch, ch) for ch in text)


def _format_timedelta(value: timedelta) -> str:
    # MySQL TIME columns are decoded as timedelta and may be negative
    sign = "-" if value < timedelta(0) else ""
    total = abs(value)
    seconds = total.days * 86400 + total.seconds
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    text = f"{sign}{hours:02d}:{minutes:02d}:{secs:02d}"
    if total.microseconds:
        text += f".{total.microseconds:06d}"
    return text


def format_value(value: Any) -> str:
    """
    Format a Python value as a MySQL literal.

    Args:
        value: Decoded column value

    Returns:
        SQL literal text
    """
    if value is None:
        return "NULL"

    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return "1" if value else "0"

    if isinstance(value, str):
        return f"'{escape_string(value)}'"

    if isinstance(value, (bytes, bytearray)):
        try:
            text = bytes(value).decode("utf-8")
        except UnicodeDecodeError:
            return f"X'{bytes(value).hex().upper()}'"
        return f"'{escape_string(text)}'"

    if isinstance(value, datetime):
        return f"'{value.isoformat(sep=' ')}'"

    if isinstance(value, (date, time)):
        return f"'{value.isoformat()}'"

    if isinstance(value, timedelta):
        return f"'{_format_timedelta(value)}'"

    if isinstance(value, (int, Decimal)):
        return str(value)

    if isinstance(value, float):
        return repr(value)

    if isinstance(value, (set, frozenset)):
        return f"'{escape_string(','.join(sorted(str(v) for v in value)))}'"

    if isinstance(value, (list, dict)):
        return f"'{escape_string(json.dumps(value, default=str))}'"

    return f"'{escape_string(str(value))}'"


class CompensationSynthesizer:
    """
    Builds the SQL that reverses one row change.

    - INSERT is undone with a DELETE
    - DELETE is undone with an INSERT of the full row image
    - UPDATE is undone with an UPDATE restoring the before image
    """

    def synthesize(
        self,
        kind: ChangeKind,
        database: str,
        table: str,
        metadata: TableMetadata,
        before: Optional[RowImage] = None,
        after: Optional[RowImage] = None
    ) -> Optional[str]:
        """
        Generate the compensating statement for one row change.

        Args:
            kind: Original change type
            database: Database name
            table: Table name
            metadata: Column layout of the table
            before: Row image before the change (UPDATE, DELETE)
            after: Row image after the change (INSERT, UPDATE)

        Returns:
            Terminated SQL text, or None for an UPDATE that changed nothing
            or a row image with no values
        """
        if kind is ChangeKind.INSERT:
            return self.generate_delete_sql(database, table, metadata, after)
        if kind is ChangeKind.DELETE:
            return self.generate_insert_sql(database, table, metadata, before)
        if kind is ChangeKind.UPDATE:
            return self.generate_update_sql(database, table, metadata, before, after)
        raise ValueError(f"Unsupported change kind: {kind}")

    def generate_delete_sql(
        self,
        database: str,
        table: str,
        metadata: TableMetadata,
        row: RowImage
    ) -> Optional[str]:
        """DELETE undoing an INSERT of ``row``; None when the row cannot be located."""
        table_ref = self._format_table_name(database, table)
        where_clause = self._build_where_clause(database, table, metadata, row)
        if not where_clause:
            logger.warning(f"Empty row image for {database}.{table}; cannot build a DELETE")
            return None
        return f"DELETE FROM {table_ref} WHERE {where_clause};"

    def generate_insert_sql(
        self,
        database: str,
        table: str,
        metadata: TableMetadata,
        row: RowImage
    ) -> Optional[str]:
        """INSERT reproducing the deleted ``row`` column for column; None for an empty image."""
        table_ref = self._format_table_name(database, table)
        pairs = self._aligned(database, table, metadata, row)
        if not pairs:
            logger.warning(f"Empty row image for {database}.{table}; cannot build an INSERT")
            return None

        fields_str = ", ".join(quote_identifier(column) for column, _ in pairs)
        values_str = ", ".join(format_value(value) for _, value in pairs)

        return f"INSERT INTO {table_ref} ({fields_str}) VALUES ({values_str});"

    def generate_update_sql(
        self,
        database: str,
        table: str,
        metadata: TableMetadata,
        before: RowImage,
        after: RowImage
    ) -> Optional[str]:
        """
        UPDATE restoring ``before`` on the row currently holding ``after``.

        Only columns whose formatted values differ are assigned. The row is
        located by its after image, which is its identity on disk now.
        """
        table_ref = self._format_table_name(database, table)

        set_parts = []
        for column, old_value, new_value in zip(metadata.columns, before, after):
            old_literal = format_value(old_value)
            if old_literal != format_value(new_value):
                set_parts.append(f"{quote_identifier(column)} = {old_literal}")

        if len(before) < len(metadata.columns) or len(after) < len(metadata.columns):
            self._warn_short_row(database, table, metadata, min(len(before), len(after)))

        if not set_parts:
            logger.debug(f"UPDATE on {database}.{table} changed no column; nothing to revert")
            return None

        set_clause = ", ".join(set_parts)
        where_clause = self._build_where_clause(database, table, metadata, after)

        return f"UPDATE {table_ref} SET {set_clause} WHERE {where_clause};"

    def _build_where_clause(
        self,
        database: str,
        table: str,
        metadata: TableMetadata,
        row: RowImage
    ) -> str:
        """
        Build the row-locating predicate.

        Uses the primary key columns in declared order; without a primary key,
        or when the image holds none of its columns, every column is matched
        (unsound if the table holds duplicate rows). Returns an empty string
        when the image has no values at all.
        """
        conditions = []
        if metadata.has_primary_key:
            for key in metadata.primary_keys:
                if key not in metadata.columns:
                    continue
                index = metadata.columns.index(key)
                if index < len(row):
                    conditions.append(self._condition(key, row[index]))
            if not conditions:
                logger.warning(
                    f"Row image for {database}.{table} holds no primary key column "
                    f"({', '.join(metadata.primary_keys)}); matching all columns"
                )

        if not conditions:
            conditions = [
                self._condition(column, value)
                for column, value in self._aligned(database, table, metadata, row)
            ]
        return " AND ".join(conditions)

    def _condition(self, column: str, value: Any) -> str:
        # "= NULL" never matches; NULL-safe equality keeps full-row matches usable
        if value is None:
            return f"{quote_identifier(column)} IS NULL"
        return f"{quote_identifier(column)} = {format_value(value)}"

    def _aligned(
        self,
        database: str,
        table: str,
        metadata: TableMetadata,
        row: RowImage
    ) -> List[Tuple[str, Any]]:
        if len(row) < len(metadata.columns):
            self._warn_short_row(database, table, metadata, len(row))
        return list(zip(metadata.columns, row))

    def _warn_short_row(self, database: str, table: str, metadata: TableMetadata, length: int) -> None:
        logger.warning(
            f"Row image for {database}.{table} has {length} values but {len(metadata.columns)} "
            f"columns are known; truncating to {length}"
        )

    def _format_table_name(self, database: str, table: str) -> str:
        return f"{quote_identifier(database)}.{quote_identifier(table)}"
