"""
Table Catalog for Binlog Flashback

Resolves and caches the column order and primary key of the tables whose
row events are being reverted.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

import pymysql
from pymysql.cursors import DictCursor

from src.flashback.exceptions import CatalogError
from src.flashback.models import TableMetadata
from src.flashback.synthesizer import quote_identifier

logger = logging.getLogger(__name__)

PRIMARY_KEY_USAGE_QUERY = (
    "SELECT COLUMN_NAME FROM information_schema.KEY_COLUMN_USAGE "
    "WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s AND CONSTRAINT_NAME = 'PRIMARY' "
    "ORDER BY ORDINAL_POSITION"
)


class TableCatalog:
    """
    Per-run cache of table metadata, keyed by "database.table".

    Entries are never invalidated; a schema change in the middle of the
    stream leaves the cached layout stale.
    """

    def __init__(
        self,
        connection_settings: Dict[str, Any],
        connect: Optional[Callable[..., Any]] = None
    ):
        """
        Initialize the catalog.

        Args:
            connection_settings: PyMySQL connection keyword arguments
            connect: Connection factory (defaults to pymysql.connect)
        """
        self.connection_settings = dict(connection_settings)
        self._connect = connect or pymysql.connect
        self._conn = None
        self._cache: Dict[str, TableMetadata] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._cache

    def get(self, database: str, table: str) -> Optional[TableMetadata]:
        """Return cached metadata without querying the server."""
        return self._cache.get(f"{database}.{table}")

    def resolve(self, database: str, table: str) -> TableMetadata:
        """
        Resolve metadata for a table, querying the server on first use.

        Args:
            database: Database name
            table: Table name

        Returns:
            TableMetadata with columns and (possibly empty) primary keys

        Raises:
            CatalogError: If the table cannot be introspected
        """
        key = f"{database}.{table}"
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        try:
            conn = self._connection()
            with conn.cursor(DictCursor) as cursor:
                columns, primary_keys = self._fetch_columns(cursor, database, table)

                if not primary_keys:
                    primary_keys = self._fetch_constraint_primary_keys(cursor, database, table)

                if not primary_keys:
                    primary_keys = self._fetch_index_primary_keys(cursor, database, table)

        except pymysql.MySQLError as e:
            logger.error(f"Failed to load metadata for {key}: {e}")
            # The connection may be dead; the next table reconnects
            self.close()
            raise CatalogError(f"Failed to load metadata for {key}: {e}", database, table) from e

        if not columns:
            raise CatalogError(f"No columns reported for {key}", database, table)

        metadata = TableMetadata(columns=tuple(columns), primary_keys=tuple(primary_keys))
        self._cache[key] = metadata

        logger.info(
            f"Loaded table metadata: {key}, columns: {len(columns)}, "
            f"primary key: {', '.join(primary_keys) or '(none)'}"
        )
        return metadata

    def _fetch_columns(self, cursor, database: str, table: str):
        cursor.execute(f"SHOW COLUMNS FROM {quote_identifier(database)}.{quote_identifier(table)}")

        columns: List[str] = []
        primary_keys: List[str] = []
        for row in cursor.fetchall():
            column = row["Field"]
            columns.append(column)
            if (row.get("Key") or "").upper() == "PRI":
                primary_keys.append(column)

        return columns, primary_keys

    def _fetch_constraint_primary_keys(self, cursor, database: str, table: str) -> List[str]:
        try:
            cursor.execute(PRIMARY_KEY_USAGE_QUERY, (database, table))
            return [row["COLUMN_NAME"] for row in cursor.fetchall()]
        except pymysql.MySQLError as e:
            logger.warning(f"Primary key lookup via information_schema failed for {database}.{table}: {e}")
            return []

    def _fetch_index_primary_keys(self, cursor, database: str, table: str) -> List[str]:
        try:
            cursor.execute(
                f"SHOW INDEX FROM {quote_identifier(database)}.{quote_identifier(table)} "
                f"WHERE Key_name = 'PRIMARY'"
            )
        except pymysql.MySQLError as e:
            logger.warning(f"Primary index lookup failed for {database}.{table}: {e}")
            return []
        rows = sorted(cursor.fetchall(), key=lambda r: r.get("Seq_in_index", 0))
        return [row["Column_name"] for row in rows]

    def _connection(self):
        if self._conn is None:
            logger.debug(
                f"Connecting catalog to {self.connection_settings.get('host')}:"
                f"{self.connection_settings.get('port')}"
            )
            self._conn = self._connect(**self.connection_settings)
        return self._conn

    def close(self) -> None:
        """Close the catalog connection."""
        if self._conn is not None:
            try:
                self._conn.close()
            except pymysql.MySQLError as e:
                logger.warning(f"Error closing catalog connection: {e}")
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
