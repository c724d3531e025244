"""
Error taxonomy for binlog flashback.
"""

from typing import Optional


class FlashbackError(Exception):
    """Base class for all flashback errors."""
    pass


class ArgumentError(FlashbackError):
    """Raised for invalid or missing input, before any connection is made."""
    pass


class StreamConnectionError(FlashbackError):
    """
    Raised when the binlog stream cannot be opened or is lost.

    Fatal to the current run or probe. Carries the last coordinate that was
    fully processed so the operator can resume explicitly.
    """

    def __init__(self, message: str, last_coordinate: Optional[object] = None):
        super().__init__(message)
        self.last_coordinate = last_coordinate


class CatalogError(FlashbackError):
    """Raised when table metadata cannot be introspected."""

    def __init__(self, message: str, database: str = "", table: str = ""):
        super().__init__(message)
        self.database = database
        self.table = table
