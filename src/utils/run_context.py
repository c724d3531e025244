"""
Run Context Utility for Binlog Flashback

Tags every log record of one rollback or locate invocation with a run id, so
that interleaved logs of concurrent invocations (or a long live run) can be
told apart.
"""

import contextvars
import logging
import uuid
from typing import Optional

logger = logging.getLogger(__name__)

# Context variable for the run id
_run_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    'run_id',
    default=None
)


def generate_run_id() -> str:
    """
    Generate a new run id using UUID4.

    Returns:
        String representation of a UUID4
    """
    return str(uuid.uuid4())


def get_run_id() -> Optional[str]:
    """Get the current run id, or None if not set."""
    return _run_id.get()


def set_run_id(run_id: str) -> None:
    """
    Set the run id in the current context.

    Raises:
        ValueError: If run_id is empty or not a string
    """
    if not run_id or not isinstance(run_id, str):
        raise ValueError("Run id must be a non-empty string")

    _run_id.set(run_id)


def clear_run_id() -> None:
    """Clear the run id from context."""
    _run_id.set(None)


class RunContext:
    """
    Context manager scoping a run id.

    Restores the previous run id (if any) on exit.
    """

    def __init__(self, run_id: Optional[str] = None):
        """
        Args:
            run_id: Run id to use; a new one is generated if omitted
        """
        self.run_id = run_id
        self.previous_id = None

    def __enter__(self) -> str:
        self.previous_id = get_run_id()

        if not self.run_id:
            self.run_id = generate_run_id()
        set_run_id(self.run_id)

        logger.debug(f"Entered run context: {self.run_id}")
        return self.run_id

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.previous_id:
            set_run_id(self.previous_id)
        else:
            clear_run_id()


def run_id_filter(record) -> bool:
    """
    Logging filter adding ``run_id`` to log records.

    Returns:
        True (always allow record)
    """
    record.run_id = get_run_id() or "N/A"
    return True


def setup_run_logging(handler: logging.Handler) -> None:
    """Configure a handler to stamp records with the run id."""
    handler.addFilter(run_id_filter)
