"""
Position Locator for Binlog Flashback

Finds the binlog coordinates where the log first reaches a wall-clock time
window. Files are searched newest first, which favours recovery from recent
incidents: each file gets one cheap first-event probe, and only files whose
time range covers a bound of the window are replayed.
"""

import logging
import time
from typing import Callable, Optional, Tuple

from src.flashback.exceptions import StreamConnectionError
from src.flashback.models import (
    BINLOG_START_OFFSET,
    Coordinate,
    FileTimeRange,
    LocateResult,
    PositionResult,
    PositionRole,
    TableDefine,
    TableFilter,
    TimeWindow,
)
from src.flashback.source import PROBE_CONNECT_TIMEOUT, STREAM_CONNECT_TIMEOUT, BinlogServer
from src.monitoring.metrics import FlashbackMetrics

logger = logging.getLogger(__name__)

# Pause after each disconnect so in-flight callbacks drain before reconnecting
SETTLE_DELAY = 1.0


def _fmt(timestamp: float) -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(timestamp))


class PositionLocator:
    """Maps a time window onto binlog coordinates."""

    def __init__(
        self,
        server: BinlogServer,
        metrics: Optional[FlashbackMetrics] = None,
        settle_delay: float = SETTLE_DELAY,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], None]] = None
    ):
        """
        Initialize the locator.

        Args:
            server: Binlog server to search
            metrics: Optional Prometheus metrics
            settle_delay: Seconds to wait after each disconnect
            clock: Source of "now" for the newest file's end time
            sleep: Sleep function
        """
        self.server = server
        self.metrics = metrics
        self.settle_delay = settle_delay
        self.clock = clock or time.time
        self.sleep = sleep or time.sleep

    def locate(self, window: TimeWindow, filters: Optional[TableFilter] = None) -> LocateResult:
        """
        Find the coordinates bounding ``window``.

        Args:
            window: Time window; at least one bound is set
            filters: When restrictive, the start must be a table map event of a
                matching table

        Returns:
            LocateResult; ``found`` is False if no single file satisfies every
            requested side

        Raises:
            StreamConnectionError: If the binlog files cannot be listed
        """
        filters = filters or TableFilter()
        started = time.monotonic()
        try:
            return self._search(window, filters)
        finally:
            if self.metrics:
                self.metrics.record_locate_duration(time.monotonic() - started)

    def _search(self, window: TimeWindow, filters: TableFilter) -> LocateResult:
        files = self.server.list_log_files()
        if not files:
            logger.error("No binlog files available on the server")
            return LocateResult(window=window)

        logger.info(f"Found {len(files)} binlog files, searching newest first")

        newer_start: Optional[float] = None
        for file_name, size in files:
            logger.info(f"Inspecting binlog file {file_name} (size {size})")

            time_range = self.file_time_range(file_name, newer_start)
            if time_range is None:
                logger.warning(f"Cannot determine the time range of {file_name}; skipping it")
                continue
            newer_start = time_range.start_time

            need_start = time_range.contains(window.start)
            need_end = time_range.contains(window.end)
            if not need_start and not need_end:
                continue

            result = self.replay(time_range, window, filters, need_start, need_end)
            if result.found:
                result.earliest_file = files[-1][0]
                logger.info(f"Window resolved within {file_name}")
                return result

            logger.info(f"{file_name} only partially covers the window; continuing with older files")

        logger.info("No binlog position matches the requested time window")
        return LocateResult(window=window)

    def file_time_range(self, file_name: str, newer_start: Optional[float]) -> Optional[FileTimeRange]:
        """
        Derive the time range of a file.

        The start is the timestamp of the file's first timestamped event; the
        end is the start of the next newer file, or now for the newest file.

        Args:
            file_name: Binlog file
            newer_start: Start time of the next newer file, None for the newest

        Returns:
            FileTimeRange, or None if the file could not be probed
        """
        start_time = self.probe_start_time(file_name)
        if start_time is None:
            return None

        end_time = newer_start if newer_start is not None else self.clock()
        logger.info(f"Time range of {file_name}: {_fmt(start_time)} to {_fmt(end_time)}")
        return FileTimeRange(file_name=file_name, start_time=start_time, end_time=end_time)

    def probe_start_time(self, file_name: str) -> Optional[float]:
        """Timestamp of the first timestamped event in a file, or None on failure."""
        stream = None
        try:
            stream = self.server.open_stream(
                start=Coordinate(file_name, BINLOG_START_OFFSET),
                blocking=False,
                connect_timeout=PROBE_CONNECT_TIMEOUT
            )
            for record in stream:
                if record.timestamp:
                    logger.debug(f"First event of {file_name} at {record.coordinate}, {_fmt(record.timestamp)}")
                    if self.metrics:
                        self.metrics.record_probe("success")
                    return float(record.timestamp)

        except StreamConnectionError as e:
            logger.error(f"Failed to read the first event of {file_name}: {e}")
            if self.metrics:
                self.metrics.record_probe("failure")
            return None

        finally:
            if stream is not None:
                stream.disconnect()
                self.sleep(self.settle_delay)

        if self.metrics:
            self.metrics.record_probe("empty")
        return None

    def replay(
        self,
        time_range: FileTimeRange,
        window: TimeWindow,
        filters: TableFilter,
        need_start: bool,
        need_end: bool
    ) -> LocateResult:
        """
        Sequentially replay a candidate file to resolve the requested sides.

        Args:
            time_range: Candidate file and its time range
            window: Time window being searched
            filters: Table filter refining the start position
            need_start: Whether the window start lies in this file
            need_end: Whether the window end lies in this file

        Returns:
            LocateResult with the sides resolved in this file
        """
        file_name = time_range.file_name
        result = LocateResult(window=window)
        previous: Optional[Tuple[Coordinate, float]] = None

        stream = None
        try:
            stream = self.server.open_stream(
                start=Coordinate(file_name, BINLOG_START_OFFSET),
                blocking=False,
                connect_timeout=STREAM_CONNECT_TIMEOUT
            )
            for record in stream:
                if not record.timestamp:
                    continue
                # A rotate into the next file ends this file's replay
                if record.coordinate.file_name != file_name:
                    break

                if need_start and result.range_start is None and record.timestamp >= window.start:
                    if filters.is_unrestricted or self._matches(record, filters):
                        result.range_start = PositionResult(
                            record.coordinate, float(record.timestamp), PositionRole.RANGE_START
                        )

                if need_end and result.range_end is None and record.timestamp > window.end:
                    if previous is not None:
                        result.range_end = PositionResult(
                            previous[0], previous[1], PositionRole.RANGE_END
                        )
                    else:
                        logger.warning(f"No event in {file_name} precedes the window end")

                previous = (record.coordinate, float(record.timestamp))

                start_done = not need_start or result.range_start is not None
                end_done = not need_end or result.range_end is not None
                if start_done and end_done:
                    break

        except StreamConnectionError as e:
            logger.error(f"Replay of {file_name} failed: {e}")
            return LocateResult(window=window)

        finally:
            if stream is not None:
                stream.disconnect()
                self.sleep(self.settle_delay)

        # Events after the last one in this file belong to the next file,
        # which starts after the window end
        if need_end and result.range_end is None and previous is not None:
            result.range_end = PositionResult(previous[0], previous[1], PositionRole.RANGE_END)

        return result

    @staticmethod
    def _matches(record, filters: TableFilter) -> bool:
        return isinstance(record, TableDefine) and filters.accepts(record.database, record.table)
