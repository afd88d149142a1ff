"""
Progress manager for a single run: counter updates plus a periodic reporter.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from ..core.models import SyncRunContext, SyncStats

DEFAULT_PROGRESS_INTERVAL = 5.0


def format_elapsed(seconds: float) -> str:
    return f"{seconds:.1f}s"


class ProgressManager:
    """Manages progress updates and periodic progress logging"""

    def __init__(self,
                 context: SyncRunContext,
                 progress_callback: Optional[Callable[[SyncStats], None]] = None,
                 interval: float = DEFAULT_PROGRESS_INTERVAL,
                 logger: Optional[logging.Logger] = None):
        self.context = context
        self.stats = context.stats
        self.progress_callback = progress_callback
        self.interval = interval
        self.logger = logger or logging.getLogger(__name__)
        self._reporter: Optional[asyncio.Task] = None

    def update_progress(self,
                        rows_read: int = 0,
                        rows_skipped: int = 0,
                        rows_submitted: int = 0,
                        batches_submitted: int = 0) -> None:
        """Update counters and notify the callback"""
        self.stats.update_progress(
            rows_read=rows_read,
            rows_skipped=rows_skipped,
            rows_submitted=rows_submitted,
            batches_submitted=batches_submitted,
        )
        if self.progress_callback:
            self.progress_callback(self.stats)

    @property
    def elapsed_seconds(self) -> float:
        if self.stats.start_time is None:
            return 0.0
        return (datetime.now() - self.stats.start_time).total_seconds()

    def log_progress(self) -> None:
        self.logger.info(
            f"Progress {self.context.job.table}: elapsed {format_elapsed(self.elapsed_seconds)}, "
            f"rows read {self.stats.rows_read}, offset {self.context.offset}, "
            f"outstanding writes {self.context.outstanding_writes}"
        )

    async def _report_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.log_progress()

    def start(self) -> None:
        """Start the background reporter"""
        if self._reporter is None and self.interval and self.interval > 0:
            self._reporter = asyncio.create_task(self._report_periodically())

    async def stop(self) -> None:
        """Stop the background reporter"""
        if self._reporter is None:
            return
        self._reporter.cancel()
        try:
            await self._reporter
        except asyncio.CancelledError:
            pass
        self._reporter = None

    def log_completion(self, duration: str) -> None:
        """Log run completion"""
        self.logger.info(
            f"Sync of {self.context.job.table} completed in {duration}: "
            f"{self.stats.rows_read} read, {self.stats.rows_skipped} skipped, "
            f"{self.stats.rows_written} written"
        )
