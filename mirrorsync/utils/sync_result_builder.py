"""
Builds SyncResult objects at the end of a run.
"""
from datetime import datetime
from typing import List, Optional

from ..core.enums import ReconcileStrategy
from ..core.models import SyncResult, SyncStats


def _duration(stats: SyncStats, start_time: Optional[datetime]) -> float:
    effective_start_time = start_time or stats.start_time
    if effective_start_time is None:
        return 0.0
    return (datetime.now() - effective_start_time).total_seconds()


class SyncResultBuilder:
    """Builder for standardized run results"""

    @staticmethod
    def build_success_result(
        table: str,
        strategy: ReconcileStrategy,
        stats: SyncStats,
        cleanup_errors: Optional[List[str]] = None,
        start_time: Optional[datetime] = None,
    ) -> SyncResult:
        return SyncResult(
            success=True,
            table=table,
            stats=stats,
            strategy=strategy,
            cleanup_errors=list(cleanup_errors or []),
            duration_seconds=_duration(stats, start_time),
        )

    @staticmethod
    def build_failure_result(
        table: str,
        error: BaseException,
        stats: Optional[SyncStats] = None,
        strategy: Optional[ReconcileStrategy] = None,
        cleanup_errors: Optional[List[str]] = None,
        start_time: Optional[datetime] = None,
    ) -> SyncResult:
        stats = stats or SyncStats()
        return SyncResult(
            success=False,
            table=table,
            stats=stats,
            strategy=strategy,
            error=error,
            cleanup_errors=list(cleanup_errors or []),
            duration_seconds=_duration(stats, start_time),
        )
