"""
Reconciliation engine.

Runs once the write stream is committed and leaves exactly one current row
per entity in the permanent table. The strategy is a property of the table,
not of the caller: tables carrying both provenance columns (``_uuid`` and
``_sync_time``) are deduplicated in place, all others are merged from their
staging table.
"""
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from ..backend.base_backend import Warehouse
from ..core.enums import ReconcileStrategy
from ..core.exceptions import ConfigurationError, ReconciliationError
from ..core.models import DmlResult, SyncJob, TableMetadata


def select_strategy(metadata: TableMetadata) -> ReconcileStrategy:
    if metadata.has_provenance:
        return ReconcileStrategy.DEDUPE
    return ReconcileStrategy.MERGE


class Reconciler(ABC):
    """Base class for reconciliation strategies"""

    strategy: ReconcileStrategy

    def __init__(self, warehouse: Warehouse, job: SyncJob, logger: Optional[logging.Logger] = None):
        self.warehouse = warehouse
        self.job = job
        self.logger = logging.getLogger(f"{logger.name}.reconcile") if logger else logging.getLogger(__name__)

    def validate(self, metadata: TableMetadata) -> None:
        """Reject write-table metadata this strategy cannot reconcile"""

    @abstractmethod
    async def reconcile(self, metadata: TableMetadata) -> DmlResult:
        pass

    async def cleanup(self) -> None:
        """Best-effort cleanup after a failed run"""


class MergeReconciler(Reconciler):
    """
    Mirror the staging table into the permanent table.

    Staged rows are deduplicated per identity (greatest updated value wins,
    ties broken by a deterministic row fingerprint), then merged: matched rows
    are overwritten, new identities inserted and identities missing from the
    staged set deleted. The staging table is drained afterwards.
    """

    strategy = ReconcileStrategy.MERGE

    @property
    def staging(self):
        return self.job.staging_table

    def validate(self, metadata: TableMetadata) -> None:
        if not metadata.identity_column:
            raise ConfigurationError(
                f"Cannot merge into {self.job.table}: staging table has no identity column "
                f"'{self.job.identity_column}'"
            )

    def _ordering_column(self, metadata: TableMetadata) -> Optional[str]:
        updated = metadata.schema.get_field(self.job.updated_column) if self.job.updated_column else None
        if updated is None:
            self.logger.warning(
                f"{metadata.ref} has no '{self.job.updated_column}' column; "
                f"duplicates are resolved by row fingerprint only"
            )
            return None
        return updated.name

    async def reconcile(self, metadata: TableMetadata) -> DmlResult:
        columns: List[str] = metadata.schema.names
        self.logger.info(f"Merging {self.staging} into {self.job.table}")
        try:
            result = await self.warehouse.merge(
                self.job.table,
                self.staging,
                columns,
                metadata.identity_column,
                self._ordering_column(metadata),
            )
        except Exception as e:
            raise ReconciliationError(f"Merge into {self.job.table} failed: {e}") from e
        self.logger.info(
            f"Merged into {self.job.table}: {result.inserted_rows} inserted, "
            f"{result.updated_rows} updated, {result.deleted_rows} deleted"
        )
        try:
            await self.warehouse.drain(self.staging)
        except Exception as e:
            raise ReconciliationError(f"Could not drain staging table {self.staging}: {e}") from e
        return result

    async def cleanup(self) -> None:
        await self.warehouse.drain(self.staging)
        self.logger.info(f"Drained staging table {self.staging}")


class DedupeReconciler(Reconciler):
    """
    Remove duplicates written in place.

    Only identities rewritten at the current watermark are considered, and the
    latest written row per identity is kept. Entities deleted at the source are
    left in the table.
    Rows found without provenance are first given a _uuid and the legacy sync
    time, so they rank below every row a run writes.
    """

    strategy = ReconcileStrategy.DEDUPE

    async def reconcile(self, metadata: TableMetadata) -> DmlResult:
        if not metadata.identity_column:
            self.logger.info(f"{self.job.table} has no identity column; rows are append-only")
            return DmlResult()
        try:
            if metadata.provenance_nullable:
                backfilled = await self.warehouse.backfill_provenance(self.job.table)
                if backfilled.affected_rows:
                    self.logger.info(f"Backfilled provenance on {backfilled.affected_rows} rows of {self.job.table}")
            result = await self.warehouse.dedupe(self.job.table, metadata.identity_column, self.job.watermark)
        except Exception as e:
            raise ReconciliationError(f"Dedupe of {self.job.table} failed: {e}") from e
        self.logger.info(f"Removed {result.affected_rows} duplicate rows from {self.job.table}")
        return result


def make_reconciler(strategy: ReconcileStrategy, warehouse: Warehouse, job: SyncJob,
                    logger: Optional[logging.Logger] = None) -> Reconciler:
    if strategy == ReconcileStrategy.MERGE:
        return MergeReconciler(warehouse, job, logger=logger)
    elif strategy == ReconcileStrategy.DEDUPE:
        return DedupeReconciler(warehouse, job, logger=logger)
    raise ValueError(f"Unsupported reconcile strategy: {strategy}")
