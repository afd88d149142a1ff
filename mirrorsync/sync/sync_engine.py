import logging
import traceback
from datetime import datetime
from typing import Any, AsyncIterable, Callable, Dict, Iterable, List, Optional, Union

from ..backend.base_backend import Warehouse
from ..core.enums import ReconcileStrategy
from ..core.exceptions import RowError, SyncError
from ..core.models import (
    DEFAULT_BATCH_SIZE, DEFAULT_IDENTITY_COLUMN, DEFAULT_UPDATED_COLUMN, SYNC_TIME_COLUMN, UUID_COLUMN,
    SyncJob, SyncResult, SyncRunContext, SyncStats, TableRef,
)
from ..core.row_model import RowValidator
from ..pipeline.base import Pipeline
from ..pipeline.stages import BatcherStage, PopulateStage, TransformStage
from ..pipeline.stages.transform import RowTransform
from ..source.base_source import CursorSource, SourceQuery
from ..source.iterable_source import IterableSource
from ..utils.progress_manager import DEFAULT_PROGRESS_INTERVAL, ProgressManager, format_elapsed
from ..utils.schema_utils import utc_now
from ..utils.sync_result_builder import SyncResultBuilder
from .reconciliation import make_reconciler, select_strategy
from .write_session import StreamingWriteSession, sequenced_uuid


def identity_transform(document: Dict[str, Any]) -> Dict[str, Any]:
    return document


class SyncEngine:
    """
    Orchestrates one run: source -> transform -> batches -> write stream ->
    commit -> reconcile.

    The strategy is read from the permanent table. Every failure is reported
    through the returned SyncResult; cleanup after a failure is best-effort
    and its errors are collected, never raised.
    """

    def __init__(self, warehouse: Warehouse, table: str,
                 batch_size: int = DEFAULT_BATCH_SIZE,
                 identity_column: Optional[str] = DEFAULT_IDENTITY_COLUMN,
                 updated_column: str = DEFAULT_UPDATED_COLUMN,
                 progress_interval: float = DEFAULT_PROGRESS_INTERVAL,
                 logger: Optional[logging.Logger] = None,
                 progress_callback: Optional[Callable[[SyncStats], None]] = None,
                 commit_retries: int = 3,
                 commit_retry_delay: float = 1.0):
        self.warehouse = warehouse
        self.table = warehouse.table_ref(table)
        self.batch_size = batch_size
        self.identity_column = identity_column
        self.updated_column = updated_column
        self.progress_interval = progress_interval
        self.progress_callback = progress_callback
        self.commit_retries = commit_retries
        self.commit_retry_delay = commit_retry_delay
        logger_name = f"{logger.name}.sync_engine" if logger else f"{__name__}.sync_engine"
        self.logger = logging.getLogger(logger_name)

    async def _plan(self, stats: SyncStats) -> SyncRunContext:
        permanent = await self.warehouse.get_table_metadata(self.table, identity_column=self.identity_column)
        strategy = select_strategy(permanent)
        job = SyncJob(
            table=self.table,
            strategy=strategy,
            watermark=utc_now(),
            batch_size=self.batch_size,
            identity_column=self.identity_column,
            updated_column=self.updated_column,
        )
        self.logger.info(f"Run {job.run_id} for {self.table} uses strategy {strategy.value}, "
                         f"watermark {job.watermark.isoformat()}")
        context = SyncRunContext(job=job, stats=stats, metadata=permanent)
        context.session = StreamingWriteSession(
            self.warehouse, job, logger=self.logger,
            commit_retries=self.commit_retries, commit_retry_delay=self.commit_retry_delay,
        )
        context.reconciler = make_reconciler(strategy, self.warehouse, job, logger=self.logger)
        return context

    def _build_pipeline(self, context: SyncRunContext, transform: RowTransform,
                        progress_manager: ProgressManager) -> Pipeline:
        pipeline = Pipeline(str(context.job.table), logger=self.logger)
        pipeline.add_stage(TransformStage(context, transform, context.session.validator,
                                          progress_manager, logger=self.logger))
        pipeline.add_stage(BatcherStage(context, logger=self.logger))
        pipeline.add_stage(PopulateStage(context, progress_manager, logger=self.logger))
        return pipeline

    async def _run(self, context: SyncRunContext, source: CursorSource, transform: RowTransform) -> None:
        stats = context.stats
        session: StreamingWriteSession = context.session

        stats.initial_row_count = await self.warehouse.count_rows(context.job.table)
        self.logger.info(f"{context.job.table} holds {stats.initial_row_count} rows before sync")

        # Dedupe writes to the permanent table, whose metadata _plan already holds
        context.metadata = await session.negotiate(known=context.metadata)
        context.owns_staging = context.job.staging_table is not None
        context.reconciler.validate(context.metadata)
        await session.open()

        progress_manager = ProgressManager(
            context,
            progress_callback=self.progress_callback,
            interval=self.progress_interval,
            logger=self.logger,
        )
        progress_manager.start()
        try:
            pipeline = self._build_pipeline(context, transform, progress_manager)
            async with source:
                await pipeline.execute(source)
            await session.flush()
            stats.rows_written = await session.finalize()
            await session.commit()
        finally:
            await progress_manager.stop()

        reconciled = await context.reconciler.reconcile(context.metadata)
        stats.rows_reconciled = reconciled.affected_rows

        stats.final_row_count = await self.warehouse.count_rows(context.job.table)
        self.logger.info(f"{context.job.table} holds {stats.final_row_count} rows after sync")
        progress_manager.log_completion(format_elapsed(progress_manager.elapsed_seconds))

    async def _release(self, context: Optional[SyncRunContext], source: CursorSource,
                       error: Optional[BaseException]) -> None:
        """Release the source and write session and, after a failed merge, drain staging"""
        try:
            # No-op when the pipeline already released it
            await source.close()
        except Exception as e:
            self.logger.error(f"Cleanup failed: close source: {e}")
            if context is not None:
                context.record_cleanup_error("close source", e)
        if context is None:
            return
        if context.session is not None:
            try:
                await context.session.close()
            except Exception as e:
                message = context.record_cleanup_error("close write session", e)
                self.logger.error(f"Cleanup failed: {message}")
        if error is None or context.job.strategy != ReconcileStrategy.MERGE:
            return
        if not context.owns_staging:
            self.logger.warning(f"Leaving staging table {context.job.staging_table} untouched; "
                                f"its rows may belong to another run")
            return
        try:
            await context.reconciler.cleanup()
        except Exception as e:
            message = context.record_cleanup_error("drain staging", e)
            self.logger.error(f"Cleanup failed: {message}")

    async def sync(self, source: CursorSource, transform: Optional[RowTransform] = None) -> SyncResult:
        """Run one full sync of source into the table"""
        transform = transform or identity_transform
        stats = SyncStats(start_time=datetime.now())
        context: Optional[SyncRunContext] = None
        error: Optional[BaseException] = None
        self.logger.info(f"Starting sync into {self.table}")

        try:
            context = await self._plan(stats)
            await self._run(context, source, transform)
        except SyncError as e:
            error = e
            self.logger.error(f"Sync into {self.table} failed: {type(e).__name__}: {e}")
        except Exception as e:
            error = e
            self.logger.error(f"Sync into {self.table} failed unexpectedly: {e}\n{traceback.format_exc()}")

        await self._release(context, source, error)

        strategy = context.job.strategy if context else None
        if error is None:
            result = SyncResultBuilder.build_success_result(
                str(self.table), strategy, stats, cleanup_errors=context.cleanup_errors,
            )
        else:
            result = SyncResultBuilder.build_failure_result(
                str(self.table), error, stats=stats, strategy=strategy,
                cleanup_errors=context.cleanup_errors if context else None,
            )
        self.logger.info(f"Sync into {self.table} finished: success={result.success}, "
                         f"duration {format_elapsed(result.duration_seconds)}")
        return result


async def sync_query_to_table(warehouse: Warehouse, table: str, query: SourceQuery,
                              transform: Optional[RowTransform] = None,
                              database: Optional[str] = None, uri: Optional[str] = None,
                              client=None, logger: Optional[logging.Logger] = None,
                              **engine_options) -> SyncResult:
    """Mirror the result of a MongoDB query into a destination table"""
    from ..source.mongo_source import MongoSource

    source = MongoSource(query, database=database, uri=uri, client=client, logger=logger)
    engine = SyncEngine(warehouse, table, logger=logger, **engine_options)
    return await engine.sync(source, transform)


async def sync_rows_to_table(warehouse: Warehouse, table: str,
                             rows: Union[Iterable[Dict[str, Any]], AsyncIterable[Dict[str, Any]]],
                             logger: Optional[logging.Logger] = None,
                             **engine_options) -> SyncResult:
    """Mirror prebuilt rows into a destination table through the full engine"""
    source = IterableSource(rows, name=f"{table}_rows", logger=logger)
    engine = SyncEngine(warehouse, table, logger=logger, **engine_options)
    return await engine.sync(source, identity_transform)


async def push_rows_to_table(warehouse: Warehouse, table: str, rows: List[Dict[str, Any]],
                             identity_column: Optional[str] = DEFAULT_IDENTITY_COLUMN,
                             logger: Optional[logging.Logger] = None) -> int:
    """
    Append rows to a table with no reconciliation.

    Rows are validated like engine rows; invalid rows are skipped. Tables with
    provenance columns get them stamped so a later dedupe run can order them.
    Returns the number of rows written.
    """
    logger = logging.getLogger(f"{logger.name}.push") if logger else logging.getLogger(f"{__name__}.push")
    ref: TableRef = warehouse.table_ref(table)
    metadata = await warehouse.get_table_metadata(ref, identity_column=identity_column)
    validator = RowValidator(metadata.data_schema, name=ref.table,
                             identity_column=metadata.identity_column, logger=logger)

    valid_rows = []
    for row in rows:
        try:
            valid_rows.append(validator.validate(row))
        except RowError as e:
            logger.warning(f"Skipping row for {ref}: {e}")

    if metadata.has_provenance:
        watermark = utc_now()
        for sequence, row in enumerate(valid_rows):
            row[UUID_COLUMN] = sequenced_uuid(sequence)
            row[SYNC_TIME_COLUMN] = watermark

    written = await warehouse.insert_rows(metadata, valid_rows)
    logger.info(f"Pushed {written} rows to {ref}")
    return written


async def count_table_rows(warehouse: Warehouse, table: str) -> int:
    """Return the current row count of a destination table"""
    return await warehouse.count_rows(warehouse.table_ref(table))
