import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional

from .enums import ReconcileStrategy
from .schema_models import TableSchema


UUID_COLUMN = "_uuid"
SYNC_TIME_COLUMN = "_sync_time"
PROVENANCE_COLUMNS = (UUID_COLUMN, SYNC_TIME_COLUMN)
# Sync time given to rows found without provenance; older than any run
LEGACY_SYNC_TIME = datetime(1970, 1, 1, tzinfo=timezone.utc)
DEFAULT_IDENTITY_COLUMN = "ID"
DEFAULT_UPDATED_COLUMN = "Updated"
STAGING_SUFFIX = "_tmp_merge"
DEFAULT_BATCH_SIZE = 1000


@dataclass(frozen=True)
class TableRef:
    """Three-part destination table identifier"""
    dataset: str
    table: str
    project: Optional[str] = None

    @property
    def full_name(self) -> str:
        if self.project:
            return f"{self.project}.{self.dataset}.{self.table}"
        return f"{self.dataset}.{self.table}"

    def with_table(self, table: str) -> 'TableRef':
        return TableRef(dataset=self.dataset, table=table, project=self.project)

    def staging(self) -> 'TableRef':
        return self.with_table(f"{self.table}{STAGING_SUFFIX}")

    def __str__(self) -> str:
        return self.full_name


@dataclass(frozen=True)
class TableMetadata:
    """Destination table metadata, fetched once per run"""
    ref: TableRef
    schema: TableSchema
    identity_column: Optional[str] = None
    num_rows: Optional[int] = None

    @classmethod
    def from_schema(cls, ref: TableRef, schema: TableSchema,
                    identity_column: Optional[str] = DEFAULT_IDENTITY_COLUMN,
                    num_rows: Optional[int] = None) -> 'TableMetadata':
        identity = None
        if identity_column:
            found = schema.get_field(identity_column)
            identity = found.name if found else None
        return cls(ref=ref, schema=schema, identity_column=identity, num_rows=num_rows)

    @property
    def has_provenance(self) -> bool:
        return all(self.schema.has_column(c) for c in PROVENANCE_COLUMNS)

    @property
    def provenance_nullable(self) -> bool:
        """True when rows may lack provenance, e.g. rows written before the columns were added"""
        return any(not self.schema.get_field(c).is_required
                   for c in PROVENANCE_COLUMNS if self.schema.has_column(c))

    @property
    def data_schema(self) -> TableSchema:
        """Schema of the columns a transform is expected to produce"""
        return self.schema.without(PROVENANCE_COLUMNS)

    @property
    def column_names(self) -> List[str]:
        return self.schema.names


@dataclass(frozen=True)
class SyncJob:
    """Immutable description of one run"""
    table: TableRef
    strategy: ReconcileStrategy
    watermark: datetime
    batch_size: int = DEFAULT_BATCH_SIZE
    identity_column: Optional[str] = DEFAULT_IDENTITY_COLUMN
    updated_column: str = DEFAULT_UPDATED_COLUMN
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def staging_table(self) -> Optional[TableRef]:
        if self.strategy == ReconcileStrategy.MERGE:
            return self.table.staging()
        return None

    @property
    def write_table(self) -> TableRef:
        """Table the write stream appends to"""
        return self.staging_table or self.table


@dataclass
class WriteBatch:
    """Rows submitted to a write stream at a fixed offset"""
    rows: List[Dict[str, Any]]
    offset: int
    size: int = field(init=False)

    def __post_init__(self):
        self.size = len(self.rows)

    @property
    def end_offset(self) -> int:
        return self.offset + self.size


@dataclass
class DmlResult:
    """Outcome of a data manipulation statement"""
    affected_rows: int = 0
    inserted_rows: int = 0
    updated_rows: int = 0
    deleted_rows: int = 0

    def __add__(self, other: 'DmlResult') -> 'DmlResult':
        return DmlResult(
            affected_rows=self.affected_rows + other.affected_rows,
            inserted_rows=self.inserted_rows + other.inserted_rows,
            updated_rows=self.updated_rows + other.updated_rows,
            deleted_rows=self.deleted_rows + other.deleted_rows,
        )


@dataclass
class SyncStats:
    """Track sync progress"""
    initial_row_count: Optional[int] = None
    rows_read: int = 0          # Documents pulled from the source
    rows_skipped: int = 0       # Documents that produced no row
    rows_submitted: int = 0     # Rows handed to the write stream
    batches_submitted: int = 0
    rows_written: int = 0       # Rows accepted at finalize
    rows_reconciled: int = 0    # Rows merged or deduped
    final_row_count: Optional[int] = None
    start_time: Optional[datetime] = None

    def update_progress(self,
        rows_read: int = 0,
        rows_skipped: int = 0,
        rows_submitted: int = 0,
        batches_submitted: int = 0,
    ):
        self.rows_read += rows_read
        self.rows_skipped += rows_skipped
        self.rows_submitted += rows_submitted
        self.batches_submitted += batches_submitted

    def to_dict(self) -> Dict[str, Any]:
        return {
            'initial_row_count': self.initial_row_count,
            'rows_read': self.rows_read,
            'rows_skipped': self.rows_skipped,
            'rows_written': self.rows_written,
            'rows_reconciled': self.rows_reconciled,
            'final_row_count': self.final_row_count,
            'batches_submitted': self.batches_submitted,
        }


@dataclass
class SyncResult:
    """Outcome of a run"""
    success: bool
    table: str
    stats: SyncStats
    strategy: Optional[ReconcileStrategy] = None
    error: Optional[BaseException] = None
    cleanup_errors: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error

    def to_summary(self) -> Dict[str, Any]:
        summary = {
            'success': self.success,
            'table': self.table,
            'strategy': self.strategy.value if self.strategy else None,
            'duration': f"{self.duration_seconds:.1f}s",
            'stats': self.stats.to_dict(),
        }
        if self.error is not None:
            summary['error'] = f"{type(self.error).__name__}: {self.error}"
        if self.cleanup_errors:
            summary['cleanup_errors'] = list(self.cleanup_errors)
        return summary


@dataclass
class SyncRunContext:
    """State of a single run, passed through each stage"""
    job: SyncJob
    stats: SyncStats
    metadata: Optional[TableMetadata] = None
    session: Any = None  # StreamingWriteSession - Any avoids circular imports
    reconciler: Any = None
    # Set once this run found the staging table empty; only then may cleanup drain it
    owns_staging: bool = False
    cleanup_errors: List[str] = field(default_factory=list)

    @property
    def outstanding_writes(self) -> int:
        return self.session.outstanding if self.session is not None else 0

    @property
    def offset(self) -> int:
        return self.session.offset if self.session is not None else 0

    def record_cleanup_error(self, step: str, error: BaseException) -> str:
        message = f"{step}: {type(error).__name__}: {error}"
        self.cleanup_errors.append(message)
        return message
