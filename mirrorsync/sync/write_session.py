"""
Streaming write session.

One session owns one pending write stream for one run:

    UNSTARTED -> NEGOTIATING -> OPEN -> FLUSHING -> FINALIZING -> COMMITTED -> CLOSED

with FAILED reachable from every state. Batches are appended at explicit,
gap-free offsets and tracked as tasks; the caller keeps reading the source
while earlier appends are in flight. A single failed append fails the whole
session, and nothing becomes visible unless every batch was accepted.
"""
import asyncio
import logging
from contextlib import contextmanager
import secrets
import uuid
from typing import Any, Dict, List, Optional

from ..backend.base_backend import Warehouse, WriteStream
from ..core.decorators import async_retry
from ..core.enums import ReconcileStrategy, WriteSessionState
from ..core.exceptions import PreconditionError, SessionStateError, SyncError, TransportError
from ..core.models import SYNC_TIME_COLUMN, UUID_COLUMN, SyncJob, TableMetadata, WriteBatch
from ..core.row_model import RowValidator

State = WriteSessionState

_SEQUENCE_BITS = 48
_RANDOM_BITS = 128 - _SEQUENCE_BITS


def sequenced_uuid(sequence: int) -> str:
    """UUIDv8 whose leading 48 bits hold the write sequence.

    The canonical text form sorts in write order, so ``ORDER BY _uuid DESC``
    picks the latest row written within one watermark.
    """
    value = (sequence << _RANDOM_BITS) | secrets.randbits(_RANDOM_BITS)
    value = (value & ~(0xF << 76)) | (0x8 << 76)
    value = (value & ~(0xC000 << 48)) | (0x8000 << 48)
    return str(uuid.UUID(int=value))


class StreamingWriteSession:
    """Manages one destination write stream from negotiation to release"""

    def __init__(self, warehouse: Warehouse, job: SyncJob,
                 logger: Optional[logging.Logger] = None,
                 commit_retries: int = 3, commit_retry_delay: float = 1.0):
        self.warehouse = warehouse
        self.job = job
        self.logger = logging.getLogger(f"{logger.name}.write_session") if logger else logging.getLogger(__name__)
        self.state = State.UNSTARTED
        self.metadata: Optional[TableMetadata] = None
        self.validator: Optional[RowValidator] = None
        self.rows_accepted = 0
        self._stream: Optional[WriteStream] = None
        self._pending: List[asyncio.Task] = []
        self._offset = 0
        self._released = False
        self._commit_stream = async_retry(
            max_retries=commit_retries, delay=commit_retry_delay, retry_on=(TransportError,)
        )(self._commit_once)

    @property
    def offset(self) -> int:
        """Offset the next batch will be appended at"""
        return self._offset

    @property
    def outstanding(self) -> int:
        return sum(1 for task in self._pending if not task.done())

    @property
    def stream_name(self) -> Optional[str]:
        return self._stream.name if self._stream else None

    @property
    def stamps_provenance(self) -> bool:
        return self.job.strategy == ReconcileStrategy.DEDUPE

    def _advance(self, allowed, new_state: WriteSessionState) -> None:
        if self.state not in allowed:
            raise SessionStateError(
                f"Cannot move write session for {self.job.write_table} from {self.state.value} to {new_state.value}"
            )
        self.logger.debug(f"Write session {self.state.value} -> {new_state.value}")
        self.state = new_state

    @contextmanager
    def _failing_on_error(self, action: str):
        """Move to FAILED when the wrapped block raises; foreign errors become TransportError"""
        try:
            yield
        except SyncError:
            self.state = State.FAILED
            raise
        except Exception as e:
            self.state = State.FAILED
            raise TransportError(f"{action} failed: {e}") from e

    async def negotiate(self, known: Optional[TableMetadata] = None) -> TableMetadata:
        """Fetch the write table's schema and check the staging precondition.

        ``known`` is reused instead of fetching when it describes the write table.
        """
        self._advance((State.UNSTARTED,), State.NEGOTIATING)
        with self._failing_on_error("Schema negotiation"):
            if known is not None and known.ref == self.job.write_table:
                metadata = known
            else:
                metadata = await self.warehouse.get_table_metadata(
                    self.job.write_table, identity_column=self.job.identity_column
                )
            staging = self.job.staging_table
            if staging is not None:
                staged_rows = await self.warehouse.count_rows(staging)
                if staged_rows:
                    raise PreconditionError(
                        f"Staging table {staging} holds {staged_rows} rows left by an earlier run; "
                        f"drain it before retrying"
                    )

        self.metadata = metadata
        self.validator = RowValidator(
            metadata.data_schema,
            name=metadata.ref.table,
            identity_column=metadata.identity_column,
            logger=self.logger,
        )
        self.logger.info(f"Negotiated schema for {metadata.ref}: {len(metadata.schema)} columns, "
                         f"identity={metadata.identity_column}")
        return metadata

    async def open(self) -> None:
        """Open a pending stream bound to the write table"""
        self._advance((State.NEGOTIATING,), State.OPEN)
        with self._failing_on_error("Opening write stream"):
            self._stream = await self.warehouse.open_write_stream(self.metadata)
        self.logger.info(f"Opened write stream {self._stream.name}")

    def _with_provenance(self, rows: List[Dict[str, Any]], offset: int) -> List[Dict[str, Any]]:
        if not self.stamps_provenance:
            return rows
        watermark = self.job.watermark
        stamped = []
        for index, row in enumerate(rows):
            row = dict(row)
            row[UUID_COLUMN] = sequenced_uuid(offset + index)
            row[SYNC_TIME_COLUMN] = watermark
            stamped.append(row)
        return stamped

    def write_batch(self, rows: List[Dict[str, Any]]) -> asyncio.Task:
        """Submit rows at the next offset and return the task tracking the append.

        Does not wait for the append to be acknowledged.
        """
        if self.state != State.OPEN:
            raise SessionStateError(f"Cannot write a batch while the session is {self.state.value}")
        batch = WriteBatch(rows=self._with_provenance(rows, self._offset), offset=self._offset)
        self._offset = batch.end_offset
        task = asyncio.ensure_future(self._append(batch))
        self._pending.append(task)
        return task

    async def _append(self, batch: WriteBatch) -> int:
        try:
            accepted = await self._stream.append(batch.rows, batch.offset)
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(f"Append of {batch.size} rows at offset {batch.offset} failed: {e}") from e
        if accepted != batch.size:
            raise TransportError(
                f"Append at offset {batch.offset} accepted {accepted} of {batch.size} rows"
            )
        return accepted

    async def flush(self) -> int:
        """Wait for every outstanding append. Any failure fails the session."""
        self._advance((State.OPEN,), State.FLUSHING)
        results = await asyncio.gather(*self._pending, return_exceptions=True)
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            for extra in errors[1:]:
                self.logger.error(f"Additional append failure: {extra}")
            self.state = State.FAILED
            first = errors[0]
            if isinstance(first, TransportError):
                raise first
            raise TransportError(f"Append failed: {first!r}") from first
        self.rows_accepted = sum(results)
        self.logger.info(f"Flushed {len(results)} batches, {self.rows_accepted} rows accepted")
        return self.rows_accepted

    async def finalize(self) -> int:
        """Close the stream to appends and return its total row count"""
        self._advance((State.FLUSHING,), State.FINALIZING)
        with self._failing_on_error("Finalize"):
            total = await self._stream.finalize()
        if total != self._offset:
            self.state = State.FAILED
            raise TransportError(
                f"Stream {self._stream.name} finalized with {total} rows, {self._offset} were submitted"
            )
        return total

    async def _commit_once(self) -> None:
        await self._stream.commit()

    async def commit(self) -> None:
        """Make the finalized rows visible. A second commit is a no-op."""
        if self.state == State.COMMITTED:
            self.logger.debug(f"Stream {self.stream_name} already committed")
            return
        if self.state != State.FINALIZING:
            raise SessionStateError(f"Cannot commit while the session is {self.state.value}")
        with self._failing_on_error("Commit"):
            await self._commit_stream()
        self.state = State.COMMITTED
        self.logger.info(f"Committed stream {self.stream_name} to {self.metadata.ref}")

    async def close(self) -> None:
        """Release the stream. Runs on every exit path and only releases once."""
        if self._released:
            return
        self._released = True
        try:
            unfinished = [task for task in self._pending if not task.done()]
            for task in unfinished:
                task.cancel()
            # Collect every outcome so failed appends are not reported as unretrieved
            await asyncio.gather(*self._pending, return_exceptions=True)
            if self._stream is not None:
                await self._stream.close()
        finally:
            if self.state != State.FAILED:
                self.state = State.CLOSED

    async def __aenter__(self) -> 'StreamingWriteSession':
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
