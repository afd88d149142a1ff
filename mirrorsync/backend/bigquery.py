import asyncio
import logging
from collections import deque
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Deque, Dict, List, Optional

from .base_backend import Warehouse, WriteStream
from .bigquery_proto import RowEncoder
from ..core.enums import WarehouseType
from ..core.exceptions import ConfigurationError, TransportError
from ..core.models import DEFAULT_IDENTITY_COLUMN, DmlResult, TableMetadata, TableRef
from ..core.schema_models import FieldMode, FieldType, TableField, TableSchema
from ..utils.sql_builder import BigQuerySqlBuilder


def table_path(ref: TableRef) -> str:
    return f"projects/{ref.project}/datasets/{ref.dataset}/tables/{ref.table}"


def _parameter_type(value: Any) -> str:
    if isinstance(value, bool):
        return "BOOL"
    if isinstance(value, int):
        return "INT64"
    if isinstance(value, float):
        return "FLOAT64"
    if isinstance(value, Decimal):
        return "NUMERIC"
    if isinstance(value, datetime):
        return "TIMESTAMP"
    if isinstance(value, date):
        return "DATE"
    return "STRING"


class BigQueryWriteStream(WriteStream):
    """
    Pending write stream over the Storage Write API's bidirectional AppendRows call.

    Each append enqueues one request and a future; responses arrive in request
    order and resolve the futures first-in first-out. The connection is opened
    by the first append and half-closed by finalize.
    """

    def __init__(self, write_client, name: str, metadata: TableMetadata, logger=None):
        super().__init__(name, metadata, logger=logger)
        self._client = write_client
        self._encoder = RowEncoder(metadata.schema)
        self._requests: asyncio.Queue = asyncio.Queue()
        self._pending: Deque[asyncio.Future] = deque()
        self._connect_lock = asyncio.Lock()
        self._reader: Optional[asyncio.Task] = None
        self._broken: Optional[TransportError] = None
        self._schema_sent = False
        self._committed = False
        self._closed = False

    def _build_request(self, rows: List[Dict[str, Any]], offset: int):
        from google.cloud.bigquery_storage_v1 import types

        proto_data = types.AppendRowsRequest.ProtoData(
            rows=types.ProtoRows(serialized_rows=self._encoder.encode_rows(rows))
        )
        first = not self._schema_sent
        if first:
            # Stream name and writer schema are only required on the first request
            proto_data.writer_schema = types.ProtoSchema(proto_descriptor=self._encoder.descriptor)
            self._schema_sent = True
        request = types.AppendRowsRequest(offset=offset, proto_rows=proto_data)
        if first:
            request.write_stream = self.name
        return request

    async def _request_iterator(self):
        while True:
            request = await self._requests.get()
            if request is None:
                return
            yield request

    def _fail_pending(self, error: TransportError) -> None:
        while self._pending:
            future = self._pending.popleft()
            if not future.done():
                future.set_exception(error)

    async def _read_responses(self, responses) -> None:
        try:
            async for response in responses:
                if not self._pending:
                    self.logger.warning(f"Unexpected append response on {self.name}")
                    continue
                future = self._pending.popleft()
                if future.done():
                    continue
                if response.error.code:
                    future.set_exception(TransportError(
                        f"Append to {self.name} failed: {response.error.message} (code {response.error.code})"
                    ))
                elif response.row_errors:
                    messages = '; '.join(f"row {e.index}: {e.message}" for e in response.row_errors)
                    future.set_exception(TransportError(f"Append to {self.name} rejected rows: {messages}"))
                else:
                    future.set_result(response.append_result.offset)
        except Exception as e:
            self._broken = TransportError(f"Append connection for {self.name} failed: {e}")
            self._fail_pending(self._broken)
        finally:
            self._fail_pending(TransportError(f"Append connection for {self.name} closed with pending appends"))

    async def _ensure_connected(self) -> None:
        async with self._connect_lock:
            if self._broken:
                raise self._broken
            if self._reader is not None:
                return
            try:
                responses = await self._client.append_rows(
                    requests=self._request_iterator(),
                    metadata=(("x-goog-request-params", f"write_stream={self.name}"),),
                )
            except Exception as e:
                self._broken = TransportError(f"Could not open append connection for {self.name}: {e}")
                self._fail_pending(self._broken)
                raise self._broken from e
            self._reader = asyncio.create_task(self._read_responses(responses))

    async def append(self, rows: List[Dict[str, Any]], offset: int) -> int:
        if self._closed or self._broken:
            raise self._broken or TransportError(f"Stream {self.name} is closed")
        request = self._build_request(rows, offset)
        future = asyncio.get_running_loop().create_future()
        # Enqueue before the first await so requests keep submission order
        self._pending.append(future)
        self._requests.put_nowait(request)
        try:
            await self._ensure_connected()
        except TransportError:
            # The connect failure already failed this append's future
            if future.done() and not future.cancelled():
                future.exception()
            raise
        await future
        return len(rows)

    async def finalize(self) -> int:
        from google.api_core.exceptions import GoogleAPIError

        if self._reader is not None:
            self._requests.put_nowait(None)
            await self._reader
        if self._broken:
            raise self._broken
        try:
            response = await self._client.finalize_write_stream(name=self.name)
        except GoogleAPIError as e:
            raise TransportError(f"Could not finalize stream {self.name}: {e}") from e
        return response.row_count

    async def commit(self) -> None:
        from google.api_core.exceptions import GoogleAPIError
        from google.cloud.bigquery_storage_v1 import types

        if self._committed:
            self.logger.debug(f"Stream {self.name} already committed")
            return
        try:
            response = await self._client.batch_commit_write_streams(
                request={'parent': table_path(self.metadata.ref), 'write_streams': [self.name]}
            )
        except GoogleAPIError as e:
            raise TransportError(f"Could not commit stream {self.name}: {e}") from e
        already = types.StorageError.StorageErrorCode.STREAM_ALREADY_COMMITTED
        errors = [e for e in response.stream_errors if e.code != already]
        if errors:
            raise TransportError(f"Commit of {self.name} failed: {'; '.join(e.error_message for e in errors)}")
        self._committed = True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._requests.put_nowait(None)
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                self.logger.debug(f"Stopped response reader for {self.name}")
        self._fail_pending(TransportError(f"Stream {self.name} closed"))


class BigQueryWarehouse(Warehouse):
    """
    BigQuery implementation of Warehouse.

    Metadata lookups and SQL statements go through the blocking REST client and
    are moved off the event loop with asyncio.to_thread; appends use the
    asyncio Storage Write API client directly.
    """

    warehouse_type = WarehouseType.BIGQUERY
    sql_builder = BigQuerySqlBuilder()

    def __init__(self, dataset: str, project: Optional[str] = None, location: Optional[str] = None,
                 logger: Optional[logging.Logger] = None):
        super().__init__(dataset=dataset, project=project, logger=logger)
        self.location = location
        self._client = None
        self._write_client = None

    async def connect(self):
        """Create the query and write clients"""
        if self._client is not None:
            return
        try:
            from google.cloud import bigquery
            from google.cloud import bigquery_storage_v1
        except ImportError:
            raise ImportError(
                "google-cloud-bigquery and google-cloud-bigquery-storage are required for the BigQuery warehouse"
            )
        self._client = bigquery.Client(project=self.project, location=self.location)
        if not self.project:
            self.project = self._client.project
        self._write_client = bigquery_storage_v1.BigQueryWriteAsyncClient()
        self.logger.info(f"Connected to BigQuery project {self.project}, dataset {self.dataset}")

    async def disconnect(self):
        if self._write_client is not None:
            await self._write_client.transport.close()
            self._write_client = None
        if self._client is not None:
            self._client.close()
            self._client = None

    def _job_config(self, params: Optional[Dict[str, Any]]):
        from google.cloud import bigquery

        if not params:
            return None
        return bigquery.QueryJobConfig(query_parameters=[
            bigquery.ScalarQueryParameter(name, _parameter_type(value), value)
            for name, value in params.items()
        ])

    def _run_query(self, query: str, params: Optional[Dict[str, Any]]):
        job = self._client.query(query, job_config=self._job_config(params))
        rows = job.result()
        return job, rows

    async def _query(self, query: str, params: Optional[Dict[str, Any]] = None):
        from google.api_core.exceptions import GoogleAPIError

        self.logger.debug(f"Executing query: {query}")
        try:
            return await asyncio.to_thread(self._run_query, query, params)
        except GoogleAPIError as e:
            raise TransportError(f"Query failed: {e}") from e

    async def fetch_all(self, query: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        _, rows = await self._query(query, params)
        return [dict(row.items()) for row in rows]

    async def execute(self, query: str, params: Optional[Dict[str, Any]] = None) -> DmlResult:
        job, _ = await self._query(query, params)
        result = DmlResult(affected_rows=job.num_dml_affected_rows or 0)
        stats = job.dml_stats
        if stats is not None:
            result.inserted_rows = stats.inserted_row_count
            result.updated_rows = stats.updated_row_count
            result.deleted_rows = stats.deleted_row_count
        return result

    @classmethod
    def _to_field(cls, schema_field) -> TableField:
        return TableField(
            name=schema_field.name,
            field_type=FieldType.parse(schema_field.field_type),
            mode=FieldMode((schema_field.mode or 'NULLABLE').upper()),
            fields=[cls._to_field(f) for f in schema_field.fields],
            description=schema_field.description,
        )

    async def get_table_metadata(self, ref: TableRef,
                                 identity_column: Optional[str] = DEFAULT_IDENTITY_COLUMN) -> TableMetadata:
        from google.api_core.exceptions import GoogleAPIError, NotFound

        try:
            table = await asyncio.to_thread(self._client.get_table, ref.full_name)
        except NotFound:
            raise ConfigurationError(f"Table {ref} does not exist")
        except GoogleAPIError as e:
            raise TransportError(f"Could not fetch metadata for {ref}: {e}") from e
        schema = TableSchema([self._to_field(f) for f in table.schema])
        return TableMetadata.from_schema(ref, schema, identity_column=identity_column, num_rows=table.num_rows)

    async def open_write_stream(self, metadata: TableMetadata) -> BigQueryWriteStream:
        from google.api_core.exceptions import GoogleAPIError
        from google.cloud.bigquery_storage_v1 import types

        try:
            stream = await self._write_client.create_write_stream(
                parent=table_path(metadata.ref),
                write_stream=types.WriteStream(type_=types.WriteStream.Type.PENDING),
            )
        except GoogleAPIError as e:
            raise TransportError(f"Could not create write stream for {metadata.ref}: {e}") from e
        self.logger.debug(f"Opened pending stream {stream.name}")
        return BigQueryWriteStream(self._write_client, stream.name, metadata, logger=self.logger)

    async def merge(self, target: TableRef, staging: TableRef, columns: List[str],
                    identity_column: str, updated_column: Optional[str]) -> DmlResult:
        result = DmlResult()
        for statement in self.sql_builder.merge_statements(target, staging, columns, identity_column, updated_column):
            result = result + await self.execute(statement)
        return result
