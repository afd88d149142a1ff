import asyncio
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from .base_backend import Warehouse, WriteStream
from ..core.enums import WarehouseType
from ..core.exceptions import ConfigurationError, TransportError
from ..core.models import DEFAULT_IDENTITY_COLUMN, DmlResult, TableMetadata, TableRef
from ..core.schema_models import FieldMode, FieldType, TableField, TableSchema
from ..utils.schema_utils import to_json_text, to_naive_utc
from ..utils.sql_builder import DuckDBSqlBuilder


_FROM_DUCKDB = {
    'VARCHAR': FieldType.STRING,
    'UUID': FieldType.STRING,
    'BLOB': FieldType.BYTES,
    'BIGINT': FieldType.INTEGER,
    'INTEGER': FieldType.INTEGER,
    'SMALLINT': FieldType.INTEGER,
    'TINYINT': FieldType.INTEGER,
    'HUGEINT': FieldType.INTEGER,
    'UBIGINT': FieldType.INTEGER,
    'UINTEGER': FieldType.INTEGER,
    'DOUBLE': FieldType.FLOAT,
    'FLOAT': FieldType.FLOAT,
    'BOOLEAN': FieldType.BOOLEAN,
    'TIMESTAMP': FieldType.TIMESTAMP,
    'TIMESTAMP WITH TIME ZONE': FieldType.TIMESTAMP,
    'DATE': FieldType.DATE,
    'TIME': FieldType.TIME,
    'JSON': FieldType.JSON,
}

_TO_DUCKDB = {
    FieldType.STRING: 'VARCHAR',
    FieldType.BYTES: 'BLOB',
    FieldType.INTEGER: 'BIGINT',
    FieldType.FLOAT: 'DOUBLE',
    FieldType.NUMERIC: 'DECIMAL(38, 9)',
    FieldType.BIGNUMERIC: 'DECIMAL(38, 9)',
    FieldType.BOOLEAN: 'BOOLEAN',
    FieldType.TIMESTAMP: 'TIMESTAMP',
    FieldType.DATE: 'DATE',
    FieldType.TIME: 'TIME',
    FieldType.DATETIME: 'TIMESTAMP',
    FieldType.GEOGRAPHY: 'VARCHAR',
    FieldType.JSON: 'JSON',
    # Nested records are stored as JSON text
    FieldType.RECORD: 'JSON',
}


def parse_duckdb_type(data_type: str, nullable: bool = True) -> tuple:
    """Map an information_schema data type to (FieldType, FieldMode)"""
    data_type = data_type.upper()
    if data_type.endswith('[]'):
        field_type, _ = parse_duckdb_type(data_type[:-2])
        return field_type, FieldMode.REPEATED
    mode = FieldMode.NULLABLE if nullable else FieldMode.REQUIRED
    if data_type.startswith('DECIMAL'):
        return FieldType.NUMERIC, mode
    if data_type.startswith(('STRUCT', 'MAP')):
        return FieldType.JSON, mode
    return _FROM_DUCKDB.get(data_type, FieldType.STRING), mode


def duckdb_column_type(field: TableField) -> str:
    base = _TO_DUCKDB[field.field_type]
    if field.is_repeated:
        return f"{base}[]"
    return base


class DuckDBWriteStream(WriteStream):
    """Pending stream emulated in memory; rows reach the table on commit"""

    def __init__(self, warehouse: 'DuckDBWarehouse', name: str, metadata: TableMetadata, logger=None):
        super().__init__(name, metadata, logger=logger)
        self._warehouse = warehouse
        self._rows: List[tuple] = []
        self._finalized = False
        self._closed = False

    @property
    def rows(self) -> List[tuple]:
        return self._rows

    async def append(self, rows: List[Dict[str, Any]], offset: int) -> int:
        # Yield first so appends resolve after the caller moves on, as with a remote stream
        await asyncio.sleep(0)
        if self._finalized or self._closed:
            raise TransportError(f"Stream {self.name} no longer accepts appends")
        if offset != len(self._rows):
            raise TransportError(
                f"Offset {offset} out of range for stream {self.name}, expected {len(self._rows)}"
            )
        self._rows.extend(self._warehouse.to_db_row(self.metadata.schema, row) for row in rows)
        return len(rows)

    async def finalize(self) -> int:
        self._finalized = True
        return len(self._rows)

    async def commit(self) -> None:
        if not self._finalized:
            raise TransportError(f"Stream {self.name} must be finalized before commit")
        await self._warehouse.commit_stream(self)

    async def close(self) -> None:
        self._closed = True


class DuckDBWarehouse(Warehouse):
    """DuckDB implementation of Warehouse, used for local runs and tests"""

    warehouse_type = WarehouseType.DUCKDB
    sql_builder = DuckDBSqlBuilder()

    def __init__(self, database: str = ':memory:', dataset: str = 'main', logger=None):
        super().__init__(dataset=dataset, project=None, logger=logger)
        self.database = database
        self._connection = None
        self._committed_streams: Set[str] = set()

    async def connect(self):
        """Connect to DuckDB database"""
        if self._connection is not None:
            return
        try:
            import duckdb
        except ImportError:
            raise ImportError("duckdb is required for the DuckDB warehouse")
        self._connection = duckdb.connect(self.database)
        self.logger.debug(f"Connected to DuckDB database {self.database}")

    async def disconnect(self):
        """Disconnect from DuckDB database"""
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    @property
    def connection(self):
        if self._connection is None:
            raise TransportError("DuckDB warehouse is not connected")
        return self._connection

    def _run(self, query: str, params: Optional[Dict[str, Any]] = None) -> int:
        """Run one statement and return the affected row count (0 for DDL)"""
        cursor = self.connection.execute(query, params) if params else self.connection.execute(query)
        if not cursor.description:
            return 0
        row = cursor.fetchone()
        return int(row[0]) if row and row[0] is not None else 0

    def _bind(self, params: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not params:
            return params
        return {k: to_naive_utc(v) if isinstance(v, datetime) else v for k, v in params.items()}

    async def fetch_all(self, query: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        params = self._bind(params)
        cursor = self.connection.execute(query, params) if params else self.connection.execute(query)
        columns = [d[0] for d in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]

    async def execute(self, query: str, params: Optional[Dict[str, Any]] = None) -> DmlResult:
        affected = self._run(query, self._bind(params))
        return DmlResult(affected_rows=affected)

    async def get_table_metadata(self, ref: TableRef,
                                 identity_column: Optional[str] = DEFAULT_IDENTITY_COLUMN) -> TableMetadata:
        rows = await self.fetch_all(
            "SELECT column_name, data_type, is_nullable FROM information_schema.columns "
            "WHERE table_schema = $schema_name AND table_name = $table_name ORDER BY ordinal_position",
            {'schema_name': ref.dataset, 'table_name': ref.table},
        )
        if not rows:
            raise ConfigurationError(f"Table {ref} does not exist")
        fields = []
        for row in rows:
            field_type, mode = parse_duckdb_type(row['data_type'], row['is_nullable'] == 'YES')
            fields.append(TableField(name=row['column_name'], field_type=field_type, mode=mode))
        return TableMetadata.from_schema(ref, TableSchema(fields), identity_column=identity_column)

    async def create_table(self, ref: TableRef, schema: TableSchema) -> None:
        columns = []
        for field in schema:
            column = f"{self.sql_builder.quote_ident(field.name)} {duckdb_column_type(field)}"
            if field.is_required:
                column += " NOT NULL"
            columns.append(column)
        self._run(f"CREATE TABLE IF NOT EXISTS {self.sql_builder.table_name(ref)} ({', '.join(columns)})")

    def to_db_row(self, schema: TableSchema, row: Dict[str, Any]) -> tuple:
        values = []
        for field in schema:
            value = row.get(field.name)
            if value is None:
                values.append(None)
            elif field.field_type in (FieldType.TIMESTAMP, FieldType.DATETIME):
                if field.is_repeated:
                    values.append([to_naive_utc(v) for v in value])
                else:
                    values.append(to_naive_utc(value))
            elif field.field_type in (FieldType.JSON, FieldType.RECORD) and not field.is_repeated:
                values.append(to_json_text(value))
            elif field.field_type in (FieldType.JSON, FieldType.RECORD):
                values.append([to_json_text(v) for v in value])
            else:
                values.append(value)
        return tuple(values)

    async def open_write_stream(self, metadata: TableMetadata) -> DuckDBWriteStream:
        name = f"{metadata.ref.full_name}/streams/{uuid.uuid4().hex}"
        return DuckDBWriteStream(self, name, metadata, logger=self.logger)

    async def commit_stream(self, stream: DuckDBWriteStream) -> None:
        if stream.name in self._committed_streams:
            self.logger.debug(f"Stream {stream.name} already committed")
            return
        conn = self.connection
        if stream.rows:
            columns = stream.metadata.schema.names
            placeholders = ', '.join('?' for _ in columns)
            query = (
                f"INSERT INTO {self.sql_builder.table_name(stream.metadata.ref)} "
                f"({self.sql_builder.column_list(columns)}) VALUES ({placeholders})"
            )
            conn.begin()
            try:
                conn.executemany(query, stream.rows)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        self._committed_streams.add(stream.name)

    async def merge(self, target: TableRef, staging: TableRef, columns: List[str],
                    identity_column: str, updated_column: Optional[str]) -> DmlResult:
        create_source, delete_absent, delete_matched, insert, drop_source = self.sql_builder.merge_statements(
            target, staging, columns, identity_column, updated_column
        )
        conn = self.connection
        conn.begin()
        try:
            self._run(create_source)
            deleted = self._run(delete_absent)
            matched = self._run(delete_matched)
            inserted = self._run(insert)
            self._run(drop_source)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        return DmlResult(
            affected_rows=deleted + inserted,
            inserted_rows=inserted - matched,
            updated_rows=matched,
            deleted_rows=deleted,
        )
