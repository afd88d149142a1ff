import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..core.enums import WarehouseType
from ..core.exceptions import TransportError
from ..core.models import DEFAULT_IDENTITY_COLUMN, LEGACY_SYNC_TIME, DmlResult, TableMetadata, TableRef
from ..utils.sql_builder import SqlBuilder


class WriteStream(ABC):
    """
    A pending (buffered, uncommitted) append stream bound to one table.

    Rows appended to the stream are invisible until the stream is finalized
    and committed. Appends carry explicit offsets; the warehouse rejects an
    append whose offset is not the stream's current row count.
    """

    def __init__(self, name: str, metadata: TableMetadata, logger: Optional[logging.Logger] = None):
        self.name = name
        self.metadata = metadata
        self.logger = logger or logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @abstractmethod
    async def append(self, rows: List[Dict[str, Any]], offset: int) -> int:
        """Append rows at offset and return the number of rows accepted"""
        pass

    @abstractmethod
    async def finalize(self) -> int:
        """Close the stream to further appends and return its total row count"""
        pass

    @abstractmethod
    async def commit(self) -> None:
        """Make the finalized rows visible. Committing twice is a no-op."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release connection resources held by the stream"""
        pass


class Warehouse(ABC):
    """Base class for destination warehouses"""

    warehouse_type: WarehouseType
    sql_builder: SqlBuilder

    def __init__(self, dataset: str, project: Optional[str] = None, logger: Optional[logging.Logger] = None):
        self.dataset = dataset
        self.project = project
        if logger:
            self.logger = logging.getLogger(f"{logger.name}.warehouse.{self.warehouse_type.value}")
        else:
            self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def table_ref(self, table: str) -> TableRef:
        return TableRef(dataset=self.dataset, table=table, project=self.project)

    @abstractmethod
    async def connect(self):
        """Establish connection to the warehouse"""
        pass

    @abstractmethod
    async def disconnect(self):
        """Close connection to the warehouse"""
        pass

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()

    @abstractmethod
    async def get_table_metadata(self, ref: TableRef,
                                 identity_column: Optional[str] = DEFAULT_IDENTITY_COLUMN) -> TableMetadata:
        """Fetch the table's ordered schema. Raises ConfigurationError if the table does not exist."""
        pass

    @abstractmethod
    async def fetch_all(self, query: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def execute(self, query: str, params: Optional[Dict[str, Any]] = None) -> DmlResult:
        pass

    @abstractmethod
    async def open_write_stream(self, metadata: TableMetadata) -> WriteStream:
        pass

    @abstractmethod
    async def merge(self, target: TableRef, staging: TableRef, columns: List[str],
                    identity_column: str, updated_column: Optional[str]) -> DmlResult:
        """Replace the target's content with the deduplicated staging rows"""
        pass

    async def dedupe(self, ref: TableRef, identity_column: str, watermark) -> DmlResult:
        query = self.sql_builder.dedupe(ref, identity_column)
        return await self.execute(query, {'watermark': watermark})

    async def backfill_provenance(self, ref: TableRef) -> DmlResult:
        query = self.sql_builder.backfill_provenance(ref)
        return await self.execute(query, {'legacy_sync_time': LEGACY_SYNC_TIME})

    async def drain(self, ref: TableRef) -> DmlResult:
        return await self.execute(self.sql_builder.drain(ref))

    async def count_rows(self, ref: TableRef) -> int:
        rows = await self.fetch_all(self.sql_builder.count_rows(ref))
        return int(rows[0]['row_count']) if rows else 0

    async def insert_rows(self, metadata: TableMetadata, rows: List[Dict[str, Any]]) -> int:
        """Append rows through a single write stream and commit them"""
        stream = await self.open_write_stream(metadata)
        try:
            accepted = await stream.append(rows, 0) if rows else 0
            total = await stream.finalize()
            if total != accepted:
                raise TransportError(f"Stream {stream.name} finalized with {total} rows, expected {accepted}")
            await stream.commit()
            return total
        finally:
            await stream.close()
