"""Pytest configuration and fixtures for mirrorsync tests."""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

import pytest_asyncio

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from mirrorsync.backend.duckdb import DuckDBWarehouse
from mirrorsync.core.schema_models import FieldMode, FieldType, TableField, TableSchema

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

MERGE_TABLE = "users"
DEDUPE_TABLE = "events"

USERS_SCHEMA = TableSchema([
    TableField("ID", FieldType.STRING),
    TableField("Name", FieldType.STRING),
    TableField("Score", FieldType.INTEGER),
    TableField("Updated", FieldType.TIMESTAMP),
])

EVENTS_SCHEMA = TableSchema([
    TableField("ID", FieldType.STRING),
    TableField("Name", FieldType.STRING),
    TableField("Updated", FieldType.TIMESTAMP),
    TableField("_uuid", FieldType.STRING, FieldMode.REQUIRED),
    TableField("_sync_time", FieldType.TIMESTAMP, FieldMode.REQUIRED),
])


def ts(day: int, hour: int = 0) -> datetime:
    """A fixed UTC instant in January 2024"""
    return datetime(2024, 1, day, hour, tzinfo=timezone.utc)


def naive(value: datetime) -> datetime:
    """DuckDB hands timestamps back as naive UTC"""
    return value.astimezone(timezone.utc).replace(tzinfo=None)


async def fetch_rows(warehouse: DuckDBWarehouse, table: str, order_by: str = '"ID"') -> List[Dict[str, Any]]:
    ref = warehouse.table_ref(table)
    return await warehouse.fetch_all(
        f"SELECT * FROM {warehouse.sql_builder.table_name(ref)} ORDER BY {order_by}"
    )


async def insert_rows(warehouse: DuckDBWarehouse, table: str, schema: TableSchema,
                      rows: List[Dict[str, Any]]) -> None:
    ref = warehouse.table_ref(table)
    columns = schema.names
    placeholders = ', '.join('?' for _ in columns)
    warehouse.connection.executemany(
        f"INSERT INTO {warehouse.sql_builder.table_name(ref)} "
        f"({warehouse.sql_builder.column_list(columns)}) VALUES ({placeholders})",
        [warehouse.to_db_row(schema, row) for row in rows],
    )


@pytest_asyncio.fixture
async def warehouse():
    """In-memory DuckDB warehouse."""
    wh = DuckDBWarehouse(database=':memory:', logger=logger)
    await wh.connect()
    try:
        yield wh
    finally:
        await wh.disconnect()


@pytest_asyncio.fixture
async def merge_table(warehouse):
    """Permanent table without provenance columns plus its staging table."""
    ref = warehouse.table_ref(MERGE_TABLE)
    await warehouse.create_table(ref, USERS_SCHEMA)
    await warehouse.create_table(ref.staging(), USERS_SCHEMA)
    return ref


@pytest_asyncio.fixture
async def dedupe_table(warehouse):
    """Permanent table carrying provenance columns."""
    ref = warehouse.table_ref(DEDUPE_TABLE)
    await warehouse.create_table(ref, EVENTS_SCHEMA)
    return ref
