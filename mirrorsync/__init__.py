"""
mirrorsync - mirror MongoDB collections into analytics warehouse tables

Main modules:
- core: data models, enums, exceptions and row validation
- source: cursor sources (MongoDB, in-memory iterables)
- backend: destination warehouses (BigQuery, DuckDB) and their write streams
- pipeline: async iterator stages between source and write stream
- sync: write session, reconciliation and the sync engine
- config: settings, table job definitions and event decoding
- transforms: transform registry and helpers
"""

from .core.enums import ReconcileStrategy, WriteSessionState
from .core.exceptions import (
    ConfigurationError, PreconditionError, ReconciliationError, RowError, SessionStateError,
    SyncError, TransportError,
)
from .core.models import SyncResult, SyncStats, TableRef
from .source import IterableSource, MongoSource, SourceQuery
from .sync.sync_engine import (
    SyncEngine, count_table_rows, push_rows_to_table, sync_query_to_table, sync_rows_to_table,
)
from .config.config_loader import ConfigLoader, TableSyncConfig

__version__ = "1.0.0"
__all__ = [
    'ReconcileStrategy',
    'WriteSessionState',
    'SyncError',
    'ConfigurationError',
    'PreconditionError',
    'TransportError',
    'ReconciliationError',
    'SessionStateError',
    'RowError',
    'SyncResult',
    'SyncStats',
    'TableRef',
    'IterableSource',
    'MongoSource',
    'SourceQuery',
    'SyncEngine',
    'sync_query_to_table',
    'sync_rows_to_table',
    'push_rows_to_table',
    'count_table_rows',
    'ConfigLoader',
    'TableSyncConfig',
]
