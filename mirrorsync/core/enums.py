from enum import Enum


class ReconcileStrategy(str, Enum):
    MERGE = "merge"
    DEDUPE = "dedupe"


class WriteSessionState(str, Enum):
    UNSTARTED = "unstarted"
    NEGOTIATING = "negotiating"
    OPEN = "open"
    FLUSHING = "flushing"
    FINALIZING = "finalizing"
    COMMITTED = "committed"
    CLOSED = "closed"
    FAILED = "failed"


class WarehouseType(str, Enum):
    BIGQUERY = "bigquery"
    DUCKDB = "duckdb"


class SyncMethod(str, Enum):
    """Operations accepted by the job entrypoint"""
    SYNC = "sync"
    COUNT = "count"
    DRAIN_STAGING = "drain_staging"
