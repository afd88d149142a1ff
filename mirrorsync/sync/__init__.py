from .reconciliation import Reconciler, make_reconciler, select_strategy
from .write_session import StreamingWriteSession
from .sync_engine import SyncEngine

__all__ = ['Reconciler', 'make_reconciler', 'select_strategy', 'StreamingWriteSession', 'SyncEngine']
