"""Exceptions raised by the sync engine.

Everything except ``RowError`` fails the run. ``RowError`` is raised for a
single document that cannot become a row; the transform stage logs it and
skips the document.
"""


class SyncError(Exception):
    """Base class for run-level failures."""


class ConfigurationError(SyncError):
    """Missing or invalid configuration, raised before any resource is touched."""


class PreconditionError(SyncError):
    """The staging table still holds rows from an earlier run."""


class TransportError(SyncError):
    """A write stream operation failed. Nothing from the run was committed."""


class ReconciliationError(SyncError):
    """The merge or dedupe statement failed after commit."""


class SessionStateError(SyncError):
    """A write session operation was called in the wrong state."""


class RowError(Exception):
    """A single document could not be transformed or validated."""

    def __init__(self, message: str, document_id=None):
        super().__init__(message)
        self.document_id = document_id
