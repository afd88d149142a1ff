"""
Base cursor source interface.

A cursor source is a lazy, forward-only sequence of source documents. It is
used as an async context manager so the underlying cursor and connection are
released exactly once on every exit path.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional


@dataclass
class SourceQuery:
    """A filter/projection/sort query or a multi-stage aggregation pipeline"""
    collection: str
    filter: Dict[str, Any] = field(default_factory=dict)
    projection: Optional[Dict[str, Any]] = None
    sort: Optional[Dict[str, int]] = None
    pipeline: Optional[List[Dict[str, Any]]] = None
    batch_size: int = 1000

    @property
    def is_aggregation(self) -> bool:
        return self.pipeline is not None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SourceQuery':
        return cls(
            collection=data['collection'],
            filter=data.get('filter') or {},
            projection=data.get('projection'),
            sort=data.get('sort'),
            pipeline=data.get('pipeline'),
            batch_size=data.get('batch_size', 1000),
        )


class CursorSource(ABC):
    """Abstract base class for document sources"""

    def __init__(self, name: str, logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logging.getLogger(f"{logger.name}.source") if logger else logging.getLogger(__name__)
        self._opened = False
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    @abstractmethod
    async def _open(self) -> None:
        """Acquire the cursor and any connection behind it"""
        pass

    @abstractmethod
    async def _release(self) -> None:
        """Release everything acquired in _open"""
        pass

    @abstractmethod
    def _documents(self) -> AsyncIterator[Dict[str, Any]]:
        pass

    async def open(self) -> None:
        if self._opened:
            return
        if self._closed:
            raise RuntimeError(f"Source {self.name} has already been closed")
        self._opened = True
        await self._open()

    async def close(self) -> None:
        """Release the source. Safe to call more than once; only the first call releases."""
        if self._closed:
            return
        self._closed = True
        if self._opened:
            await self._release()
            self.logger.debug(f"Released source {self.name}")

    async def __aenter__(self) -> 'CursorSource':
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        if not self.is_open:
            raise RuntimeError(f"Source {self.name} must be opened before iteration")
        return self._documents()
