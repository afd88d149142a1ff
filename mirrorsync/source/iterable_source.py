from typing import Any, AsyncIterator, Dict, Iterable, Union, AsyncIterable

from .base_source import CursorSource


class IterableSource(CursorSource):
    """Adapts an in-memory or async iterable of documents to the cursor contract"""

    def __init__(self, documents: Union[Iterable[Dict[str, Any]], AsyncIterable[Dict[str, Any]]],
                 name: str = "rows", logger=None):
        super().__init__(name, logger=logger)
        self._source = documents

    async def _open(self) -> None:
        pass

    async def _release(self) -> None:
        aclose = getattr(self._source, 'aclose', None)
        if aclose is not None:
            await aclose()

    async def _documents(self) -> AsyncIterator[Dict[str, Any]]:
        if hasattr(self._source, '__aiter__'):
            async for document in self._source:
                yield document
        else:
            for document in self._source:
                yield document
