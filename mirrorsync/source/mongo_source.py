from typing import Any, AsyncIterator, Dict, Optional

from .base_source import CursorSource, SourceQuery


class MongoSource(CursorSource):
    """
    MongoDB cursor source.

    Runs either a find or an aggregation against one collection with
    secondary-preferred reads, so the mirror never competes with primary
    write traffic. Owns its client when created from a URI.
    """

    def __init__(self, query: SourceQuery, database: str, uri: Optional[str] = None,
                 client=None, logger=None):
        super().__init__(query.collection, logger=logger)
        if uri is None and client is None:
            raise ValueError("MongoSource requires either a uri or a client")
        self.query = query
        self.database = database
        self.uri = uri
        self._client = client
        self._owns_client = client is None
        self._cursor = None

    async def _open(self) -> None:
        try:
            from pymongo import AsyncMongoClient, ReadPreference
        except ImportError:
            raise ImportError("pymongo>=4.10 is required for the MongoDB source")

        if self._client is None:
            self._client = AsyncMongoClient(self.uri)
        collection = self._client[self.database].get_collection(
            self.query.collection, read_preference=ReadPreference.SECONDARY_PREFERRED
        )

        if self.query.is_aggregation:
            self.logger.info(f"Running aggregation on {self.database}.{self.query.collection} "
                             f"({len(self.query.pipeline)} stages)")
            self._cursor = await collection.aggregate(self.query.pipeline, batchSize=self.query.batch_size)
        else:
            self.logger.info(f"Querying {self.database}.{self.query.collection} with filter {self.query.filter}")
            self._cursor = collection.find(
                self.query.filter,
                projection=self.query.projection,
                sort=list(self.query.sort.items()) if self.query.sort else None,
                batch_size=self.query.batch_size,
            )

    async def _release(self) -> None:
        try:
            if self._cursor is not None:
                await self._cursor.close()
        finally:
            self._cursor = None
            if self._owns_client and self._client is not None:
                await self._client.close()
                self._client = None

    async def _documents(self) -> AsyncIterator[Dict[str, Any]]:
        async for document in self._cursor:
            yield document
