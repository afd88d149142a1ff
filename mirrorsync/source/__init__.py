from .base_source import CursorSource, SourceQuery
from .iterable_source import IterableSource
from .mongo_source import MongoSource

__all__ = ['CursorSource', 'SourceQuery', 'IterableSource', 'MongoSource']
