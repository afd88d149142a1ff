from .base_backend import Warehouse, WriteStream

__all__ = ['Warehouse', 'WriteStream']
