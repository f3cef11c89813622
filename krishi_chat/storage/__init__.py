from .key_value_store import KeyValueStore
from .memory_store import MemoryKeyValueStore
from .file_store import JsonFileKeyValueStore


def __getattr__(name):
    """Lazy imports for optional dependencies."""
    if name == "MongoDBKeyValueStore":
        from .mongodb_store import MongoDBKeyValueStore
        return MongoDBKeyValueStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    'KeyValueStore',
    'MemoryKeyValueStore',
    'JsonFileKeyValueStore',
    'MongoDBKeyValueStore',
]
