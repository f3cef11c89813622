import logging
from typing import Optional

from pymongo import MongoClient
from pymongo.errors import PyMongoError

from .key_value_store import KeyValueStore

logger = logging.getLogger(__name__)


class MongoDBKeyValueStore(KeyValueStore):
    """Key-value store in a MongoDB collection, for clients hosted server-side.

    Every key is namespaced by ``scope`` (e.g. a user or device id), so one
    collection can hold the state of many chat clients.
    """
    def __init__(self, *, mongo_uri: str, mongo_db: str, mongo_collection: str, scope: str):
        if not mongo_uri or not mongo_db or not mongo_collection:
            raise ValueError("MongoDB URI, database, and collection are required")
        if not scope:
            raise ValueError("A scope is required to namespace chat state")
        self.scope = scope
        self._client = MongoClient(mongo_uri)
        self._coll = self._client[mongo_db][mongo_collection]

    def _doc_id(self, key: str) -> str:
        return f"{self.scope}:{key}"

    def get(self, key: str) -> Optional[str]:
        try:
            doc = self._coll.find_one({"_id": self._doc_id(key)}, {"value": 1})
        except PyMongoError as e:
            raise RuntimeError(f"Failed to read '{key}' from MongoDB: {e}")
        if doc is None:
            return None
        value = doc.get("value")
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        try:
            self._coll.update_one(
                {"_id": self._doc_id(key)},
                {"$set": {"value": value, "scope": self.scope}},
                upsert=True,
            )
        except PyMongoError as e:
            raise RuntimeError(f"Failed to write '{key}' to MongoDB: {e}")
        logger.debug(f"[STORE] Stored '{key}' for scope {self.scope}")

    def remove(self, key: str) -> None:
        try:
            self._coll.delete_one({"_id": self._doc_id(key)})
        except PyMongoError as e:
            raise RuntimeError(f"Failed to remove '{key}' from MongoDB: {e}")

    def close(self) -> None:
        self._client.close()
