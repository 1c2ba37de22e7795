"""
MongoDB store handle and document helpers.

The handle is built by the application factory and injected into request
handlers through ``get_db``; nothing here holds a module-level connection.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Request
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database as MongoDatabase

from errors import NotFound

logger = logging.getLogger(__name__)

USERS = "users"
RESTAURANTS = "restaurants"
RESERVATIONS = "reservations"


class Database:
    """Owns the client connection for the lifetime of the app."""

    def __init__(self, uri: str, name: str, client: Optional[MongoClient] = None):
        self.uri = uri
        self.name = name
        self._client = client
        self._owns_client = client is None
        self._db: Optional[MongoDatabase] = None

    def connect(self) -> "Database":
        if self._client is None:
            self._client = MongoClient(self.uri)
        self._db = self._client[self.name]
        self.ensure_indexes()
        logger.info("MongoDB connected: database %s", self.name)
        return self

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None
            logger.info("MongoDB connection closed")
        self._db = None

    def ensure_indexes(self) -> None:
        self.db[USERS].create_index([("email", ASCENDING)], unique=True)
        self.db[RESTAURANTS].create_index([("name", ASCENDING)], unique=True)
        self.db[RESTAURANTS].create_index([("createdAt", DESCENDING)])
        self.db[RESERVATIONS].create_index([("user", ASCENDING)])
        self.db[RESERVATIONS].create_index([("restaurant", ASCENDING)])

    def ping(self) -> bool:
        self.db.command("ping")
        return True

    @property
    def db(self) -> MongoDatabase:
        if self._db is None:
            raise RuntimeError("Database is not connected")
        return self._db

    def __getitem__(self, collection: str):
        return self.db[collection]


def get_db(request: Request) -> Database:
    return request.app.state.db


# Helpers

def to_obj_id(id_str: Any, label: str = "resource") -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise NotFound(f"No {label} with the id of {id_str}")


def serialize(value: Any) -> Any:
    """Make a stored document JSON friendly: ``_id`` becomes ``id``, ObjectIds become str."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        out: Dict[str, Any] = {}
        if "_id" in value:
            out["id"] = str(value["_id"])
        for k, v in value.items():
            if k == "_id":
                continue
            out[k] = serialize(v)
        return out
    if isinstance(value, (list, tuple)):
        return [serialize(v) for v in value]
    return value


def now() -> datetime:
    # naive UTC truncated to milliseconds, which is what BSON keeps
    t = datetime.now(timezone.utc).replace(tzinfo=None)
    return t.replace(microsecond=t.microsecond // 1000 * 1000)
