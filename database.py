"""
Database helpers for the storefront API.

A single MongoDB database is shared by the whole app. Collection names are the
lowercase of the matching schema class (see schemas.py).
"""

import logging
import math
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import MongoClient, ReturnDocument

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")

try:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]
except Exception as e:
    logger.error("Could not initialise MongoDB client: %s", e)
    client = None
    db = None


def utcnow() -> datetime:
    # BSON stores naive UTC datetimes; keep every timestamp naive so comparisons line up.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _require_db():
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME.")
    return db


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    database = _require_db()
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None, sort=None) -> List[dict]:
    database = _require_db()
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def update_document(collection_name: str, filter_dict: dict, values: dict):
    database = _require_db()
    values = dict(values)
    values["updated_at"] = utcnow()
    return database[collection_name].update_one(filter_dict, {"$set": values})


def paginate(collection_name: str, filter_dict: Optional[dict] = None, page: int = 1, per_page: int = 20, sort=None, transform: Optional[Callable[[dict], Any]] = None) -> Dict[str, Any]:
    """Page through a collection, returning the shape the front end's paginator expects."""
    database = _require_db()
    filter_dict = filter_dict or {}
    page = max(1, int(page or 1))
    total = database[collection_name].count_documents(filter_dict)
    cursor = database[collection_name].find(filter_dict)
    if sort:
        cursor = cursor.sort(sort)
    cursor = cursor.skip((page - 1) * per_page).limit(per_page)
    items = list(cursor)
    if transform is not None:
        items = [transform(it) for it in items]
    return {
        "data": items,
        "current_page": page,
        "last_page": max(1, math.ceil(total / per_page)),
        "per_page": per_page,
        "total": total,
    }


class Transaction:
    """
    Unit of work over several collections.

    MongoDB only offers multi-document transactions on replica sets, so every
    write made through (or registered with) this object carries a compensating
    action. Leaving the block with an exception replays them newest first and
    re-raises; leaving it cleanly runs the on_commit callbacks.
    """

    def __init__(self, name: str = "transaction"):
        self.name = name
        self._undo: List[Callable[[], Any]] = []
        self._after_commit: List[Callable[[], Any]] = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            for fn in self._after_commit:
                fn()
            return False
        logger.warning("Rolling back %s after %s: %s", self.name, exc_type.__name__, exc)
        for fn in reversed(self._undo):
            try:
                fn()
            except Exception:
                logger.exception("Compensation step failed during rollback of %s", self.name)
        return False

    def on_rollback(self, fn: Callable[[], Any]):
        self._undo.append(fn)

    def on_commit(self, fn: Callable[[], Any]):
        self._after_commit.append(fn)

    @contextmanager
    def savepoint(self):
        """Undo only the writes made inside this block if it raises, then re-raise."""
        mark = len(self._undo)
        try:
            yield self
        except Exception:
            for fn in reversed(self._undo[mark:]):
                fn()
            del self._undo[mark:]
            raise

    def create_document(self, collection_name: str, data: Union[BaseModel, dict]) -> str:
        new_id = create_document(collection_name, data)
        self.on_rollback(lambda: _require_db()[collection_name].delete_one({"_id": ObjectId(new_id)}))
        return new_id

    def update_one(self, collection_name: str, filter_dict: dict, values: dict):
        """$set values on one document, remembering the previous values for rollback."""
        database = _require_db()
        before = database[collection_name].find_one(filter_dict)
        res = update_document(collection_name, filter_dict, values)
        if before is not None:
            previous = {k: before.get(k) for k in values}
            self.on_rollback(lambda: database[collection_name].update_one({"_id": before["_id"]}, {"$set": previous}))
        return res

    def increment(self, collection_name: str, filter_dict: dict, field: str, amount: Union[int, float]) -> Optional[dict]:
        """
        Atomically add amount to field on the first matching document.

        The filter can carry a guard (e.g. a minimum stock level); when nothing
        matches, None is returned and nothing is recorded.
        """
        database = _require_db()
        doc = database[collection_name].find_one_and_update(
            filter_dict,
            {"$inc": {field: amount}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is not None:
            self.on_rollback(lambda: database[collection_name].update_one({"_id": doc["_id"]}, {"$inc": {field: -amount}}))
        return doc

    def delete_many(self, collection_name: str, filter_dict: dict) -> int:
        database = _require_db()
        docs = list(database[collection_name].find(filter_dict))
        if not docs:
            return 0
        database[collection_name].delete_many({"_id": {"$in": [d["_id"] for d in docs]}})
        self.on_rollback(lambda: database[collection_name].insert_many(docs))
        return len(docs)
