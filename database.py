"""
Database access for TheRawKing

`db` is the raw pymongo database handle (None when DATABASE_URL / DATABASE_NAME
are not configured). Services never talk to it directly: they go through a
DocumentStore, whose one concurrency primitive is `update_if`, an optimistic
compare-and-swap on the `_version` field of a document.
"""

import copy
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from bson import ObjectId
from pymongo import MongoClient, ReturnDocument

import config
from errors import ConcurrentUpdateError, DocumentNotFoundError

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
Predicate = Callable[[Document], bool]
Mutation = Callable[[Document], None]

VERSION_FIELD = "_version"
MAX_CAS_ATTEMPTS = 100

_client = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(config.DATABASE_URL, tz_aware=True)
    db = _client[config.DATABASE_NAME]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentStore:
    """Keyed document store with an atomic conditional update.

    Subclasses provide reads, inserts and `_compare_and_swap`; the retry loop
    that turns the swap into `update_if` lives here so every backend has the
    same semantics.
    """

    def find_by_id(self, collection: str, doc_id: str) -> Optional[Document]:
        raise NotImplementedError

    def find(self, collection: str, query: Optional[dict] = None, limit: Optional[int] = None) -> List[Document]:
        raise NotImplementedError

    def count(self, collection: str, query: Optional[dict] = None) -> int:
        raise NotImplementedError

    def insert(self, collection: str, document: Document) -> str:
        raise NotImplementedError

    def increment(self, collection: str, doc_id: str, field: str = "seq", amount: int = 1) -> int:
        """Atomically add `amount` to `field`, creating the document if needed.

        Returns the value after the increment.
        """
        raise NotImplementedError

    def _compare_and_swap(self, collection: str, doc_id: str, expected_version: Optional[int], document: Document) -> bool:
        raise NotImplementedError

    def save(self, collection: str, document: Document) -> Document:
        """Unconditionally replace a document with `document` (bumping its version)."""
        doc_id = document["_id"]
        body = {k: v for k, v in document.items() if k != "_id"}

        def replace(current: Document) -> None:
            version = current.get(VERSION_FIELD)
            current.clear()
            current.update(copy.deepcopy(body))
            current["_id"] = doc_id
            if version is not None:
                current[VERSION_FIELD] = version

        return self.update_if(collection, doc_id, lambda _doc: True, replace)

    def update_if(self, collection: str, doc_id: str, predicate: Predicate, mutation: Mutation) -> Optional[Document]:
        """Apply `mutation` only if `predicate` holds on the stored document.

        Returns the updated document, or None when the predicate is false at
        write time. Raises DocumentNotFoundError when the document is missing
        and ConcurrentUpdateError when every attempt lost the version race.
        """
        for _ in range(MAX_CAS_ATTEMPTS):
            current = self.find_by_id(collection, doc_id)
            if current is None:
                raise DocumentNotFoundError(collection, doc_id)
            if not predicate(current):
                return None

            expected = current.get(VERSION_FIELD)
            updated = copy.deepcopy(current)
            mutation(updated)
            updated["_id"] = current["_id"]
            updated[VERSION_FIELD] = (expected or 0) + 1
            updated["updated_at"] = utcnow()

            if self._compare_and_swap(collection, doc_id, expected, updated):
                return updated
            logger.debug("Version conflict on %s/%s, retrying", collection, doc_id)

        raise ConcurrentUpdateError(collection, doc_id, MAX_CAS_ATTEMPTS)


# --- MongoDB ---


def _oid(doc_id: str) -> Union[ObjectId, str]:
    return ObjectId(doc_id) if ObjectId.is_valid(doc_id) else doc_id


def _from_mongo(doc: Optional[dict]) -> Optional[Document]:
    if doc is None:
        return None
    doc["_id"] = str(doc["_id"])
    return doc


class MongoStore(DocumentStore):
    def __init__(self, database):
        self.db = database

    def find_by_id(self, collection, doc_id):
        return _from_mongo(self.db[collection].find_one({"_id": _oid(doc_id)}))

    def find(self, collection, query=None, limit=None):
        cursor = self.db[collection].find(query or {})
        if limit:
            cursor = cursor.limit(limit)
        return [_from_mongo(d) for d in cursor]

    def count(self, collection, query=None):
        return self.db[collection].count_documents(query or {})

    def insert(self, collection, document):
        body = dict(document)
        if "_id" in body:
            body["_id"] = _oid(body["_id"])
        body.setdefault(VERSION_FIELD, 0)
        result = self.db[collection].insert_one(body)
        return str(result.inserted_id)

    def increment(self, collection, doc_id, field="seq", amount=1):
        doc = self.db[collection].find_one_and_update(
            {"_id": _oid(doc_id)},
            {"$inc": {field: amount}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return doc[field]

    def _compare_and_swap(self, collection, doc_id, expected_version, document):
        version_filter = expected_version if expected_version is not None else {"$exists": False}
        body = {k: v for k, v in document.items() if k != "_id"}
        result = self.db[collection].replace_one(
            {"_id": _oid(doc_id), VERSION_FIELD: version_filter},
            body,
        )
        return result.matched_count == 1


# --- In-process ---


def _resolve(doc: Any, path: str) -> List[Any]:
    """All values reachable at a dotted path, traversing arrays like MongoDB."""
    current = [doc]
    for part in path.split("."):
        found = []
        for value in current:
            if isinstance(value, dict):
                if part in value:
                    found.append(value[part])
            elif isinstance(value, list):
                for element in value:
                    if isinstance(element, dict) and part in element:
                        found.append(element[part])
        current = found

    values = []
    for value in current:
        values.append(value)
        if isinstance(value, list):
            values.extend(value)
    return values


def _compare(op: str, value: Any, target: Any) -> bool:
    try:
        if op == "$lt":
            return value < target
        if op == "$lte":
            return value <= target
        if op == "$gt":
            return value > target
        if op == "$gte":
            return value >= target
    except TypeError:
        return False
    raise ValueError(f"Unsupported query operator: {op}")


def _matches(doc: Document, query: dict) -> bool:
    for path, condition in query.items():
        values = _resolve(doc, path)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            for op, target in condition.items():
                if op == "$exists":
                    if bool(values) != bool(target):
                        return False
                elif op == "$in":
                    if not any(v in target for v in values):
                        return False
                elif op == "$ne":
                    if any(v == target for v in values):
                        return False
                elif not any(_compare(op, v, target) for v in values):
                    return False
        elif condition is None:
            if any(v is not None for v in values):
                return False
        elif condition not in values:
            return False
    return True


class MemoryStore(DocumentStore):
    """Single-process store; the lock stands in for the database's own atomicity."""

    def __init__(self):
        self._collections: Dict[str, Dict[str, Document]] = {}
        self._lock = threading.RLock()

    def _collection(self, name: str) -> Dict[str, Document]:
        return self._collections.setdefault(name, {})

    def find_by_id(self, collection, doc_id):
        with self._lock:
            doc = self._collection(collection).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def find(self, collection, query=None, limit=None):
        with self._lock:
            docs = [copy.deepcopy(d) for d in self._collection(collection).values() if _matches(d, query or {})]
        return docs[:limit] if limit else docs

    def count(self, collection, query=None):
        return len(self.find(collection, query))

    def insert(self, collection, document):
        body = copy.deepcopy(document)
        doc_id = str(body.get("_id") or ObjectId())
        body["_id"] = doc_id
        body.setdefault(VERSION_FIELD, 0)
        with self._lock:
            docs = self._collection(collection)
            if doc_id in docs:
                raise ValueError(f"Duplicate id in {collection}: {doc_id}")
            docs[doc_id] = body
        return doc_id

    def increment(self, collection, doc_id, field="seq", amount=1):
        with self._lock:
            doc = self._collection(collection).setdefault(doc_id, {"_id": doc_id})
            doc[field] = doc.get(field, 0) + amount
            return doc[field]

    def _compare_and_swap(self, collection, doc_id, expected_version, document):
        with self._lock:
            docs = self._collection(collection)
            current = docs.get(doc_id)
            if current is None or current.get(VERSION_FIELD) != expected_version:
                return False
            docs[doc_id] = copy.deepcopy(document)
            return True


def get_store() -> Optional[DocumentStore]:
    """Store backed by the configured MongoDB, or None when there is none."""
    if db is None:
        return None
    return MongoStore(db)
