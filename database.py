"""
Storage backends for the API.

Two interchangeable stores sit behind the same async interface:

* MongoStore    - MongoDB through pymongo's asyncio client.
* JsonFileStore - a single JSON document with one array per collection,
                  rewritten wholesale on every write. Without a path it
                  lives only in memory, which is what the tests use.

Records leave the store in wire form: the `_id` key becomes a string `id`.
"""
import asyncio
import json
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime
from functools import wraps
from typing import Any, Dict, List, Optional, Sequence, Tuple

from bson import ObjectId
from pymongo import ASCENDING, AsyncMongoClient
from pymongo.errors import ConnectionFailure, DuplicateKeyError, OperationFailure, PyMongoError

from errors import ApiError, DuplicateKey, StorageError, StorageUnavailable
from registry import COLLECTIONS, TOURNAMENT_REGISTRATIONS, VERIFICATION_REQUESTS
from schemas import isoformat_utc

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
Filter = Dict[str, Any]
SortSpec = Optional[Sequence[Tuple[str, int]]]

# Index names are matched against DuplicateKey.index by the validators
TOURNAMENT_TEAM_INDEX = "tournament_team_unique"
TOURNAMENT_USER_INDEX = "tournament_user_unique"
PENDING_VERIFICATION_INDEX = "pending_verification_unique"

UNIQUE_INDEXES = {
    TOURNAMENT_REGISTRATIONS: [
        (
            TOURNAMENT_TEAM_INDEX,
            [("tournamentId", ASCENDING), ("teamName", ASCENDING)],
            {"tournamentId": {"$type": "string"}, "teamName": {"$type": "string"}},
        ),
        (
            TOURNAMENT_USER_INDEX,
            [("tournamentId", ASCENDING), ("userId", ASCENDING)],
            {"tournamentId": {"$type": "string"}, "userId": {"$type": "string"}},
        ),
    ],
    VERIFICATION_REQUESTS: [
        (
            PENDING_VERIFICATION_INDEX,
            [("discord_id", ASCENDING)],
            {"status": "pending"},
        ),
    ],
}


# ----------------------
# Helpers for ids and serialization
# ----------------------
def _serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return isoformat_utc(value)
    if isinstance(value, dict):
        return {k: _serialize_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


def serialize_doc(doc: Optional[Record]) -> Optional[Record]:
    if not doc:
        return doc
    d = {k: _serialize_value(v) for k, v in doc.items()}
    if "_id" in d:
        d["id"] = d.pop("_id")
    return d


def prepare_record(record: Record, new_id=ObjectId) -> Record:
    """Copy a record for insertion, keeping a supplied `id`/`_id` or minting one."""
    doc = dict(record)
    supplied = doc.pop("id", None)
    if doc.get("_id") is None:
        doc["_id"] = supplied if supplied is not None else new_id()
    return doc


def _strip_id(fields: Record) -> Record:
    return {k: v for k, v in fields.items() if k not in ("_id", "id")}


def storage_operation(method):
    """Reject calls on a disconnected store and translate driver failures."""
    @wraps(method)
    async def wrapper(self, *args, **kwargs):
        if not self.connected:
            raise StorageUnavailable()
        try:
            return await method(self, *args, **kwargs)
        except ApiError:
            raise
        except self.driver_errors as e:
            raise self._translate(e) from e
    return wrapper


class Store(ABC):
    """Uniform async interface over a set of named collections."""

    backend = "unknown"
    driver_errors: Tuple[type, ...] = ()

    @property
    @abstractmethod
    def connected(self) -> bool: ...

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def ping(self) -> bool: ...

    @abstractmethod
    async def collection_names(self) -> List[str]: ...

    @abstractmethod
    async def fetch_all(self, collection: str) -> List[Record]: ...

    @abstractmethod
    async def find(self, collection: str, filter: Filter, sort: SortSpec = None) -> List[Record]: ...

    @abstractmethod
    async def count(self, collection: str) -> int: ...

    @abstractmethod
    async def insert_one(self, collection: str, record: Record) -> str: ...

    @abstractmethod
    async def insert_many(self, collection: str, records: List[Record]) -> int: ...

    @abstractmethod
    async def replace_all(self, collection: str, records: List[Record]) -> int: ...

    @abstractmethod
    async def delete_many(self, collection: str, filter: Filter) -> int: ...

    @abstractmethod
    async def delete_one(self, collection: str, record_id: str) -> bool: ...

    @abstractmethod
    async def update_one(self, collection: str, record_id: str, fields: Record) -> bool: ...

    def _translate(self, exc: Exception) -> ApiError:
        logger.exception(f"{self.backend} storage error: {exc}")
        return StorageError("Database error")


# ----------------------
# MongoDB
# ----------------------
_INDEX_IN_ERRMSG = re.compile(r"index: (\S+)")


def _duplicate_index_name(exc: DuplicateKeyError) -> str:
    details = exc.details or {}
    match = _INDEX_IN_ERRMSG.search(details.get("errmsg") or str(exc))
    return match.group(1) if match else ""


def to_object_id(value):
    """Ids that look like ObjectIds are stored as ObjectIds, anything else as a string."""
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return str(value)


def id_filter(record_id: str) -> Filter:
    if ObjectId.is_valid(record_id):
        return {"_id": {"$in": [ObjectId(record_id), record_id]}}
    # Numeric ids may predate string normalization
    if record_id.lstrip("-").isdigit():
        return {"_id": {"$in": [record_id, int(record_id)]}}
    return {"_id": record_id}


class MongoStore(Store):
    backend = "mongodb"
    driver_errors = (PyMongoError,)

    def __init__(self, url: str, database_name: str, client: Optional[AsyncMongoClient] = None,
                 server_selection_timeout_ms: int = 5000):
        self.url = url
        self.database_name = database_name
        self._client = client
        self._timeout_ms = server_selection_timeout_ms
        self._db = None

    @property
    def connected(self) -> bool:
        return self._db is not None

    async def connect(self) -> None:
        if self._client is None:
            self._client = AsyncMongoClient(self.url, serverSelectionTimeoutMS=self._timeout_ms)
        try:
            await self._client.admin.command("ping")
        except PyMongoError as e:
            raise StorageUnavailable(f"Could not connect to MongoDB: {e}") from e
        self._db = self._client[self.database_name]
        for collection in UNIQUE_INDEXES:
            await self._ensure_indexes(collection)
        logger.info(f"Connected to MongoDB database '{self.database_name}'")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
        self._client = None
        self._db = None

    async def ping(self) -> bool:
        if not self.connected:
            return False
        try:
            await self._client.admin.command("ping")
            return True
        except PyMongoError:
            return False

    async def _ensure_indexes(self, collection: str, target: Optional[str] = None) -> None:
        coll = self._db[target or collection]
        for name, keys, partial in UNIQUE_INDEXES.get(collection, []):
            try:
                await coll.create_index(keys, name=name, unique=True, partialFilterExpression=partial)
            except OperationFailure as e:
                # Pre-existing duplicates: the in-process locks still apply
                logger.warning(f"Could not build unique index {name} on {collection}: {e}")

    def _translate(self, exc: Exception) -> ApiError:
        if isinstance(exc, DuplicateKeyError):
            return DuplicateKey(_duplicate_index_name(exc))
        if isinstance(exc, ConnectionFailure):
            logger.error(f"MongoDB connection failure: {exc}")
            return StorageUnavailable()
        return super()._translate(exc)

    def _prepare(self, record: Record) -> Record:
        doc = prepare_record(record)
        doc["_id"] = to_object_id(doc["_id"])
        return doc

    @storage_operation
    async def collection_names(self) -> List[str]:
        return await self._db.list_collection_names()

    @storage_operation
    async def fetch_all(self, collection: str) -> List[Record]:
        return [serialize_doc(d) async for d in self._db[collection].find({})]

    @storage_operation
    async def find(self, collection: str, filter: Filter, sort: SortSpec = None) -> List[Record]:
        cursor = self._db[collection].find(filter)
        if sort:
            cursor = cursor.sort(list(sort))
        return [serialize_doc(d) async for d in cursor]

    @storage_operation
    async def count(self, collection: str) -> int:
        return await self._db[collection].count_documents({})

    @storage_operation
    async def insert_one(self, collection: str, record: Record) -> str:
        result = await self._db[collection].insert_one(self._prepare(record))
        return str(result.inserted_id)

    @storage_operation
    async def insert_many(self, collection: str, records: List[Record]) -> int:
        if not records:
            return 0
        result = await self._db[collection].insert_many([self._prepare(r) for r in records])
        return len(result.inserted_ids)

    @storage_operation
    async def replace_all(self, collection: str, records: List[Record]) -> int:
        if not records:
            await self._db[collection].delete_many({})
            return 0
        # Build the new contents aside, then swap them in with one rename
        staging = f"{collection}__staging_{ObjectId()}"
        try:
            await self._ensure_indexes(collection, target=staging)
            await self._db[staging].insert_many([self._prepare(r) for r in records])
            await self._db[staging].rename(collection, dropTarget=True)
        except PyMongoError:
            await self._db.drop_collection(staging)
            raise
        return len(records)

    @storage_operation
    async def delete_many(self, collection: str, filter: Filter) -> int:
        result = await self._db[collection].delete_many(filter)
        return result.deleted_count

    @storage_operation
    async def delete_one(self, collection: str, record_id: str) -> bool:
        result = await self._db[collection].delete_one(id_filter(record_id))
        return result.deleted_count == 1

    @storage_operation
    async def update_one(self, collection: str, record_id: str, fields: Record) -> bool:
        updates = _strip_id(fields)
        if not updates:
            return await self._db[collection].count_documents(id_filter(record_id), limit=1) == 1
        result = await self._db[collection].update_one(id_filter(record_id), {"$set": updates})
        return result.matched_count == 1


# ----------------------
# Flat JSON file
# ----------------------
def _compare(op):
    def check(value, operand):
        if value is None:
            return False
        try:
            return op(value, operand)
        except TypeError:
            return False
    return check


QUERY_OPERATORS = {
    "$gte": _compare(lambda a, b: a >= b),
    "$gt": _compare(lambda a, b: a > b),
    "$lte": _compare(lambda a, b: a <= b),
    "$lt": _compare(lambda a, b: a < b),
    "$ne": lambda a, b: a != b,
    "$in": lambda a, b: a in b,
}


def matches(doc: Record, filter: Filter) -> bool:
    """Evaluate the small subset of Mongo query syntax the API uses."""
    for field, condition in filter.items():
        value = doc.get(field)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            for op, operand in condition.items():
                if op not in QUERY_OPERATORS:
                    raise ValueError(f"Unsupported query operator: {op}")
                if not QUERY_OPERATORS[op](value, operand):
                    return False
        elif value != condition:
            return False
    return True


def _sort_key(value):
    # Mixed types order by type first, following MongoDB's BSON comparison
    # order. Missing fields sort first.
    if value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (6, value)
    if isinstance(value, (int, float)):
        return (1, value)
    if isinstance(value, str):
        return (2, value)
    if isinstance(value, dict):
        return (3, repr(value))
    if isinstance(value, list):
        return (4, repr(value))
    if isinstance(value, ObjectId):
        return (5, str(value))
    if isinstance(value, datetime):
        return (7, isoformat_utc(value))
    return (8, repr(value))


def sort_records(docs: List[Record], sort: SortSpec) -> List[Record]:
    docs = list(docs)
    for field, direction in reversed(list(sort or [])):
        docs.sort(key=lambda d: _sort_key(d.get(field)), reverse=direction < 0)
    return docs


class JsonFileStore(Store):
    backend = "json"
    driver_errors = (OSError, ValueError)

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._data: Optional[Dict[str, List[Record]]] = None
        # Serializes read-modify-write cycles while a file write is in flight
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._data is not None

    async def connect(self) -> None:
        data: Dict[str, List[Record]] = {}
        if self.path and os.path.exists(self.path):
            try:
                data = await self._in_thread(self._read)
            except (OSError, ValueError) as e:
                raise StorageUnavailable(f"Could not read {self.path}: {e}") from e
            if not isinstance(data, dict):
                raise StorageUnavailable(f"{self.path} does not hold a JSON object")

        for name in COLLECTIONS:
            data.setdefault(name, [])
        # Files written by older revisions carry records without ids
        for name, records in data.items():
            if not isinstance(records, list):
                raise StorageUnavailable(f"{self.path}: '{name}' is not a list of records")
            data[name] = [prepare_record(r, self._new_id) for r in records]

        try:
            if self.path:
                await self._in_thread(self._write, data)
        except OSError as e:
            raise StorageUnavailable(f"Could not write {self.path}: {e}") from e
        self._data = data
        logger.info(f"Using JSON store at {self.path or '<memory>'}")

    async def close(self) -> None:
        self._data = None

    async def ping(self) -> bool:
        return self.connected

    @staticmethod
    def _new_id() -> str:
        return str(ObjectId())

    @staticmethod
    async def _in_thread(func, *args):
        # File I/O and serialization stay off the event loop
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    def _read(self):
        with open(self.path, encoding="utf-8") as f:
            return json.load(f)

    def _write(self, data: Dict[str, List[Record]]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=".db-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, default=str)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise

    async def _commit(self, collection: str, records: List[Record]) -> None:
        # Callers hold self._lock. The file is written first so memory never
        # runs ahead of disk.
        if self.path:
            await self._in_thread(self._write, {**self._data, collection: records})
        self._data[collection] = records

    def _records(self, collection: str) -> List[Record]:
        return self._data.get(collection, [])

    @storage_operation
    async def collection_names(self) -> List[str]:
        return list(self._data)

    @storage_operation
    async def fetch_all(self, collection: str) -> List[Record]:
        return [serialize_doc(d) for d in self._records(collection)]

    @storage_operation
    async def find(self, collection: str, filter: Filter, sort: SortSpec = None) -> List[Record]:
        docs = [d for d in self._records(collection) if matches(d, filter)]
        return [serialize_doc(d) for d in sort_records(docs, sort)]

    @storage_operation
    async def count(self, collection: str) -> int:
        return len(self._records(collection))

    @storage_operation
    async def insert_one(self, collection: str, record: Record) -> str:
        doc = prepare_record(record, self._new_id)
        async with self._lock:
            await self._commit(collection, self._records(collection) + [doc])
        return str(doc["_id"])

    @storage_operation
    async def insert_many(self, collection: str, records: List[Record]) -> int:
        if not records:
            return 0
        docs = [prepare_record(r, self._new_id) for r in records]
        async with self._lock:
            await self._commit(collection, self._records(collection) + docs)
        return len(docs)

    @storage_operation
    async def replace_all(self, collection: str, records: List[Record]) -> int:
        docs = [prepare_record(r, self._new_id) for r in records]
        async with self._lock:
            await self._commit(collection, docs)
        return len(docs)

    @storage_operation
    async def delete_many(self, collection: str, filter: Filter) -> int:
        async with self._lock:
            existing = self._records(collection)
            kept = [d for d in existing if not matches(d, filter)]
            if len(kept) != len(existing):
                await self._commit(collection, kept)
        return len(existing) - len(kept)

    @storage_operation
    async def delete_one(self, collection: str, record_id: str) -> bool:
        async with self._lock:
            existing = self._records(collection)
            for i, doc in enumerate(existing):
                if str(doc.get("_id")) == str(record_id):
                    await self._commit(collection, existing[:i] + existing[i + 1:])
                    return True
        return False

    @storage_operation
    async def update_one(self, collection: str, record_id: str, fields: Record) -> bool:
        updates = _strip_id(fields)
        async with self._lock:
            existing = self._records(collection)
            for i, doc in enumerate(existing):
                if str(doc.get("_id")) == str(record_id):
                    if updates:
                        updated = {**doc, **updates}
                        await self._commit(collection, existing[:i] + [updated] + existing[i + 1:])
                    return True
        return False


def create_store(settings) -> Store:
    if settings.storage_backend == "json":
        return JsonFileStore(settings.data_file)
    return MongoStore(settings.database_url, settings.database_name)
