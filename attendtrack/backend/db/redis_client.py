import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

import redis.asyncio as redis
from redis import exceptions as redis_exceptions

from ..config.config import settings
from .store_errors import (
    BatchLimitExceededError,
    ConcurrentModificationError,
    DocumentNotFoundError,
    IndexUnavailableError,
    StoreConnectionError,
    StoreError,
    StorePermissionError,
)

logger = logging.getLogger(__name__)

RANGE_OPS = ("<", "<=", ">", ">=")
SUPPORTED_OPS = ("==", "in") + RANGE_OPS

READY_INDEXES_KEY = "indexes:ready"
_MAX_COMMIT_ATTEMPTS = 3
_LEX_SEPARATOR = "\x00"


@dataclass(frozen=True)
class IndexSpec:
    """Indexes maintained for one collection."""
    equality: Tuple[str, ...] = ()
    ordered: Tuple[str, ...] = ()
    lexical: Tuple[str, ...] = ()
    # (equality fields, ordered field) pairs that need an explicitly provisioned index
    composite: Tuple[Tuple[Tuple[str, ...], str], ...] = ()


INDEX_SPECS: Dict[str, IndexSpec] = {
    "attendance": IndexSpec(
        equality=("barcodeId", "status", "recordedBy"),
        ordered=("timestamp",),
        composite=((("barcodeId",), "timestamp"), (("status",), "timestamp")),
    ),
    "users": IndexSpec(equality=("barcodeId", "role", "email"), lexical=("barcodeId",)),
    "user_roles": IndexSpec(equality=("role",)),
    "audit_logs": IndexSpec(
        equality=("userId", "eventType"),
        ordered=("timestamp",),
        composite=(
            (("userId",), "timestamp"),
            (("eventType",), "timestamp"),
            (("eventType", "userId"), "timestamp"),
        ),
    ),
    "security_events": IndexSpec(
        equality=("userId", "type"),
        ordered=("timestamp",),
        composite=(
            (("userId",), "timestamp"),
            (("type",), "timestamp"),
            (("type", "userId"), "timestamp"),
        ),
    ),
    "user_sessions": IndexSpec(equality=("userId", "isActive"), ordered=("lastActivity",)),
}

# Legacy field names copied onto their current name whenever a document is written or read
LEGACY_FIELDS: Dict[str, Dict[str, str]] = {
    "attendance": {"idNumber": "barcodeId"},
}


def composite_index_name(collection: str, equality_fields: Iterable[str], ordered_field: str) -> str:
    return f"{collection}:{'+'.join(sorted(equality_fields))}+{ordered_field}"


def declared_composite_indexes() -> List[str]:
    return [
        composite_index_name(collection, eq_fields, ordered_field)
        for collection, spec in INDEX_SPECS.items()
        for eq_fields, ordered_field in spec.composite
    ]


# ===== Value helpers =====

def _json_default(value: Any):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json", by_alias=True, exclude_none=True)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _to_plain(data: Dict[str, Any]) -> Dict[str, Any]:
    plain = json.loads(json.dumps(data, default=_json_default))
    plain.pop("id", None)
    return plain


def normalize_legacy_fields(collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
    for legacy, current in LEGACY_FIELDS.get(collection, {}).items():
        if document.get(current) is None and document.get(legacy) is not None:
            document[current] = document[legacy]
    return document


def parse_instant(value: Any) -> Optional[float]:
    """Epoch seconds for datetimes, ISO strings and numbers; None otherwise. Naive values are local time."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.astimezone()
        return value.timestamp()
    return None


def _index_token(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return None
    return str(value)


def _compare(doc_value: Any, op: str, filter_value: Any) -> bool:
    if doc_value is None:
        return False
    if op == "in":
        return any(_compare(doc_value, "==", candidate) for candidate in filter_value)
    if isinstance(filter_value, datetime):
        left, right = parse_instant(doc_value), parse_instant(filter_value)
        if left is None:
            return False
    else:
        left, right = doc_value, filter_value
    try:
        if op == "==":
            return left == right
        if op == "<":
            return left < right
        if op == "<=":
            return left <= right
        if op == ">":
            return left > right
        if op == ">=":
            return left >= right
    except TypeError:
        return False
    return False


def _sort_key(value: Any):
    instant = parse_instant(value)
    if instant is not None:
        return (0, instant, "")
    return (1, 0.0, str(value))


@asynccontextmanager
async def translate_redis_errors():
    """Re-raises driver errors as store errors."""
    try:
        yield
    except redis_exceptions.NoPermissionError as e:
        raise StorePermissionError(str(e)) from e
    except (redis_exceptions.ConnectionError, redis_exceptions.TimeoutError) as e:
        raise StoreConnectionError(str(e)) from e


# ===== Query =====

@dataclass(frozen=True)
class Query:
    """
    Immutable query description. Every builder method returns a new Query,
    so a base query can be shared and refined by several callers.
    """
    collection: str
    filters: Tuple[Tuple[str, str, Any], ...] = ()
    order_field: Optional[str] = None
    descending: bool = False
    max_results: Optional[int] = None

    def where(self, field_name: str, op: str, value: Any) -> "Query":
        if op not in SUPPORTED_OPS:
            raise ValueError(f"Unsupported query operator: {op}")
        if op == "in":
            value = tuple(value)
        return replace(self, filters=self.filters + ((field_name, op, value),))

    def order_by(self, field_name: str, descending: bool = False) -> "Query":
        return replace(self, order_field=field_name, descending=descending)

    def limit(self, count: int) -> "Query":
        return replace(self, max_results=count)

    @property
    def equality_fields(self) -> List[str]:
        return sorted({f for f, op, _ in self.filters if op == "=="})

    @property
    def range_fields(self) -> List[str]:
        return sorted({f for f, op, _ in self.filters if op in RANGE_OPS})

    @property
    def sort_field(self) -> Optional[str]:
        if self.order_field:
            return self.order_field
        ranges = self.range_fields
        return ranges[0] if ranges else None

    def matches(self, document: Dict[str, Any]) -> bool:
        return all(_compare(document.get(f), op, v) for f, op, v in self.filters)


def finalize_results(query: Query, documents: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Applies the filters, ordering and limit of `query` to already loaded documents."""
    matched = [doc for doc in documents if query.matches(doc)]
    sort_field = query.sort_field
    if sort_field:
        matched = [doc for doc in matched if doc.get(sort_field) is not None]
        matched.sort(key=lambda doc: (_sort_key(doc[sort_field]), doc["id"]), reverse=query.descending)
    else:
        matched.sort(key=lambda doc: doc["id"])
    if query.max_results is not None:
        matched = matched[:query.max_results]
    return matched


# ===== Batched writes =====

@dataclass
class _WriteOp:
    kind: str  # set | update | delete
    collection: str
    doc_id: str
    data: Optional[Dict[str, Any]] = None
    merge: bool = False


class WriteBatch:
    """Collects writes and commits them atomically in one MULTI/EXEC."""

    def __init__(self, store: "RedisDocumentStore"):
        self._store = store
        self._ops: List[_WriteOp] = []
        self._committed = False

    def __len__(self) -> int:
        return len(self._ops)

    def _append(self, op: _WriteOp) -> "WriteBatch":
        if self._committed:
            raise StoreError("This batch has already been committed.")
        if len(self._ops) >= self._store.batch_limit:
            raise BatchLimitExceededError(f"A batch can hold at most {self._store.batch_limit} operations.")
        self._ops.append(op)
        return self

    def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> "WriteBatch":
        return self._append(_WriteOp("set", collection, doc_id, _to_plain(data), merge))

    def create(self, collection: str, data: Dict[str, Any]) -> str:
        """Queues a new document under a generated id and returns the id."""
        doc_id = self._store.new_id()
        self.set(collection, doc_id, data)
        return doc_id

    def update(self, collection: str, doc_id: str, data: Dict[str, Any]) -> "WriteBatch":
        return self._append(_WriteOp("update", collection, doc_id, _to_plain(data)))

    def delete(self, collection: str, doc_id: str) -> "WriteBatch":
        return self._append(_WriteOp("delete", collection, doc_id))

    async def commit(self):
        await self._store._commit(self._ops)
        self._committed = True


# ===== Change feed =====

class ChangeFeed:
    """
    Async iterator over change notifications of one collection.
    Each item is {"type": "added" | "modified" | "removed", "id": <doc id>}.
    """

    def __init__(self, pubsub, channel: str, poll_interval: float = 1.0):
        self._pubsub = pubsub
        self._channel = channel
        self._poll_interval = poll_interval
        self._closed = False

    async def start(self):
        await self._pubsub.subscribe(self._channel)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Dict[str, Any]:
        while not self._closed:
            async with translate_redis_errors():
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self._poll_interval
                )
            if message is None or message.get("type") != "message":
                continue
            return json.loads(message["data"])
        raise StopAsyncIteration

    async def close(self):
        if self._closed:
            return
        self._closed = True
        try:
            await self._pubsub.unsubscribe(self._channel)
        finally:
            await self._pubsub.aclose()


# ===== Store =====

class RedisDocumentStore:
    """
    Document store on top of Redis.

    Documents are JSON strings under `{collection}:doc:{id}`. Equality fields
    are indexed with sets, timestamps with sorted sets, and declared compound
    (equality + timestamp) indexes with one sorted set per equality value.
    Compound queries only run once their index is marked ready, mirroring a
    hosted document database whose compound indexes become available later.
    """

    def __init__(self, client: redis.Redis, batch_limit: Optional[int] = None):
        self._redis = client
        self.batch_limit = batch_limit or settings.BATCH_WRITE_LIMIT

    @classmethod
    def from_pool(cls, pool: redis.ConnectionPool, batch_limit: Optional[int] = None) -> "RedisDocumentStore":
        return cls(redis.Redis(connection_pool=pool, decode_responses=True), batch_limit=batch_limit)

    # ----- keys -----

    @staticmethod
    def _doc_key(collection: str, doc_id: str) -> str:
        return f"{collection}:doc:{doc_id}"

    @staticmethod
    def _ids_key(collection: str) -> str:
        return f"{collection}:ids"

    @staticmethod
    def _eq_key(collection: str, field_name: str, token: str) -> str:
        return f"{collection}:eq:{field_name}:{token}"

    @staticmethod
    def _ordered_key(collection: str, field_name: str) -> str:
        return f"{collection}:ord:{field_name}"

    @staticmethod
    def _lex_key(collection: str, field_name: str) -> str:
        return f"{collection}:lex:{field_name}"

    @staticmethod
    def _composite_key(collection: str, eq_field: str, token: str, ordered_field: str) -> str:
        return f"{collection}:cx:{eq_field}:{token}:{ordered_field}"

    @staticmethod
    def changes_channel(collection: str) -> str:
        return f"{collection}:changes"

    @staticmethod
    def new_id() -> str:
        return uuid.uuid4().hex

    _translate_errors = staticmethod(translate_redis_errors)

    # ----- index provisioning -----

    async def provision_indexes(self, names: Iterable[str]):
        """Marks compound indexes ready. "*" stands for every declared index."""
        names = list(names)
        if "*" in names:
            names = declared_composite_indexes()
        if not names:
            return
        async with self._translate_errors():
            await self._redis.sadd(READY_INDEXES_KEY, *names)
        logger.info(f"Compound indexes ready: {', '.join(sorted(names))}")

    async def ensure_index(self, name: str):
        if name not in declared_composite_indexes():
            raise StoreError(f"Unknown compound index: {name}")
        await self.provision_indexes([name])

    async def ready_indexes(self) -> List[str]:
        async with self._translate_errors():
            return sorted(await self._redis.smembers(READY_INDEXES_KEY))

    # ----- reads -----

    async def get_document(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        async with self._translate_errors():
            raw = await self._redis.get(self._doc_key(collection, doc_id))
        if not raw:
            return None
        return normalize_legacy_fields(collection, {"id": doc_id, **json.loads(raw)})

    async def get(self, query: Query) -> List[Dict[str, Any]]:
        """Runs a query. Results are exact: candidates are always re-filtered and sorted here."""
        async with self._translate_errors():
            await self._check_index(query)
            ids = await self._candidate_ids(query)
            documents = await self._load(query.collection, ids)

        return finalize_results(query, documents)

    async def _check_index(self, query: Query):
        ranges = query.range_fields
        if len(ranges) > 1:
            raise StoreError(f"Range filters on more than one field are not supported: {ranges}")
        sort_field = query.sort_field
        eq_fields = query.equality_fields
        if eq_fields and sort_field and sort_field not in eq_fields:
            name = composite_index_name(query.collection, eq_fields, sort_field)
            if not await self._redis.sismember(READY_INDEXES_KEY, name):
                raise IndexUnavailableError(name)

    async def _candidate_ids(self, query: Query) -> List[str]:
        collection = query.collection
        spec = INDEX_SPECS.get(collection, IndexSpec())
        equalities = [(f, _index_token(v)) for f, op, v in query.filters if op == "=="]
        equalities = [(f, token) for f, token in equalities if token is not None]
        sort_field = query.sort_field

        if len(equalities) == 1 and sort_field and ((equalities[0][0],), sort_field) in spec.composite:
            eq_field, token = equalities[0]
            low, high = self._score_bounds(query, sort_field)
            key = self._composite_key(collection, eq_field, token, sort_field)
            return await self._redis.zrangebyscore(key, low, high)

        indexed = [(f, token) for f, token in equalities if f in spec.equality]
        if indexed:
            keys = [self._eq_key(collection, f, token) for f, token in indexed]
            return list(await self._redis.sinter(*keys))

        ranges = query.range_fields
        if ranges and ranges[0] in spec.ordered:
            low, high = self._score_bounds(query, ranges[0])
            return await self._redis.zrangebyscore(self._ordered_key(collection, ranges[0]), low, high)

        if ranges and ranges[0] in spec.lexical:
            low, high = self._lex_bounds(query, ranges[0])
            members = await self._redis.zrangebylex(self._lex_key(collection, ranges[0]), low, high)
            return [member.split(_LEX_SEPARATOR, 1)[1] for member in members]

        return list(await self._redis.smembers(self._ids_key(collection)))

    @staticmethod
    def _score_bounds(query: Query, field_name: str) -> Tuple[str, str]:
        low, high = "-inf", "+inf"
        for f, op, value in query.filters:
            if f != field_name or op not in RANGE_OPS:
                continue
            score = parse_instant(value)
            if score is None:
                continue
            if op == ">=":
                low = repr(score)
            elif op == ">":
                low = f"({score!r}"
            elif op == "<=":
                high = repr(score)
            elif op == "<":
                high = f"({score!r}"
        return low, high

    @staticmethod
    def _lex_bounds(query: Query, field_name: str) -> Tuple[str, str]:
        # Coarse bounds; the exact comparison happens in Query.matches.
        low, high = "-", "+"
        for f, op, value in query.filters:
            if f != field_name or op not in RANGE_OPS:
                continue
            if op in (">=", ">"):
                low = f"[{value}"
            elif op == "<=":
                high = f"({value}\x01"
            elif op == "<":
                high = f"({value}"
        return low, high

    async def _load(self, collection: str, ids: List[str]) -> List[Dict[str, Any]]:
        if not ids:
            return []
        ids = list(ids)
        raw_documents = await self._redis.mget([self._doc_key(collection, doc_id) for doc_id in ids])
        return [
            normalize_legacy_fields(collection, {"id": doc_id, **json.loads(raw)})
            for doc_id, raw in zip(ids, raw_documents)
            if raw
        ]

    # ----- writes -----

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = self.new_id()
        await self._commit([_WriteOp("set", collection, doc_id, _to_plain(data))])
        return doc_id

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False):
        await self._commit([_WriteOp("set", collection, doc_id, _to_plain(data), merge)])

    async def update(self, collection: str, doc_id: str, data: Dict[str, Any]):
        await self._commit([_WriteOp("update", collection, doc_id, _to_plain(data))])

    async def delete(self, collection: str, doc_id: str):
        await self._commit([_WriteOp("delete", collection, doc_id)])

    async def try_claim(self, name: str, ttl_seconds: int) -> bool:
        """Atomically claims `name` for `ttl_seconds`. False when someone else holds it."""
        async with self._translate_errors():
            return bool(await self._redis.set(f"claims:{name}", "1", nx=True, ex=ttl_seconds))

    async def release_claim(self, name: str):
        async with self._translate_errors():
            await self._redis.delete(f"claims:{name}")

    async def _commit(self, ops: List[_WriteOp]):
        if not ops:
            return
        if len(ops) > self.batch_limit:
            raise BatchLimitExceededError(f"A batch can hold at most {self.batch_limit} operations.")

        for attempt in range(1, _MAX_COMMIT_ATTEMPTS + 1):
            try:
                async with self._translate_errors():
                    await self._commit_once(ops)
                return
            except redis_exceptions.WatchError:
                logger.debug(f"Watched documents changed during commit (attempt {attempt}), retrying.")
        raise ConcurrentModificationError("Documents kept changing while the batch was being committed.")

    async def _commit_once(self, ops: List[_WriteOp]):
        locations: Dict[str, Tuple[str, str]] = {}
        for op in ops:
            locations[self._doc_key(op.collection, op.doc_id)] = (op.collection, op.doc_id)
        keys = sorted(locations)

        async with self._redis.pipeline(transaction=True) as pipe:
            await pipe.watch(*keys)
            original: Dict[str, Optional[Dict[str, Any]]] = {}
            for key in keys:
                raw = await pipe.get(key)
                original[key] = json.loads(raw) if raw else None

            state = dict(original)
            for op in ops:
                key = self._doc_key(op.collection, op.doc_id)
                current = state[key]
                if op.kind == "delete":
                    state[key] = None
                elif op.kind == "update":
                    if current is None:
                        raise DocumentNotFoundError(op.collection, op.doc_id)
                    state[key] = {**current, **op.data}
                elif op.merge and current is not None:
                    state[key] = {**current, **op.data}
                else:
                    state[key] = dict(op.data)
                if state[key] is not None:
                    normalize_legacy_fields(op.collection, state[key])

            pipe.multi()
            changes = []
            for key in keys:
                collection, doc_id = locations[key]
                old, new = original[key], state[key]
                if old is not None:
                    self._queue_indexes(pipe, collection, doc_id, old, add=False)
                if new is None:
                    if old is not None:
                        pipe.delete(key)
                        pipe.srem(self._ids_key(collection), doc_id)
                        changes.append((collection, doc_id, "removed"))
                    continue
                pipe.set(key, json.dumps(new))
                pipe.sadd(self._ids_key(collection), doc_id)
                self._queue_indexes(pipe, collection, doc_id, new, add=True)
                changes.append((collection, doc_id, "added" if old is None else "modified"))

            for collection, doc_id, kind in changes:
                pipe.publish(self.changes_channel(collection), json.dumps({"type": kind, "id": doc_id}))
            await pipe.execute()

    def _queue_indexes(self, pipe, collection: str, doc_id: str, data: Dict[str, Any], add: bool):
        spec = INDEX_SPECS.get(collection)
        if spec is None:
            return
        for field_name in spec.equality:
            token = _index_token(data.get(field_name))
            if token is None:
                continue
            key = self._eq_key(collection, field_name, token)
            if add:
                pipe.sadd(key, doc_id)
            else:
                pipe.srem(key, doc_id)
        for field_name in spec.ordered:
            key = self._ordered_key(collection, field_name)
            score = parse_instant(data.get(field_name))
            if not add:
                pipe.zrem(key, doc_id)
            elif score is not None:
                pipe.zadd(key, {doc_id: score})
        for field_name in spec.lexical:
            value = data.get(field_name)
            if not isinstance(value, str):
                continue
            member = f"{value}{_LEX_SEPARATOR}{doc_id}"
            key = self._lex_key(collection, field_name)
            if add:
                pipe.zadd(key, {member: 0})
            else:
                pipe.zrem(key, member)
        for eq_fields, ordered_field in spec.composite:
            if len(eq_fields) != 1:
                continue
            token = _index_token(data.get(eq_fields[0]))
            if token is None:
                continue
            key = self._composite_key(collection, eq_fields[0], token, ordered_field)
            score = parse_instant(data.get(ordered_field))
            if not add:
                pipe.zrem(key, doc_id)
            elif score is not None:
                pipe.zadd(key, {doc_id: score})

    # ----- subscriptions -----

    async def open_change_feed(self, collection: str, poll_interval: float = 1.0) -> ChangeFeed:
        async with self._translate_errors():
            feed = ChangeFeed(self._redis.pubsub(), self.changes_channel(collection), poll_interval)
            await feed.start()
        return feed

    async def close(self):
        await self._redis.aclose()
