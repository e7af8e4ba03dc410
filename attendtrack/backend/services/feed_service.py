import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ValidationError

from ..db.redis_client import Query, RedisDocumentStore
from ..db.store_errors import StoreError
from ..models.db_models import AttendanceRecord
from .query_fallback import get_local, get_with_index_fallback

logger = logging.getLogger(__name__)

FeedCallback = Callable[
    [Optional[List[AttendanceRecord]], Optional[Exception]],
    Union[None, Awaitable[None]],
]


class FeedFilters(BaseModel):
    """Filters of a live feed. All given filters must match."""
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    status: Optional[str] = None
    barcode_id: Optional[str] = None
    limit: Optional[int] = None

    def to_query(self) -> Query:
        query = Query("attendance")
        if self.barcode_id:
            query = query.where("barcodeId", "==", self.barcode_id.strip())
        if self.status:
            query = query.where("status", "==", self.status)
        if self.start_date:
            query = query.where("timestamp", ">=", self.start_date)
        if self.end_date:
            query = query.where("timestamp", "<=", self.end_date)
        query = query.order_by("timestamp", descending=True)
        if self.limit:
            query = query.limit(self.limit)
        return query


@dataclass
class Subscription:
    handle: str
    query: Query
    callback: FeedCallback
    active: bool = True
    use_fallback: bool = False
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class SubscriptionRegistry:
    """Owns every live subscription of one application instance."""

    def __init__(self):
        self._subscriptions: Dict[str, Subscription] = {}

    def add(self, subscription: Subscription):
        self._subscriptions[subscription.handle] = subscription

    def remove(self, handle: str) -> Optional[Subscription]:
        return self._subscriptions.pop(handle, None)

    def get(self, handle: str) -> Optional[Subscription]:
        return self._subscriptions.get(handle)

    def __len__(self) -> int:
        return len(self._subscriptions)

    def __contains__(self, handle: str) -> bool:
        return handle in self._subscriptions

    async def close_all(self):
        subscriptions = list(self._subscriptions.values())
        self._subscriptions.clear()
        tasks = []
        for subscription in subscriptions:
            subscription.active = False
            if subscription.task is not None:
                subscription.task.cancel()
                tasks.append(subscription.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Closed {len(subscriptions)} live attendance subscriptions.")


class RecordCache:
    """Latest known version of every record a feed has delivered, by id."""

    def __init__(self):
        self._records: Dict[str, AttendanceRecord] = {}

    def upsert(self, records: List[AttendanceRecord]):
        for record in records:
            if record.id:
                self._records[record.id] = record

    def discard(self, record_id: str):
        self._records.pop(record_id, None)

    def get(self, record_id: str) -> Optional[AttendanceRecord]:
        return self._records.get(record_id)

    def values(self) -> List[AttendanceRecord]:
        return list(self._records.values())

    def clear(self):
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)


class AttendanceFeedService:
    """
    Live views over the attendance collection. Every change in the collection
    re-runs the subscription's query and hands the complete, newest-first
    snapshot to the callback, which is called as callback(records, None) or
    callback(None, error). Errors never escape the background task.
    """
    def __init__(
        self,
        store: RedisDocumentStore,
        registry: Optional[SubscriptionRegistry] = None,
        cache: Optional[RecordCache] = None,
    ):
        self.store = store
        self.registry = registry if registry is not None else SubscriptionRegistry()
        self.cache = cache if cache is not None else RecordCache()

    def subscribe(self, callback: FeedCallback, filters: Optional[FeedFilters] = None) -> Callable[[], None]:
        """Starts a live feed. Returns an unsubscribe function that is safe to call more than once."""
        query = (filters or FeedFilters()).to_query()
        subscription = Subscription(handle=uuid.uuid4().hex, query=query, callback=callback)
        self.registry.add(subscription)
        subscription.task = asyncio.create_task(self._run(subscription))
        logger.debug(f"Subscription {subscription.handle} started ({len(self.registry)} active).")

        def unsubscribe():
            if not subscription.active:
                return
            subscription.active = False
            self.registry.remove(subscription.handle)
            subscription.task.cancel()
            logger.debug(f"Subscription {subscription.handle} stopped.")

        return unsubscribe

    def subscribe_to_student_attendance(self, barcode_id: str, callback: FeedCallback) -> Callable[[], None]:
        return self.subscribe(callback, FeedFilters(barcode_id=barcode_id))

    async def _run(self, subscription: Subscription):
        feed = None
        try:
            feed = await self.store.open_change_feed("attendance")
            await self._push(subscription)
            async for change in feed:
                if not subscription.active:
                    break
                if change.get("type") == "removed":
                    self.cache.discard(change.get("id"))
                await self._push(subscription)
        except Exception as e:
            logger.error(f"Subscription {subscription.handle} lost its change feed: {e}")
            await self._deliver(subscription, None, e)
        finally:
            if feed is not None:
                await self._close_feed(subscription, feed)

    async def _close_feed(self, subscription: Subscription, feed):
        try:
            await feed.close()
        except Exception as e:
            logger.warning(f"Change feed of subscription {subscription.handle} did not close cleanly: {e}")

    async def _push(self, subscription: Subscription):
        try:
            if subscription.use_fallback:
                documents = await get_local(self.store, subscription.query)
            else:
                documents, used_fallback = await get_with_index_fallback(self.store, subscription.query)
                # Once the index was missing, keep ordering locally for this subscription
                subscription.use_fallback = used_fallback
        except StoreError as e:
            await self._deliver(subscription, None, e)
            return

        try:
            records = [AttendanceRecord.model_validate(document) for document in documents]
        except ValidationError as e:
            logger.error(f"Subscription {subscription.handle} read a malformed attendance record: {e}")
            await self._deliver(subscription, None, e)
            return
        self.cache.upsert(records)
        await self._deliver(subscription, records, None)

    async def _deliver(self, subscription: Subscription, records, error):
        if not subscription.active:
            return
        try:
            result = subscription.callback(records, error)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.error(f"Callback of subscription {subscription.handle} raised.", exc_info=True)
