import logging
from datetime import datetime
from typing import List, Optional, Sequence

from ..config.config import settings
from ..db.redis_client import Query, RedisDocumentStore
from ..db.store_errors import StoreError
from ..models.db_models import AttendanceRecord
from ..models.results import DuplicateCheckResult
from ..tools.calendar_days import is_same_day, local_day_bounds

logger = logging.getLogger(__name__)


class DetectionStrategy:
    """
    One way of answering "is there already a record for this barcode on this day".
    `check` returns the same-day record (or None) and raises StoreError when
    the strategy cannot run, so the next strategy can take over.
    """
    method: str = ""
    correctness: str = ""

    def __init__(self, store: RedisDocumentStore):
        self.store = store

    async def check(self, barcode_id: str, reference: datetime) -> Optional[AttendanceRecord]:
        raise NotImplementedError


class CompositeIndexStrategy(DetectionStrategy):
    method = "composite_index"
    correctness = "exact"

    async def check(self, barcode_id, reference):
        start, end = local_day_bounds(reference)
        query = (
            Query("attendance")
            .where("barcodeId", "==", barcode_id)
            .where("timestamp", ">=", start)
            .where("timestamp", "<=", end)
            .limit(1)
        )
        documents = await self.store.get(query)
        return AttendanceRecord.model_validate(documents[0]) if documents else None


class OrderedScanStrategy(DetectionStrategy):
    method = "fallback_filter"
    correctness = "exact unless the student has more than `limit` records newer than the reference day"

    def __init__(self, store: RedisDocumentStore, limit: Optional[int] = None):
        super().__init__(store)
        self.limit = limit or settings.DUPLICATE_SCAN_LIMIT

    async def check(self, barcode_id, reference):
        query = (
            Query("attendance")
            .where("barcodeId", "==", barcode_id)
            .order_by("timestamp", descending=True)
            .limit(self.limit)
        )
        return _first_same_day(await self.store.get(query), reference)


class FullScanStrategy(DetectionStrategy):
    method = "local_filter"
    correctness = "exact, cost grows with the student's record count"

    async def check(self, barcode_id, reference):
        documents = await self.store.get(Query("attendance").where("barcodeId", "==", barcode_id))
        return _first_same_day(documents, reference)


def _first_same_day(documents: List[dict], reference: datetime) -> Optional[AttendanceRecord]:
    for document in documents:
        if is_same_day(document.get("timestamp"), reference):
            return AttendanceRecord.model_validate(document)
    return None


class DuplicateDetector:
    """
    Runs the detection strategies in order, falling back to the next one
    whenever the store cannot serve the current one (typically a compound
    index that is not provisioned yet).
    """
    def __init__(self, store: RedisDocumentStore, strategies: Optional[Sequence[DetectionStrategy]] = None):
        self.store = store
        self.strategies = list(strategies) if strategies is not None else [
            CompositeIndexStrategy(store),
            OrderedScanStrategy(store),
            FullScanStrategy(store),
        ]

    async def check_duplicate_attendance(self, barcode_id: str, reference_date: Optional[datetime] = None) -> DuplicateCheckResult:
        reference = reference_date or datetime.now().astimezone()
        last_error: Optional[StoreError] = None

        for strategy in self.strategies:
            try:
                existing = await strategy.check(barcode_id, reference)
            except StoreError as e:
                logger.warning(f"Duplicate check via '{strategy.method}' failed for {barcode_id}: {e}")
                last_error = e
                continue
            return DuplicateCheckResult(
                is_duplicate=existing is not None,
                method=strategy.method,
                existing_record=existing,
            )

        logger.error(f"Every duplicate check strategy failed for {barcode_id}; treating as unknown.")
        return DuplicateCheckResult(
            is_duplicate=False,
            method="failed",
            error=str(last_error) if last_error else "No duplicate check strategy available",
        )
