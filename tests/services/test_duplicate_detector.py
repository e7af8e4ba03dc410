from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from attendtrack.backend.db.store_errors import IndexUnavailableError, StoreConnectionError
from attendtrack.backend.services.duplicate_detector import (
    CompositeIndexStrategy,
    DuplicateDetector,
    FullScanStrategy,
    OrderedScanStrategy,
)

# Midday local time keeps "same day" away from midnight in every time zone
REFERENCE = datetime(2025, 3, 10, 12, 0).astimezone()


async def add_scan(store, barcode_id: str, when: datetime) -> str:
    return await store.add("attendance", {"barcodeId": barcode_id, "timestamp": when, "status": "Present"})


def failing_strategy(error):
    strategy = AsyncMock()
    strategy.method = "broken"
    strategy.check.side_effect = error
    return strategy


@pytest.mark.asyncio
class TestDuplicateDetector:

    async def test_same_day_record_is_a_duplicate(self, store):
        record_id = await add_scan(store, "2025CS001", REFERENCE - timedelta(hours=2))
        detector = DuplicateDetector(store)

        result = await detector.check_duplicate_attendance("2025CS001", reference_date=REFERENCE)

        assert result.is_duplicate
        assert result.method == "composite_index"
        assert result.existing_record.id == record_id
        assert result.error is None

    async def test_previous_day_record_is_not_a_duplicate(self, store):
        await add_scan(store, "2025CS001", REFERENCE - timedelta(days=1))
        detector = DuplicateDetector(store)

        result = await detector.check_duplicate_attendance("2025CS001", reference_date=REFERENCE)

        assert not result.is_duplicate
        assert result.existing_record is None

    async def test_other_student_is_not_a_duplicate(self, store):
        await add_scan(store, "2025CS002", REFERENCE)
        detector = DuplicateDetector(store)

        result = await detector.check_duplicate_attendance("2025CS001", reference_date=REFERENCE)

        assert not result.is_duplicate

    async def test_missing_index_falls_back_to_local_filter(self, bare_store):
        """Scenario: without the compound index both indexed tiers fail and the full scan answers."""
        await add_scan(bare_store, "2025CS001", REFERENCE - timedelta(hours=1))
        detector = DuplicateDetector(bare_store)

        result = await detector.check_duplicate_attendance("2025CS001", reference_date=REFERENCE)

        assert result.is_duplicate
        assert result.method == "local_filter"

    async def test_second_tier_answers_when_first_fails(self, store):
        await add_scan(store, "2025CS001", REFERENCE)
        detector = DuplicateDetector(store, strategies=[
            failing_strategy(IndexUnavailableError("attendance:barcodeId+timestamp")),
            OrderedScanStrategy(store),
            FullScanStrategy(store),
        ])

        result = await detector.check_duplicate_attendance("2025CS001", reference_date=REFERENCE)

        assert result.is_duplicate
        assert result.method == "fallback_filter"

    async def test_ordered_scan_only_sees_its_window(self, store):
        """Scenario: the bounded scan misses a same-day record hidden behind newer ones."""
        await add_scan(store, "2025CS001", REFERENCE)
        for days in (1, 2, 3):
            await add_scan(store, "2025CS001", REFERENCE + timedelta(days=days))

        assert await OrderedScanStrategy(store, limit=2).check("2025CS001", REFERENCE) is None
        assert await FullScanStrategy(store).check("2025CS001", REFERENCE) is not None

    async def test_all_strategies_failing_reports_unknown(self, store):
        detector = DuplicateDetector(store, strategies=[
            failing_strategy(StoreConnectionError("down")),
            failing_strategy(StoreConnectionError("still down")),
        ])

        result = await detector.check_duplicate_attendance("2025CS001", reference_date=REFERENCE)

        assert not result.is_duplicate
        assert result.method == "failed"
        assert "still down" in result.error

    async def test_legacy_id_number_record_is_a_duplicate(self, store):
        """Scenario: a record stored with only idNumber still counts as today's scan."""
        await store.add("attendance", {"idNumber": "2025CS001", "timestamp": (REFERENCE - timedelta(hours=1)).isoformat()})

        result = await DuplicateDetector(store).check_duplicate_attendance("2025CS001", reference_date=REFERENCE)

        assert result.is_duplicate
        assert result.method == "composite_index"
        assert result.existing_record.barcode_id == "2025CS001"
        assert await OrderedScanStrategy(store).check("2025CS001", REFERENCE) is not None
        assert await FullScanStrategy(store).check("2025CS001", REFERENCE) is not None

    @pytest.mark.parametrize("days_back", [0, 1, 2, 3, 5])
    async def test_ordered_scan_agrees_with_composite_index(self, store, days_back):
        """Scenario: inside the scan window both indexed tiers give the same answer."""
        for days in (0, 1, 3, 4):
            await add_scan(store, "2025CS001", REFERENCE - timedelta(days=days))
        await add_scan(store, "2025CS002", REFERENCE - timedelta(days=2))
        reference = REFERENCE - timedelta(days=days_back)

        indexed = await CompositeIndexStrategy(store).check("2025CS001", reference)
        scanned = await OrderedScanStrategy(store).check("2025CS001", reference)

        assert (indexed is None) == (scanned is None)
        assert indexed is None or indexed.id == scanned.id
