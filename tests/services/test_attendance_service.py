from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from attendtrack.backend.db.redis_client import Query
from attendtrack.backend.db.store_errors import StoreConnectionError
from attendtrack.backend.models.results import DuplicateCheckResult
from attendtrack.backend.services.attendance_service import AttendanceService
from attendtrack.backend.services.errors import (
    DuplicateAttendanceError,
    InvalidInputError,
    RecordNotFoundError,
    ServiceError,
)


def never_duplicate_detector(error=None):
    detector = AsyncMock()
    detector.check_duplicate_attendance.return_value = DuplicateCheckResult(
        is_duplicate=False, method="failed" if error else "composite_index", error=error
    )
    return detector


@pytest.mark.asyncio
class TestRecordAttendance:

    async def test_first_scan_is_recorded(self, store):
        service = AttendanceService(store)

        record = await service.record_attendance("2025CS001", recorded_by="admin-1")

        stored = await store.get_document("attendance", record.id)
        assert stored["barcodeId"] == "2025CS001"
        assert stored["status"] == "Present"
        assert stored["recordedBy"] == "admin-1"
        assert stored["duplicateCheckMethod"] == "composite_index"
        assert record.duplicate_check_warning is None

    async def test_second_scan_same_day_is_rejected(self, store):
        """Scenario: the same ID scanned twice on one day produces exactly one record."""
        service = AttendanceService(store)
        first = await service.record_attendance("123")

        with pytest.raises(DuplicateAttendanceError) as exc_info:
            await service.record_attendance("123")

        error = exc_info.value
        assert str(error).startswith("Duplicate attendance detected! ID 123 was already recorded today (")
        assert first.timestamp.astimezone().strftime("%H:%M:%S") in str(error)
        assert str(error).endswith("Detection method: composite_index")
        assert error.existing_record.id == first.id
        assert len(await service.get_attendance_records({"barcode_id": "123"})) == 1

    async def test_legacy_record_blocks_second_scan(self, store):
        """Scenario: a same-day record written with only idNumber blocks a new scan."""
        legacy_id = await store.add("attendance", {
            "idNumber": "123",
            "timestamp": datetime.now(timezone.utc) - timedelta(seconds=5),
            "status": "Present",
        })
        service = AttendanceService(store)

        with pytest.raises(DuplicateAttendanceError) as exc_info:
            await service.record_attendance("123", recorded_by="adminA")

        assert exc_info.value.existing_record.id == legacy_id
        assert len(await store.get(Query("attendance").where("barcodeId", "==", "123"))) == 1

    async def test_yesterdays_record_does_not_block(self, store):
        await store.add("attendance", {
            "barcodeId": "2025CS001",
            "timestamp": datetime.now(timezone.utc) - timedelta(days=1, hours=1),
            "status": "Present",
        })
        service = AttendanceService(store)

        record = await service.record_attendance("2025CS001")

        assert record.id is not None

    @pytest.mark.parametrize("barcode_id", [None, "", "   "])
    async def test_empty_id_is_rejected(self, store, barcode_id):
        with pytest.raises(InvalidInputError, match="Invalid ID number provided"):
            await AttendanceService(store).record_attendance(barcode_id)

    async def test_id_is_trimmed_and_stringified(self, store):
        service = AttendanceService(store)

        trimmed = await service.record_attendance("  2025CS001 ")
        numeric = await service.record_attendance(12345)

        assert trimmed.barcode_id == "2025CS001"
        assert numeric.barcode_id == "12345"

    async def test_extra_fields_cannot_override_core_fields(self, store):
        service = AttendanceService(store)

        record = await service.record_attendance("2025CS001", extra={"status": "Late", "room": "B-204"})

        stored = await store.get_document("attendance", record.id)
        assert stored["status"] == "Present"
        assert stored["room"] == "B-204"

    async def test_failed_duplicate_check_still_records_with_warning(self, store):
        service = AttendanceService(store, detector=never_duplicate_detector(error="index missing"))

        record = await service.record_attendance("2025CS001")

        assert record.duplicate_check_warning == "index missing"
        assert record.duplicate_check_method == "failed"

    async def test_strict_mode_claims_the_day(self, store):
        """Scenario: with a detector that never sees the first record, the daily claim still blocks."""
        service = AttendanceService(store, detector=never_duplicate_detector(), strict_daily_uniqueness=True)
        await service.record_attendance("2025CS001")

        with pytest.raises(DuplicateAttendanceError) as exc_info:
            await service.record_attendance("2025CS001")

        assert exc_info.value.method == "daily_claim"

    async def test_store_failure_is_a_service_error(self):
        mock_store = AsyncMock()
        mock_store.add.side_effect = StoreConnectionError("connection refused")
        service = AttendanceService(mock_store, detector=never_duplicate_detector(), strict_daily_uniqueness=False)

        with pytest.raises(ServiceError, match="Failed to record attendance"):
            await service.record_attendance("2025CS001")


@pytest.mark.asyncio
class TestAttendanceQueries:

    async def test_records_are_newest_first_and_limited(self, store):
        now = datetime.now(timezone.utc)
        for minutes in (30, 10, 20):
            await store.add("attendance", {"barcodeId": "2025CS001", "timestamp": now - timedelta(minutes=minutes)})
        service = AttendanceService(store)

        records = await service.get_attendance_records({"barcode_id": "2025CS001", "limit": 2})

        assert [r.timestamp for r in records] == [now - timedelta(minutes=10), now - timedelta(minutes=20)]

    async def test_missing_index_gives_same_results(self, bare_store):
        now = datetime.now(timezone.utc)
        for minutes in (30, 10, 20):
            await bare_store.add("attendance", {"barcodeId": "2025CS001", "timestamp": now - timedelta(minutes=minutes)})
        await bare_store.add("attendance", {"barcodeId": "2025CS002", "timestamp": now})
        service = AttendanceService(bare_store)

        records = await service.get_attendance_records({"barcode_id": "2025CS001", "limit": 2})

        assert [r.timestamp for r in records] == [now - timedelta(minutes=10), now - timedelta(minutes=20)]

    async def test_today_count_and_has_attended(self, store):
        service = AttendanceService(store)
        await service.record_attendance("2025CS001")
        await service.record_attendance("2025CS002")
        await store.add("attendance", {"barcodeId": "2025CS003", "timestamp": datetime.now(timezone.utc) - timedelta(days=2)})

        assert await service.get_today_attendance_count() == 2
        assert await service.has_attended_today("2025CS001")
        assert not await service.has_attended_today("2025CS003")


@pytest.mark.asyncio
class TestAttendanceEdits:

    async def test_update_status(self, store):
        service = AttendanceService(store)
        record = await service.record_attendance("2025CS001")

        updated = await service.update_attendance_record(record.id, {"status": "Late", "barcodeId": "hacked"}, actor="admin-1")

        assert updated.status == "Late"
        assert updated.barcode_id == "2025CS001"
        assert updated.updated_by == "admin-1"
        assert updated.updated_at is not None

    async def test_update_rejects_invalid_status(self, store):
        service = AttendanceService(store)
        record = await service.record_attendance("2025CS001")

        with pytest.raises(InvalidInputError):
            await service.update_attendance_record(record.id, {"status": "Sleeping"}, actor="admin-1")

    async def test_update_with_only_protected_fields(self, store):
        with pytest.raises(InvalidInputError, match="No editable fields"):
            await AttendanceService(store).update_attendance_record("x", {"timestamp": "2025-01-01"}, actor="a")

    async def test_update_missing_record(self, store):
        with pytest.raises(RecordNotFoundError):
            await AttendanceService(store).update_attendance_record("missing", {"status": "Late"}, actor="a")

    async def test_delete(self, store):
        service = AttendanceService(store)
        record = await service.record_attendance("2025CS001")

        await service.delete_attendance_record(record.id, actor="admin-1")

        assert await store.get_document("attendance", record.id) is None
        with pytest.raises(RecordNotFoundError):
            await service.delete_attendance_record(record.id, actor="admin-1")

    async def test_delete_frees_the_day_in_strict_mode(self, store):
        """Scenario: after an admin deletes today's record the student can be scanned again."""
        service = AttendanceService(store, strict_daily_uniqueness=True)
        first = await service.record_attendance("2025CS001")

        await service.delete_attendance_record(first.id, actor="admin-1")
        second = await service.record_attendance("2025CS001")

        assert second.id != first.id
