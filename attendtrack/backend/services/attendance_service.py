import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..config.config import settings
from ..db.redis_client import Query, RedisDocumentStore
from ..db.store_errors import DocumentNotFoundError, StoreError
from ..models.db_models import ATTENDANCE_STATUSES, AttendanceRecord, AttendanceStatus
from ..tools.calendar_days import format_local_date, format_local_time, local_date, local_day_bounds
from .duplicate_detector import DuplicateDetector
from .errors import (
    DuplicateAttendanceError,
    InvalidInputError,
    RecordNotFoundError,
    ServiceError,
    StoreUnavailableError,
)
from .query_fallback import get_with_index_fallback

logger = logging.getLogger(__name__)

# Fields an edit may never touch
PROTECTED_FIELDS = {"id", "barcodeId", "idNumber", "timestamp", "createdAt", "recordedBy", "duplicateCheckMethod"}
DAILY_CLAIM_TTL_SECONDS = 2 * 24 * 60 * 60


def daily_claim_name(barcode_id: str, when: Any) -> Optional[str]:
    day = local_date(when)
    if not barcode_id or day is None:
        return None
    return f"attendance:{barcode_id}:{day.isoformat()}"


async def release_daily_claims(store: RedisDocumentStore, documents: List[Dict[str, Any]]):
    """
    Frees the (barcode, local day) claims held by deleted records so the
    student can be scanned again that day. Failures are logged, not raised.
    """
    for document in documents:
        name = daily_claim_name(document.get("barcodeId"), document.get("timestamp"))
        if name is None:
            continue
        try:
            await store.release_claim(name)
        except StoreError as e:
            logger.warning(f"Could not release daily claim {name}: {e}")


class AttendanceService:
    """
    The only entry point that creates attendance records.

    The duplicate check and the write are separate store calls, so two scans
    of the same barcode at the same moment can both pass the check. With
    strict_daily_uniqueness the recorder additionally claims the
    (barcode, local day) key before writing, which closes that window.
    """
    def __init__(
        self,
        store: RedisDocumentStore,
        detector: Optional[DuplicateDetector] = None,
        strict_daily_uniqueness: Optional[bool] = None,
    ):
        self.store = store
        self.detector = detector or DuplicateDetector(store)
        self.strict_daily_uniqueness = (
            settings.STRICT_DAILY_UNIQUENESS if strict_daily_uniqueness is None else strict_daily_uniqueness
        )

    async def record_attendance(
        self,
        barcode_id: Any,
        recorded_by: str = "unknown",
        extra: Optional[Dict[str, Any]] = None,
    ) -> AttendanceRecord:
        student_id = str(barcode_id).strip() if barcode_id is not None else ""
        if not student_id:
            raise InvalidInputError("Invalid ID number provided")

        logger.info(f"Recording attendance for ID: {student_id}")
        check = await self.detector.check_duplicate_attendance(student_id)

        if check.is_duplicate:
            existing = check.existing_record
            raise DuplicateAttendanceError(
                f"Duplicate attendance detected! ID {student_id} was already recorded today "
                f"({format_local_date(existing.timestamp)}) at {format_local_time(existing.timestamp)}. "
                f"Detection method: {check.method}",
                barcode_id=student_id,
                existing_record=existing,
                method=check.method,
            )

        if check.error:
            logger.warning(
                f"Duplicate check failed ({check.error}), proceeding with caution. "
                f"Please manually verify no duplicate exists for ID {student_id}"
            )

        now = datetime.now(timezone.utc)
        claim_name = None
        if self.strict_daily_uniqueness:
            claim_name = daily_claim_name(student_id, now)
            try:
                claimed = await self.store.try_claim(claim_name, DAILY_CLAIM_TTL_SECONDS)
            except StoreError as e:
                raise ServiceError(f"Failed to record attendance: {e}") from e
            if not claimed:
                raise DuplicateAttendanceError(
                    f"Duplicate attendance detected! ID {student_id} was already recorded today "
                    f"({format_local_date(now)}). Detection method: daily_claim",
                    barcode_id=student_id,
                    method="daily_claim",
                )

        # Caller-supplied fields first so they can never override the server-assigned ones
        document = dict(extra or {})
        document.update({
            "barcodeId": student_id,
            "timestamp": now,
            "status": AttendanceStatus.PRESENT.value,
            "recordedBy": recorded_by or "unknown",
            "duplicateCheckMethod": check.method,
            "createdAt": now,
        })

        try:
            record_id = await self.store.add("attendance", document)
        except StoreError as e:
            logger.error(f"Failed to record attendance for ID {student_id}", exc_info=True)
            if claim_name:
                await self.store.release_claim(claim_name)
            raise ServiceError(f"Failed to record attendance: {e}") from e

        record = AttendanceRecord.model_validate({**document, "id": record_id})
        record.duplicate_check_warning = check.error
        logger.info(f"Attendance recorded for ID {student_id} (record {record_id}, method {check.method})")
        return record

    async def get_attendance_records(self, filters: Optional[Dict[str, Any]] = None) -> List[AttendanceRecord]:
        """
        Records ordered newest first. Supported filters: barcode_id,
        start_date + end_date, status, limit.
        """
        filters = filters or {}
        query = Query("attendance")
        if filters.get("barcode_id"):
            query = query.where("barcodeId", "==", str(filters["barcode_id"]).strip())
        if filters.get("status"):
            query = query.where("status", "==", filters["status"])
        if filters.get("start_date") and filters.get("end_date"):
            query = query.where("timestamp", ">=", filters["start_date"]).where("timestamp", "<=", filters["end_date"])
        query = query.order_by("timestamp", descending=True)
        if filters.get("limit"):
            query = query.limit(int(filters["limit"]))

        try:
            documents, _ = await get_with_index_fallback(self.store, query)
        except StoreError as e:
            logger.error("Failed to fetch attendance records", exc_info=True)
            raise StoreUnavailableError(f"Failed to fetch attendance records: {e}") from e
        return [AttendanceRecord.model_validate(document) for document in documents]

    async def get_today_attendance_count(self) -> int:
        start, end = local_day_bounds()
        try:
            records = await self.get_attendance_records({"start_date": start, "end_date": end})
        except StoreUnavailableError:
            logger.error("Failed to get today's attendance count", exc_info=True)
            return 0
        return len(records)

    async def has_attended_today(self, barcode_id: str) -> bool:
        check = await self.detector.check_duplicate_attendance(str(barcode_id).strip())
        return check.is_duplicate

    async def update_attendance_record(self, record_id: str, changes: Dict[str, Any], actor: str) -> AttendanceRecord:
        """Single-record edit. Only the status and free-form fields may change."""
        changes = {key: value for key, value in (changes or {}).items() if key not in PROTECTED_FIELDS}
        if not changes:
            raise InvalidInputError("No editable fields provided")
        if "status" in changes and changes["status"] not in ATTENDANCE_STATUSES:
            raise InvalidInputError(f"Invalid status: {changes['status']}")

        now = datetime.now(timezone.utc)
        changes.update({"updatedAt": now, "updatedBy": actor, "lastModified": now})
        try:
            await self.store.update("attendance", record_id, changes)
            document = await self.store.get_document("attendance", record_id)
        except DocumentNotFoundError as e:
            raise RecordNotFoundError(f"Attendance record {record_id} not found") from e
        except StoreError as e:
            raise ServiceError(f"Failed to update attendance record: {e}") from e
        logger.info(f"Attendance record {record_id} updated by {actor}")
        return AttendanceRecord.model_validate(document)

    async def delete_attendance_record(self, record_id: str, actor: str):
        try:
            existing = await self.store.get_document("attendance", record_id)
            if existing is None:
                raise RecordNotFoundError(f"Attendance record {record_id} not found")
            await self.store.delete("attendance", record_id)
        except StoreError as e:
            raise ServiceError(f"Failed to delete attendance record: {e}") from e
        await release_daily_claims(self.store, [existing])
        logger.info(f"Attendance record {record_id} deleted by {actor}")

