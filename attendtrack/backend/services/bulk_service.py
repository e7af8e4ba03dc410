import asyncio
import csv
import io
import json
import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from openpyxl import Workbook
from pydantic import BaseModel, Field

from ..config.config import settings
from ..db.redis_client import Query, RedisDocumentStore
from ..db.store_errors import StoreError
from ..models.db_models import ATTENDANCE_STATUSES, AttendanceRecord, AttendanceStatus
from ..models.results import BatchError, BulkResult, ImportResult, RowError
from ..tools.calendar_days import format_local_date, format_local_time, local_date, to_datetime
from ..tools.departments import extract_department
from .analytics_service import as_records, daily_trends, hourly_trends
from .attendance_service import release_daily_claims
from .duplicate_detector import DuplicateDetector
from .errors import InvalidInputError, StoreUnavailableError
from .query_fallback import get_with_index_fallback
from .security_service import SecurityService

logger = logging.getLogger(__name__)

EXPORT_HEADERS = ["ID", "Barcode ID", "Date", "Time", "Status", "Created At", "Updated At", "Updated By"]
DASHBOARD_HEADERS = ["ID Number", "Date", "Time", "Status"]
EXPORT_FORMATS = ("csv", "json", "xlsx")
IMPORT_FORMATS = ("csv", "json")
REPORT_TYPES = ("summary", "detailed", "trends", "department")
_EXTRA_DATE_FORMATS = ("%m/%d/%Y %H:%M:%S", "%m/%d/%Y %H:%M", "%m/%d/%Y", "%Y/%m/%d %H:%M:%S", "%Y/%m/%d")


class DateRange(BaseModel):
    start: datetime
    end: datetime


class ExportOptions(BaseModel):
    format: str = "csv"
    date_range: Optional[DateRange] = None
    departments: List[str] = Field(default_factory=list)
    statuses: List[str] = Field(default_factory=list)
    barcode_ids: List[str] = Field(default_factory=list)
    include_headers: bool = True
    sort_order: str = "desc"


class ImportOptions(BaseModel):
    validate_data: bool = True
    skip_duplicates: bool = True
    imported_by: str = "admin"


class ReportOptions(BaseModel):
    report_type: str = "summary"
    date_range: Optional[DateRange] = None
    departments: List[str] = Field(default_factory=list)
    group_by: str = "date"


def _iso(value: Optional[datetime]) -> str:
    return value.astimezone(timezone.utc).isoformat() if value else ""


def _csv_text(rows: List[List[Any]]) -> str:
    output = io.StringIO()
    # Every field quoted, embedded quotes doubled
    writer = csv.writer(output, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerows(rows)
    return output.getvalue()


def _export_row(record: AttendanceRecord) -> List[str]:
    return [
        record.id or "",
        record.barcode_id or "",
        format_local_date(record.timestamp),
        format_local_time(record.timestamp),
        record.status or AttendanceStatus.PRESENT.value,
        _iso(record.created_at),
        _iso(record.updated_at),
        record.updated_by or "",
    ]


def format_dashboard_csv(records: List[Union[AttendanceRecord, Dict[str, Any]]]) -> str:
    rows = [DASHBOARD_HEADERS]
    for record in as_records(records):
        rows.append([
            record.barcode_id,
            format_local_date(record.timestamp),
            format_local_time(record.timestamp),
            record.status or AttendanceStatus.PRESENT.value,
        ])
    return _csv_text(rows)


def summarize_errors(errors: List[Union[BatchError, RowError, str]], limit: int = 5) -> List[str]:
    """Display form of an error list: the first `limit` entries, then "+N more"."""
    messages = []
    for error in errors:
        if isinstance(error, BatchError):
            messages.append(f"Batch {error.batch}: {error.error}")
        elif isinstance(error, RowError):
            messages.append(f"Row {error.row}: {', '.join(error.errors)}")
        else:
            messages.append(str(error))
    if len(messages) > limit:
        return messages[:limit] + [f"+{len(messages) - limit} more"]
    return messages


def parse_import_timestamp(date_value: Any, time_value: Any = None) -> Optional[datetime]:
    """Date (plus optional separate time) of an import row as an aware datetime."""
    if date_value is None or str(date_value).strip() == "":
        return None
    text = str(date_value).strip()
    if time_value and str(time_value).strip() and "T" not in text and ":" not in text:
        text = f"{text} {str(time_value).strip()}"
    parsed = to_datetime(text)
    if parsed is not None:
        return parsed
    for date_format in _EXTRA_DATE_FORMATS:
        try:
            return datetime.strptime(text, date_format).astimezone()
        except ValueError:
            continue
    return None


def _normalize_header(header: str) -> str:
    return "".join(header.replace('"', "").split()).lower()


def parse_csv_records(raw: str) -> List[Dict[str, Any]]:
    """
    Rows of an import CSV keyed by normalized header
    ("Barcode ID" -> "barcodeid"). Blank lines are ignored.
    """
    reader = csv.reader(io.StringIO(raw.strip()))
    rows = [row for row in reader if any(cell.strip() for cell in row)]
    if not rows:
        return []
    headers = [_normalize_header(header) for header in rows[0]]
    records = []
    for row in rows[1:]:
        values = {header: (row[index].strip() if index < len(row) else "") for index, header in enumerate(headers)}
        records.append({
            "barcodeId": values.get("barcodeid") or values.get("idnumber") or "",
            "date": values.get("date") or values.get("timestamp") or "",
            "time": values.get("time") or "",
            "status": values.get("status") or "",
        })
    return records


def _normalize_json_record(item: Any) -> Dict[str, Any]:
    if not isinstance(item, dict):
        return {"barcodeId": "", "date": "", "status": ""}
    return {
        "barcodeId": str(item.get("barcodeId") or item.get("barcode_id") or item.get("idNumber") or "").strip(),
        "date": item.get("date") or item.get("timestamp") or "",
        "time": item.get("time") or "",
        "status": item.get("status") or "",
    }


def validate_import_record(record: Dict[str, Any]) -> List[str]:
    errors = []
    if not record.get("barcodeId"):
        errors.append("Barcode ID is required")
    if not record.get("date"):
        errors.append("Date is required")
    elif parse_import_timestamp(record["date"], record.get("time")) is None:
        errors.append("Invalid date format")
    if record.get("status") and record["status"] not in ATTENDANCE_STATUSES:
        errors.append("Invalid status value")
    return errors


class BulkService:
    """
    Batched status updates and deletes, import and export, reports.

    Each batch is one atomic store commit of at most `batch_size` writes.
    A failing batch is recorded in the result and the remaining batches
    still run, so a multi-batch call can partially succeed.
    """
    def __init__(
        self,
        store: RedisDocumentStore,
        security: SecurityService,
        detector: Optional[DuplicateDetector] = None,
        batch_size: Optional[int] = None,
    ):
        self.store = store
        self.security = security
        self.detector = detector or DuplicateDetector(store)
        self.batch_size = min(batch_size or settings.BATCH_WRITE_LIMIT, store.batch_limit)

    def _chunks(self, items: List[Any]):
        for start in range(0, len(items), self.batch_size):
            yield start // self.batch_size + 1, items[start:start + self.batch_size]

    async def bulk_update_status(self, record_ids: List[str], new_status: str, updated_by: str = "admin") -> BulkResult:
        if not record_ids:
            raise InvalidInputError("No record IDs provided")
        if new_status not in ATTENDANCE_STATUSES:
            raise InvalidInputError("Invalid status provided")

        result = BulkResult()
        for number, batch_ids in self._chunks(list(record_ids)):
            now = datetime.now(timezone.utc)
            try:
                batch = self.store.batch()
                for record_id in batch_ids:
                    batch.update("attendance", record_id, {
                        "status": new_status,
                        "updatedAt": now,
                        "updatedBy": updated_by,
                        "lastModified": now,
                    })
                await batch.commit()
                result.success += len(batch_ids)
            except StoreError as e:
                logger.error(f"Status update batch {number} failed: {e}")
                result.failed += len(batch_ids)
                result.errors.append(BatchError(batch=number, record_ids=batch_ids, error=str(e)))

        logger.info(f"Bulk status update to {new_status} by {updated_by}: {result.success} ok, {result.failed} failed")
        await self.security.log_bulk_operation(
            updated_by, "BULK_STATUS_UPDATE", len(record_ids),
            {"success": result.success, "failed": result.failed, "status": new_status},
        )
        return result

    async def bulk_delete_records(self, record_ids: List[str], deleted_by: str = "admin") -> BulkResult:
        if not record_ids:
            raise InvalidInputError("No record IDs provided")

        # Audit first so the trail exists even if some deletes fail
        await self.security.log_bulk_operation(
            deleted_by, "BULK_DELETE", len(record_ids),
            {"recordIds": list(record_ids), "deletedBy": deleted_by},
        )

        result = BulkResult()
        for number, batch_ids in self._chunks(list(record_ids)):
            try:
                deleted = await asyncio.gather(*(self.store.get_document("attendance", record_id) for record_id in batch_ids))
                batch = self.store.batch()
                for record_id in batch_ids:
                    batch.delete("attendance", record_id)
                await batch.commit()
                result.success += len(batch_ids)
            except StoreError as e:
                logger.error(f"Delete batch {number} failed: {e}")
                result.failed += len(batch_ids)
                result.errors.append(BatchError(batch=number, record_ids=batch_ids, error=str(e)))
                continue
            await release_daily_claims(self.store, [document for document in deleted if document])

        logger.info(f"Bulk delete by {deleted_by}: {result.success} ok, {result.failed} failed")
        return result

    async def _fetch_records(
        self,
        date_range: Optional[DateRange] = None,
        statuses: Optional[List[str]] = None,
        departments: Optional[List[str]] = None,
        barcode_ids: Optional[List[str]] = None,
        descending: bool = True,
    ) -> List[AttendanceRecord]:
        query = Query("attendance")
        if date_range:
            query = query.where("timestamp", ">=", date_range.start).where("timestamp", "<=", date_range.end)
        if statuses:
            query = query.where("status", "in", statuses)
        query = query.order_by("timestamp", descending=descending)

        try:
            documents, _ = await get_with_index_fallback(self.store, query)
        except StoreError as e:
            logger.error("Failed to load attendance records", exc_info=True)
            raise StoreUnavailableError(f"Failed to load attendance records: {e}") from e

        records = as_records(documents)
        if departments:
            wanted = set(departments)
            records = [record for record in records if extract_department(record.barcode_id) in wanted]
        if barcode_ids:
            allowed = set(barcode_ids)
            records = [record for record in records if record.barcode_id in allowed]
        return records

    async def export_attendance_data(self, options: Optional[ExportOptions] = None, exported_by: str = "admin") -> Union[str, bytes]:
        """CSV or JSON text, or xlsx bytes."""
        options = options or ExportOptions()
        export_format = options.format.lower()
        if export_format not in EXPORT_FORMATS:
            raise InvalidInputError(f"Unsupported format: {options.format}")

        records = await self._fetch_records(
            date_range=options.date_range,
            statuses=options.statuses,
            departments=options.departments,
            barcode_ids=options.barcode_ids,
            descending=options.sort_order.lower() != "asc",
        )
        await self.security.log_data_export(exported_by, export_format, options.model_dump(mode="json", exclude={"format"}))
        logger.info(f"Exporting {len(records)} attendance records as {export_format} for {exported_by}")

        if export_format == "json":
            return json.dumps(
                [{"id": record.id, **record.to_document()} for record in records],
                indent=2,
            )

        rows = [_export_row(record) for record in records]
        if options.include_headers:
            rows.insert(0, EXPORT_HEADERS)
        if export_format == "csv":
            return _csv_text(rows)
        return self._to_xlsx(rows)

    @staticmethod
    def _to_xlsx(rows: List[List[Any]]) -> bytes:
        workbook = Workbook()
        sheet = workbook.active
        sheet.title = "Attendance"
        for row in rows:
            sheet.append(row)
        output = io.BytesIO()
        workbook.save(output)
        return output.getvalue()

    async def import_attendance_data(self, raw: Any, import_format: str = "csv", options: Optional[ImportOptions] = None) -> ImportResult:
        options = options or ImportOptions()
        import_format = import_format.lower()
        if import_format not in IMPORT_FORMATS:
            raise InvalidInputError(f"Unsupported import format: {import_format}")
        if import_format == "csv":
            records = parse_csv_records(raw if isinstance(raw, str) else raw.decode("utf-8"))
        else:
            try:
                payload = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
            except ValueError as e:
                raise InvalidInputError(f"Invalid JSON payload: {e}") from e
            if not isinstance(payload, list):
                raise InvalidInputError("JSON import payload must be an array of records")
            records = [_normalize_json_record(item) for item in payload]

        result = ImportResult(total=len(records))

        # (row number, record, timestamp)
        candidates: List[Tuple[int, Dict[str, Any], datetime]] = []
        for row, record in enumerate(records, start=1):
            if options.validate_data:
                errors = validate_import_record(record)
                if errors:
                    result.errors.append(RowError(row=row, record=record, errors=errors))
                    continue
            timestamp = parse_import_timestamp(record.get("date"), record.get("time"))
            if timestamp is None or not record.get("barcodeId"):
                result.errors.append(RowError(row=row, record=record, errors=["Invalid date format"]))
                continue
            candidates.append((row, record, timestamp))

        if options.skip_duplicates:
            candidates = await self._drop_duplicates(candidates, result)

        now = datetime.now(timezone.utc)
        for number, chunk in self._chunks(candidates):
            try:
                batch = self.store.batch()
                for _, record, timestamp in chunk:
                    batch.create("attendance", {
                        "barcodeId": record["barcodeId"],
                        "timestamp": timestamp,
                        "status": record.get("status") or AttendanceStatus.PRESENT.value,
                        "recordedBy": options.imported_by,
                        "importedBy": options.imported_by,
                        "importedAt": now,
                        "createdAt": now,
                        "duplicateCheckMethod": "import",
                    })
                await batch.commit()
                result.imported += len(chunk)
            except StoreError as e:
                logger.error(f"Import batch {number} failed: {e}")
                result.batch_errors.append(BatchError(
                    batch=number,
                    record_ids=[record["barcodeId"] for _, record, _ in chunk],
                    error=str(e),
                ))

        logger.info(
            f"Import by {options.imported_by}: {result.imported}/{result.total} imported, "
            f"{result.skipped} skipped, {len(result.errors)} invalid"
        )
        await self.security.log_bulk_operation(
            options.imported_by, "BULK_IMPORT", result.total,
            {
                "imported": result.imported,
                "skipped": result.skipped,
                "invalid": len(result.errors),
                "failedBatches": len(result.batch_errors),
            },
        )
        return result

    async def _drop_duplicates(self, candidates, result: ImportResult):
        """Removes rows that already exist in the store or earlier in the same payload."""
        chunk_size = settings.IMPORT_LOOKUP_CHUNK
        survivors = []
        seen = set()
        for start in range(0, len(candidates), chunk_size):
            chunk = candidates[start:start + chunk_size]
            checks = await asyncio.gather(*[
                self.detector.check_duplicate_attendance(record["barcodeId"], reference_date=timestamp)
                for _, record, timestamp in chunk
            ])
            for (row, record, timestamp), check in zip(chunk, checks):
                day_key = (record["barcodeId"], local_date(timestamp))
                if check.is_duplicate or day_key in seen:
                    result.skipped += 1
                    continue
                if check.error:
                    result.warnings.append(f"Row {row}: duplicate check could not be completed ({check.error})")
                seen.add(day_key)
                survivors.append((row, record, timestamp))
        return survivors

    async def generate_attendance_report(self, options: Optional[ReportOptions] = None) -> Dict[str, Any]:
        options = options or ReportOptions()
        if options.report_type not in REPORT_TYPES:
            raise InvalidInputError(f"Unknown report type: {options.report_type}")

        records = await self._fetch_records(date_range=options.date_range, departments=options.departments)
        if options.report_type == "summary":
            return self._summary_report(records, options.group_by)
        if options.report_type == "detailed":
            return self._detailed_report(records)
        if options.report_type == "trends":
            return {
                "totalRecords": len(records),
                "dailyTrends": [d.model_dump(by_alias=True) for d in daily_trends(_timed(records))],
                "hourlyTrends": [h.model_dump(by_alias=True) for h in hourly_trends(_timed(records))],
            }
        return self._department_report(records)

    @staticmethod
    def _summary_report(records: List[AttendanceRecord], group_by: str) -> Dict[str, Any]:
        grouped: Dict[str, Dict[str, Any]] = {}
        for record in records:
            status = record.status or AttendanceStatus.PRESENT.value
            if group_by == "date":
                key = format_local_date(record.timestamp) or "Unknown"
            elif group_by == "department":
                key = extract_department(record.barcode_id)
            elif group_by == "status":
                key = status
            else:
                key = "All"
            group = grouped.setdefault(key, {"count": 0, "statuses": Counter(), "students": set()})
            group["count"] += 1
            group["statuses"][status] += 1
            group["students"].add(record.barcode_id)

        return {
            "totalRecords": len(records),
            "uniqueStudents": len({record.barcode_id for record in records}),
            "statusBreakdown": dict(Counter(record.status or AttendanceStatus.PRESENT.value for record in records)),
            "groupedData": {
                key: {
                    "count": group["count"],
                    "statuses": dict(group["statuses"]),
                    "uniqueStudents": len(group["students"]),
                }
                for key, group in grouped.items()
            },
        }

    @staticmethod
    def _detailed_report(records: List[AttendanceRecord]) -> Dict[str, Any]:
        timed = [record.timestamp for record in records if record.timestamp is not None]
        return {
            "records": [
                {
                    "id": record.id,
                    "barcodeId": record.barcode_id,
                    "date": format_local_date(record.timestamp),
                    "time": format_local_time(record.timestamp),
                    "status": record.status or AttendanceStatus.PRESENT.value,
                    "department": extract_department(record.barcode_id),
                    "createdAt": _iso(record.created_at) or None,
                    "updatedAt": _iso(record.updated_at) or None,
                    "updatedBy": record.updated_by,
                }
                for record in records
            ],
            "metadata": {
                "generatedAt": datetime.now(timezone.utc).isoformat(),
                "totalRecords": len(records),
                "dateRange": {
                    "earliest": _iso(min(timed)) if timed else None,
                    "latest": _iso(max(timed)) if timed else None,
                },
            },
        }

    @staticmethod
    def _department_report(records: List[AttendanceRecord]) -> Dict[str, Any]:
        departments: Dict[str, Dict[str, Any]] = {}
        for record in records:
            department = departments.setdefault(
                extract_department(record.barcode_id),
                {"count": 0, "statuses": Counter(), "students": set()},
            )
            department["count"] += 1
            department["statuses"][record.status or AttendanceStatus.PRESENT.value] += 1
            department["students"].add(record.barcode_id)

        ranked = sorted(departments.items(), key=lambda item: item[1]["count"], reverse=True)
        return {
            "totalRecords": len(records),
            "departments": [
                {
                    "department": name,
                    "count": data["count"],
                    "uniqueStudents": len(data["students"]),
                    "statuses": dict(data["statuses"]),
                }
                for name, data in ranked
            ],
        }


def _timed(records: List[AttendanceRecord]) -> List[AttendanceRecord]:
    return [record for record in records if record.timestamp is not None]
