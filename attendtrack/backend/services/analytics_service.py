import csv
import io
from collections import Counter, OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from ..models.db_models import ATTENDANCE_STATUSES, AttendanceRecord, AttendanceStatus
from ..models.results import (
    AnalyticsSnapshot,
    AnalyticsSummary,
    DailyTrend,
    DepartmentCount,
    HourlyTrend,
    StatusCount,
    StudentCount,
)
from ..tools.departments import extract_department

WINDOW_DAYS = {"day": 1, "week": 7, "month": 30, "quarter": 90}
DEFAULT_WINDOW = "week"
TOP_STUDENT_COUNT = 10

RecordLike = Union[AttendanceRecord, Dict[str, Any]]


def as_records(records: Iterable[RecordLike]) -> List[AttendanceRecord]:
    return [
        record if isinstance(record, AttendanceRecord) else AttendanceRecord.model_validate(record)
        for record in records
    ]


def _instant(record: AttendanceRecord) -> Optional[datetime]:
    if record.timestamp is None:
        return None
    return record.timestamp if record.timestamp.tzinfo else record.timestamp.astimezone()


def _status(record: AttendanceRecord) -> str:
    return record.status or AttendanceStatus.PRESENT.value


def _percentage(part: int, whole: int) -> float:
    return part / whole * 100 if whole else 0.0


def daily_trends(records: List[AttendanceRecord]) -> List[DailyTrend]:
    buckets: Dict[str, Dict[str, Any]] = {}
    for record in records:
        key = _instant(record).astimezone().date().isoformat()
        bucket = buckets.setdefault(key, {"total": 0, "statuses": Counter(), "students": set()})
        bucket["total"] += 1
        bucket["statuses"][_status(record)] += 1
        bucket["students"].add(record.barcode_id)

    return [
        DailyTrend(
            date=key,
            total=bucket["total"],
            present=bucket["statuses"][AttendanceStatus.PRESENT.value],
            late=bucket["statuses"][AttendanceStatus.LATE.value],
            absent=bucket["statuses"][AttendanceStatus.ABSENT.value],
            excused=bucket["statuses"][AttendanceStatus.EXCUSED.value],
            unique_students=len(bucket["students"]),
        )
        for key, bucket in sorted(buckets.items())
    ]


def hourly_trends(records: List[AttendanceRecord]) -> List[HourlyTrend]:
    counts = Counter(_instant(record).astimezone().hour for record in records)
    return [HourlyTrend(hour=hour, count=count) for hour, count in sorted(counts.items())]


def department_breakdown(records: List[AttendanceRecord]) -> List[DepartmentCount]:
    counts: Dict[str, int] = OrderedDict()
    for record in records:
        if not record.barcode_id:
            continue
        department = extract_department(record.barcode_id)
        counts[department] = counts.get(department, 0) + 1
    # sorted() is stable, so equal counts keep first-seen order
    ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)
    return [DepartmentCount(department=department, count=count) for department, count in ranked]


def top_students(records: List[AttendanceRecord], limit: int = TOP_STUDENT_COUNT) -> List[StudentCount]:
    counts: Dict[str, int] = OrderedDict()
    for record in records:
        if record.barcode_id:
            counts[record.barcode_id] = counts.get(record.barcode_id, 0) + 1
    ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)[:limit]
    return [StudentCount(barcode_id=barcode_id, count=count) for barcode_id, count in ranked]


def status_breakdown(records: List[AttendanceRecord]) -> List[StatusCount]:
    counts: Dict[str, int] = OrderedDict((status, 0) for status in ATTENDANCE_STATUSES)
    for record in records:
        status = _status(record)
        counts[status] = counts.get(status, 0) + 1
    total = len(records)
    return [
        StatusCount(status=status, count=count, percentage=_percentage(count, total))
        for status, count in counts.items()
    ]


def compute_analytics(records: Iterable[RecordLike], window: str = DEFAULT_WINDOW, now: Optional[datetime] = None) -> AnalyticsSnapshot:
    """
    Statistics over the records inside [now - window, now]. Pure: the same
    records, window and `now` always give the same snapshot. Unknown window
    names fall back to a week.
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.astimezone()
    length = timedelta(days=WINDOW_DAYS.get(window, WINDOW_DAYS[DEFAULT_WINDOW]))
    start = now - length
    previous_start = start - length

    timed = [record for record in as_records(records) if record.timestamp is not None]
    current = [record for record in timed if start <= _instant(record) <= now]
    previous_total = sum(1 for record in timed if previous_start <= _instant(record) < start)

    total = len(current)
    breakdown = status_breakdown(current)
    counts = {item.status: item.count for item in breakdown}
    trend = (total - previous_total) / previous_total * 100 if previous_total else 0.0

    return AnalyticsSnapshot(
        summary=AnalyticsSummary(
            total_records=total,
            unique_students=len({record.barcode_id for record in current}),
            attendance_rate=_percentage(counts[AttendanceStatus.PRESENT.value], total),
            late_rate=_percentage(counts[AttendanceStatus.LATE.value], total),
            trend=trend,
        ),
        status_breakdown=breakdown,
        daily_trends=daily_trends(current),
        hourly_trends=hourly_trends(current),
        department_breakdown=department_breakdown(current),
        top_students=top_students(current),
    )


def render_analytics_csv(snapshot: AnalyticsSnapshot, window: str, generated_at: Optional[datetime] = None) -> str:
    """The downloadable analytics report."""
    generated_at = generated_at or datetime.now(timezone.utc)
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    summary = snapshot.summary

    writer.writerow(["Attendance Analytics Report"])
    writer.writerow(["Generated on:", generated_at.isoformat()])
    writer.writerow(["Time Range:", window])
    writer.writerow([])
    writer.writerow(["Summary"])
    writer.writerow(["Total Records:", summary.total_records])
    writer.writerow(["Unique Students:", summary.unique_students])
    writer.writerow(["Attendance Rate:", f"{summary.attendance_rate:.1f}%"])
    writer.writerow(["Late Rate:", f"{summary.late_rate:.1f}%"])
    writer.writerow(["Trend:", f"{summary.trend:+.1f}%"])
    writer.writerow([])
    writer.writerow(["Status Breakdown"])
    writer.writerow(["Status", "Count", "Percentage"])
    for item in snapshot.status_breakdown:
        writer.writerow([item.status, item.count, f"{item.percentage:.1f}%"])
    writer.writerow([])
    writer.writerow(["Daily Trends"])
    writer.writerow(["Date", "Records", "Unique Students", "Present", "Late", "Absent", "Excused"])
    for day in snapshot.daily_trends:
        writer.writerow([day.date, day.total, day.unique_students, day.present, day.late, day.absent, day.excused])
    writer.writerow([])
    writer.writerow(["Department Breakdown"])
    writer.writerow(["Department", "Records"])
    for item in snapshot.department_breakdown:
        writer.writerow([item.department, item.count])
    writer.writerow([])
    writer.writerow(["Top Students"])
    writer.writerow(["Barcode ID", "Records"])
    for item in snapshot.top_students:
        writer.writerow([item.barcode_id, item.count])
    return output.getvalue()
