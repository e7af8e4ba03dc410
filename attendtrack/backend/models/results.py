from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .db_models import AttendanceRecord


class ResultModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Identifier generator ---

class BarcodeValidation(ResultModel):
    is_valid: bool
    barcode: Optional[str] = None
    year: Optional[int] = None
    department: Optional[str] = None
    department_name: Optional[str] = None
    sequence: Optional[int] = None
    error: Optional[str] = None


class QRValidation(ResultModel):
    is_valid: bool
    barcode: Optional[str] = None
    student_id: Optional[str] = None
    timestamp: Optional[int] = None
    version: Optional[str] = None
    error: Optional[str] = None


# --- Duplicate detection ---

class DuplicateCheckResult(ResultModel):
    is_duplicate: bool
    method: str
    existing_record: Optional[AttendanceRecord] = None
    error: Optional[str] = None


# --- Bulk operations ---

class BatchError(ResultModel):
    batch: int
    record_ids: List[str]
    error: str


class BulkResult(ResultModel):
    success: int = 0
    failed: int = 0
    errors: List[BatchError] = Field(default_factory=list)


class RowError(ResultModel):
    """An invalid import row. Collected into the result, never raised."""
    row: int
    record: Dict[str, Any]
    errors: List[str]


class ImportResult(ResultModel):
    total: int = 0
    imported: int = 0
    skipped: int = 0
    errors: List[RowError] = Field(default_factory=list)
    batch_errors: List[BatchError] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


# --- Analytics ---

class AnalyticsSummary(ResultModel):
    total_records: int
    unique_students: int
    attendance_rate: float
    late_rate: float
    trend: float


class StatusCount(ResultModel):
    status: str
    count: int
    percentage: float


class DailyTrend(ResultModel):
    date: str
    total: int
    present: int
    late: int
    absent: int
    excused: int
    unique_students: int


class HourlyTrend(ResultModel):
    hour: int
    count: int


class DepartmentCount(ResultModel):
    department: str
    count: int


class StudentCount(ResultModel):
    barcode_id: str
    count: int


class AnalyticsSnapshot(ResultModel):
    summary: AnalyticsSummary
    status_breakdown: List[StatusCount]
    daily_trends: List[DailyTrend]
    hourly_trends: List[HourlyTrend]
    department_breakdown: List[DepartmentCount]
    top_students: List[StudentCount]


# --- Security ---

class RoleAssignment(ResultModel):
    role: str
    permissions: List[str]
    is_active: bool = True
    source: str


class RateLimitStatus(ResultModel):
    exceeded: bool
    count: int = 0
    limit: Optional[int] = None
    window_seconds: Optional[int] = None


class SuspicionResult(ResultModel):
    suspicious: bool
    reason: Optional[str] = None
    severity: Optional[str] = None
