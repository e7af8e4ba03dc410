from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class AttendanceStatus(str, Enum):
    PRESENT = "Present"
    LATE = "Late"
    ABSENT = "Absent"
    EXCUSED = "Excused"


class Department(str, Enum):
    CS = "CS"
    IT = "IT"
    ENG = "ENG"
    BUS = "BUS"
    EDU = "EDU"
    MED = "MED"
    LAW = "LAW"
    ART = "ART"
    SCI = "SCI"
    GEN = "GEN"


class Role(str, Enum):
    ADMIN = "admin"
    INSTRUCTOR = "instructor"
    STUDENT = "student"
    VIEWER = "viewer"


ATTENDANCE_STATUSES = [status.value for status in AttendanceStatus]
DEPARTMENT_CODES = [department.value for department in Department]


class StoredDocument(BaseModel):
    """
    Base for documents kept in the store. Stored field names are camelCase,
    unknown fields are preserved so older documents survive a round trip.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True, exclude={"id"})


class AttendanceRecord(StoredDocument):
    """
    One attendance event. Older documents store the barcode as `idNumber`.
    """
    barcode_id: str = Field(..., validation_alias=AliasChoices("barcodeId", "idNumber", "barcode_id"))
    timestamp: Optional[datetime] = None
    status: str = AttendanceStatus.PRESENT.value
    recorded_by: str = "unknown"
    duplicate_check_method: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None
    last_modified: Optional[datetime] = None
    # Only set on the value returned by the recorder, never stored
    duplicate_check_warning: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        document = super().to_document()
        document.pop("duplicateCheckWarning", None)
        document.pop("idNumber", None)
        return document


class StudentIdentity(StoredDocument):
    barcode_id: str
    email: Optional[str] = None
    department: str = Department.GEN.value
    academic_year: int
    role: str = Role.STUDENT.value
    is_active: bool = True
    created_at: Optional[datetime] = None


class AuditLogEntry(StoredDocument):
    event_type: str
    user_id: str
    user_email: Optional[str] = None
    timestamp: datetime
    details: Dict[str, Any] = Field(default_factory=dict)
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class SecurityEvent(StoredDocument):
    type: str
    user_id: str
    timestamp: datetime
    severity: str = "low"
    details: Dict[str, Any] = Field(default_factory=dict)
    session_id: Optional[str] = None


class UserSession(StoredDocument):
    user_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    is_active: bool = True
    last_activity: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    login_method: Optional[str] = None
