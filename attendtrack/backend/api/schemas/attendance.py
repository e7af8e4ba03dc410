from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class ScanRequest(BaseModel):
    barcode_id: str = Field(..., min_length=1, description="Scanned barcode or ID number.")
    extra: Dict[str, Any] = Field(default_factory=dict)


class AttendanceUpdateRequest(BaseModel):
    status: Optional[str] = None
    notes: Optional[str] = None

    model_config = ConfigDict(extra="allow")

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class CountResponse(BaseModel):
    count: int
