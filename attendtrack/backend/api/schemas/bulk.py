from typing import List

from pydantic import BaseModel, Field


class BulkStatusRequest(BaseModel):
    record_ids: List[str]
    status: str


class BulkDeleteRequest(BaseModel):
    record_ids: List[str]


class ImportRequest(BaseModel):
    format: str = "csv"
    data: str = Field(..., description="CSV text or a JSON array of records.")
    validate_data: bool = True
    skip_duplicates: bool = True
