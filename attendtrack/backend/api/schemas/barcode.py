from typing import Optional

from pydantic import BaseModel, Field


class BarcodeRequest(BaseModel):
    department: str = "GEN"
    year: Optional[int] = None


class BarcodeResponse(BaseModel):
    barcode: str


class QRRequest(BaseModel):
    barcode: str
    student_id: str


class QRResponse(BaseModel):
    qr_data: str


class QRValidateRequest(BaseModel):
    qr_data: str


class StudentRegisterRequest(BaseModel):
    student_id: str = Field(..., min_length=1)
    email: Optional[str] = None
    department: str = "GEN"
    year: Optional[int] = None
    role: str = "student"
