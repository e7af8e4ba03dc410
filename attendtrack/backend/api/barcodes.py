import logging

from fastapi import APIRouter, Depends, Request, status

from ..db.store_errors import StoreError
from ..models.db_models import StudentIdentity
from ..models.results import BarcodeValidation, QRValidation
from ..services.barcode_service import (
    BarcodeService,
    generate_secure_qr_data,
    validate_barcode,
    validate_secure_qr_data,
)
from ..services.errors import InvalidInputError, ServiceError
from ..services.security_service import SecurityService
from .auth import get_current_user
from .dependencies import get_barcode_service, get_security_service
from .schemas.auth import CurrentUser
from .schemas.barcode import (
    BarcodeRequest,
    BarcodeResponse,
    QRRequest,
    QRResponse,
    QRValidateRequest,
    StudentRegisterRequest,
)
from .utilities.errors import to_http_exception
from .utilities.limiter import limiter

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Barcodes"])


@router.post("/barcodes", response_model=BarcodeResponse, summary="Generate the next free barcode")
@limiter.limit("30/minute")
async def generate_barcode(
    request: Request,
    barcode_request: BarcodeRequest,
    user: CurrentUser = Depends(get_current_user),
    security: SecurityService = Depends(get_security_service),
    service: BarcodeService = Depends(get_barcode_service),
):
    try:
        await security.require_permission(user.user_id, "user_management", "barcode_generate")
        barcode = await service.generate_unique_barcode(barcode_request.department, barcode_request.year)
    except (ServiceError, StoreError) as e:
        raise to_http_exception(e)
    return BarcodeResponse(barcode=barcode)


@router.get("/barcodes/{barcode}/validate", response_model=BarcodeValidation, summary="Structural barcode check")
@limiter.limit("120/minute")
async def check_barcode(request: Request, barcode: str, user: CurrentUser = Depends(get_current_user)):
    return validate_barcode(barcode)


@router.post("/barcodes/qr", response_model=QRResponse, summary="Signed QR payload for a barcode")
@limiter.limit("30/minute")
async def create_qr(
    request: Request,
    qr_request: QRRequest,
    user: CurrentUser = Depends(get_current_user),
    security: SecurityService = Depends(get_security_service),
):
    try:
        # Anyone may fetch their own QR code
        if qr_request.student_id != user.user_id:
            await security.require_permission(user.user_id, "user_management", "qr_generate")
        validation = validate_barcode(qr_request.barcode)
        if not validation.is_valid:
            raise InvalidInputError(validation.error)
    except ServiceError as e:
        raise to_http_exception(e)
    return QRResponse(qr_data=generate_secure_qr_data(qr_request.barcode, qr_request.student_id))


@router.post("/barcodes/qr/validate", response_model=QRValidation, summary="Verify a signed QR payload")
@limiter.limit("120/minute")
async def check_qr(
    request: Request,
    validate_request: QRValidateRequest,
    user: CurrentUser = Depends(get_current_user),
    security: SecurityService = Depends(get_security_service),
):
    try:
        await security.require_permission(user.user_id, "scan_barcode", "qr_validate")
    except ServiceError as e:
        raise to_http_exception(e)
    return validate_secure_qr_data(validate_request.qr_data)


@router.post("/students", response_model=StudentIdentity, status_code=status.HTTP_201_CREATED, summary="Register a student and assign a barcode")
@limiter.limit("30/minute")
async def register_student(
    request: Request,
    register_request: StudentRegisterRequest,
    user: CurrentUser = Depends(get_current_user),
    security: SecurityService = Depends(get_security_service),
    service: BarcodeService = Depends(get_barcode_service),
):
    try:
        await security.require_permission(user.user_id, "user_management", "student_register")
        identity = await service.register_student(
            register_request.student_id,
            register_request.email,
            department=register_request.department,
            year=register_request.year,
            role=register_request.role,
        )
    except (ServiceError, StoreError) as e:
        raise to_http_exception(e)

    await security.log_audit_event(
        "USER_REGISTRATION", user.user_id,
        {"action": "STUDENT_REGISTER", "studentId": identity.id, "barcodeId": identity.barcode_id},
        user_email=user.email,
    )
    return identity
