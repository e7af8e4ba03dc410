import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request, Response

from ..db.store_errors import StoreError
from ..models.results import BulkResult, ImportResult
from ..services.bulk_service import BulkService, ExportOptions, ImportOptions, ReportOptions
from ..services.errors import ServiceError
from ..services.security_service import SecurityService
from .auth import get_current_user
from .dependencies import get_bulk_service, get_security_service
from .schemas.auth import CurrentUser
from .schemas.bulk import BulkDeleteRequest, BulkStatusRequest, ImportRequest
from .utilities.errors import to_http_exception
from .utilities.limiter import limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bulk", tags=["Bulk Operations"])

EXPORT_MEDIA_TYPES = {
    "csv": "text/csv",
    "json": "application/json",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}


async def _guard(security: SecurityService, user: CurrentUser, permission: str, operation: str):
    await security.require_permission(user.user_id, permission, operation.lower())
    await security.enforce_security_policies(user.user_id, operation)


@router.post("/status", response_model=BulkResult, summary="Set the status of many records")
@limiter.limit("10/minute")
async def bulk_status(
    request: Request,
    status_request: BulkStatusRequest,
    user: CurrentUser = Depends(get_current_user),
    security: SecurityService = Depends(get_security_service),
    service: BulkService = Depends(get_bulk_service),
):
    try:
        await _guard(security, user, "bulk_operations", "BULK_OPERATION")
        return await service.bulk_update_status(status_request.record_ids, status_request.status, updated_by=user.user_id)
    except (ServiceError, StoreError) as e:
        raise to_http_exception(e)


@router.post("/delete", response_model=BulkResult, summary="Delete many records")
@limiter.limit("10/minute")
async def bulk_delete(
    request: Request,
    delete_request: BulkDeleteRequest,
    user: CurrentUser = Depends(get_current_user),
    security: SecurityService = Depends(get_security_service),
    service: BulkService = Depends(get_bulk_service),
):
    try:
        await _guard(security, user, "bulk_operations", "BULK_OPERATION")
        return await service.bulk_delete_records(delete_request.record_ids, deleted_by=user.user_id)
    except (ServiceError, StoreError) as e:
        raise to_http_exception(e)


@router.post("/export", summary="Export records as csv, json or xlsx")
@limiter.limit("10/minute")
async def export_records(
    request: Request,
    options: ExportOptions,
    user: CurrentUser = Depends(get_current_user),
    security: SecurityService = Depends(get_security_service),
    service: BulkService = Depends(get_bulk_service),
):
    try:
        await _guard(security, user, "export_data", "DATA_EXPORT")
        content = await service.export_attendance_data(options, exported_by=user.user_id)
    except (ServiceError, StoreError) as e:
        raise to_http_exception(e)

    export_format = options.format.lower()
    filename = f"attendance_export_{datetime.now(timezone.utc).strftime('%Y-%m-%d')}.{export_format}"
    return Response(
        content=content,
        media_type=EXPORT_MEDIA_TYPES[export_format],
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/import", response_model=ImportResult, summary="Import records from csv or json")
@limiter.limit("5/minute")
async def import_records(
    request: Request,
    import_request: ImportRequest,
    user: CurrentUser = Depends(get_current_user),
    security: SecurityService = Depends(get_security_service),
    service: BulkService = Depends(get_bulk_service),
):
    options = ImportOptions(
        validate_data=import_request.validate_data,
        skip_duplicates=import_request.skip_duplicates,
        imported_by=user.user_id,
    )
    try:
        await _guard(security, user, "import_data", "BULK_OPERATION")
        return await service.import_attendance_data(import_request.data, import_request.format, options)
    except (ServiceError, StoreError) as e:
        raise to_http_exception(e)


@router.post("/report", summary="Generate an attendance report")
@limiter.limit("20/minute")
async def attendance_report(
    request: Request,
    options: ReportOptions,
    user: CurrentUser = Depends(get_current_user),
    security: SecurityService = Depends(get_security_service),
    service: BulkService = Depends(get_bulk_service),
) -> Dict[str, Any]:
    try:
        await security.require_permission(user.user_id, "view_reports", "attendance_report")
        return await service.generate_attendance_report(options)
    except (ServiceError, StoreError) as e:
        raise to_http_exception(e)
