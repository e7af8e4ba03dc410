import logging
from datetime import datetime
from typing import List, Optional

import jwt
from fastapi import APIRouter, Depends, Query, Request, Response, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError

from ..db.redis_client import RedisDocumentStore
from ..db.store_errors import StoreError
from ..models.db_models import AttendanceRecord, Role
from ..services.attendance_service import AttendanceService
from ..services.errors import DuplicateAttendanceError, PermissionDeniedError, ServiceError
from ..services.feed_service import AttendanceFeedService, FeedFilters
from ..services.security_service import SecurityService
from .auth import decode_access_token, get_current_user
from .dependencies import get_attendance_service, get_security_service
from .schemas.attendance import AttendanceUpdateRequest, CountResponse, ScanRequest
from .schemas.auth import CurrentUser
from .utilities.errors import to_http_exception
from .utilities.limiter import limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/attendance", tags=["Attendance"])

# WebSocket close code for policy violations (bad token, missing permission)
WS_POLICY_VIOLATION = 1008


@router.post("/scan", response_model=AttendanceRecord, status_code=status.HTTP_201_CREATED, summary="Record a scanned barcode")
@limiter.limit("120/minute")
async def scan_barcode(
    request: Request,
    scan_request: ScanRequest,
    user: CurrentUser = Depends(get_current_user),
    security: SecurityService = Depends(get_security_service),
    service: AttendanceService = Depends(get_attendance_service),
):
    try:
        await security.require_permission(user.user_id, "scan_barcode", "attendance_scan")
        assignment = await security.get_user_role(user.user_id)
        # Students scan their own card, so a barcode owned by someone else is suspicious
        context = {"barcodeId": scan_request.barcode_id} if assignment.role == Role.STUDENT.value else {}
        await security.enforce_security_policies(user.user_id, "ATTENDANCE_SCAN", context)
        record = await service.record_attendance(scan_request.barcode_id, recorded_by=user.user_id, extra=scan_request.extra)
    except DuplicateAttendanceError as e:
        await security.log_attendance_action(
            "ATTENDANCE_SCAN", user.user_id,
            {"barcodeId": e.barcode_id, "method": e.method},
            result="duplicate",
        )
        raise to_http_exception(e)
    except (ServiceError, StoreError) as e:
        raise to_http_exception(e)

    await security.log_attendance_action(
        "ATTENDANCE_SCAN", user.user_id,
        {"barcodeId": record.barcode_id, "recordId": record.id, "method": record.duplicate_check_method},
    )
    return record


@router.get("", response_model=List[AttendanceRecord], summary="List attendance records, newest first")
@limiter.limit("60/minute")
async def list_attendance(
    request: Request,
    barcode_id: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    user: CurrentUser = Depends(get_current_user),
    security: SecurityService = Depends(get_security_service),
    service: AttendanceService = Depends(get_attendance_service),
):
    try:
        await security.require_permission(user.user_id, "view_all_attendance", "attendance_list")
        return await service.get_attendance_records({
            "barcode_id": barcode_id,
            "status": status_filter,
            "start_date": start_date,
            "end_date": end_date,
            "limit": limit,
        })
    except (ServiceError, StoreError) as e:
        raise to_http_exception(e)


@router.get("/today/count", response_model=CountResponse, summary="Number of records created today")
@limiter.limit("60/minute")
async def today_count(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    security: SecurityService = Depends(get_security_service),
    service: AttendanceService = Depends(get_attendance_service),
):
    try:
        await security.require_permission(user.user_id, "view_all_attendance", "attendance_count")
    except ServiceError as e:
        raise to_http_exception(e)
    return CountResponse(count=await service.get_today_attendance_count())


@router.patch("/{record_id}", response_model=AttendanceRecord, summary="Edit a single attendance record")
@limiter.limit("60/minute")
async def update_attendance(
    request: Request,
    record_id: str,
    update_request: AttendanceUpdateRequest,
    user: CurrentUser = Depends(get_current_user),
    security: SecurityService = Depends(get_security_service),
    service: AttendanceService = Depends(get_attendance_service),
):
    changes = update_request.changes()
    try:
        await security.require_permission(user.user_id, "manage_attendance", "attendance_update")
        record = await service.update_attendance_record(record_id, changes, actor=user.user_id)
    except (ServiceError, StoreError) as e:
        raise to_http_exception(e)

    await security.log_attendance_action("ATTENDANCE_UPDATE", user.user_id, {"recordId": record_id, "changes": changes})
    return record


@router.delete("/{record_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete a single attendance record")
@limiter.limit("60/minute")
async def delete_attendance(
    request: Request,
    record_id: str,
    user: CurrentUser = Depends(get_current_user),
    security: SecurityService = Depends(get_security_service),
    service: AttendanceService = Depends(get_attendance_service),
):
    try:
        await security.require_permission(user.user_id, "manage_attendance", "attendance_delete")
        await service.delete_attendance_record(record_id, actor=user.user_id)
    except (ServiceError, StoreError) as e:
        raise to_http_exception(e)

    await security.log_attendance_action("ATTENDANCE_DELETE", user.user_id, {"recordId": record_id})
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.websocket("/feed")
async def attendance_feed(
    websocket: WebSocket,
    token: str,
    barcode_id: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: Optional[int] = None,
):
    """
    Live view of the attendance collection. Every change sends a full
    snapshot: {"type": "snapshot", "records": [...]}; a failed query
    sends {"type": "error", "detail": "..."}.
    """
    try:
        user = decode_access_token(token)
    except (jwt.PyJWTError, ValidationError, ValueError) as e:
        logger.warning(f"Feed connection refused, invalid token: {e}")
        await websocket.close(code=WS_POLICY_VIOLATION)
        return

    store = RedisDocumentStore.from_pool(websocket.app.state.redis_pool)
    security = SecurityService(store, ip_address=websocket.client.host if websocket.client else None)
    try:
        await security.require_permission(user.user_id, "view_all_attendance", "attendance_feed")
    except PermissionDeniedError:
        await websocket.close(code=WS_POLICY_VIOLATION)
        return

    await websocket.accept()
    feed_service: AttendanceFeedService = websocket.app.state.feed_service

    async def push(records, error):
        if error is not None:
            await websocket.send_json({"type": "error", "detail": str(error)})
            return
        await websocket.send_json({
            "type": "snapshot",
            "records": [record.model_dump(mode="json", by_alias=True, exclude_none=True) for record in records],
        })

    unsubscribe = feed_service.subscribe(
        push, FeedFilters(barcode_id=barcode_id, status=status_filter, limit=limit)
    )
    logger.info(f"User '{user.user_id}' subscribed to the attendance feed.")
    try:
        while True:
            # Client messages are ignored; receiving only detects the disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(f"User '{user.user_id}' left the attendance feed.")
    finally:
        unsubscribe()
