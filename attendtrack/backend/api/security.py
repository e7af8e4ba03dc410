import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request

from ..db.store_errors import StoreError
from ..models.db_models import AuditLogEntry, SecurityEvent
from ..models.results import RoleAssignment
from ..services.errors import ServiceError
from ..services.security_service import SecurityService
from .auth import get_current_user
from .dependencies import get_security_service
from .schemas.auth import CurrentUser
from .schemas.security import RoleUpdateRequest
from .utilities.errors import to_http_exception
from .utilities.limiter import limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/security", tags=["Security"])


@router.get("/audit-logs", response_model=List[AuditLogEntry], summary="Audit trail, newest first")
@limiter.limit("30/minute")
async def audit_logs(
    request: Request,
    user_id: Optional[str] = None,
    event_type: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=1000),
    user: CurrentUser = Depends(get_current_user),
    security: SecurityService = Depends(get_security_service),
):
    try:
        await security.require_permission(user.user_id, "audit_logs", "audit_logs_view")
        documents = await security.get_audit_logs(user_id, event_type, start_date, end_date, limit)
    except (ServiceError, StoreError) as e:
        raise to_http_exception(e)
    return [AuditLogEntry.model_validate(document) for document in documents]


@router.get("/events", response_model=List[SecurityEvent], summary="Security events, newest first")
@limiter.limit("30/minute")
async def security_events(
    request: Request,
    user_id: Optional[str] = None,
    event_type: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    user: CurrentUser = Depends(get_current_user),
    security: SecurityService = Depends(get_security_service),
):
    try:
        await security.require_permission(user.user_id, "view_security_dashboard", "security_events_view")
    except ServiceError as e:
        raise to_http_exception(e)
    return await security.get_security_events(user_id, event_type, limit)


@router.get("/roles/{user_id}", response_model=RoleAssignment, summary="Effective role of a user")
@limiter.limit("60/minute")
async def get_role(
    request: Request,
    user_id: str,
    user: CurrentUser = Depends(get_current_user),
    security: SecurityService = Depends(get_security_service),
):
    try:
        if user_id != user.user_id:
            await security.require_permission(user.user_id, "user_management", "role_view")
        return await security.get_user_role(user_id)
    except ServiceError as e:
        raise to_http_exception(e)


@router.put("/roles/{user_id}", response_model=RoleAssignment, summary="Change the role of a user")
@limiter.limit("10/minute")
async def update_role(
    request: Request,
    user_id: str,
    role_request: RoleUpdateRequest,
    user: CurrentUser = Depends(get_current_user),
    security: SecurityService = Depends(get_security_service),
):
    try:
        await security.require_permission(user.user_id, "user_management", "role_change")
        return await security.update_user_role(user_id, role_request.role, user.user_id, role_request.permissions)
    except (ServiceError, StoreError) as e:
        raise to_http_exception(e)
