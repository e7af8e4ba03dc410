import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Query, Request, Response

from ..db.store_errors import StoreError
from ..models.results import AnalyticsSnapshot
from ..services.analytics_service import DEFAULT_WINDOW, WINDOW_DAYS, compute_analytics, render_analytics_csv
from ..services.attendance_service import AttendanceService
from ..services.errors import ServiceError
from ..services.security_service import SecurityService
from .auth import get_current_user
from .dependencies import get_attendance_service, get_security_service
from .schemas.auth import CurrentUser
from .utilities.errors import to_http_exception
from .utilities.limiter import limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/analytics", tags=["Analytics"])


async def _snapshot(window: str, user: CurrentUser, security: SecurityService, service: AttendanceService, now: datetime) -> AnalyticsSnapshot:
    await security.require_permission(user.user_id, "view_reports", "analytics")
    length = timedelta(days=WINDOW_DAYS.get(window, WINDOW_DAYS[DEFAULT_WINDOW]))
    # The previous window is needed for the trend figure
    records = await service.get_attendance_records({"start_date": now - 2 * length, "end_date": now})
    return compute_analytics(records, window, now)


@router.get("", response_model=AnalyticsSnapshot, summary="Attendance statistics for a time window")
@limiter.limit("30/minute")
async def get_analytics(
    request: Request,
    window: str = Query(DEFAULT_WINDOW, description="day, week, month or quarter"),
    user: CurrentUser = Depends(get_current_user),
    security: SecurityService = Depends(get_security_service),
    service: AttendanceService = Depends(get_attendance_service),
):
    try:
        return await _snapshot(window, user, security, service, datetime.now(timezone.utc))
    except (ServiceError, StoreError) as e:
        raise to_http_exception(e)


@router.get("/export", summary="Download the analytics report as CSV")
@limiter.limit("10/minute")
async def export_analytics(
    request: Request,
    window: str = Query(DEFAULT_WINDOW, description="day, week, month or quarter"),
    user: CurrentUser = Depends(get_current_user),
    security: SecurityService = Depends(get_security_service),
    service: AttendanceService = Depends(get_attendance_service),
):
    now = datetime.now(timezone.utc)
    try:
        snapshot = await _snapshot(window, user, security, service, now)
    except (ServiceError, StoreError) as e:
        raise to_http_exception(e)

    await security.log_data_export(user.user_id, "analytics_csv", {"window": window})
    filename = f"attendance-analytics-{window}-{now.strftime('%Y-%m-%d')}.csv"
    return Response(
        content=render_analytics_csv(snapshot, window, now),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
