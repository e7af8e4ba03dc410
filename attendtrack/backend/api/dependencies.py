import logging

from fastapi import Depends, Request
import redis.asyncio as redis

from ..db.redis_client import RedisDocumentStore
from ..services.attendance_service import AttendanceService
from ..services.barcode_service import BarcodeService
from ..services.bulk_service import BulkService
from ..services.feed_service import AttendanceFeedService
from ..services.security_service import SecurityService

logger = logging.getLogger(__name__)


def get_redis_pool(request: Request) -> redis.ConnectionPool:
    """Shared Redis connection pool created in the application lifespan."""
    return request.app.state.redis_pool


def get_store(redis_pool: redis.ConnectionPool = Depends(get_redis_pool)) -> RedisDocumentStore:
    return RedisDocumentStore.from_pool(redis_pool)


async def get_client_ip(request: Request) -> str | None:
    """
    Real client address, read from proxy headers first (CloudFlare, nginx).
    """
    for header_name in ["cf-connecting-ip", "x-real-ip", "x-forwarded-for"]:
        header = request.headers.get(header_name)
        if header:
            # X-Forwarded-For is "client, proxy1, proxy2"
            client_ip = header.split(",")[0].strip()
            logger.debug(f"Client IP '{client_ip}' taken from header '{header_name}'")
            return client_ip

    return request.client.host if request.client else None


def get_security_service(
    request: Request,
    store: RedisDocumentStore = Depends(get_store),
    client_ip: str | None = Depends(get_client_ip),
) -> SecurityService:
    """
    A SecurityService per request, carrying the caller's address, user agent
    and session id (X-Session-Id) into every event it writes.
    """
    return SecurityService(
        store,
        session_id=request.headers.get("x-session-id"),
        ip_address=client_ip,
        user_agent=request.headers.get("user-agent"),
    )


def get_attendance_service(store: RedisDocumentStore = Depends(get_store)) -> AttendanceService:
    return AttendanceService(store)


def get_barcode_service(store: RedisDocumentStore = Depends(get_store)) -> BarcodeService:
    return BarcodeService(store)


def get_bulk_service(
    store: RedisDocumentStore = Depends(get_store),
    security: SecurityService = Depends(get_security_service),
) -> BulkService:
    return BulkService(store, security)


def get_feed_service(request: Request) -> AttendanceFeedService:
    """The application-wide feed service; it owns the live subscriptions."""
    return request.app.state.feed_service
