import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from ..db.redis_client import Query, RedisDocumentStore
from ..db.store_errors import IndexUnavailableError, StoreError, StorePermissionError
from ..logging.logging_config import log_once
from ..models.db_models import Role, SecurityEvent, UserSession
from ..models.results import RateLimitStatus, RoleAssignment, SuspicionResult
from ..models.session_models import LocalSession, PersistedSession
from .errors import (
    InvalidInputError,
    PermissionDeniedError,
    RateLimitExceededError,
    ServiceError,
    StoreUnavailableError,
    SuspiciousActivityError,
)
from .query_fallback import get_with_index_fallback

logger = logging.getLogger(__name__)

ROLE_PERMISSIONS: Dict[str, List[str]] = {
    Role.ADMIN.value: [
        "view_all_attendance",
        "manage_attendance",
        "bulk_operations",
        "user_management",
        "system_settings",
        "audit_logs",
        "view_security_dashboard",
        "export_data",
        "import_data",
    ],
    Role.INSTRUCTOR.value: [
        "view_class_attendance",
        "manage_class_attendance",
        "export_class_data",
        "scan_barcode",
    ],
    Role.STUDENT.value: [
        "view_own_attendance",
        "scan_barcode",
    ],
    Role.VIEWER.value: [
        "view_reports",
    ],
}

# operation -> (max count, window in seconds)
RATE_LIMITS = {
    "ATTENDANCE_SCAN": (50, 60 * 60),
    "DATA_EXPORT": (10, 60 * 60),
    "BULK_OPERATION": (5, 60 * 60),
}

RAPID_SCAN_LIMIT = 10
RAPID_SCAN_WINDOW = timedelta(minutes=5)
LOGIN_HISTORY_SIZE = 10
MAX_LOGIN_ORIGINS = 3
EARLIEST_USUAL_HOUR = 6
LATEST_USUAL_HOUR = 22


def default_permissions(role: str) -> List[str]:
    return list(ROLE_PERMISSIONS.get(role, ROLE_PERMISSIONS[Role.STUDENT.value]))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SecurityService:
    """
    Roles and permissions, audit trail, security events, rate limiting,
    suspicious-activity heuristics and user sessions.

    Audit and security-event writes are awaited but never raise: a failed
    write is logged once per failure kind and the audited operation goes on.
    """
    def __init__(
        self,
        store: RedisDocumentStore,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.store = store
        self.session_id = session_id
        self.ip_address = ip_address
        self.user_agent = user_agent
        self.clock = clock

    # ===== Roles & permissions =====

    async def _read_tier(self, collection: str, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.store.get_document(collection, user_id)
        except StorePermissionError:
            log_once(logger, f"role-tier-denied:{collection}", f"Permission denied reading '{collection}'; trying the next role source.")
            return None

    async def get_user_role(self, user_id: str) -> RoleAssignment:
        """
        Identity document first, then the roles collection, then the student default.
        The default is not written back.
        """
        try:
            user = await self._read_tier("users", user_id)
            if user and user.get("role"):
                role = user["role"]
                return RoleAssignment(
                    role=role,
                    permissions=default_permissions(role),
                    is_active=user.get("isActive") is not False,
                    source="users",
                )

            role_document = await self._read_tier("user_roles", user_id)
            if role_document:
                return RoleAssignment(
                    role=role_document.get("role") or Role.STUDENT.value,
                    permissions=role_document.get("permissions") or [],
                    is_active=role_document.get("isActive") is not False,
                    source="user_roles",
                )
        except StoreError as e:
            logger.error(f"Error getting role of user {user_id}", exc_info=True)
            raise ServiceError("Failed to retrieve user role") from e

        return RoleAssignment(
            role=Role.STUDENT.value,
            permissions=default_permissions(Role.STUDENT.value),
            is_active=True,
            source="default",
        )

    async def has_permission(self, user_id: str, permission: str) -> bool:
        try:
            assignment = await self.get_user_role(user_id)
        except ServiceError:
            return False
        if not assignment.is_active:
            return False
        return assignment.role == Role.ADMIN.value or permission in assignment.permissions

    async def require_permission(self, user_id: str, permission: str, operation: str = "access") -> bool:
        if not await self.has_permission(user_id, permission):
            await self.log_security_event(
                "UNAUTHORIZED_ACCESS", user_id,
                details={"operation": operation, "permission": permission, "blocked": True},
                severity="medium",
            )
            raise PermissionDeniedError(f"Access denied. Required permission: {permission}", permission=permission)

        await self.log_security_event(
            "AUTHORIZED_ACCESS", user_id,
            details={"operation": operation, "permission": permission, "allowed": True},
        )
        return True

    async def update_user_role(
        self,
        user_id: str,
        new_role: str,
        updated_by: str,
        permissions: Optional[List[str]] = None,
    ) -> RoleAssignment:
        if new_role not in ROLE_PERMISSIONS:
            raise InvalidInputError(f"Invalid role: {new_role}")

        current = await self.get_user_role(user_id)
        new_permissions = permissions or default_permissions(new_role)
        now = self.clock()

        try:
            batch = self.store.batch()
            batch.set("user_roles", user_id, {
                "role": new_role,
                "permissions": new_permissions,
                "lastUpdated": now,
                "updatedBy": updated_by,
                "isActive": True,
            }, merge=True)
            if await self.store.get_document("users", user_id) is not None:
                batch.update("users", user_id, {"role": new_role, "updatedAt": now})
            await batch.commit()
        except StoreError as e:
            logger.error(f"Error updating role of user {user_id}", exc_info=True)
            raise ServiceError(f"Failed to update user role: {e}") from e

        await self.log_security_event(
            "ROLE_CHANGE", user_id,
            details={
                "oldRole": current.role,
                "newRole": new_role,
                "changedBy": updated_by,
                "previousPermissions": current.permissions,
                "newPermissions": new_permissions,
            },
            severity="medium",
        )
        logger.info(f"Role of {user_id} changed from {current.role} to {new_role} by {updated_by}")
        return RoleAssignment(role=new_role, permissions=new_permissions, is_active=True, source="user_roles")

    # ===== Audit trail =====

    async def log_audit_event(
        self,
        event_type: str,
        user_id: str,
        details: Optional[Dict[str, Any]] = None,
        user_email: Optional[str] = None,
    ) -> bool:
        now = self.clock()
        entry = {
            "eventType": event_type,
            "userId": user_id,
            "userEmail": user_email,
            "timestamp": now,
            "details": details or {},
            "sessionId": self.session_id or "unknown",
            "ipAddress": self.ip_address or "unknown",
            "userAgent": self.user_agent or "unknown",
            "createdAt": now,
        }
        try:
            await self.store.add("audit_logs", {k: v for k, v in entry.items() if v is not None})
            return True
        except StoreError as e:
            log_once(logger, f"audit-write:{type(e).__name__}", f"Could not write audit event ({event_type}): {e}")
            return False

    async def log_attendance_action(self, action: str, user_id: str, attendance_data: Any, result: str = "success") -> bool:
        return await self.log_audit_event("ATTENDANCE_ACTION", user_id, {
            "action": action,
            "attendanceData": attendance_data,
            "result": result,
        })

    async def log_data_export(self, user_id: str, export_type: str, filters: Optional[Dict[str, Any]] = None) -> bool:
        return await self.log_audit_event("DATA_EXPORT", user_id, {
            "action": "DATA_EXPORT",
            "exportType": export_type,
            "filters": filters or {},
        })

    async def log_bulk_operation(self, user_id: str, operation: str, record_count: int, result: Any) -> bool:
        return await self.log_audit_event("BULK_OPERATION", user_id, {
            "action": "BULK_OPERATION",
            "operation": operation,
            "recordCount": record_count,
            "result": result,
        })

    async def get_audit_logs(
        self,
        user_id: Optional[str] = None,
        event_type: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: Optional[int] = 100,
    ) -> List[Dict[str, Any]]:
        query = Query("audit_logs")
        if user_id:
            query = query.where("userId", "==", user_id)
        if event_type:
            query = query.where("eventType", "==", event_type)
        if start_date:
            query = query.where("timestamp", ">=", start_date)
        if end_date:
            query = query.where("timestamp", "<=", end_date)
        query = query.order_by("timestamp", descending=True)
        if limit:
            query = query.limit(limit)
        try:
            documents, _ = await get_with_index_fallback(self.store, query)
        except StoreError as e:
            logger.error("Error getting audit logs", exc_info=True)
            raise StoreUnavailableError(f"Failed to fetch audit logs: {e}") from e
        return documents

    # ===== Security events =====

    async def log_security_event(
        self,
        event_type: str,
        user_id: str,
        details: Optional[Dict[str, Any]] = None,
        severity: str = "low",
        **extra: Any,
    ) -> bool:
        now = self.clock()
        event = {
            **extra,
            "type": event_type,
            "userId": user_id,
            "timestamp": now,
            "severity": severity,
            "details": details or {},
            "sessionId": extra.get("sessionId") or self.session_id or "unknown",
            "ipAddress": extra.get("ipAddress") or self.ip_address or "unknown",
            "createdAt": now,
        }
        try:
            await self.store.add("security_events", event)
            return True
        except StoreError as e:
            log_once(logger, f"security-write:{type(e).__name__}", f"Could not write security event ({event_type}): {e}")
            return False

    async def get_security_events(
        self,
        user_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: Optional[int] = 50,
    ) -> List[SecurityEvent]:
        """Newest first. Degrades to an empty list when the store refuses or lacks the index."""
        query = Query("security_events")
        if user_id:
            query = query.where("userId", "==", user_id)
        if event_type:
            query = query.where("type", "==", event_type)
        query = query.order_by("timestamp", descending=True)
        if limit:
            query = query.limit(limit)
        try:
            documents = await self.store.get(query)
        except StorePermissionError:
            log_once(logger, "security-events-denied", "Security events access denied, returning empty results.")
            return []
        except IndexUnavailableError as e:
            log_once(logger, f"security-events-index:{e.index_name}", f"Index {e.index_name} is not ready, returning empty security events.")
            return []
        except StoreError:
            logger.error("Error getting security events", exc_info=True)
            return []
        return [SecurityEvent.model_validate(document) for document in documents]

    # ===== Rate limiting =====

    async def check_rate_limit(self, user_id: str, operation: str) -> RateLimitStatus:
        """
        Counts this user's audit entries for `operation` inside the window.
        The count is only as reliable as the audit writes it is derived from.
        """
        limit = RATE_LIMITS.get(operation)
        if limit is None:
            return RateLimitStatus(exceeded=False)
        max_count, window_seconds = limit

        window_start = self.clock() - timedelta(seconds=window_seconds)
        try:
            recent = await self.get_audit_logs(user_id=user_id, start_date=window_start, limit=None)
        except StoreUnavailableError:
            logger.error(f"Error checking rate limit of {user_id} for {operation}", exc_info=True)
            return RateLimitStatus(exceeded=False)

        count = sum(1 for entry in recent if (entry.get("details") or {}).get("action") == operation)
        return RateLimitStatus(
            exceeded=count >= max_count,
            count=count,
            limit=max_count,
            window_seconds=window_seconds,
        )

    # ===== Suspicious activity =====

    async def detect_suspicious_activity(
        self,
        user_id: str,
        action: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> SuspicionResult:
        """Advisory only; enforce_security_policies turns a hit into an error."""
        context = context or {}
        try:
            if action == "ATTENDANCE_SCAN":
                recent_scans = await self.get_audit_logs(
                    user_id=user_id,
                    event_type="ATTENDANCE_ACTION",
                    start_date=self.clock() - RAPID_SCAN_WINDOW,
                    limit=None,
                )
                if len(recent_scans) > RAPID_SCAN_LIMIT:
                    await self.log_security_event(
                        "SUSPICIOUS_ACTIVITY", user_id,
                        details={"subType": "RAPID_SCANNING", "scanCount": len(recent_scans), "timeframe": "5 minutes"},
                        severity="high",
                    )
                    return SuspicionResult(suspicious=True, reason="Too many scans in short time", severity="high")

                if context.get("barcodeId"):
                    owners = await self.store.get(Query("users").where("barcodeId", "==", context["barcodeId"]).limit(1))
                    if owners and owners[0]["id"] != user_id:
                        await self.log_security_event(
                            "SUSPICIOUS_ACTIVITY", user_id,
                            details={
                                "subType": "BARCODE_REUSE",
                                "barcodeId": context["barcodeId"],
                                "originalUser": owners[0]["id"],
                            },
                            severity="critical",
                        )
                        return SuspicionResult(suspicious=True, reason="Barcode already used by another user", severity="critical")

            if action == "LOGIN":
                unusual = await self._analyze_login_pattern(user_id)
                if unusual:
                    await self.log_security_event(
                        "SUSPICIOUS_ACTIVITY", user_id,
                        details={"subType": "UNUSUAL_LOGIN", **unusual},
                        severity="medium",
                    )
                    return SuspicionResult(suspicious=True, reason=unusual["reason"], severity="medium")
        except (StoreError, StoreUnavailableError):
            logger.error(f"Error detecting suspicious activity for {user_id}", exc_info=True)

        return SuspicionResult(suspicious=False)

    async def _analyze_login_pattern(self, user_id: str) -> Optional[Dict[str, Any]]:
        recent_logins = await self.get_security_events(user_id=user_id, event_type="LOGIN", limit=LOGIN_HISTORY_SIZE)
        origins = {event.model_extra.get("ipAddress") for event in recent_logins if event.model_extra}
        origins.discard(None)
        if len(origins) > MAX_LOGIN_ORIGINS:
            return {"reason": "Multiple IP addresses", "locationCount": len(origins), "ips": sorted(origins)}

        hour = self.clock().astimezone().hour
        if hour < EARLIEST_USUAL_HOUR or hour > LATEST_USUAL_HOUR:
            return {"reason": "Login at unusual hour", "hour": hour}
        return None

    async def enforce_security_policies(self, user_id: str, operation: str, context: Optional[Dict[str, Any]] = None) -> bool:
        assignment = await self.get_user_role(user_id)
        if not assignment.is_active:
            raise PermissionDeniedError("Account is deactivated")

        rate = await self.check_rate_limit(user_id, operation)
        if rate.exceeded:
            await self.log_security_event(
                "RATE_LIMIT_EXCEEDED", user_id,
                details={"operation": operation, "limit": rate.limit, "current": rate.count},
                severity="medium",
            )
            raise RateLimitExceededError(f"Rate limit exceeded for {operation}", operation=operation)

        suspicion = await self.detect_suspicious_activity(user_id, operation, context)
        if suspicion.suspicious:
            raise SuspiciousActivityError(f"Suspicious activity detected: {suspicion.reason}", severity=suspicion.severity)
        return True

    # ===== Sessions =====

    async def create_user_session(self, user_id: str, login_data: Optional[Dict[str, Any]] = None):
        """
        Persists a session. When the session store is unavailable a LocalSession
        with a made-up id is returned instead, so login never blocks on it.
        """
        login_data = login_data or {}
        now = self.clock()
        await self.log_security_event("LOGIN", user_id, details={"method": login_data.get("method", "email")})
        session = UserSession(
            user_id=user_id,
            start_time=now,
            is_active=True,
            last_activity=now,
            ip_address=self.ip_address or "unknown",
            user_agent=self.user_agent or "unknown",
            login_method=login_data.get("method", "email"),
        )
        try:
            session_id = await self.store.add("user_sessions", session.to_document())
        except StoreError as e:
            log_once(logger, f"session-create:{type(e).__name__}", f"Could not create user session, using a local one: {e}")
            local = LocalSession(session_id=f"temp_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}")
            self.session_id = local.session_id
            return local

        self.session_id = session_id
        await self.log_security_event("SESSION_START", user_id, details=login_data, sessionId=session_id)
        return PersistedSession(session_id=session_id)

    async def update_session_activity(self, session) -> bool:
        if not session.is_durable:
            return False
        try:
            await self.store.update("user_sessions", session.session_id, {"lastActivity": self.clock()})
            return True
        except StoreError as e:
            log_once(logger, f"session-activity:{type(e).__name__}", f"Could not update session activity: {e}")
            return False

    async def end_user_session(self, session, user_id: str) -> bool:
        if not session.is_durable:
            return True
        try:
            await self.store.update("user_sessions", session.session_id, {"endTime": self.clock(), "isActive": False})
        except StoreError as e:
            log_once(logger, f"session-end:{type(e).__name__}", f"Could not end user session: {e}")
            return False
        await self.log_security_event("SESSION_END", user_id, sessionId=session.session_id)
        return True

    async def sweep_idle_sessions(self, idle_timeout: timedelta) -> int:
        """Ends every active persisted session idle for longer than `idle_timeout`."""
        cutoff = self.clock() - idle_timeout
        active = await self.store.get(Query("user_sessions").where("isActive", "==", True))
        idle = [
            session for session in active
            if session.get("lastActivity") is not None
            and UserSession.model_validate(session).last_activity < cutoff
        ]
        now = self.clock()
        for start in range(0, len(idle), self.store.batch_limit):
            batch = self.store.batch()
            for session in idle[start:start + self.store.batch_limit]:
                batch.update("user_sessions", session["id"], {"endTime": now, "isActive": False, "endReason": "idle_timeout"})
            await batch.commit()
        return len(idle)
