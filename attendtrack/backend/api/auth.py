import logging
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.security import OAuth2PasswordBearer
from pydantic import ValidationError

from ..config.config import settings
from ..db.store_errors import StoreError
from ..services.errors import ServiceError
from ..services.security_service import SecurityService
from .dependencies import get_security_service
from .schemas.auth import CurrentUser, SessionRef, SessionResponse, SessionStartRequest, TokenData
from .utilities.errors import to_http_exception
from .utilities.limiter import limiter

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/auth",
    tags=["Authentication"]
)
# Tokens are issued by the identity provider; this service only verifies them
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/token")


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """Signs a token the same way the identity provider does. Used by tooling and tests."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> CurrentUser:
    """Raises jwt.PyJWTError or ValidationError when the token is unusable."""
    payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    token_data = TokenData.model_validate(payload)
    if not token_data.sub:
        raise ValueError("Token has no subject")
    return CurrentUser(user_id=token_data.sub, email=token_data.email)


async def get_current_user(token: str = Depends(oauth2_scheme)) -> CurrentUser:
    """Decodes and validates the bearer token and returns the caller."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        return decode_access_token(token)
    except (jwt.PyJWTError, ValidationError, ValueError) as e:
        logger.warning(f"Token validation error: {e}")
        raise credentials_exception


@router.post("/session", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
async def start_session(
    request: Request,
    start_request: SessionStartRequest,
    user: CurrentUser = Depends(get_current_user),
    security: SecurityService = Depends(get_security_service),
):
    """
    Called by the client right after sign-in. Runs the login heuristics
    (advisory only) and opens a user session.
    """
    try:
        suspicion = await security.detect_suspicious_activity(user.user_id, "LOGIN")
        session = await security.create_user_session(user.user_id, {"method": start_request.method, "email": user.email})
    except (ServiceError, StoreError) as e:
        raise to_http_exception(e)

    if suspicion.suspicious:
        logger.warning(f"Suspicious login for user '{user.user_id}': {suspicion.reason}")
    logger.info(f"Session {session.session_id} started for user '{user.user_id}'.")
    return SessionResponse(
        session=session,
        suspicious=suspicion.suspicious,
        reason=suspicion.reason,
    )


@router.post("/session/end", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("20/minute")
async def end_session(
    request: Request,
    session_ref: SessionRef,
    user: CurrentUser = Depends(get_current_user),
    security: SecurityService = Depends(get_security_service),
):
    """Local sessions were never written, so ending one always succeeds."""
    if not await security.end_user_session(session_ref.session, user.user_id):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Session could not be ended.")
    logger.info(f"Session {session_ref.session.session_id} ended for user '{user.user_id}'.")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/session/activity", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("120/minute")
async def touch_session(
    request: Request,
    session_ref: SessionRef,
    user: CurrentUser = Depends(get_current_user),
    security: SecurityService = Depends(get_security_service),
):
    """Heartbeat that keeps a persisted session from being swept as idle."""
    await security.update_session_activity(session_ref.session)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
