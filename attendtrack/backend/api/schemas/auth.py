from typing import Optional

from pydantic import BaseModel, ConfigDict

from ...models.session_models import SessionHandle


class TokenData(BaseModel):
    """Claims of a bearer token issued by the identity provider."""
    sub: Optional[str] = None
    email: Optional[str] = None


class CurrentUser(BaseModel):
    user_id: str
    email: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class SessionStartRequest(BaseModel):
    method: str = "email"


class SessionRef(BaseModel):
    """Identifies a session returned by POST /auth/session."""
    session: SessionHandle


class SessionResponse(BaseModel):
    session: SessionHandle
    suspicious: bool = False
    reason: Optional[str] = None
