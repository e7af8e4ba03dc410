from typing import List, Optional

from pydantic import BaseModel


class RoleUpdateRequest(BaseModel):
    role: str
    permissions: Optional[List[str]] = None
