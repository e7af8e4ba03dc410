from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


class PersistedSession(BaseModel):
    """A session whose record exists in the `user_sessions` collection."""
    kind: Literal["persisted"] = "persisted"
    session_id: str

    @property
    def is_durable(self) -> bool:
        return True


class LocalSession(BaseModel):
    """
    A session id made up locally because the session store was unavailable.
    Nothing about it is ever written to the store.
    """
    kind: Literal["local"] = "local"
    session_id: str

    @property
    def is_durable(self) -> bool:
        return False


SessionHandle = Annotated[Union[PersistedSession, LocalSession], Field(discriminator="kind")]
