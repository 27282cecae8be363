from typing import Literal

from pydantic import AliasChoices, BaseModel, Field

PresenceStatus = Literal["online", "away", "dnd", "offline"]


class StatusUpdate(BaseModel):
    status: PresenceStatus
    status_message: str | None = Field(
        None, max_length=200, validation_alias=AliasChoices("status_message", "statusMessage")
    )
