from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, field_validator


def _alias(name: str, camel: str) -> AliasChoices:
    return AliasChoices(name, camel)


class CallInitiate(BaseModel):
    target_user_id: int = Field(validation_alias=_alias("target_user_id", "targetUserId"))
    channel_id: int | None = Field(None, validation_alias=_alias("channel_id", "channelId"))
    workspace_id: int | None = Field(None, validation_alias=_alias("workspace_id", "workspaceId"))
    call_type: str = Field("audio", max_length=20, validation_alias=_alias("call_type", "callType"))


class CallRef(BaseModel):
    call_id: str = Field(validation_alias=_alias("call_id", "callId"))


class CallReject(CallRef):
    reason: str = Field("rejected", max_length=50)

    @field_validator("reason", mode="before")
    @classmethod
    def default_reason(cls, v: str | None) -> str:
        return v or "rejected"


class CallMute(CallRef):
    is_muted: bool = Field(validation_alias=_alias("is_muted", "isMuted"))


class SignalRelay(BaseModel):
    """webrtc:offer / answer / ice-candidate.  The payload is forwarded verbatim."""

    target_user_id: int = Field(validation_alias=_alias("target_user_id", "targetUserId"))
    call_id: str | None = Field(None, validation_alias=_alias("call_id", "callId"))
    payload: Any = Field(
        None, validation_alias=AliasChoices("payload", "offer", "answer", "candidate", "sdp")
    )


class ActiveCallOut(BaseModel):
    call_id: str
    caller_id: int
    recipient_id: int
    caller_username: str
    caller_display_name: str | None = None
    recipient_username: str
    recipient_display_name: str | None = None
    channel_id: int | None = None
    workspace_id: int | None = None
    call_type: str
    status: str
    started_at: datetime | None = None
    connected_at: datetime | None = None
