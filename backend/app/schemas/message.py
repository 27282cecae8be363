from datetime import datetime

from pydantic import AliasChoices, BaseModel, Field, field_validator

from app.config import settings


def _require_text(v: str) -> str:
    if not v.strip():
        raise ValueError("Message content must not be empty")
    if len(v) > settings.MESSAGE_MAX_LENGTH:
        raise ValueError(f"Message content exceeds {settings.MESSAGE_MAX_LENGTH} characters")
    return v


class MessageCreate(BaseModel):
    channel_id: int = Field(validation_alias=AliasChoices("channel_id", "channelId"))
    content: str
    message_type: str = Field("text", max_length=20)
    parent_message_id: int | None = Field(
        None, validation_alias=AliasChoices("parent_message_id", "parentMessageId")
    )

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, v: str) -> str:
        return _require_text(v)

    @field_validator("message_type", mode="before")
    @classmethod
    def default_type(cls, v: str | None) -> str:
        return v or "text"


class MessageUpdate(BaseModel):
    message_id: int = Field(validation_alias=AliasChoices("message_id", "messageId"))
    content: str

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, v: str) -> str:
        return _require_text(v)


class MessageRef(BaseModel):
    message_id: int = Field(validation_alias=AliasChoices("message_id", "messageId"))


class MessageOut(BaseModel):
    """Post-persistence snapshot republished to channel members."""

    id: int
    channel_id: int
    user_id: int
    content: str
    message_type: str
    parent_message_id: int | None = None
    created_at: datetime | None = None
    is_edited: bool = False
    edited_at: datetime | None = None
    is_deleted: bool = False
    # Denormalised author fields
    username: str
    display_name: str | None = None
    avatar_url: str | None = None
    status: str | None = None
    is_online: bool = False
    reaction_count: int = 0
    reply_count: int = 0
