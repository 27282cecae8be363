from typing import Any

from pydantic import AliasChoices, BaseModel, Field, model_validator


class ChannelRef(BaseModel):
    """Payload naming a single channel.

    join_channel / leave_channel send a bare id; typing_start, typing_stop and
    mark_read send {"channel_id": id}.  Both shapes are accepted everywhere.
    """

    channel_id: int = Field(validation_alias=AliasChoices("channel_id", "channelId"))

    @model_validator(mode="before")
    @classmethod
    def accept_bare_id(cls, data: Any) -> Any:
        if isinstance(data, (int, str)):
            return {"channel_id": data}
        return data
