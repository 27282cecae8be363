from pydantic import AliasChoices, BaseModel, Field


class ReactionCreate(BaseModel):
    """Payload of add_reaction and remove_reaction."""

    message_id: int = Field(validation_alias=AliasChoices("message_id", "messageId"))
    emoji: str = Field(..., min_length=1, max_length=50)
