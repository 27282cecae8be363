from pydantic import BaseModel


class UserBrief(BaseModel):
    """Author / caller fields denormalised into outbound events."""

    id: int
    username: str
    display_name: str | None = None
    avatar_url: str | None = None

    model_config = {"from_attributes": True}
