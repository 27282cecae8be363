from typing import Any

from pydantic import AliasChoices, BaseModel, Field, model_validator


class WorkspaceRef(BaseModel):
    """join_workspace payload: a bare id or {"workspace_id": id}."""

    workspace_id: int = Field(validation_alias=AliasChoices("workspace_id", "workspaceId"))

    @model_validator(mode="before")
    @classmethod
    def accept_bare_id(cls, data: Any) -> Any:
        if isinstance(data, (int, str)):
            return {"workspace_id": data}
        return data
