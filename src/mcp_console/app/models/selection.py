"""Per-conversation tool selection models."""

from pydantic import BaseModel, Field


class ResolvedCapability(BaseModel):
    """One (server, capability) pair that is enabled and live."""

    server_id: str
    name: str
    description: str = ""
    input_schema: dict = Field(default_factory=dict)


class SelectionSnapshot(BaseModel):
    """Raw selection mapping plus its resolved view.

    ``selections`` may name capabilities that no longer exist; ``resolved``
    never does.
    """

    conversation_id: str
    selections: dict[str, list[str]] = Field(default_factory=dict)
    resolved: list[ResolvedCapability] = Field(default_factory=list)
    count: int = 0


class ServerSelectionState(BaseModel):
    """Tri-state data for a server row: none, some or all capabilities on."""

    server_id: str
    selected: list[str] = Field(default_factory=list)
    fully_selected: bool = False
