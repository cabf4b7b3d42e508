"""Base model shared by tree nodes, events and configuration snapshots."""

from pydantic import BaseModel, ConfigDict


class Model(BaseModel):
    """Immutable model; instances are shared between the core and the host."""

    model_config = ConfigDict(frozen=True)

    def to_json(self) -> str:
        """Serialize for the host, leaving out unset optional fields."""
        return self.model_dump_json(exclude_none=True)
