from pydantic import BaseModel, Field


class SyncModel(BaseModel):
    max_changes: int = Field(default=200, ge=1)
    """Maximum number of changes accepted in a single sync request."""
