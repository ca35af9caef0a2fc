"""Admin schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class FlagResolveRequest(BaseModel):
    """Operator resolution of a booking's payment flag."""

    resolution: str = Field(..., pattern="^(confirm|refund|dismiss)$")
    note: str | None = Field(None, max_length=1000)


class AuditEntryResponse(BaseModel):
    """One recorded transition."""

    id: UUID
    action: str
    user_id: UUID | None
    old_values: dict | None
    new_values: dict | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
