"""Pydantic models for the sending platform contact activity export API."""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

STATUS_PENDING = 1
STATUS_COMPLETED = 2


class ContactActivityCriterion(BaseModel):
    """Single filter criterion of a contact activity report."""

    field_name: str
    type: str = "string"
    operator: str = Field("notempty", description="=|!=|notempty|empty|LIKE")
    operand: list[str] = Field(default_factory=list)
    case_sensitive: int = 0
    condition: str = "and"


class ContactActivityFilters(BaseModel):
    criteria: list[ContactActivityCriterion] = Field(default_factory=list)
    user_type: str = "all"
    from_date: int = Field(..., description="Unix timestamp (window start)")
    to_date: int = Field(..., description="Unix timestamp (window end)")


class ContactActivityRequest(BaseModel):
    """Request body for creating a contact activity report."""

    title: str
    selected_fields: list[str] = Field(default_factory=lambda: ["data_set", "sent"])
    filters: ContactActivityFilters
    combined_as_and: bool = True


class ContactActivityReport(BaseModel):
    """Contact activity report status (1 = pending, 2 = completed)."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: str = Field(..., description="Report id returned by the create call")
    status: int = STATUS_PENDING
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        """Check if report has left the pending state."""
        return self.status not in {0, STATUS_PENDING}

    @property
    def is_success(self) -> bool:
        """Check if report completed and can be exported."""
        return self.status == STATUS_COMPLETED
