"""Pydantic models for tracking-network and sending-platform report responses."""
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class EntityColumn(BaseModel):
    """One dimension value of an entity report row (date, offer, sub1, sub2)."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    column_type: str = Field("", description="date|offer|sub1|sub2")
    id: str = Field("", description="Dimension id (unix timestamp for date columns)")
    label: str = Field("", description="Human readable value (raw tag for sub1/sub2)")


class ReportingTotals(BaseModel):
    """Summed metrics for an entity report row or summary."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    total_click: int = 0
    unique_click: int = 0
    conversions: int = Field(0, alias="cv")
    payout: float = 0.0
    revenue: float = 0.0


class EntityRow(BaseModel):
    """Entity report table row."""

    model_config = ConfigDict(extra="ignore")

    columns: list[EntityColumn] = Field(default_factory=list)
    reporting: ReportingTotals = Field(default_factory=ReportingTotals)

    def column(self, column_type: str) -> Optional[EntityColumn]:
        """Return the first column of the given type."""
        for col in self.columns:
            if col.column_type == column_type:
                return col
        return None


class EntityReport(BaseModel):
    """Entity (cross-tab) report: dimensions x aggregated metrics."""

    model_config = ConfigDict(extra="ignore")

    summary: ReportingTotals = Field(default_factory=ReportingTotals)
    table: list[EntityRow] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.table


class RelatedEntity(BaseModel):
    """Offer/affiliate reference embedded in a conversion record."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    network_offer_id: Optional[str] = None
    network_affiliate_id: Optional[str] = None
    name: str = ""


class ConversionRelationship(BaseModel):
    model_config = ConfigDict(extra="ignore")

    offer: Optional[RelatedEntity] = None
    affiliate: Optional[RelatedEntity] = None


class ConversionRecord(BaseModel):
    """Raw conversion record from the paginated conversions endpoint."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    conversion_id: str = ""
    transaction_id: str = ""
    offer_id: str = ""
    offer_name: str = ""
    affiliate_id: str = ""
    status: str = ""
    revenue: float = 0.0
    payout: float = 0.0
    sub1: str = ""
    sub2: str = ""
    sub3: str = ""
    conversion_unix_timestamp: int = 0
    click_unix_timestamp: int = 0
    relationship: Optional[ConversionRelationship] = None

    def resolved_offer(self) -> tuple[str, str]:
        """Offer id and name, preferring the embedded relationship."""
        if self.relationship and self.relationship.offer:
            offer = self.relationship.offer
            return offer.network_offer_id or self.offer_id, offer.name or self.offer_name
        return self.offer_id, self.offer_name


class ClickRecord(BaseModel):
    """Raw click record from the clicks endpoint."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    click_id: str = ""
    offer_id: str = ""
    offer_name: str = ""
    sub1: str = ""
    sub2: str = ""
    timestamp: str = ""


class ListInfo(BaseModel):
    """Sending-platform list metadata."""

    model_config = ConfigDict(extra="ignore")

    id: int
    name: str = ""


def row_int(row: dict[str, Any], key: str) -> int:
    """Read an integer metric from a sending-platform report row."""
    value = row.get(key)
    if value is None or value == "":
        return 0
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def row_str(row: dict[str, Any], key: str) -> str:
    """Read a string field from a sending-platform report row."""
    value = row.get(key)
    return "" if value is None else str(value)


class SendingCampaignStats(BaseModel):
    """Per-mailing delivery stats from the sending platform reports API."""

    mailing_id: str
    name: str = ""
    esp_name: str = ""
    targeted: int = 0
    sent: int = 0
    delivered: int = 0
    opens: int = 0
    unique_opens: int = 0
    clicks: int = 0

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "SendingCampaignStats":
        """Build from a report row; numeric fields arrive as strings or floats."""
        return cls(
            mailing_id=row_str(row, "mailing_id"),
            name=row_str(row, "mailing_name"),
            esp_name=row_str(row, "esp_name"),
            targeted=row_int(row, "targeted"),
            sent=row_int(row, "sent"),
            delivered=row_int(row, "success"),
            opens=row_int(row, "opens"),
            unique_opens=row_int(row, "unique_opens"),
            clicks=row_int(row, "clicks"),
        )
