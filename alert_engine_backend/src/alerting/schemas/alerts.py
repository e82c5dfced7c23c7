from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from src.alerting.schemas.common import AlertStatus, Severity


class Alert(BaseModel):
    """One firing episode of a rule against a device."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Alert id.")
    rule_id: str = Field(..., description="Rule that raised the alert.", alias="ruleId")
    device_id: str = Field(..., description="Device the alert applies to.", alias="deviceId")
    severity: Severity = Field(..., description="Severity copied from the rule at creation time.")
    status: AlertStatus = Field(AlertStatus.active, description="active|resolved")
    description: str = Field(..., description="Human-readable alert description.")
    data: Dict[str, Any] = Field(default_factory=dict, description="Snapshot of the triggering data point.")

    created_at: datetime = Field(..., alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")
    resolved_at: Optional[datetime] = Field(default=None, alias="resolvedAt")
    resolution: Optional[str] = Field(default=None, description="Operator's resolution note.")
    resolved_by: Optional[str] = Field(default=None, description="User who resolved the alert.", alias="resolvedBy")

    @property
    def key(self) -> Tuple[str, str]:
        """Dedup key: (ruleId, deviceId)."""
        return (self.rule_id, self.device_id)

    @property
    def is_active(self) -> bool:
        return self.status == AlertStatus.active

    def to_doc(self) -> dict:
        """Store document (camelCase keys, `_id`, plain string enums)."""
        doc = self.model_dump(by_alias=True)
        doc["_id"] = doc.pop("id")
        doc["severity"] = self.severity.value
        doc["status"] = self.status.value
        return doc

    @classmethod
    def from_doc(cls, doc: dict) -> "Alert":
        data = dict(doc)
        if "_id" in data:
            data["id"] = str(data.pop("_id"))
        return cls.model_validate(data)


class AlertHistoryQuery(BaseModel):
    """Filter/pagination model for the persisted alert history."""

    model_config = ConfigDict(populate_by_name=True)

    status: Optional[AlertStatus] = Field(default=None, description="Filter by status (active|resolved).")
    severity: Optional[Severity] = Field(default=None, description="Filter by severity.")
    device_id: Optional[str] = Field(default=None, description="Filter by deviceId.", alias="deviceId")
    rule_id: Optional[str] = Field(default=None, description="Filter by ruleId.", alias="ruleId")
    start: Optional[datetime] = Field(default=None, description="createdAt lower bound (inclusive).")
    end: Optional[datetime] = Field(default=None, description="createdAt upper bound (inclusive).")
    limit: int = Field(100, ge=1, le=500, description="Max number of alerts to return.")
    offset: int = Field(0, ge=0, le=100000, description="Offset for pagination (simple skip).")


class AlertHistoryPage(BaseModel):
    """Envelope for a page of the alert history."""

    items: List[Alert] = Field(..., description="Alerts, newest first.")
    total: int = Field(..., ge=0, description="Total count matching the filters.")
