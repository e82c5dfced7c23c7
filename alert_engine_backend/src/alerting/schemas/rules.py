from __future__ import annotations

import json
from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional, Tuple, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from src.alerting.schemas.common import Severity

# Rules with this dataType are candidates for every data point.
ALL_DATA_TYPES = "all"


def _decode_json(v: Any) -> Any:
    """Conditions/actions are stored serialized; accept JSON text as well as documents."""
    if isinstance(v, (bytes, bytearray)):
        v = v.decode("utf-8")
    if isinstance(v, str):
        return json.loads(v)
    return v


class SimpleCondition(BaseModel):
    """Leaf condition: compare one record field against a constant."""

    model_config = ConfigDict(frozen=True)

    type: Literal["simple"] = "simple"
    field: str = Field(..., min_length=1, description="Record field to read.")
    operator: str = Field(..., description="gt|lt|gte|lte|eq|neq|contains|not_contains")
    value: Any = Field(default=None, description="Right-hand operand.")


class CompoundCondition(BaseModel):
    """AND/OR node over one or more child conditions."""

    model_config = ConfigDict(frozen=True)

    type: Literal["compound"] = "compound"
    logic: str = Field(..., description="and|or (case-insensitive).")
    conditions: Tuple["ConditionNode", ...] = Field(..., min_length=1, description="Child conditions.")


ConditionNode = Annotated[Union[SimpleCondition, CompoundCondition], Field(discriminator="type")]

CompoundCondition.model_rebuild()

_condition_adapter: TypeAdapter = TypeAdapter(ConditionNode)


class ActionConfig(BaseModel):
    """A configured action. Type-specific fields are optional; unknown types are kept as-is."""

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    type: str = Field(..., description="notification|webhook|script")
    url: Optional[str] = Field(default=None, description="Webhook target URL.")
    recipients: Union[str, List[str], None] = Field(default=None, description="Notification recipients.")
    notification_type: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("notification_type", "notificationType"),
    )
    script_path: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("script_path", "scriptPath"),
    )


_actions_adapter: TypeAdapter = TypeAdapter(Tuple[ActionConfig, ...])


class RuleBase(BaseModel):
    """Common fields for an alert rule."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., description="Human-friendly rule name.")
    description: str = Field(default="", description="Free-form rule description.")
    data_type: str = Field(..., min_length=1, description="Telemetry data type, or 'all'.", alias="dataType")
    device_id: Optional[str] = Field(
        default=None,
        description="DeviceId to scope this rule to; null means apply to all devices.",
        alias="deviceId",
    )
    severity: Severity = Field(Severity.medium, description="Severity of alerts raised by this rule.")
    conditions: ConditionNode = Field(..., description="Condition tree evaluated per data point.")
    actions: Tuple[ActionConfig, ...] = Field(default=(), description="Actions run when an alert is created.")
    description_template: Optional[str] = Field(
        default=None,
        description="Alert description with {{field}} placeholders.",
        alias="descriptionTemplate",
    )
    is_active: bool = Field(True, description="Whether the rule is evaluated.", alias="isActive")

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be empty")
        return v

    @field_validator("conditions", mode="before")
    @classmethod
    def decode_conditions(cls, v: Any) -> Any:
        return _decode_json(v)

    @field_validator("actions", mode="before")
    @classmethod
    def decode_actions(cls, v: Any) -> Any:
        v = _decode_json(v)
        return () if v is None else v


class RuleCreate(RuleBase):
    """Payload for adding a rule."""


class RuleUpdate(BaseModel):
    """Partial update of a rule; only fields explicitly set are applied."""

    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(default=None)
    description: Optional[str] = Field(default=None)
    data_type: Optional[str] = Field(default=None, alias="dataType")
    device_id: Optional[str] = Field(default=None, alias="deviceId")
    severity: Optional[Severity] = Field(default=None)
    conditions: Optional[ConditionNode] = Field(default=None)
    actions: Optional[Tuple[ActionConfig, ...]] = Field(default=None)
    description_template: Optional[str] = Field(default=None, alias="descriptionTemplate")
    is_active: Optional[bool] = Field(default=None, alias="isActive")

    @field_validator("conditions", "actions", mode="before")
    @classmethod
    def decode_serialized(cls, v: Any) -> Any:
        return _decode_json(v)


class Rule(RuleBase):
    """A parsed, immutable rule as held in the rule snapshot."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., description="Rule id.")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    def applies_to(self, data_type: str, device_id: str) -> bool:
        """True when this rule is a candidate for a data point of data_type from device_id."""
        if self.data_type != data_type and self.data_type != ALL_DATA_TYPES:
            return False
        return self.device_id is None or self.device_id == device_id


# PUBLIC_INTERFACE
def parse_conditions(raw: Any) -> Union[SimpleCondition, CompoundCondition]:
    """Parse a serialized condition tree (document or JSON text). Raises ValueError/pydantic errors."""
    return _condition_adapter.validate_python(_decode_json(raw))


# PUBLIC_INTERFACE
def parse_actions(raw: Any) -> Tuple[ActionConfig, ...]:
    """Parse a serialized action list (documents or JSON text)."""
    raw = _decode_json(raw)
    return _actions_adapter.validate_python(() if raw is None else raw)
