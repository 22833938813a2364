"""
Typed remediation rule payloads.

Conditions and actions are validated when a rule is created or updated, so
evaluation and execution only ever see well-formed rules.
"""
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    TypeAdapter,
    field_validator,
    model_validator,
)


class Comparator(str, Enum):
    EQ = "eq"
    GT = "gt"
    LT = "lt"


Threshold = Union[StrictBool, StrictInt, StrictFloat, StrictStr]


def as_number(value: Any) -> Optional[float]:
    """Numeric view of a metric or threshold value, or None if it has none."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


class TriggerCondition(BaseModel):
    metric: str = Field(min_length=1)
    comparator: Comparator = Comparator.EQ
    threshold: Threshold

    @model_validator(mode="after")
    def numeric_threshold_for_ordering(self):
        if self.comparator != Comparator.EQ and as_number(self.threshold) is None:
            raise ValueError(
                f"Condition on '{self.metric}' uses '{self.comparator.value}' with non-numeric threshold {self.threshold!r}"
            )
        return self

    def holds(self, metrics: Dict[str, Any]) -> bool:
        if self.metric not in metrics:
            return False
        actual = metrics[self.metric]

        if self.comparator == Comparator.EQ:
            if actual == self.threshold and type(actual) is type(self.threshold):
                return True
            actual_num, expected_num = as_number(actual), as_number(self.threshold)
            if actual_num is None or expected_num is None:
                return False
            return actual_num == expected_num

        actual_num = as_number(actual)
        if actual_num is None:
            return False
        expected_num = as_number(self.threshold)
        if self.comparator == Comparator.GT:
            return actual_num > expected_num
        return actual_num < expected_num


def parse_legacy_conditions(mapping: Dict[str, Any]) -> List[dict]:
    """
    Convert the legacy {"metric>": value} encoding into condition dicts.

    A trailing '>' or '<' on the key selects the comparator; any other
    placement of a comparator character is malformed.
    """
    conditions = []
    for key, expected in mapping.items():
        metric = str(key).strip()
        comparator = Comparator.EQ
        if metric.endswith(">"):
            comparator, metric = Comparator.GT, metric[:-1].strip()
        elif metric.endswith("<"):
            comparator, metric = Comparator.LT, metric[:-1].strip()

        if not metric or ">" in metric or "<" in metric:
            raise ValueError(f"Malformed condition key '{key}'")

        conditions.append({"metric": metric, "comparator": comparator.value, "threshold": expected})
    return conditions


def _coerce_conditions(value):
    if isinstance(value, dict):
        return parse_legacy_conditions(value)
    return value


class _ActionBase(BaseModel):
    continue_on_failure: bool = Field(
        default=False,
        validation_alias=AliasChoices("continue_on_failure", "continueOnFailure"),
    )


class RestartBatchJobAction(_ActionBase):
    action: Literal["restart_batch_job"]
    job_id: int


class KillSessionAction(_ActionBase):
    action: Literal["kill_session"]
    session_id: int


class SendNotificationAction(_ActionBase):
    action: Literal["send_notification"]
    message: str = "Automated remediation triggered for rule {{rule.name}}"
    channel: Optional[str] = None  # None = every configured channel


RemediationAction = Annotated[
    Union[RestartBatchJobAction, KillSessionAction, SendNotificationAction],
    Field(discriminator="action"),
]

conditions_adapter = TypeAdapter(List[TriggerCondition])
actions_adapter = TypeAdapter(List[RemediationAction])


class RemediationRuleCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    trigger_conditions: List[TriggerCondition] = Field(default_factory=list)
    actions: List[RemediationAction] = Field(default_factory=list)
    priority: int = 5
    enabled: bool = True
    cooldown_minutes: int = Field(default=15, ge=0)
    max_attempts: int = Field(default=3, ge=1)  # reserved
    timeout_seconds: int = Field(default=300, gt=0)
    requires_confirmation: bool = False
    business_impact: Optional[str] = None

    @field_validator("trigger_conditions", mode="before")
    @classmethod
    def accept_legacy_mapping(cls, value):
        return _coerce_conditions(value)


class RemediationRuleUpdate(BaseModel):
    """Partial update: only fields that are set replace stored values."""
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    trigger_conditions: Optional[List[TriggerCondition]] = None
    actions: Optional[List[RemediationAction]] = None
    priority: Optional[int] = None
    enabled: Optional[bool] = None
    cooldown_minutes: Optional[int] = Field(default=None, ge=0)
    business_impact: Optional[str] = None

    @field_validator("trigger_conditions", mode="before")
    @classmethod
    def accept_legacy_mapping(cls, value):
        return _coerce_conditions(value)
