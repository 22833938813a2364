from typing import Optional

from pydantic import BaseModel, Field, model_validator

from ..models.enums import Severity


class EscalationRuleCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    alert_type: Optional[str] = None
    min_severity: Severity = Severity.WARNING
    first_escalation_minutes: int = Field(default=15, ge=0)
    first_escalation_recipients: str = ""
    second_escalation_minutes: Optional[int] = Field(default=None, ge=0)
    second_escalation_recipients: Optional[str] = None
    final_escalation_minutes: Optional[int] = Field(default=None, ge=0)
    final_escalation_recipients: Optional[str] = None
    escalate_via_webhook: bool = True
    escalate_via_teams: bool = True
    enabled: bool = True
    created_by: str = ""

    @model_validator(mode="after")
    def tiers_increase(self):
        tiers = [
            m for m in (self.first_escalation_minutes, self.second_escalation_minutes, self.final_escalation_minutes)
            if m is not None
        ]
        if tiers != sorted(tiers) or len(set(tiers)) != len(tiers):
            raise ValueError(f"Escalation tiers must be strictly increasing, got {tiers}")
        return self


class EscalationRuleUpdate(BaseModel):
    """Partial update: only fields that are set replace stored values."""
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    alert_type: Optional[str] = None
    min_severity: Optional[Severity] = None
    first_escalation_minutes: Optional[int] = Field(default=None, ge=0)
    first_escalation_recipients: Optional[str] = None
    second_escalation_minutes: Optional[int] = Field(default=None, ge=0)
    second_escalation_recipients: Optional[str] = None
    final_escalation_minutes: Optional[int] = Field(default=None, ge=0)
    final_escalation_recipients: Optional[str] = None
    escalate_via_webhook: Optional[bool] = None
    escalate_via_teams: Optional[bool] = None
    enabled: Optional[bool] = None
