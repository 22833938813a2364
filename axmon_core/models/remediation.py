from datetime import datetime
from typing import Optional

from sqlalchemy import String, JSON, Integer, Boolean, Text, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column

from ..database.base import Base, TimestampMixin


class RemediationRule(Base, TimestampMixin):
    """
    Remediation Rule Model.
    Condition -> action mapping evaluated against live metrics.
    The business key (RULE_yyyyMMdd_HHmmss_xxxxxxxx) is the primary key.
    """
    __tablename__ = "remediation_rules"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")

    # [{"metric": ..., "comparator": "eq|gt|lt", "threshold": ...}], ANDed
    trigger_conditions: Mapped[list] = mapped_column(JSON, default=list)
    # [{"action": "restart_batch_job", "job_id": 42, "continue_on_failure": false}, ...]
    actions: Mapped[list] = mapped_column(JSON, default=list)

    priority: Mapped[int] = mapped_column(Integer, default=5)  # higher evaluated first
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    cooldown_minutes: Mapped[int] = mapped_column(Integer, default=15)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)  # reserved, not consulted by execution
    timeout_seconds: Mapped[int] = mapped_column(Integer, default=300)  # per action dispatch
    requires_confirmation: Mapped[bool] = mapped_column(Boolean, default=False)
    business_impact: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Cooldown claim: set atomically when an execution is started
    last_triggered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "trigger_conditions": self.trigger_conditions or [],
            "actions": self.actions or [],
            "priority": self.priority,
            "enabled": self.enabled,
            "cooldown_minutes": self.cooldown_minutes,
            "max_attempts": self.max_attempts,
            "timeout_seconds": self.timeout_seconds,
            "requires_confirmation": self.requires_confirmation,
            "business_impact": self.business_impact,
        }

    def __repr__(self):
        return f"<RemediationRule(id={self.id}, name={self.name}, priority={self.priority})>"


class RemediationExecution(Base):
    """
    Remediation Execution Model.
    Status moves forward only: Pending -> Running -> Success | Failed.
    """
    __tablename__ = "remediation_executions"
    __table_args__ = (
        Index("ix_remediation_executions_rule_start", "rule_id", "start_time"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)  # EXEC_yyyyMMdd_HHmmss_<uuid>
    rule_id: Mapped[str] = mapped_column(String, nullable=False)
    trigger_data: Mapped[dict] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(String, default="Pending", index=True)
    # [{"action": ..., "status": "success|failed|skipped", "message"|"error": ..., "timestamp": ...}]
    actions_executed: Mapped[list] = mapped_column(JSON, default=list)
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "trigger_data": self.trigger_data or {},
            "status": self.status,
            "actions_executed": self.actions_executed or [],
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "error_message": self.error_message,
        }

    def __repr__(self):
        return f"<RemediationExecution(id={self.id}, rule={self.rule_id}, status={self.status})>"
