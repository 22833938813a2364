import uuid as _uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, Boolean, Text, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ..database.base import Base, UUIDMixin, TimestampMixin


class EscalationRule(Base, UUIDMixin, TimestampMixin):
    """
    Escalation Rule Model.
    Time-tiered escalation of Active, unacknowledged alerts. The second and
    final tiers are optional; a tier without recipients is never sent.
    """
    __tablename__ = "escalation_rules"

    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    alert_type: Mapped[Optional[str]] = mapped_column(String, nullable=True)  # None = every type
    min_severity: Mapped[str] = mapped_column(String, default="Warning")

    first_escalation_minutes: Mapped[int] = mapped_column(Integer, default=15)
    first_escalation_recipients: Mapped[str] = mapped_column(String, default="")
    second_escalation_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    second_escalation_recipients: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    final_escalation_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    final_escalation_recipients: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    escalate_via_webhook: Mapped[bool] = mapped_column(Boolean, default=True)
    escalate_via_teams: Mapped[bool] = mapped_column(Boolean, default=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_by: Mapped[str] = mapped_column(String, default="")

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "name": self.name,
            "description": self.description,
            "alert_type": self.alert_type,
            "min_severity": self.min_severity,
            "first_escalation_minutes": self.first_escalation_minutes,
            "first_escalation_recipients": self.first_escalation_recipients,
            "second_escalation_minutes": self.second_escalation_minutes,
            "second_escalation_recipients": self.second_escalation_recipients,
            "final_escalation_minutes": self.final_escalation_minutes,
            "final_escalation_recipients": self.final_escalation_recipients,
            "escalate_via_webhook": self.escalate_via_webhook,
            "escalate_via_teams": self.escalate_via_teams,
            "enabled": self.enabled,
            "created_by": self.created_by,
        }

    def __repr__(self):
        return f"<EscalationRule(name={self.name}, type={self.alert_type}, min_severity={self.min_severity})>"


class AlertEscalation(Base, UUIDMixin):
    """
    Alert Escalation Model.
    One row per (alert, rule, level); the unique constraint is the claim that
    keeps a level from being sent twice.
    """
    __tablename__ = "alert_escalations"
    __table_args__ = (
        UniqueConstraint("alert_id", "rule_id", "escalation_level", name="uq_alert_escalations_level"),
    )

    alert_id: Mapped[_uuid.UUID] = mapped_column(ForeignKey("alerts.id", ondelete="CASCADE"), index=True)
    rule_id: Mapped[_uuid.UUID] = mapped_column(ForeignKey("escalation_rules.id", ondelete="CASCADE"))
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False)  # 1 first, 2 second, 3 final
    recipients: Mapped[str] = mapped_column(String, default="")
    escalated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    minutes_since_alert: Mapped[int] = mapped_column(Integer, nullable=False)
    sent_via_webhook: Mapped[bool] = mapped_column(Boolean, default=False)
    sent_via_teams: Mapped[bool] = mapped_column(Boolean, default=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "alert_id": str(self.alert_id),
            "rule_id": str(self.rule_id),
            "escalation_level": self.escalation_level,
            "recipients": self.recipients,
            "escalated_at": self.escalated_at.isoformat() if self.escalated_at else None,
            "minutes_since_alert": self.minutes_since_alert,
            "sent_via_webhook": self.sent_via_webhook,
            "sent_via_teams": self.sent_via_teams,
            "error_message": self.error_message,
        }

    def __repr__(self):
        return f"<AlertEscalation(alert={self.alert_id}, level={self.escalation_level})>"
