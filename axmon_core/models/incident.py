from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, Text, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from ..database.base import Base, UUIDMixin, TimestampMixin


class Incident(Base, UUIDMixin, TimestampMixin):
    """
    Incident Model (alert correlation group).
    alert_count always equals the number of alerts whose correlation_id points here.
    """
    __tablename__ = "incidents"

    correlation_key: Mapped[str] = mapped_column(String, unique=True, nullable=False)  # CORR_yyyyMMdd_HHmmss_xxxxxxxx
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    severity: Mapped[str] = mapped_column(String, nullable=False)  # highest member severity
    status: Mapped[str] = mapped_column(String, default="Open", index=True)  # Open, Resolved
    first_detected_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    alert_count: Mapped[int] = mapped_column(Integer, default=0)
    confidence_score: Mapped[int] = mapped_column(Integer, default=0)  # 0-100
    correlation_reason: Mapped[str] = mapped_column(String, default="")

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "correlation_id": self.correlation_key,
            "title": self.title,
            "description": self.description,
            "severity": self.severity,
            "status": self.status,
            "first_detected_at": self.first_detected_at.isoformat() if self.first_detected_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "alert_count": self.alert_count,
            "confidence_score": self.confidence_score,
            "correlation_reason": self.correlation_reason,
        }

    def __repr__(self):
        return f"<Incident(key={self.correlation_key}, severity={self.severity}, alerts={self.alert_count})>"
