import uuid as _uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String, JSON, Text, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from ..database.base import Base, UUIDMixin, TimestampMixin


class Alert(Base, UUIDMixin, TimestampMixin):
    """
    Alert Model.
    A single detected anomaly with severity and lifecycle status.
    """
    __tablename__ = "alerts"
    __table_args__ = (
        Index("ix_alerts_type_created_at", "type", "created_at"),
    )

    # alert_key is the public-facing business key (ALERT_yyyyMMdd_HHmmss_xxxxxxxx).
    # UUIDMixin.id is the internal surrogate primary key.
    alert_key: Mapped[str] = mapped_column(String, unique=True, nullable=False)

    type: Mapped[str] = mapped_column(String, nullable=False)
    severity: Mapped[str] = mapped_column(String, nullable=False)  # Info, Warning, Critical
    message: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String, default="Active", index=True)  # Active, Resolved, Closed (free-form)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Acknowledgement is metadata, never a status
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Back-reference to the incident this alert was correlated into
    correlation_id: Mapped[Optional[_uuid.UUID]] = mapped_column(
        ForeignKey("incidents.id", ondelete="SET NULL"), nullable=True, index=True
    )

    # Opaque key/value blob, e.g. {"AosServer": "AOS01"}
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, default=dict)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "alert_id": self.alert_key,
            "type": self.type,
            "severity": self.severity,
            "message": self.message,
            "status": self.status,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "created_by": self.created_by,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "metadata": self.metadata_ or {},
        }

    def __repr__(self):
        return f"<Alert(key={self.alert_key}, type={self.type}, severity={self.severity}, status={self.status})>"


class AlertGateClaim(Base):
    """
    Claimable slot backing the alert throttle gate.

    One row per gate key (e.g. "throttle:JobFailure"). A writer owns the slot
    when its conditional update or insert succeeds; concurrent creators of the
    same alert type cannot both hold it inside one window.
    """
    __tablename__ = "alert_gate_claims"

    gate_key: Mapped[str] = mapped_column(String, primary_key=True)
    alert_id: Mapped[Optional[_uuid.UUID]] = mapped_column(nullable=True, index=True)
    claimed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
