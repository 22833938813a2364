from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CreationOutcome(str, Enum):
    CREATED = "created"
    DEDUPLICATED = "deduplicated"
    REJECTED = "rejected"


class RejectionKind(str, Enum):
    MAINTENANCE_SUPPRESSED = "maintenance_suppressed"
    THROTTLED = "throttled"
    SUPPRESSED_WINDOW = "suppressed_window"


class PolicyRejection(BaseModel):
    """
    Why CreateAlert declined to persist an alert.
    Carries the data needed for a user-facing message.
    """
    kind: RejectionKind
    reason: str
    window_names: List[str] = Field(default_factory=list)  # maintenance_suppressed
    alert_type: Optional[str] = None                        # throttled
    minutes_since_first: Optional[int] = None               # suppressed_window

    @property
    def retryable(self) -> bool:
        """Throttle and suppression are time-bounded; a later retry can succeed."""
        return self.kind in (RejectionKind.THROTTLED, RejectionKind.SUPPRESSED_WINDOW)


class AlertCreationResult(BaseModel):
    """Created | Deduplicated | Rejected(reason)."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    outcome: CreationOutcome
    alert: Optional[Any] = None  # axmon_core.models.alert.Alert for created/deduplicated
    rejection: Optional[PolicyRejection] = None

    @property
    def created(self) -> bool:
        return self.outcome == CreationOutcome.CREATED

    @property
    def deduplicated(self) -> bool:
        return self.outcome == CreationOutcome.DEDUPLICATED

    @property
    def rejected(self) -> bool:
        return self.outcome == CreationOutcome.REJECTED

    @classmethod
    def created_alert(cls, alert) -> "AlertCreationResult":
        return cls(outcome=CreationOutcome.CREATED, alert=alert)

    @classmethod
    def existing_alert(cls, alert) -> "AlertCreationResult":
        return cls(outcome=CreationOutcome.DEDUPLICATED, alert=alert)

    @classmethod
    def rejected_with(cls, rejection: PolicyRejection) -> "AlertCreationResult":
        return cls(outcome=CreationOutcome.REJECTED, rejection=rejection)
