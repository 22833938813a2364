"""
Interfaces of the external collaborators the core consumes.

Maintenance-window calendars, baseline statistics, user identity and the
batch-job/session control operations live outside this package; they are
injected into the services as objects satisfying these protocols.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol


class MaintenanceWindowProvider(Protocol):
    async def is_suppressed(self, now: datetime) -> bool:
        """True when any enabled window currently suppresses alerts."""
        ...

    async def active_window_names(self, now: datetime) -> List[str]:
        ...


class CurrentActorResolver(Protocol):
    def resolve(self) -> Optional[str]:
        ...


class BaselineProvider(Protocol):
    async def get_percentile_95(
        self, metric_name: str, metric_type: str, metric_class: Optional[str], environment: str
    ) -> Optional[float]:
        """P95 of the metric's baseline, or None when no baseline exists."""
        ...


class BatchJobController(Protocol):
    async def restart_batch_job(self, job_id: int) -> bool:
        ...


class SessionController(Protocol):
    async def kill_session(self, session_id: int) -> bool:
        ...


class NotificationSender(Protocol):
    async def send_notification(self, message: str, channel: Optional[str], context: Dict[str, Any]) -> bool:
        ...


class NoMaintenanceWindows:
    """Maintenance provider used when no calendar is wired: nothing is ever suppressed."""

    async def is_suppressed(self, now: datetime) -> bool:
        return False

    async def active_window_names(self, now: datetime) -> List[str]:
        return []
