import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Union

from sqlalchemy import func, or_, select, update, delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..collaborators import NoMaintenanceWindows
from ..config import settings
from ..database.session import async_session_maker
from ..exceptions import PersistenceError, ValidationError
from ..models.alert import Alert, AlertGateClaim
from ..models.enums import AlertStatus, Severity
from ..models.escalation import AlertEscalation
from ..models.incident import Incident
from ..schemas.alert import AlertCreationResult, PolicyRejection, RejectionKind
from ..service_manager.base_service import BaseService
from ..task_queue.service import BackgroundTaskQueue
from ..utils import business_key, parse_uuid, utcnow

logger = logging.getLogger("axmon-core.alert-lifecycle")


class AlertLifecycleService(BaseService):
    """
    Alert Lifecycle Service.
    Responsibility: Create alerts under maintenance, dedup, throttle and
    suppression policy; manage status and acknowledgement; raise baseline
    threshold alerts; fan new alerts out to the notifier in the background.

    Gate order on creation:
        maintenance -> dedup -> throttle -> suppression -> claim + insert
    """

    def __init__(
        self,
        session_factory=None,
        maintenance=None,
        actor_resolver=None,
        notifier=None,
        baseline=None,
        task_queue: Optional[BackgroundTaskQueue] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__("AlertLifecycleService")
        self._running = False
        self._session_factory = session_factory or async_session_maker
        self._maintenance = maintenance or NoMaintenanceWindows()
        self._actor_resolver = actor_resolver
        self._notifier = notifier
        self._baseline = baseline
        self._task_queue = task_queue or BackgroundTaskQueue()
        self._clock = clock

        self.dedup_window = timedelta(minutes=settings.ALERT_DEDUP_WINDOW_MINUTES)
        self.throttle_window = timedelta(minutes=settings.ALERT_THROTTLE_WINDOW_MINUTES)
        self.suppression_window = timedelta(minutes=settings.ALERT_SUPPRESSION_WINDOW_MINUTES)

    async def start(self):
        self._running = True
        logger.info("AlertLifecycleService started.")

    async def stop(self):
        self._running = False
        logger.info("AlertLifecycleService stopped.")

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_alert(
        self,
        alert_type: str,
        severity: Union[Severity, str],
        message: str,
        created_by: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> AlertCreationResult:
        """
        Create an alert unless policy rejects it.

        Returns an AlertCreationResult that is either `created` (new alert),
        `deduplicated` (an identical Active alert already exists and is
        returned instead) or `rejected` with a PolicyRejection.

        Raises:
            ValidationError: unknown severity or empty type
            PersistenceError: the store failed
        """
        if not alert_type:
            raise ValidationError("Alert type is required")
        severity = self._normalize_severity(severity)
        now = self._clock()

        if await self._maintenance.is_suppressed(now):
            names = await self._maintenance.active_window_names(now)
            logger.info(f"Alert creation suppressed during maintenance window(s) {names}: {alert_type}")
            return AlertCreationResult.rejected_with(PolicyRejection(
                kind=RejectionKind.MAINTENANCE_SUPPRESSED,
                reason=f"Alert creation suppressed during maintenance window: {', '.join(names)}",
                window_names=list(names),
            ))

        try:
            async with self._session_factory() as session:
                existing = await self._find_duplicate(session, alert_type, severity, message, now)
                if existing is not None:
                    logger.info(f"Duplicate alert detected within dedup window, returning {existing.alert_key}")
                    return AlertCreationResult.existing_alert(existing)

                rejection = await self._throttle_gate(session, alert_type, now)
                if rejection is None:
                    rejection = await self._suppression_gate(session, alert_type, severity, now)
                if rejection is not None:
                    return AlertCreationResult.rejected_with(rejection)

                alert = Alert(
                    id=uuid.uuid4(),
                    alert_key=business_key("ALERT", now),
                    type=alert_type,
                    severity=severity,
                    message=message,
                    status=AlertStatus.ACTIVE.value,
                    timestamp=now,
                    created_at=now,
                    updated_at=now,
                    created_by=created_by or self._resolve_actor(),
                    metadata_=dict(metadata or {}),
                )

                if not await self._claim_throttle_slot(session, alert_type, alert.id, now):
                    # Lost the slot to a concurrent creator: it may have inserted our duplicate.
                    await session.rollback()
                    existing = await self._find_duplicate(session, alert_type, severity, message, now)
                    if existing is not None:
                        logger.info(f"Concurrent duplicate alert detected, returning {existing.alert_key}")
                        return AlertCreationResult.existing_alert(existing)
                    logger.info(f"Alert throttled after concurrent creation: {alert_type}")
                    return AlertCreationResult.rejected_with(self._throttled(alert_type))

                session.add(alert)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error creating alert of type {alert_type}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to create alert: {e}") from e

        logger.info(f"Created alert {alert.alert_key}: {alert.type} - {alert.severity}")
        self._schedule_notifications(alert)
        return AlertCreationResult.created_alert(alert)

    async def _find_duplicate(self, session, alert_type: str, severity: str, message: str, now: datetime):
        stmt = (
            select(Alert)
            .where(
                Alert.type == alert_type,
                Alert.severity == severity,
                Alert.message == message,
                Alert.status == AlertStatus.ACTIVE.value,
                Alert.created_at > now - self.dedup_window,
            )
            .order_by(Alert.created_at.desc())
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalars().first()

    async def _throttle_gate(self, session, alert_type: str, now: datetime) -> Optional[PolicyRejection]:
        stmt = select(func.count()).select_from(Alert).where(
            Alert.type == alert_type,
            Alert.created_at > now - self.throttle_window,
        )
        recent = (await session.execute(stmt)).scalar_one()
        if recent >= 1:
            logger.info(f"Alert throttled: {alert_type} ({recent} alert(s) in throttle window)")
            return self._throttled(alert_type)
        return None

    async def _suppression_gate(
        self, session, alert_type: str, severity: str, now: datetime
    ) -> Optional[PolicyRejection]:
        stmt = (
            select(Alert.created_at)
            .where(
                Alert.type == alert_type,
                Alert.severity == severity,
                Alert.created_at > now - self.suppression_window,
            )
            .order_by(Alert.created_at.asc())
            .limit(1)
        )
        first_seen = (await session.execute(stmt)).scalar_one_or_none()
        if first_seen is None:
            return None
        minutes = int((now - first_seen).total_seconds() // 60)
        logger.info(f"Alert suppressed: {alert_type}/{severity}, first occurrence {minutes} minute(s) ago")
        return PolicyRejection(
            kind=RejectionKind.SUPPRESSED_WINDOW,
            reason=(
                f"Similar alert already created {minutes} minutes ago. "
                f"Suppressing duplicate notifications."
            ),
            alert_type=alert_type,
            minutes_since_first=minutes,
        )

    def _throttled(self, alert_type: str) -> PolicyRejection:
        return PolicyRejection(
            kind=RejectionKind.THROTTLED,
            reason=(
                f"Alert throttled: an alert of type {alert_type} was already created "
                f"in the last {int(self.throttle_window.total_seconds() // 60)} minutes"
            ),
            alert_type=alert_type,
        )

    async def _claim_throttle_slot(self, session, alert_type: str, alert_id: uuid.UUID, now: datetime) -> bool:
        """
        Take the per-type throttle slot inside the caller's transaction.
        False means another writer holds it; the caller must roll back.
        """
        gate_key = f"throttle:{alert_type}"
        stmt = (
            update(AlertGateClaim)
            .where(
                AlertGateClaim.gate_key == gate_key,
                or_(
                    AlertGateClaim.alert_id.is_(None),
                    AlertGateClaim.claimed_at <= now - self.throttle_window,
                ),
            )
            .values(alert_id=alert_id, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount == 1:
            return True

        held = await session.execute(select(AlertGateClaim.gate_key).where(AlertGateClaim.gate_key == gate_key))
        if held.scalar_one_or_none() is not None:
            return False

        session.add(AlertGateClaim(gate_key=gate_key, alert_id=alert_id, claimed_at=now))
        try:
            await session.flush()
        except IntegrityError:
            logger.debug(f"Throttle slot {gate_key} claimed concurrently")
            return False
        return True

    def _schedule_notifications(self, alert: Alert):
        if self._notifier is None:
            return
        self._task_queue.submit(self._send_notifications(alert), name=f"notify-{alert.alert_key}")

    async def _send_notifications(self, alert: Alert):
        """Runs detached from create_alert; failures are logged only."""
        try:
            if await self._maintenance.is_suppressed(self._clock()):
                logger.info(f"Notifications suppressed for alert {alert.alert_key} during maintenance window")
                return
            await self._notifier.notify_alert(alert)
        except Exception as e:
            logger.error(f"Error sending notifications for alert {alert.alert_key}: {e}", exc_info=True)

    def _resolve_actor(self) -> str:
        if self._actor_resolver is not None:
            try:
                actor = self._actor_resolver.resolve()
                if actor:
                    return actor
            except Exception as e:
                logger.warning(f"Could not resolve current actor: {e}")
        return "System"

    @staticmethod
    def _normalize_severity(severity: Union[Severity, str]) -> str:
        if isinstance(severity, Severity):
            return severity.value
        for member in Severity:
            if str(severity).lower() == member.value.lower():
                return member.value
        raise ValidationError(f"Unknown severity: {severity}")

    # ------------------------------------------------------------------
    # Status management
    # ------------------------------------------------------------------

    async def update_alert_status(self, alert_id, status: Union[AlertStatus, str]) -> bool:
        """Set the status; moving to Resolved stamps resolved_at. False when the alert does not exist."""
        key = parse_uuid(alert_id)
        if key is None:
            return False
        status = status.value if isinstance(status, AlertStatus) else str(status)
        now = self._clock()
        try:
            async with self._session_factory() as session:
                alert = await session.get(Alert, key)
                if alert is None:
                    return False
                alert.status = status
                if status == AlertStatus.RESOLVED.value:
                    alert.resolved_at = now
                alert.updated_at = now
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error updating alert status for {alert_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to update alert {alert_id}: {e}") from e
        logger.info(f"Alert {alert_id} status changed to {status}")
        return True

    async def acknowledge_alert(self, alert_id, actor: str) -> bool:
        """Record who acknowledged the alert. The status is left untouched."""
        key = parse_uuid(alert_id)
        if key is None:
            return False
        now = self._clock()
        try:
            async with self._session_factory() as session:
                alert = await session.get(Alert, key)
                if alert is None:
                    return False
                alert.acknowledged_by = actor
                alert.acknowledged_at = now
                alert.updated_at = now
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error acknowledging alert {alert_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to acknowledge alert {alert_id}: {e}") from e
        logger.info(f"Alert {alert_id} acknowledged by {actor}")
        return True

    async def delete_alert(self, alert_id) -> bool:
        key = parse_uuid(alert_id)
        if key is None:
            return False
        try:
            async with self._session_factory() as session:
                alert = await session.get(Alert, key)
                if alert is None:
                    return False
                incident_id = alert.correlation_id
                await session.delete(alert)
                await session.execute(
                    delete(AlertGateClaim)
                    .where(AlertGateClaim.alert_id == key)
                    .execution_options(synchronize_session=False)
                )
                await session.execute(
                    delete(AlertEscalation)
                    .where(AlertEscalation.alert_id == key)
                    .execution_options(synchronize_session=False)
                )
                await session.flush()

                if incident_id is not None:
                    remaining = (await session.execute(
                        select(func.count()).select_from(Alert).where(Alert.correlation_id == incident_id)
                    )).scalar_one()
                    await session.execute(
                        update(Incident)
                        .where(Incident.id == incident_id)
                        .values(alert_count=remaining)
                        .execution_options(synchronize_session=False)
                    )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error deleting alert {alert_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to delete alert {alert_id}: {e}") from e
        logger.info(f"Alert {alert_id} deleted")
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_alerts(self, status: Optional[Union[AlertStatus, str]] = None) -> List[Alert]:
        """All alerts, newest first, optionally filtered by status."""
        stmt = select(Alert).order_by(Alert.created_at.desc())
        if status is not None:
            stmt = stmt.where(Alert.status == (status.value if isinstance(status, AlertStatus) else status))
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error fetching alerts: {e}", exc_info=True)
            raise PersistenceError(f"Failed to fetch alerts: {e}") from e

    async def get_active_alerts(self) -> List[Alert]:
        return await self.get_alerts(AlertStatus.ACTIVE)

    async def get_alert_by_id(self, alert_id) -> Optional[Alert]:
        key = parse_uuid(alert_id)
        if key is None:
            return None
        try:
            async with self._session_factory() as session:
                return await session.get(Alert, key)
        except SQLAlchemyError as e:
            logger.error(f"Error fetching alert {alert_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to fetch alert {alert_id}: {e}") from e

    # ------------------------------------------------------------------
    # Baseline checks
    # ------------------------------------------------------------------

    async def check_baseline_and_create_alert(
        self,
        metric_name: str,
        metric_type: str,
        current_value: float,
        threshold_percent: float = 30.0,
        metric_class: Optional[str] = None,
        environment: Optional[str] = None,
    ) -> Optional[Alert]:
        """
        Raise a Warning alert when `current_value` exceeds P95 * (1 + threshold_percent/100).

        Returns the created (or deduplicated) alert, or None when no baseline
        exists, the value is within threshold, or policy rejected the alert.
        """
        if self._baseline is None:
            logger.warning("Baseline provider not configured, skipping baseline check")
            return None
        environment = environment or settings.APP_ENVIRONMENT

        try:
            p95 = await self._baseline.get_percentile_95(metric_name, metric_type, metric_class, environment)
        except Exception as e:
            logger.error(f"Error reading baseline for {metric_name}: {e}", exc_info=True)
            return None

        if p95 is None:
            logger.debug(f"No baseline found for {metric_name} ({metric_type}) in {environment}")
            return None

        threshold = p95 * (1 + threshold_percent / 100.0)
        if current_value <= threshold:
            return None

        message = (
            f"Metric {metric_name} ({metric_type}) exceeds baseline threshold: "
            f"Current: {current_value:.2f}, Threshold: {threshold:.2f} "
            f"(P95={p95:.2f} + {threshold_percent:g}%)"
        )
        if metric_class:
            message += f", Class: {metric_class}"

        result = await self.create_alert(metric_type, Severity.WARNING, message, created_by="Baseline Monitor")
        if result.rejected:
            logger.info(f"Baseline alert for {metric_name} not created: {result.rejection.reason}")
            return None
        return result.alert
