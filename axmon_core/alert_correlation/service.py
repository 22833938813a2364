import asyncio
import logging
import uuid
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from ..config import settings
from ..database.session import async_session_maker
from ..exceptions import PersistenceError
from ..models.alert import Alert
from ..models.enums import AlertStatus, IncidentStatus, Severity
from ..models.incident import Incident
from ..service_manager.base_service import BaseService
from ..task_queue.service import BackgroundTaskQueue
from ..utils import business_key, parse_uuid, utcnow

logger = logging.getLogger("axmon-core.alert-correlation")

SERVER_METADATA_KEY = "AosServer"


class AlertCorrelationService(BaseService):
    """
    Alert Correlation Service.
    Responsibility: Group recent, unassigned Active alerts into Incidents,
    either by type within a short chain window or by shared AOS server and
    severity, and resolve Incidents together with their member alerts.

    Runs one correlation cycle every CORRELATION_INTERVAL_SECONDS while started.
    """

    def __init__(
        self,
        session_factory=None,
        notifier=None,
        task_queue: Optional[BackgroundTaskQueue] = None,
        clock: Callable[[], datetime] = utcnow,
        interval_seconds: Optional[float] = None,
    ):
        super().__init__("AlertCorrelationService")
        self._running = False
        self._session_factory = session_factory or async_session_maker
        self._notifier = notifier
        self._task_queue = task_queue or BackgroundTaskQueue()
        self._clock = clock
        self._interval = settings.CORRELATION_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        self._loop_task: Optional[asyncio.Task] = None

        self.lookback = timedelta(minutes=settings.CORRELATION_LOOKBACK_MINUTES)
        self.type_window = timedelta(minutes=settings.CORRELATION_TYPE_WINDOW_MINUTES)
        self.server_window = timedelta(minutes=settings.CORRELATION_SERVER_WINDOW_MINUTES)

    async def start(self):
        self._running = True
        logger.info(f"AlertCorrelationService started. Correlation interval: {self._interval}s")
        self._loop_task = asyncio.create_task(self._correlation_loop())

    async def stop(self):
        self._running = False
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
        logger.info("AlertCorrelationService stopped.")

    async def _correlation_loop(self):
        while self._running:
            try:
                incident = await self.correlate_alerts()
                if incident is not None:
                    logger.info(
                        f"Correlation cycle produced incident {incident.correlation_key} "
                        f"with {incident.alert_count} alerts"
                    )
            except Exception as e:
                logger.error(f"Error during correlation cycle: {e}", exc_info=True)
            await asyncio.sleep(self._interval)

    # ------------------------------------------------------------------
    # Correlation
    # ------------------------------------------------------------------

    async def correlate_alerts(self) -> Optional[Incident]:
        """
        Run one correlation pass over Active, unassigned alerts from the lookback window.

        Returns the created Incident, the Incident the group was merged into,
        or None when no group of at least two alerts was found.
        """
        now = self._clock()
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(Alert)
                    .where(
                        Alert.status == AlertStatus.ACTIVE.value,
                        Alert.created_at >= now - self.lookback,
                        Alert.correlation_id.is_(None),
                    )
                    .order_by(Alert.created_at.asc())
                )
                candidates = list(result.scalars().all())
                if len(candidates) < 2:
                    return None

                groups = self.type_chain_groups(candidates) + self.server_affinity_groups(candidates)
                if not groups:
                    return None
                selected = max(groups, key=len)
                if len(selected) < 2:
                    return None

                incident = self._build_incident(selected, now)
                session.add(incident)
                await session.flush()

                member_ids = [a.id for a in selected]
                claimed = await session.execute(
                    update(Alert)
                    .where(Alert.id.in_(member_ids), Alert.correlation_id.is_(None))
                    .values(correlation_id=incident.id)
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != len(member_ids):
                    # A concurrent run claimed part of the group first; join its incident instead.
                    logger.info(
                        f"Lost correlation claim on {len(member_ids) - claimed.rowcount} of "
                        f"{len(member_ids)} alerts, merging into the claiming incident"
                    )
                    await session.rollback()
                    owner = (await session.execute(
                        select(Alert.correlation_id)
                        .where(Alert.id.in_(member_ids), Alert.correlation_id.is_not(None))
                        .limit(1)
                    )).scalar_one_or_none()
                    if owner is None:
                        return None
                    return await self._merge_into_incident(session, owner, member_ids, now)

                await session.commit()
                for alert in selected:
                    alert.correlation_id = incident.id
        except SQLAlchemyError as e:
            logger.error(f"Error correlating alerts: {e}", exc_info=True)
            raise PersistenceError(f"Failed to correlate alerts: {e}") from e

        logger.info(f"Created correlation {incident.correlation_key} for {incident.alert_count} alerts")
        self._schedule_digest(incident, selected)
        return incident

    async def _merge_into_incident(
        self, session, incident_id: uuid.UUID, member_ids: List[uuid.UUID], now: datetime
    ) -> Optional[Incident]:
        """Attach the still-unassigned members to an existing incident and recount it."""
        incident = await session.get(Incident, incident_id)
        if incident is None:
            return None
        await session.execute(
            update(Alert)
            .where(Alert.id.in_(member_ids), Alert.correlation_id.is_(None))
            .values(correlation_id=incident_id)
            .execution_options(synchronize_session=False)
        )
        count = (await session.execute(
            select(func.count()).select_from(Alert).where(Alert.correlation_id == incident_id)
        )).scalar_one()
        incident.alert_count = count
        incident.updated_at = now
        await session.commit()
        logger.info(f"Merged alerts into existing correlation {incident.correlation_key} ({count} alerts)")
        return incident

    def _build_incident(self, members: List[Alert], now: datetime) -> Incident:
        first_type = members[0].type
        return Incident(
            id=uuid.uuid4(),
            correlation_key=business_key("CORR", now),
            title=f"Incident: {first_type} ({len(members)} alerts)",
            description=(
                f"Correlated {len(members)} alerts of type '{first_type}' "
                f"detected within a short time window."
            ),
            severity=highest_severity(members),
            status=IncidentStatus.OPEN.value,
            first_detected_at=min(a.created_at for a in members),
            alert_count=len(members),
            confidence_score=confidence_score(members),
            correlation_reason=correlation_reason(members),
            created_at=now,
            updated_at=now,
        )

    def _schedule_digest(self, incident: Incident, members: List[Alert]):
        if self._notifier is None:
            return
        self._task_queue.submit(
            self._notifier.notify_incident(incident, list(members)),
            name=f"digest-{incident.correlation_key}",
        )

    # ------------------------------------------------------------------
    # Grouping passes
    # ------------------------------------------------------------------

    def type_chain_groups(self, candidates: Sequence[Alert]) -> List[List[Alert]]:
        """
        Per alert type, chain alerts within type_window of the chain's first member.
        An alert outside the window closes the chain and starts a new one.
        """
        by_type: Dict[str, List[Alert]] = OrderedDict()
        for alert in candidates:
            by_type.setdefault(alert.type, []).append(alert)

        groups = []
        for alerts in by_type.values():
            if len(alerts) < 2:
                continue
            alerts = sorted(alerts, key=lambda a: a.created_at)
            chain = [alerts[0]]
            for alert in alerts[1:]:
                if alert.created_at - chain[0].created_at <= self.type_window:
                    chain.append(alert)
                else:
                    if len(chain) >= 2:
                        groups.append(chain)
                    chain = [alert]
            if len(chain) >= 2:
                groups.append(chain)
        return groups

    def server_affinity_groups(self, candidates: Sequence[Alert]) -> List[List[Alert]]:
        """Per (severity, AOS server), keep alerts within server_window of the group's first member."""
        by_server: Dict[Tuple[str, str], List[Alert]] = OrderedDict()
        for alert in candidates:
            server = extract_server(alert)
            if server:
                by_server.setdefault((alert.severity, server), []).append(alert)

        groups = []
        for alerts in by_server.values():
            if len(alerts) < 2:
                continue
            alerts = sorted(alerts, key=lambda a: a.created_at)
            first = alerts[0]
            correlated = [a for a in alerts if a.created_at - first.created_at <= self.server_window]
            if len(correlated) >= 2:
                groups.append(correlated)
        return groups

    # ------------------------------------------------------------------
    # Incident management
    # ------------------------------------------------------------------

    async def resolve_correlation(self, incident_id) -> bool:
        """Resolve the incident and every member alert that is still Active."""
        key = parse_uuid(incident_id)
        if key is None:
            return False
        now = self._clock()
        try:
            async with self._session_factory() as session:
                incident = await session.get(Incident, key)
                if incident is None:
                    return False
                incident.status = IncidentStatus.RESOLVED.value
                incident.resolved_at = now
                incident.updated_at = now
                await session.execute(
                    update(Alert)
                    .where(Alert.correlation_id == key, Alert.status == AlertStatus.ACTIVE.value)
                    .values(status=AlertStatus.RESOLVED.value, resolved_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error resolving correlation {incident_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to resolve correlation {incident_id}: {e}") from e
        logger.info(f"Correlation {incident.correlation_key} resolved")
        return True

    async def get_alerts_for_correlation(self, incident_id) -> List[Alert]:
        key = parse_uuid(incident_id)
        if key is None:
            return []
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(Alert).where(Alert.correlation_id == key).order_by(Alert.created_at.asc())
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error getting alerts for correlation {incident_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to fetch alerts for correlation {incident_id}: {e}") from e

    async def get_correlations(self, status: Optional[str] = None) -> List[Incident]:
        stmt = select(Incident).order_by(Incident.first_detected_at.desc())
        if status:
            stmt = stmt.where(Incident.status == status)
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error getting correlations: {e}", exc_info=True)
            raise PersistenceError(f"Failed to fetch correlations: {e}") from e

    async def get_correlation_by_id(self, incident_id) -> Optional[Incident]:
        key = parse_uuid(incident_id)
        if key is None:
            return None
        try:
            async with self._session_factory() as session:
                return await session.get(Incident, key)
        except SQLAlchemyError as e:
            logger.error(f"Error getting correlation {incident_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to fetch correlation {incident_id}: {e}") from e


def extract_server(alert: Alert) -> str:
    """AOS server name from the alert metadata, or an empty string."""
    metadata = alert.metadata_
    if not isinstance(metadata, dict):
        return ""
    server = metadata.get(SERVER_METADATA_KEY)
    return server if isinstance(server, str) else ""


def highest_severity(alerts: Sequence[Alert]) -> str:
    return max(alerts, key=lambda a: Severity.rank_of(a.severity)).severity


def _span_minutes(alerts: Sequence[Alert]) -> float:
    span = max(a.created_at for a in alerts) - min(a.created_at for a in alerts)
    return span.total_seconds() / 60


def confidence_score(alerts: Sequence[Alert]) -> int:
    score = 50
    if all(a.type == alerts[0].type for a in alerts):
        score += 20

    span = _span_minutes(alerts)
    if span <= 5:
        score += 20
    elif span <= 15:
        score += 10

    if all(a.severity == alerts[0].severity for a in alerts):
        score += 10
    return min(100, score)


def correlation_reason(alerts: Sequence[Alert]) -> str:
    if all(a.type == alerts[0].type for a in alerts):
        if _span_minutes(alerts) <= 5:
            return f"Same Type ({alerts[0].type}) within 5 minutes"
        return f"Same Type ({alerts[0].type}) within time window"

    servers = {extract_server(a) for a in alerts} - {""}
    if len(servers) == 1:
        return f"Same AOS Server ({servers.pop()})"
    return "Multiple related alerts detected"
