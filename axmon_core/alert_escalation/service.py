import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..config import settings
from ..database.session import async_session_maker
from ..exceptions import PersistenceError, ValidationError
from ..models.alert import Alert
from ..models.enums import AlertStatus, Severity
from ..models.escalation import AlertEscalation, EscalationRule
from ..schemas.escalation import EscalationRuleCreate, EscalationRuleUpdate
from ..service_manager.base_service import BaseService
from ..utils import parse_uuid, utcnow

logger = logging.getLogger("axmon-core.alert-escalation")

# Optional tiers that an update may clear by sending null
_CLEARABLE_FIELDS = {
    "alert_type",
    "second_escalation_minutes",
    "second_escalation_recipients",
    "final_escalation_minutes",
    "final_escalation_recipients",
}

_CHANNEL_FLAGS = (
    ("webhook", "escalate_via_webhook", "sent_via_webhook"),
    ("teams", "escalate_via_teams", "sent_via_teams"),
)


class AlertEscalationService(BaseService):
    """
    Alert Escalation Service.
    Responsibility: Escalate Active alerts that nobody acknowledged, in up to
    three time-based tiers per escalation rule, and keep a record of every
    tier sent so each (alert, rule, level) goes out at most once.

    Runs one escalation check every ESCALATION_INTERVAL_SECONDS while started.
    """

    def __init__(
        self,
        session_factory=None,
        notifier=None,
        clock: Callable[[], datetime] = utcnow,
        interval_seconds: Optional[float] = None,
    ):
        super().__init__("AlertEscalationService")
        self._running = False
        self._session_factory = session_factory or async_session_maker
        self._notifier = notifier
        self._clock = clock
        self._interval = settings.ESCALATION_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        self._loop_task: Optional[asyncio.Task] = None

    async def start(self):
        self._running = True
        logger.info(f"AlertEscalationService started. Check interval: {self._interval}s")
        self._loop_task = asyncio.create_task(self._escalation_loop())

    async def stop(self):
        self._running = False
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
        logger.info("AlertEscalationService stopped.")

    async def _escalation_loop(self):
        while self._running:
            try:
                escalated = await self.check_and_escalate_alerts()
                logger.debug(f"Completed escalation check cycle ({escalated} escalation(s))")
            except Exception as e:
                logger.error(f"Error during escalation cycle: {e}", exc_info=True)
            await asyncio.sleep(self._interval)

    # ------------------------------------------------------------------
    # Rule CRUD
    # ------------------------------------------------------------------

    async def get_escalation_rules(self, enabled: Optional[bool] = None) -> List[EscalationRule]:
        """Rules ordered by name, optionally filtered on `enabled`."""
        stmt = select(EscalationRule).order_by(EscalationRule.name.asc())
        if enabled is not None:
            stmt = stmt.where(EscalationRule.enabled.is_(enabled))
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error getting escalation rules: {e}", exc_info=True)
            raise PersistenceError(f"Failed to fetch escalation rules: {e}") from e

    async def get_escalation_rule_by_id(self, rule_id) -> Optional[EscalationRule]:
        key = parse_uuid(rule_id)
        if key is None:
            return None
        try:
            async with self._session_factory() as session:
                return await session.get(EscalationRule, key)
        except SQLAlchemyError as e:
            logger.error(f"Error getting escalation rule {rule_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to fetch escalation rule {rule_id}: {e}") from e

    async def create_escalation_rule(
        self, payload: Union[EscalationRuleCreate, Dict[str, Any]]
    ) -> EscalationRule:
        request = _validate(EscalationRuleCreate, payload)
        now = self._clock()
        rule = EscalationRule(id=uuid.uuid4(), created_at=now, updated_at=now, **request.model_dump(mode="json"))
        try:
            async with self._session_factory() as session:
                session.add(rule)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error creating escalation rule {request.name}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to create escalation rule: {e}") from e
        logger.info(f"Created escalation rule {rule.id}: {rule.name}")
        return rule

    async def update_escalation_rule(
        self, rule_id, payload: Union[EscalationRuleUpdate, Dict[str, Any]]
    ) -> bool:
        """
        Replace the fields present in `payload`. The optional tiers and the
        type filter can be cleared with null. False when the rule does not exist.

        Raises:
            ValidationError: invalid fields, or tiers that stop increasing
        """
        request = _validate(EscalationRuleUpdate, payload)
        changes = {
            field: value
            for field, value in request.model_dump(mode="json", exclude_unset=True).items()
            if value is not None or field in _CLEARABLE_FIELDS
        }
        key = parse_uuid(rule_id)
        if key is None:
            return False
        try:
            async with self._session_factory() as session:
                rule = await session.get(EscalationRule, key)
                if rule is None:
                    return False
                merged = {**_rule_fields(rule), **changes}
                _validate(EscalationRuleCreate, merged)
                for field, value in changes.items():
                    setattr(rule, field, value)
                rule.updated_at = self._clock()
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error updating escalation rule {rule_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to update escalation rule {rule_id}: {e}") from e
        logger.info(f"Updated escalation rule {rule_id}: {sorted(changes)}")
        return True

    async def delete_escalation_rule(self, rule_id) -> bool:
        key = parse_uuid(rule_id)
        if key is None:
            return False
        try:
            async with self._session_factory() as session:
                await session.execute(
                    delete(AlertEscalation)
                    .where(AlertEscalation.rule_id == key)
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(
                    delete(EscalationRule)
                    .where(EscalationRule.id == key)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error deleting escalation rule {rule_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to delete escalation rule {rule_id}: {e}") from e
        if result.rowcount == 0:
            return False
        logger.info(f"Deleted escalation rule {rule_id}")
        return True

    # ------------------------------------------------------------------
    # Escalation
    # ------------------------------------------------------------------

    async def check_and_escalate_alerts(self) -> int:
        """
        Run one escalation pass over Active, unacknowledged alerts.
        Returns the number of escalations recorded.
        """
        now = self._clock()
        try:
            async with self._session_factory() as session:
                alerts = list((await session.execute(
                    select(Alert)
                    .where(Alert.status == AlertStatus.ACTIVE.value, Alert.acknowledged_at.is_(None))
                    .order_by(Alert.created_at.asc())
                )).scalars().all())
                rules = list((await session.execute(
                    select(EscalationRule).where(EscalationRule.enabled.is_(True))
                )).scalars().all())
                if not alerts or not rules:
                    return 0
                already_sent = {
                    tuple(row) for row in (await session.execute(
                        select(AlertEscalation.alert_id, AlertEscalation.rule_id, AlertEscalation.escalation_level)
                        .where(AlertEscalation.alert_id.in_([a.id for a in alerts]))
                    )).all()
                }
        except SQLAlchemyError as e:
            logger.error(f"Error loading alerts for escalation: {e}", exc_info=True)
            raise PersistenceError(f"Failed to load alerts for escalation: {e}") from e

        escalated = 0
        for alert in alerts:
            minutes_since_alert = (now - alert.created_at).total_seconds() / 60
            for rule in rules:
                if not rule_applies(rule, alert):
                    continue
                level = escalation_level(rule, minutes_since_alert)
                if level == 0 or (alert.id, rule.id, level) in already_sent:
                    continue
                if await self._escalate(alert, rule, level, int(minutes_since_alert), now):
                    escalated += 1
        return escalated

    async def _escalate(self, alert: Alert, rule: EscalationRule, level: int, minutes: int, now: datetime) -> bool:
        recipients = tier_recipients(rule, level)
        if not recipients:
            logger.debug(f"Rule {rule.name} has no recipients for level {level}, not escalating {alert.alert_key}")
            return False

        escalation = AlertEscalation(
            id=uuid.uuid4(),
            alert_id=alert.id,
            rule_id=rule.id,
            escalation_level=level,
            recipients=recipients,
            escalated_at=now,
            minutes_since_alert=minutes,
        )
        try:
            async with self._session_factory() as session:
                session.add(escalation)
                try:
                    await session.commit()
                except IntegrityError:
                    # Another checker recorded this level first
                    await session.rollback()
                    logger.debug(f"Level {level} escalation of {alert.alert_key} already recorded")
                    return False
        except SQLAlchemyError as e:
            logger.error(f"Error recording escalation of alert {alert.alert_key}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to record escalation: {e}") from e

        message = escalation_message(alert, rule, level, minutes)
        sent = {"sent_via_webhook": False, "sent_via_teams": False}
        errors = []
        if self._notifier is not None:
            for channel, rule_flag, sent_flag in _CHANNEL_FLAGS:
                if not getattr(rule, rule_flag):
                    continue
                try:
                    sent[sent_flag] = await self._notifier.notify_escalation(
                        alert, level, recipients, message, channel
                    )
                except Exception as e:
                    logger.error(
                        f"Error sending {channel} escalation for alert {alert.alert_key}: {e}", exc_info=True
                    )
                    errors.append(f"{channel}: {e}")

        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(AlertEscalation)
                    .where(AlertEscalation.id == escalation.id)
                    .values(error_message="; ".join(errors) or None, **sent)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error updating escalation {escalation.id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to update escalation: {e}") from e

        logger.info(f"Escalated alert {alert.alert_key} to level {level} via rule {rule.name}")
        return True

    async def get_escalations_for_alert(self, alert_id) -> List[AlertEscalation]:
        """Escalations of one alert, lowest level first."""
        key = parse_uuid(alert_id)
        if key is None:
            return []
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(AlertEscalation)
                    .where(AlertEscalation.alert_id == key)
                    .order_by(AlertEscalation.escalation_level.asc(), AlertEscalation.escalated_at.asc())
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error getting escalations for alert {alert_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to fetch escalations for alert {alert_id}: {e}") from e


def _validate(model, payload):
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid escalation rule: {e}") from e


def _rule_fields(rule: EscalationRule) -> Dict[str, Any]:
    fields = rule.to_dict()
    fields.pop("id")
    return fields


def rule_applies(rule: EscalationRule, alert: Alert) -> bool:
    """Type filter (if any) matches and the alert is at least the rule's minimum severity."""
    if rule.alert_type and rule.alert_type != alert.type:
        return False
    return Severity.rank_of(alert.severity) >= Severity.rank_of(rule.min_severity)


def escalation_level(rule: EscalationRule, minutes_since_alert: float) -> int:
    """Highest tier reached: 3 final, 2 second, 1 first, 0 none."""
    if rule.final_escalation_minutes is not None and minutes_since_alert >= rule.final_escalation_minutes:
        return 3
    if rule.second_escalation_minutes is not None and minutes_since_alert >= rule.second_escalation_minutes:
        return 2
    if minutes_since_alert >= rule.first_escalation_minutes:
        return 1
    return 0


def tier_recipients(rule: EscalationRule, level: int) -> str:
    recipients = {
        1: rule.first_escalation_recipients,
        2: rule.second_escalation_recipients,
        3: rule.final_escalation_recipients,
    }.get(level)
    return (recipients or "").strip()


def escalation_message(alert: Alert, rule: EscalationRule, level: int, minutes: int) -> str:
    return (
        f"ALERT ESCALATION (Level {level})\n\n"
        f"Alert: {alert.alert_key}\n"
        f"Type: {alert.type}\n"
        f"Severity: {alert.severity}\n"
        f"Message: {alert.message}\n"
        f"Created: {alert.created_at:%Y-%m-%d %H:%M:%S} UTC\n"
        f"Minutes Since Alert: {minutes}\n"
        f"Escalation Rule: {rule.name}"
    )
