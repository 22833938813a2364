import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import yaml
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from ..config import settings
from ..database.session import async_session_maker
from ..exceptions import CooldownActiveError, NotFoundError, PersistenceError, ValidationError
from ..models.enums import ActionOutcome, ExecutionStatus
from ..models.remediation import RemediationExecution, RemediationRule
from ..schemas.remediation import (
    RemediationRuleCreate,
    RemediationRuleUpdate,
    actions_adapter,
    conditions_adapter,
)
from ..service_manager.base_service import BaseService
from ..task_queue.service import BackgroundTaskQueue
from ..utils import business_key, utcnow
from .actions import ActionDispatcher

logger = logging.getLogger("axmon-core.remediation")

_OPEN_STATUSES = tuple(s.value for s in ExecutionStatus if not s.is_terminal)


class RemediationService(BaseService):
    """
    Remediation Engine Service.
    Responsibility: Store condition -> action rules, decide which rules the
    current metrics trigger (respecting priority and cooldown), and run a
    rule's actions in the background while tracking each execution through
    Pending -> Running -> Success | Failed.
    """

    def __init__(
        self,
        session_factory=None,
        dispatcher: Optional[ActionDispatcher] = None,
        task_queue: Optional[BackgroundTaskQueue] = None,
        clock: Callable[[], datetime] = utcnow,
        rules_dir: Optional[str] = None,
    ):
        super().__init__("RemediationService")
        self._running = False
        self._session_factory = session_factory or async_session_maker
        self._dispatcher = dispatcher or ActionDispatcher(clock=clock)
        self._task_queue = task_queue or BackgroundTaskQueue()
        self._clock = clock
        self.rules_dir = rules_dir if rules_dir is not None else settings.REMEDIATION_RULES_DIR
        self._executions: Dict[str, asyncio.Task] = {}
        self.shutdown_grace_seconds = 5.0

    async def start(self):
        self._running = True
        logger.info("RemediationService started.")
        await self.reconcile_stale_executions()
        if self.rules_dir:
            await self.load_rules_from_directory(self.rules_dir)

    async def stop(self):
        self._running = False
        in_flight = list(self._executions.values())
        if in_flight:
            logger.info(f"Waiting for {len(in_flight)} remediation execution(s) to finish")
            await asyncio.wait(in_flight, timeout=self.shutdown_grace_seconds)
        logger.info("RemediationService stopped.")

    # ------------------------------------------------------------------
    # Rule CRUD
    # ------------------------------------------------------------------

    async def get_rules(self) -> List[RemediationRule]:
        """Enabled rules, highest priority first."""
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(RemediationRule)
                    .where(RemediationRule.enabled.is_(True))
                    .order_by(RemediationRule.priority.desc())
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error getting remediation rules: {e}", exc_info=True)
            raise PersistenceError(f"Failed to fetch remediation rules: {e}") from e

    async def get_rule_by_id(self, rule_id: str) -> Optional[RemediationRule]:
        try:
            async with self._session_factory() as session:
                return await session.get(RemediationRule, rule_id)
        except SQLAlchemyError as e:
            logger.error(f"Error getting rule {rule_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to fetch rule {rule_id}: {e}") from e

    async def create_rule(self, payload: Union[RemediationRuleCreate, Dict[str, Any]]) -> RemediationRule:
        """
        Persist a new rule.

        Raises:
            ValidationError: malformed conditions, unknown action kinds or invalid fields
        """
        request = self._validate(RemediationRuleCreate, payload)
        now = self._clock()
        rule = RemediationRule(
            id=business_key("RULE", now),
            name=request.name,
            description=request.description,
            trigger_conditions=[c.model_dump(mode="json") for c in request.trigger_conditions],
            actions=[a.model_dump(mode="json") for a in request.actions],
            priority=request.priority,
            enabled=request.enabled,
            cooldown_minutes=request.cooldown_minutes,
            max_attempts=request.max_attempts,
            timeout_seconds=request.timeout_seconds,
            requires_confirmation=request.requires_confirmation,
            business_impact=request.business_impact,
            version=0,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._session_factory() as session:
                session.add(rule)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error creating remediation rule {request.name}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to create remediation rule: {e}") from e
        logger.info(f"Created remediation rule {rule.id}: {rule.name}")
        return rule

    async def update_rule(self, rule_id: str, payload: Union[RemediationRuleUpdate, Dict[str, Any]]) -> bool:
        """Replace only the fields present in `payload`. False when the rule does not exist."""
        request = self._validate(RemediationRuleUpdate, payload)
        changes = request.model_dump(mode="json", exclude_unset=True, exclude_none=True)
        try:
            async with self._session_factory() as session:
                rule = await session.get(RemediationRule, rule_id)
                if rule is None:
                    return False
                for field, value in changes.items():
                    setattr(rule, field, value)
                rule.updated_at = self._clock()
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error updating rule {rule_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to update rule {rule_id}: {e}") from e
        logger.info(f"Updated remediation rule {rule_id}: {sorted(changes)}")
        return True

    async def delete_rule(self, rule_id: str) -> bool:
        try:
            async with self._session_factory() as session:
                result = await session.execute(delete(RemediationRule).where(RemediationRule.id == rule_id))
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error deleting rule {rule_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to delete rule {rule_id}: {e}") from e
        if result.rowcount == 0:
            return False
        logger.info(f"Deleted remediation rule {rule_id}")
        return True

    @staticmethod
    def _validate(model, payload):
        if isinstance(payload, model):
            return payload
        try:
            return model.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid remediation rule: {e}") from e

    async def load_rules_from_directory(self, rules_dir: str) -> int:
        """
        Create rules from YAML files (one rule per file) unless a rule with
        the same name already exists. Returns the number of rules created.
        """
        path = Path(rules_dir)
        if not path.exists():
            logger.warning(f"Rules directory {path} does not exist, no rules loaded")
            return 0

        try:
            async with self._session_factory() as session:
                known = set((await session.execute(select(RemediationRule.name))).scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error reading existing rule names: {e}", exc_info=True)
            raise PersistenceError(f"Failed to read remediation rules: {e}") from e

        created = 0
        rule_files = sorted(list(path.glob("*.yaml")) + list(path.glob("*.yml")))
        for rule_file in rule_files:
            try:
                with open(rule_file, "r") as f:
                    definition = yaml.safe_load(f) or {}
                name = definition.get("name", rule_file.stem)
                if name in known:
                    logger.debug(f"Rule '{name}' already exists, skipping {rule_file.name}")
                    continue
                definition["name"] = name
                await self.create_rule(definition)
                known.add(name)
                created += 1
                logger.info(f"Loaded rule '{name}' from {rule_file.name}")
            except (ValidationError, yaml.YAMLError, AttributeError, OSError) as e:
                logger.error(f"Error loading rule {rule_file}: {e}", exc_info=True)

        logger.info(f"Loaded {created} remediation rule(s) from {path}")
        return created

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluate_conditions(self, metrics: Dict[str, Any]) -> List[RemediationRule]:
        """
        Enabled rules whose conditions all hold against `metrics` and whose
        latest execution started at least cooldown_minutes ago; highest priority first.
        """
        rules = await self.get_rules()
        now = self._clock()
        triggered = []
        try:
            async with self._session_factory() as session:
                for rule in rules:
                    try:
                        conditions = conditions_adapter.validate_python(rule.trigger_conditions or [])
                    except PydanticValidationError as e:
                        logger.error(f"Rule {rule.id} has unreadable conditions: {e}")
                        continue
                    if not all(condition.holds(metrics) for condition in conditions):
                        continue

                    last_start = (await session.execute(
                        select(func.max(RemediationExecution.start_time)).where(RemediationExecution.rule_id == rule.id)
                    )).scalar_one_or_none()
                    if last_start is not None and now - last_start < timedelta(minutes=rule.cooldown_minutes):
                        logger.debug(f"Rule {rule.id} matched but is in cooldown")
                        continue
                    triggered.append(rule)
        except SQLAlchemyError as e:
            logger.error(f"Error evaluating remediation conditions: {e}", exc_info=True)
            raise PersistenceError(f"Failed to evaluate remediation conditions: {e}") from e

        return sorted(triggered, key=lambda r: r.priority, reverse=True)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_remediation(
        self, rule_id: str, trigger_data: Optional[Dict[str, Any]] = None, enforce_cooldown: bool = True
    ) -> RemediationExecution:
        """
        Record a Pending execution and start running the rule's actions in the background.

        Raises:
            NotFoundError: the rule does not exist
            CooldownActiveError: the rule started another execution within its cooldown
        """
        trigger_data = dict(trigger_data or {})
        now = self._clock()
        try:
            async with self._session_factory() as session:
                rule = await session.get(RemediationRule, rule_id)
                if rule is None:
                    raise NotFoundError("Rule", rule_id)
                cooldown = timedelta(minutes=rule.cooldown_minutes)
                last_triggered = rule.last_triggered_at

                claim = (
                    update(RemediationRule)
                    .where(RemediationRule.id == rule_id)
                    .values(last_triggered_at=now, version=RemediationRule.version + 1)
                    .execution_options(synchronize_session=False)
                )
                if enforce_cooldown:
                    claim = claim.where(or_(
                        RemediationRule.last_triggered_at.is_(None),
                        RemediationRule.last_triggered_at <= now - cooldown,
                    ))
                claimed = await session.execute(claim)
                if claimed.rowcount != 1:
                    await session.rollback()
                    retry_after = None
                    if last_triggered is not None:
                        retry_after = max(0.0, (last_triggered + cooldown - now).total_seconds())
                    logger.info(f"Remediation for rule {rule_id} rejected: cooldown active")
                    raise CooldownActiveError(rule_id, retry_after)

                execution = RemediationExecution(
                    id=business_key("EXEC", now, uuid.uuid4().hex),
                    rule_id=rule_id,
                    trigger_data=trigger_data,
                    status=ExecutionStatus.PENDING.value,
                    actions_executed=[],
                    start_time=now,
                )
                session.add(execution)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error starting remediation for rule {rule_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to start remediation for rule {rule_id}: {e}") from e

        logger.info(f"Remediation execution {execution.id} queued for rule {rule_id}")
        task = self._task_queue.submit(
            self._run_execution(execution.id, self._rule_snapshot(rule), trigger_data),
            name=f"remediation-{execution.id}",
        )
        self._executions[execution.id] = task
        task.add_done_callback(lambda _t, key=execution.id: self._executions.pop(key, None))
        return execution

    @staticmethod
    def _rule_snapshot(rule: RemediationRule) -> Dict[str, Any]:
        return {
            "id": rule.id,
            "name": rule.name,
            "description": rule.description,
            "priority": rule.priority,
            "business_impact": rule.business_impact,
            "actions": list(rule.actions or []),
            "timeout_seconds": rule.timeout_seconds,
        }

    async def _run_execution(self, execution_id: str, rule: Dict[str, Any], trigger_data: Dict[str, Any]):
        executed: List[Dict[str, Any]] = []
        try:
            if not await self._transition(execution_id, ExecutionStatus.PENDING, ExecutionStatus.RUNNING):
                logger.warning(f"Execution {execution_id} is no longer Pending, not running it")
                return

            actions = actions_adapter.validate_python(rule["actions"])
            context = {
                "rule": {k: v for k, v in rule.items() if k not in ("actions", "timeout_seconds")},
                "trigger": trigger_data,
                "execution": {"id": execution_id},
            }
            status, error_message = ExecutionStatus.SUCCESS, None

            for action in actions:
                record = await self._dispatcher.dispatch(action, context, timeout_seconds=rule["timeout_seconds"])
                executed.append(record)
                if record["status"] == ActionOutcome.FAILED.value and not action.continue_on_failure:
                    status = ExecutionStatus.FAILED
                    error_message = f"Action {action.action} failed: {record.get('error')}"
                    break

            await self._complete(execution_id, status, executed, error_message)
            logger.info(f"Remediation execution {execution_id} finished with status {status.value}")
        except Exception as e:
            logger.error(f"Error executing remediation {execution_id}: {e}", exc_info=True)
            await self._complete(execution_id, ExecutionStatus.FAILED, executed, str(e))

    async def _transition(self, execution_id: str, current: ExecutionStatus, target: ExecutionStatus) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(RemediationExecution)
                .where(RemediationExecution.id == execution_id, RemediationExecution.status == current.value)
                .values(status=target.value)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1

    async def _complete(
        self, execution_id: str, status: ExecutionStatus, executed: List[Dict[str, Any]], error_message: Optional[str]
    ):
        async with self._session_factory() as session:
            result = await session.execute(
                update(RemediationExecution)
                .where(RemediationExecution.id == execution_id, RemediationExecution.status.in_(_OPEN_STATUSES))
                .values(
                    status=status.value,
                    actions_executed=executed,
                    end_time=self._clock(),
                    error_message=error_message,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount != 1:
            logger.warning(f"Execution {execution_id} was already finalized, result discarded")

    async def wait_for_execution(self, execution_id: str, timeout: Optional[float] = None) -> Optional[RemediationExecution]:
        """Await the background run of an execution (if still in flight) and return its stored state."""
        task = self._executions.get(execution_id)
        if task is not None:
            await asyncio.wait({task}, timeout=timeout)
        return await self.get_execution(execution_id)

    async def get_execution(self, execution_id: str) -> Optional[RemediationExecution]:
        try:
            async with self._session_factory() as session:
                return await session.get(RemediationExecution, execution_id)
        except SQLAlchemyError as e:
            logger.error(f"Error getting execution {execution_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to fetch execution {execution_id}: {e}") from e

    async def get_execution_history(
        self, rule_id: Optional[str] = None, limit: Optional[int] = None
    ) -> List[RemediationExecution]:
        """Most recent executions first, optionally for a single rule."""
        stmt = (
            select(RemediationExecution)
            .order_by(RemediationExecution.start_time.desc())
            .limit(limit or settings.REMEDIATION_HISTORY_LIMIT)
        )
        if rule_id:
            stmt = stmt.where(RemediationExecution.rule_id == rule_id)
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error getting execution history: {e}", exc_info=True)
            raise PersistenceError(f"Failed to fetch execution history: {e}") from e

    async def reconcile_stale_executions(self) -> int:
        """Fail executions left Pending or Running by a previous process."""
        now = self._clock()
        cutoff = now - timedelta(minutes=settings.REMEDIATION_STALE_RUNNING_MINUTES)
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(RemediationExecution)
                    .where(
                        RemediationExecution.status.in_(_OPEN_STATUSES),
                        RemediationExecution.start_time <= cutoff,
                    )
                    .values(
                        status=ExecutionStatus.FAILED.value,
                        end_time=now,
                        error_message="Execution interrupted before completion",
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error reconciling stale executions: {e}", exc_info=True)
            raise PersistenceError(f"Failed to reconcile stale executions: {e}") from e
        if result.rowcount:
            logger.warning(f"Marked {result.rowcount} interrupted remediation execution(s) as Failed")
        return result.rowcount
