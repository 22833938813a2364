import asyncio
import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from ..exceptions import ExternalActionFailure
from ..models.enums import ActionOutcome
from ..schemas.remediation import (
    KillSessionAction,
    RestartBatchJobAction,
    SendNotificationAction,
)
from ..utils import utcnow

logger = logging.getLogger("axmon-core.remediation.actions")

_TEMPLATE_PATTERN = re.compile(r"\{\{([^}]+)\}\}")


class ActionDispatcher:
    """
    Maps remediation action kinds onto the external capabilities that carry them out.

    Every dispatch yields an execution record:
        {"action", "status": success|failed|skipped, "message" | "error", "timestamp"}
    A capability that is not wired produces a skipped record rather than a failure.
    """

    def __init__(
        self,
        batch_jobs=None,
        sessions=None,
        notifier=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.batch_jobs = batch_jobs
        self.sessions = sessions
        self.notifier = notifier
        self._clock = clock
        self.handlers = {
            "restart_batch_job": self._restart_batch_job,
            "kill_session": self._kill_session,
            "send_notification": self._send_notification,
        }

    async def dispatch(self, action, context: Dict[str, Any], timeout_seconds: Optional[float] = None) -> Dict[str, Any]:
        kind = action.action
        handler = self.handlers.get(kind)
        if handler is None:
            logger.error(f"Unknown action type: {kind}")
            return self._record(kind, ActionOutcome.FAILED, error=f"Unknown action type: {kind}")

        try:
            outcome, message = await asyncio.wait_for(handler(action, context), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            logger.error(f"Action {kind} timed out after {timeout_seconds}s")
            return self._record(kind, ActionOutcome.FAILED, error=f"Action timed out after {timeout_seconds} seconds")
        except ExternalActionFailure as e:
            logger.warning(str(e))
            return self._record(kind, ActionOutcome.FAILED, error=e.reason)
        except Exception as e:
            logger.error(f"Error executing action {kind}: {e}", exc_info=True)
            return self._record(kind, ActionOutcome.FAILED, error=str(e))

        if outcome == ActionOutcome.SKIPPED:
            logger.info(f"Action {kind} skipped: {message}")
        else:
            logger.info(f"Action {kind} completed: {message}")
        return self._record(kind, outcome, message=message)

    def _record(self, kind: str, outcome: ActionOutcome, message: str = None, error: str = None) -> Dict[str, Any]:
        record = {"action": kind, "status": outcome.value, "timestamp": self._clock().isoformat()}
        if error is not None:
            record["error"] = error
        else:
            record["message"] = message
        return record

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _restart_batch_job(self, action: RestartBatchJobAction, context) -> Tuple[ActionOutcome, str]:
        if self.batch_jobs is None:
            return ActionOutcome.SKIPPED, "Batch job controller not configured"
        if not await self.batch_jobs.restart_batch_job(action.job_id):
            raise ExternalActionFailure(action.action, f"Failed to restart batch job {action.job_id}")
        return ActionOutcome.SUCCESS, f"Batch job {action.job_id} restarted successfully"

    async def _kill_session(self, action: KillSessionAction, context) -> Tuple[ActionOutcome, str]:
        if self.sessions is None:
            return ActionOutcome.SKIPPED, "Session controller not configured"
        if not await self.sessions.kill_session(action.session_id):
            raise ExternalActionFailure(action.action, f"Failed to kill session {action.session_id}")
        return ActionOutcome.SUCCESS, f"Session {action.session_id} killed successfully"

    async def _send_notification(self, action: SendNotificationAction, context) -> Tuple[ActionOutcome, str]:
        if self.notifier is None:
            return ActionOutcome.SKIPPED, "Notification sender not configured"
        message = resolve_template_string(action.message, context)
        if not await self.notifier.send_notification(message, action.channel, context):
            raise ExternalActionFailure(action.action, f"No channel accepted notification '{message}'")
        return ActionOutcome.SUCCESS, "Notification sent"


def resolve_template_string(template: str, context: Dict[str, Any]) -> str:
    """
    Resolve placeholders like {{rule.name}} or {{trigger.job_status}}.
    Unknown paths are left in place.
    """
    def replacer(match):
        path = match.group(1).strip()
        value = context
        try:
            for part in path.split("."):
                value = value[part]
            return str(value)
        except (KeyError, IndexError, TypeError):
            logger.warning(f"Template variable not found: {path}")
            return match.group(0)

    return _TEMPLATE_PATTERN.sub(replacer, template)
