"""
Error taxonomy for the alerting and remediation core.

Policy rejections of alert creation are not exceptions; they are returned as
values (see axmon_core.schemas.alert.AlertCreationResult).
"""
from typing import Optional


class AxMonitorError(Exception):
    """Base class for all errors raised by axmon_core."""


class ValidationError(AxMonitorError):
    """Malformed input: unknown action kind, bad condition encoding, invalid rule payload."""


class NotFoundError(AxMonitorError):
    """A rule, alert, execution or incident id does not exist."""

    def __init__(self, kind: str, identifier):
        super().__init__(f"{kind} {identifier} not found")
        self.kind = kind
        self.identifier = identifier


class CooldownActiveError(AxMonitorError):
    """
    Remediation counterpart of a policy rejection: the rule was triggered
    again before its cooldown elapsed. Retryable after `retry_after_seconds`.
    """

    def __init__(self, rule_id: str, retry_after_seconds: Optional[float] = None):
        super().__init__(f"Rule {rule_id} is in cooldown")
        self.rule_id = rule_id
        self.retry_after_seconds = retry_after_seconds


class ExternalActionFailure(AxMonitorError):
    """A dispatched remediation action returned failure or raised."""

    def __init__(self, action: str, reason: str):
        super().__init__(f"Action {action} failed: {reason}")
        self.action = action
        self.reason = reason


class PersistenceError(AxMonitorError):
    """The store is unavailable or rejected a write."""
