import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from axmon_core.alert_escalation.service import (
    AlertEscalationService,
    escalation_level,
    rule_applies,
    tier_recipients,
)
from axmon_core.alert_lifecycle.service import AlertLifecycleService
from axmon_core.exceptions import ValidationError
from axmon_core.models.alert import Alert
from axmon_core.models.escalation import EscalationRule


def make_service(session_factory, clock, **kwargs):
    return AlertEscalationService(session_factory=session_factory, clock=clock, **kwargs)


def make_notifier(error=None):
    notifier = MagicMock()
    notifier.notify_escalation = AsyncMock(return_value=True, side_effect=error)
    return notifier


def rule_payload(**overrides):
    payload = {
        "name": "Batch failures",
        "alert_type": "JobFailure",
        "min_severity": "Warning",
        "first_escalation_minutes": 15,
        "first_escalation_recipients": "ops@contoso.com",
        "second_escalation_minutes": 45,
        "second_escalation_recipients": "ax-leads@contoso.com",
        "final_escalation_minutes": 120,
        "final_escalation_recipients": "oncall@contoso.com",
    }
    payload.update(overrides)
    return payload


# ----------------------------------------------------------------------
# Rule CRUD
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_and_list_rules(session_factory, clock):
    service = make_service(session_factory, clock)
    beta = await service.create_escalation_rule(rule_payload(name="beta"))
    alpha = await service.create_escalation_rule(rule_payload(name="alpha", enabled=False))

    assert [r.id for r in await service.get_escalation_rules()] == [alpha.id, beta.id]
    assert [r.id for r in await service.get_escalation_rules(enabled=True)] == [beta.id]

    stored = await service.get_escalation_rule_by_id(beta.id)
    assert stored.min_severity == "Warning"
    assert stored.escalate_via_teams is True
    assert stored.created_at == clock()
    assert await service.get_escalation_rule_by_id(uuid.uuid4()) is None


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides", [
    {"min_severity": "Urgent"},
    {"second_escalation_minutes": 10},
    {"final_escalation_minutes": 45},
    {"name": ""},
])
async def test_create_rule_rejects_invalid_payloads(session_factory, clock, overrides):
    service = make_service(session_factory, clock)

    with pytest.raises(ValidationError):
        await service.create_escalation_rule(rule_payload(**overrides))


@pytest.mark.asyncio
async def test_update_rule_can_clear_optional_tiers(session_factory, clock):
    service = make_service(session_factory, clock)
    rule = await service.create_escalation_rule(rule_payload())

    clock.advance(minutes=1)
    assert await service.update_escalation_rule(rule.id, {
        "final_escalation_minutes": None,
        "final_escalation_recipients": None,
        "alert_type": None,
        "description": None,
    })

    stored = await service.get_escalation_rule_by_id(rule.id)
    assert stored.final_escalation_minutes is None
    assert stored.final_escalation_recipients is None
    assert stored.alert_type is None
    assert stored.description == ""
    assert stored.second_escalation_minutes == 45
    assert stored.updated_at == clock()


@pytest.mark.asyncio
async def test_update_rule_validates_merged_tiers(session_factory, clock):
    service = make_service(session_factory, clock)
    rule = await service.create_escalation_rule(rule_payload())

    with pytest.raises(ValidationError):
        await service.update_escalation_rule(rule.id, {"first_escalation_minutes": 60})

    assert not await service.update_escalation_rule(uuid.uuid4(), {"enabled": False})
    assert (await service.get_escalation_rule_by_id(rule.id)).first_escalation_minutes == 15


@pytest.mark.asyncio
async def test_delete_rule(session_factory, clock):
    service = make_service(session_factory, clock)
    rule = await service.create_escalation_rule(rule_payload())

    assert await service.delete_escalation_rule(rule.id)
    assert not await service.delete_escalation_rule(rule.id)
    assert await service.get_escalation_rule_by_id(rule.id) is None


# ----------------------------------------------------------------------
# Escalation
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_alert_is_escalated_once_per_level(session_factory, clock, seed_alert):
    notifier = make_notifier()
    service = make_service(session_factory, clock, notifier=notifier)
    rule = await service.create_escalation_rule(rule_payload())
    alert = await seed_alert("JobFailure", minutes_ago=20)

    assert await service.check_and_escalate_alerts() == 1
    assert await service.check_and_escalate_alerts() == 0

    clock.advance(minutes=30)
    assert await service.check_and_escalate_alerts() == 1

    escalations = await service.get_escalations_for_alert(alert.id)
    assert [e.escalation_level for e in escalations] == [1, 2]
    assert [e.recipients for e in escalations] == ["ops@contoso.com", "ax-leads@contoso.com"]
    assert [e.minutes_since_alert for e in escalations] == [20, 50]
    assert all(e.rule_id == rule.id for e in escalations)
    assert all(e.sent_via_webhook and e.sent_via_teams for e in escalations)
    assert all(e.error_message is None for e in escalations)


@pytest.mark.asyncio
async def test_escalation_message_is_sent_to_each_enabled_channel(session_factory, clock, seed_alert):
    notifier = make_notifier()
    service = make_service(session_factory, clock, notifier=notifier)
    await service.create_escalation_rule(rule_payload(escalate_via_webhook=False))
    alert = await seed_alert("JobFailure", severity="Critical", message="Ledger posting failed", minutes_ago=16)

    await service.check_and_escalate_alerts()

    notifier.notify_escalation.assert_awaited_once()
    sent_alert, level, recipients, message, channel = notifier.notify_escalation.await_args.args
    assert sent_alert.id == alert.id
    assert (level, recipients, channel) == (1, "ops@contoso.com", "teams")
    assert message.startswith("ALERT ESCALATION (Level 1)")
    assert "Message: Ledger posting failed" in message
    assert "Created: 2025-11-09 13:44:00 UTC" in message
    assert "Minutes Since Alert: 16" in message
    assert message.endswith("Escalation Rule: Batch failures")

    escalation = (await service.get_escalations_for_alert(alert.id))[0]
    assert escalation.sent_via_teams is True
    assert escalation.sent_via_webhook is False


@pytest.mark.asyncio
async def test_long_unattended_alert_jumps_to_highest_level(session_factory, clock, seed_alert):
    service = make_service(session_factory, clock, notifier=make_notifier())
    await service.create_escalation_rule(rule_payload())
    alert = await seed_alert("JobFailure", minutes_ago=130)

    assert await service.check_and_escalate_alerts() == 1

    escalations = await service.get_escalations_for_alert(alert.id)
    assert [e.escalation_level for e in escalations] == [3]
    assert escalations[0].recipients == "oncall@contoso.com"


@pytest.mark.asyncio
async def test_acknowledged_and_inactive_alerts_are_not_escalated(session_factory, clock, seed_alert, task_queue):
    lifecycle = AlertLifecycleService(session_factory=session_factory, task_queue=task_queue, clock=clock)
    service = make_service(session_factory, clock, notifier=make_notifier())
    await service.create_escalation_rule(rule_payload())
    acknowledged = await seed_alert("JobFailure", minutes_ago=20)
    await seed_alert("JobFailure", minutes_ago=20, status="Resolved")
    await seed_alert("JobFailure", minutes_ago=5)

    await lifecycle.acknowledge_alert(acknowledged.id, "ops")

    assert await service.check_and_escalate_alerts() == 0


@pytest.mark.asyncio
async def test_type_and_severity_filters(session_factory, clock, seed_alert):
    service = make_service(session_factory, clock, notifier=make_notifier())
    await service.create_escalation_rule(rule_payload(min_severity="Critical"))
    await seed_alert("JobFailure", severity="Warning", minutes_ago=20)
    await seed_alert("SqlBlocking", severity="Critical", minutes_ago=20)
    critical = await seed_alert("JobFailure", severity="Critical", message="Critical failure", minutes_ago=20)

    assert await service.check_and_escalate_alerts() == 1
    assert len(await service.get_escalations_for_alert(critical.id)) == 1


@pytest.mark.asyncio
async def test_tier_without_recipients_is_not_recorded(session_factory, clock, seed_alert):
    notifier = make_notifier()
    service = make_service(session_factory, clock, notifier=notifier)
    await service.create_escalation_rule(rule_payload(first_escalation_recipients="  "))
    alert = await seed_alert("JobFailure", minutes_ago=20)

    assert await service.check_and_escalate_alerts() == 0
    assert await service.get_escalations_for_alert(alert.id) == []
    notifier.notify_escalation.assert_not_awaited()


@pytest.mark.asyncio
async def test_delivery_failure_is_recorded_on_escalation(session_factory, clock, seed_alert):
    notifier = make_notifier(error=ConnectionError("teams unreachable"))
    service = make_service(session_factory, clock, notifier=notifier)
    await service.create_escalation_rule(rule_payload())
    alert = await seed_alert("JobFailure", minutes_ago=20)

    assert await service.check_and_escalate_alerts() == 1
    assert await service.check_and_escalate_alerts() == 0

    escalation = (await service.get_escalations_for_alert(alert.id))[0]
    assert escalation.sent_via_webhook is False
    assert escalation.sent_via_teams is False
    assert "teams unreachable" in escalation.error_message


@pytest.mark.asyncio
async def test_level_recorded_by_another_checker_is_not_sent_again(session_factory, clock, seed_alert):
    notifier = make_notifier()
    service = make_service(session_factory, clock, notifier=notifier)
    rule = await service.create_escalation_rule(rule_payload())
    alert = await seed_alert("JobFailure", minutes_ago=20)

    assert await service._escalate(alert, rule, 1, 20, clock())
    assert not await service._escalate(alert, rule, 1, 20, clock())

    assert len(await service.get_escalations_for_alert(alert.id)) == 1
    assert notifier.notify_escalation.await_count == 2  # webhook + teams, once


@pytest.mark.asyncio
async def test_deleting_alert_removes_its_escalations(session_factory, clock, seed_alert, task_queue):
    lifecycle = AlertLifecycleService(session_factory=session_factory, task_queue=task_queue, clock=clock)
    service = make_service(session_factory, clock, notifier=make_notifier())
    await service.create_escalation_rule(rule_payload())
    alert = await seed_alert("JobFailure", minutes_ago=20)
    await service.check_and_escalate_alerts()

    assert await lifecycle.delete_alert(alert.id)

    assert await service.get_escalations_for_alert(alert.id) == []


@pytest.mark.asyncio
async def test_background_loop_runs_escalation_checks(session_factory, clock, seed_alert):
    service = make_service(session_factory, clock, notifier=make_notifier(), interval_seconds=0.01)
    await service.create_escalation_rule(rule_payload())
    alert = await seed_alert("JobFailure", minutes_ago=20)

    await service.start()
    await asyncio.sleep(0.2)
    await service.stop()

    assert len(await service.get_escalations_for_alert(alert.id)) == 1


def _rule(**overrides):
    values = dict(
        name="rule",
        alert_type=None,
        min_severity="Warning",
        first_escalation_minutes=15,
        first_escalation_recipients="ops",
        second_escalation_minutes=None,
        second_escalation_recipients=None,
        final_escalation_minutes=None,
        final_escalation_recipients=None,
    )
    values.update(overrides)
    return EscalationRule(**values)


def test_escalation_level_boundaries():
    rule = _rule(second_escalation_minutes=45, final_escalation_minutes=120)

    assert escalation_level(rule, 14.9) == 0
    assert escalation_level(rule, 15) == 1
    assert escalation_level(rule, 45) == 2
    assert escalation_level(rule, 119.9) == 2
    assert escalation_level(rule, 120) == 3
    assert escalation_level(_rule(), 500) == 1


def test_rule_applies_and_recipients():
    any_type = _rule()
    deadlocks = _rule(alert_type="DeadlockDetected", min_severity="Critical")

    assert rule_applies(any_type, Alert(type="JobFailure", severity="Warning"))
    assert not rule_applies(any_type, Alert(type="JobFailure", severity="Info"))
    assert rule_applies(deadlocks, Alert(type="DeadlockDetected", severity="Critical"))
    assert not rule_applies(deadlocks, Alert(type="JobFailure", severity="Critical"))

    assert tier_recipients(any_type, 1) == "ops"
    assert tier_recipients(any_type, 2) == ""
