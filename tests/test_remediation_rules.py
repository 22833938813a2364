import pytest
from pydantic import ValidationError as PydanticValidationError

from axmon_core.exceptions import ValidationError
from axmon_core.remediation.service import RemediationService
from axmon_core.schemas.remediation import (
    Comparator,
    RemediationRuleCreate,
    TriggerCondition,
    parse_legacy_conditions,
)


def make_service(session_factory, clock, task_queue, **kwargs):
    return RemediationService(session_factory=session_factory, task_queue=task_queue, clock=clock, **kwargs)


def rule_payload(**overrides):
    payload = {
        "name": "Restart stuck batch job",
        "description": "Restarts the ledger posting job when it fails",
        "trigger_conditions": [
            {"metric": "job_status", "comparator": "eq", "threshold": "Failed"},
        ],
        "actions": [{"action": "restart_batch_job", "job_id": 42}],
        "priority": 5,
    }
    payload.update(overrides)
    return payload


# ----------------------------------------------------------------------
# Condition model
# ----------------------------------------------------------------------

def test_condition_equality_and_numeric_fallback():
    status = TriggerCondition(metric="job_status", threshold="Failed")
    count = TriggerCondition(metric="retries", threshold=5)

    assert status.holds({"job_status": "Failed"})
    assert not status.holds({"job_status": "Running"})
    assert not status.holds({})
    assert count.holds({"retries": 5})
    assert count.holds({"retries": "5"})
    assert count.holds({"retries": 5.0})
    assert not count.holds({"retries": "five"})


def test_condition_ordering_comparators():
    above = TriggerCondition(metric="batch_backlog", comparator="gt", threshold=100)
    below = TriggerCondition(metric="free_disk_gb", comparator="lt", threshold=10)

    assert above.holds({"batch_backlog": 150})
    assert above.holds({"batch_backlog": "101"})
    assert not above.holds({"batch_backlog": 100})
    assert not above.holds({"batch_backlog": "high"})
    assert not above.holds({"batch_backlog": True})
    assert below.holds({"free_disk_gb": 2.5})
    assert not below.holds({"free_disk_gb": 10})


def test_ordering_comparator_requires_numeric_threshold():
    with pytest.raises(PydanticValidationError):
        TriggerCondition(metric="batch_backlog", comparator="gt", threshold="lots")


def test_legacy_mapping_is_converted():
    conditions = parse_legacy_conditions({"batch_backlog>": 100, "free_disk_gb <": 10, "job_status": "Failed"})

    assert conditions == [
        {"metric": "batch_backlog", "comparator": "gt", "threshold": 100},
        {"metric": "free_disk_gb", "comparator": "lt", "threshold": 10},
        {"metric": "job_status", "comparator": "eq", "threshold": "Failed"},
    ]


@pytest.mark.parametrize("key", ["a>b", "<backlog", "backlog<>", ">"])
def test_malformed_legacy_keys_are_rejected(key):
    with pytest.raises(ValueError):
        parse_legacy_conditions({key: 1})


def test_rule_model_accepts_legacy_and_camel_case_flags():
    request = RemediationRuleCreate.model_validate({
        "name": "Backlog",
        "trigger_conditions": {"batch_backlog>": 100},
        "actions": [
            {"action": "send_notification", "continueOnFailure": True},
            {"action": "kill_session", "session_id": "17"},
        ],
    })

    assert request.trigger_conditions[0].comparator == Comparator.GT
    assert request.trigger_conditions[0].metric == "batch_backlog"
    assert request.actions[0].continue_on_failure is True
    assert request.actions[1].session_id == 17


# ----------------------------------------------------------------------
# CRUD
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_rule_persists_typed_payload(session_factory, clock, task_queue):
    service = make_service(session_factory, clock, task_queue)

    rule = await service.create_rule(rule_payload(trigger_conditions={"batch_backlog>": 100}))

    assert rule.id.startswith("RULE_20251109_140000_")
    stored = await service.get_rule_by_id(rule.id)
    assert stored.trigger_conditions == [{"metric": "batch_backlog", "comparator": "gt", "threshold": 100}]
    assert stored.actions == [{"action": "restart_batch_job", "job_id": 42, "continue_on_failure": False}]
    assert stored.cooldown_minutes == 15
    assert stored.max_attempts == 3
    assert stored.timeout_seconds == 300
    assert stored.requires_confirmation is False
    assert stored.to_dict()["name"] == "Restart stuck batch job"


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides", [
    {"actions": [{"action": "reboot_server"}]},
    {"actions": [{"action": "restart_batch_job"}]},
    {"trigger_conditions": {"a>b": 1}},
    {"trigger_conditions": [{"metric": "backlog", "comparator": "between", "threshold": 1}]},
    {"name": ""},
])
async def test_create_rule_rejects_invalid_payloads(session_factory, clock, task_queue, overrides):
    service = make_service(session_factory, clock, task_queue)

    with pytest.raises(ValidationError):
        await service.create_rule(rule_payload(**overrides))


@pytest.mark.asyncio
async def test_get_rules_returns_enabled_by_priority(session_factory, clock, task_queue):
    service = make_service(session_factory, clock, task_queue)
    low = await service.create_rule(rule_payload(name="low", priority=1))
    high = await service.create_rule(rule_payload(name="high", priority=9))
    await service.create_rule(rule_payload(name="off", priority=10, enabled=False))

    rules = await service.get_rules()

    assert [r.id for r in rules] == [high.id, low.id]


@pytest.mark.asyncio
async def test_update_rule_replaces_only_given_fields(session_factory, clock, task_queue):
    service = make_service(session_factory, clock, task_queue)
    rule = await service.create_rule(rule_payload())

    clock.advance(minutes=1)
    assert await service.update_rule(rule.id, {"priority": 8, "cooldown_minutes": 30})

    stored = await service.get_rule_by_id(rule.id)
    assert stored.priority == 8
    assert stored.cooldown_minutes == 30
    assert stored.name == "Restart stuck batch job"
    assert stored.actions == rule.actions
    assert stored.updated_at == clock()


@pytest.mark.asyncio
async def test_update_rule_accepts_legacy_conditions(session_factory, clock, task_queue):
    service = make_service(session_factory, clock, task_queue)
    rule = await service.create_rule(rule_payload())

    assert await service.update_rule(rule.id, {"trigger_conditions": {"free_disk_gb<": 5}})

    stored = await service.get_rule_by_id(rule.id)
    assert stored.trigger_conditions == [{"metric": "free_disk_gb", "comparator": "lt", "threshold": 5}]


@pytest.mark.asyncio
async def test_update_and_delete_unknown_rule(session_factory, clock, task_queue):
    service = make_service(session_factory, clock, task_queue)
    rule = await service.create_rule(rule_payload())

    assert not await service.update_rule("RULE_missing", {"priority": 1})
    with pytest.raises(ValidationError):
        await service.update_rule(rule.id, {"actions": [{"action": "format_disk"}]})

    assert await service.delete_rule(rule.id)
    assert not await service.delete_rule(rule.id)
    assert await service.get_rule_by_id(rule.id) is None


# ----------------------------------------------------------------------
# Evaluation
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_evaluate_conditions_matches_all_conditions(session_factory, clock, task_queue):
    service = make_service(session_factory, clock, task_queue)
    rule = await service.create_rule(rule_payload(
        trigger_conditions={"batch_backlog>": 100, "job_status": "Failed"},
    ))

    assert [r.id for r in await service.evaluate_conditions({"batch_backlog": 150, "job_status": "Failed"})] == [rule.id]
    assert await service.evaluate_conditions({"batch_backlog": 50, "job_status": "Failed"}) == []
    assert await service.evaluate_conditions({"batch_backlog": 150}) == []
    assert await service.evaluate_conditions({"batch_backlog": "many", "job_status": "Failed"}) == []


@pytest.mark.asyncio
async def test_evaluate_conditions_orders_by_priority_and_skips_disabled(session_factory, clock, task_queue):
    service = make_service(session_factory, clock, task_queue)
    low = await service.create_rule(rule_payload(name="low", priority=2))
    high = await service.create_rule(rule_payload(name="high", priority=7))
    await service.create_rule(rule_payload(name="disabled", priority=9, enabled=False))
    await service.create_rule(rule_payload(name="other", trigger_conditions=[
        {"metric": "job_status", "threshold": "Running"},
    ]))

    triggered = await service.evaluate_conditions({"job_status": "Failed"})

    assert [r.id for r in triggered] == [high.id, low.id]


@pytest.mark.asyncio
async def test_requires_confirmation_rules_are_still_returned(session_factory, clock, task_queue):
    service = make_service(session_factory, clock, task_queue)
    rule = await service.create_rule(rule_payload(requires_confirmation=True))

    triggered = await service.evaluate_conditions({"job_status": "Failed"})

    assert [r.id for r in triggered] == [rule.id]
    assert triggered[0].requires_confirmation is True


@pytest.mark.asyncio
async def test_cooldown_uses_most_recent_execution(session_factory, clock, task_queue, seed_execution):
    service = make_service(session_factory, clock, task_queue)
    rule = await service.create_rule(rule_payload(cooldown_minutes=15))

    await seed_execution(rule.id, minutes_ago=10, status="Failed")
    assert await service.evaluate_conditions({"job_status": "Failed"}) == []

    clock.advance(minutes=6)
    assert [r.id for r in await service.evaluate_conditions({"job_status": "Failed"})] == [rule.id]


# ----------------------------------------------------------------------
# YAML rule loading
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_load_rules_from_directory(session_factory, clock, task_queue, tmp_path):
    (tmp_path / "backlog.yaml").write_text(
        "name: Drain batch backlog\n"
        "priority: 7\n"
        "trigger_conditions:\n"
        "  batch_backlog>: 500\n"
        "actions:\n"
        "  - action: send_notification\n"
        "    message: Backlog at {{trigger.batch_backlog}}\n"
    )
    (tmp_path / "blocking.yml").write_text(
        "trigger_conditions:\n"
        "  - metric: blocking_seconds\n"
        "    comparator: gt\n"
        "    threshold: 300\n"
        "actions:\n"
        "  - action: kill_session\n"
        "    session_id: 55\n"
    )
    (tmp_path / "broken.yaml").write_text("actions:\n  - action: wipe_database\n")
    service = make_service(session_factory, clock, task_queue)

    assert await service.load_rules_from_directory(str(tmp_path)) == 2
    assert await service.load_rules_from_directory(str(tmp_path)) == 0

    rules = await service.get_rules()
    assert [r.name for r in rules] == ["Drain batch backlog", "blocking"]


@pytest.mark.asyncio
async def test_missing_rules_directory_loads_nothing(session_factory, clock, task_queue, tmp_path):
    service = make_service(session_factory, clock, task_queue)

    assert await service.load_rules_from_directory(str(tmp_path / "absent")) == 0
