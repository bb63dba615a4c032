"""
Tests for the Periodic Schedulers

Cron playbooks, policy enforcement and compliance checks.
"""

from datetime import timedelta

import pytest

from secauto.store.database import MemoryStore


class CountingStore(MemoryStore):
    """MemoryStore that counts writes."""

    def __init__(self):
        super().__init__()
        self.writes = 0

    def upsert(self, kind, record):
        self.writes += 1
        return super().upsert(kind, record)


VIOLATING_STATE = {
    "password": {"length": 6, "complexity": 4},
    "authentication": {"mfa_enabled": False},
}


def _event_playbook(make_playbook, event_type, playbook_id):
    from secauto.store.models import PlaybookTrigger, TriggerType

    return make_playbook(id=playbook_id, trigger=PlaybookTrigger(type=TriggerType.EVENT, events=[event_type]))


def _check(**kwargs):
    from secauto.store.models import ComplianceCheck

    kwargs.setdefault("standard_id", "soc2-2017")
    kwargs.setdefault("requirement_id", "cc6-1")
    kwargs.setdefault("evaluator", "compliance_script")
    kwargs.setdefault("parameters", {"script": "check_access_controls.py"})
    return ComplianceCheck(**kwargs)


class TestPeriodicJob:
    """Tests for tick gating."""

    @pytest.mark.asyncio
    async def test_nothing_due_writes_nothing(self, test_settings, clock, capabilities, make_playbook):
        from secauto.orchestrator.schedulers import default_policies
        from secauto.orchestrator.system import OrchestrationSystem
        from secauto.store.models import PlaybookTrigger, TriggerType

        store = CountingStore()
        system = OrchestrationSystem(settings=test_settings, store=store, clock=clock)
        capabilities.register(system.registry)
        system.create_policy(default_policies()[0])
        system.create_compliance_check(_check())
        system.create_playbook(make_playbook(
            trigger=PlaybookTrigger(type=TriggerType.SCHEDULED, schedule="0 * * * *"),
        ))
        await system.policy_scheduler.tick()
        await system.compliance_scheduler.tick()

        store.writes = 0
        clock.advance(minutes=1)
        assert await system.playbook_scheduler.tick() == 0
        assert await system.policy_scheduler.tick() == 0
        assert await system.compliance_scheduler.tick() == 0
        assert store.writes == 0

    @pytest.mark.asyncio
    async def test_start_and_stop(self, system):
        job = system.policy_scheduler
        job.start()
        assert job.is_running
        await job.stop()
        assert not job.is_running


class TestPlaybookScheduler:
    """Tests for cron-triggered playbooks."""

    @pytest.mark.asyncio
    async def test_cron_playbook_enqueued_when_due(self, system, clock, make_playbook):
        from secauto.store.models import PlaybookTrigger, TriggerType

        playbook = system.create_playbook(make_playbook(
            trigger=PlaybookTrigger(type=TriggerType.SCHEDULED, schedule="*/5 * * * *"),
        ))
        assert playbook.next_run == clock.now + timedelta(minutes=5)

        assert await system.playbook_scheduler.tick() == 0
        clock.advance(minutes=5)
        assert await system.playbook_scheduler.tick() == 1
        assert await system.playbook_scheduler.tick() == 0

        assert len(system.queue) == 1
        execution = system.queue.get_nowait()
        assert execution.triggered_by == "scheduler"
        assert system.get_playbook(playbook.id).next_run == clock.now + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_disabled_playbook_not_scheduled(self, system, clock, make_playbook):
        from secauto.store.models import PlaybookTrigger, TriggerType

        playbook = system.create_playbook(make_playbook(
            trigger=PlaybookTrigger(type=TriggerType.SCHEDULED, schedule="*/5 * * * *"),
        ))
        await system.disable_playbook(playbook.id)
        clock.advance(minutes=10)

        assert await system.playbook_scheduler.tick() == 0
        assert len(system.queue) == 0


class TestPolicyEnforcement:
    """Tests for policy rule checks."""

    @pytest.mark.asyncio
    async def test_default_policy_detects_violations(self, system, capabilities, make_playbook):
        from secauto.orchestrator import events
        from secauto.orchestrator.schedulers import default_policies

        emitted = []
        system.bus.subscribe(events.POLICY_VIOLATION_DETECTED, lambda topic, payload: emitted.append(payload))
        system.create_playbook(_event_playbook(make_playbook, "policy_violation", "pb_violation"))
        capabilities.policy_state = VIOLATING_STATE
        enforcement = system.create_policy(default_policies()[0])

        assert await system.policy_scheduler.tick() == 1

        violations = system.get_policy_violations()
        assert sorted(v.rule_id for v in violations) == ["rule-001", "rule-002"]
        assert {v.severity.value for v in violations} == {"medium", "high"}
        assert len(emitted) == 2
        assert len(system.queue) == 2
        assert capabilities.evaluator_calls[0] == (
            "policy_state", {"target": "all_systems", "policy_id": "security-policy-001"},
        )

        stored = system.get_policy(enforcement.id)
        assert stored.check_status.value == "ok"
        assert stored.last_check == stored.next_check - timedelta(minutes=60)

    @pytest.mark.asyncio
    async def test_recheck_updates_open_violation(self, system, clock, capabilities):
        from secauto.orchestrator.schedulers import default_policies

        capabilities.policy_state = {"password": {"length": 4, "complexity": 4}}
        enforcement = system.create_policy(default_policies()[0])

        await system.policy_scheduler.tick()
        clock.advance(minutes=60)
        assert await system.check_policy(enforcement.id) == []

        violations = system.get_policy_violations(open_only=True)
        assert len(violations) == 1
        assert violations[0].occurrences == 2
        assert violations[0].last_seen == clock.now

    @pytest.mark.asyncio
    async def test_compliant_state_has_no_violations(self, system, capabilities):
        from secauto.orchestrator.schedulers import default_policies

        capabilities.policy_state = {
            "password": {"length": 16, "complexity": 4},
            "authentication": {"mfa_enabled": True},
        }
        system.create_policy(default_policies()[0])

        await system.policy_scheduler.tick()
        assert system.get_policy_violations() == []

    @pytest.mark.asyncio
    async def test_evaluator_error_recorded(self, system, capabilities):
        from secauto.orchestrator.schedulers import default_policies
        from secauto.store.models import CheckStatus

        capabilities.policy_state = RuntimeError("inventory offline")
        enforcement = system.create_policy(default_policies()[0])

        await system.policy_scheduler.tick()

        stored = system.get_policy(enforcement.id)
        assert stored.check_status == CheckStatus.ERROR
        assert "inventory offline" in stored.last_error
        assert stored.violations == []
        assert stored.next_check > stored.last_check

    @pytest.mark.asyncio
    async def test_severity_filter(self, system, capabilities):
        from secauto.orchestrator.schedulers import default_policies
        from secauto.store.models import Severity

        capabilities.policy_state = VIOLATING_STATE
        system.create_policy(default_policies()[0])
        await system.policy_scheduler.tick()

        high = system.get_policy_violations(min_severity=Severity.HIGH)
        assert [v.rule_id for v in high] == ["rule-002"]

    def test_invalid_rule_expression(self):
        from secauto.orchestrator.errors import ValidationError
        from secauto.orchestrator.schedulers import validate_policy
        from secauto.store.models import PolicyEnforcement, PolicyRule, PolicyType

        enforcement = PolicyEnforcement(
            policy_id="p1",
            type=PolicyType.DETECTIVE,
            target="hosts",
            rules=[PolicyRule("r1", "Broken", "password.length <")],
        )
        with pytest.raises(ValidationError, match="rule 'r1'"):
            validate_policy(enforcement)


class TestComplianceScheduler:
    """Tests for compliance checks and issues."""

    @pytest.mark.asyncio
    async def test_daily_check_runs_once(self, system, clock, capabilities):
        from secauto.store.models import CheckFrequency, ComplianceStatus

        check = system.create_compliance_check(_check(frequency=CheckFrequency.DAILY))

        assert await system.compliance_scheduler.tick() == 1
        clock.advance(hours=1)
        assert await system.compliance_scheduler.tick() == 0

        assert len(capabilities.evaluator_calls) == 1
        stored = system.get_compliance_check(check.id)
        assert stored.status == ComplianceStatus.COMPLIANT
        assert stored.next_check == stored.last_check + timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_issue_lifecycle(self, system, clock, capabilities, make_playbook):
        from secauto.orchestrator import events
        from secauto.store.models import ComplianceStatus, IssueStatus

        changes = []
        system.bus.subscribe(events.COMPLIANCE_STATUS_CHANGED, lambda topic, payload: changes.append(payload["status"]))
        system.create_playbook(_event_playbook(make_playbook, "compliance_failure", "pb_remediate"))
        capabilities.compliance_results["check_access_controls.py"] = {
            "compliant": False,
            "recommendation": "Review stale accounts",
        }
        check = system.create_compliance_check(_check())

        first = await system.run_compliance_check(check.id)
        assert first.status == ComplianceStatus.NON_COMPLIANT
        assert len(first.issues) == 1
        assert first.issues[0].recommendation == "Review stale accounts"
        assert len(system.queue) == 1

        clock.advance(days=1)
        second = await system.run_compliance_check(check.id)
        assert len(second.issues) == 1
        assert len(system.queue) == 1

        capabilities.compliance_results["check_access_controls.py"] = {"compliant": True}
        clock.advance(days=1)
        third = await system.run_compliance_check(check.id)
        assert third.status == ComplianceStatus.COMPLIANT
        assert third.issues[0].status == IssueStatus.RESOLVED
        assert third.issues[0].resolved_at == clock.now
        assert changes == ["non_compliant", "compliant"]

    @pytest.mark.asyncio
    async def test_expected_result_subset(self, system, capabilities):
        from secauto.store.models import ComplianceStatus

        capabilities.compliance_results["check_encryption.py"] = {"encrypted": True, "algorithm": "AES-256"}
        check = system.create_compliance_check(_check(
            parameters={"script": "check_encryption.py"},
            expected_result={"encrypted": True},
        ))

        result = await system.run_compliance_check(check.id)
        assert result.status == ComplianceStatus.COMPLIANT
        assert result.actual_result["algorithm"] == "AES-256"

    @pytest.mark.asyncio
    async def test_evaluator_error(self, system, capabilities):
        from secauto.store.models import ComplianceStatus

        capabilities.compliance_results["check_access_controls.py"] = RuntimeError("script missing")
        check = system.create_compliance_check(_check())

        result = await system.run_compliance_check(check.id)
        assert result.status == ComplianceStatus.ERROR
        assert "script missing" in result.last_error
        assert result.issues == []

    @pytest.mark.asyncio
    async def test_manual_check_stays_pending(self, system, capabilities):
        from secauto.store.models import ComplianceCheckType, ComplianceStatus

        check = system.create_compliance_check(_check(check_type=ComplianceCheckType.MANUAL, evaluator=None))

        result = await system.run_compliance_check(check.id)
        assert result.status == ComplianceStatus.PENDING
        assert result.last_check is not None
        assert capabilities.evaluator_calls == []

    @pytest.mark.asyncio
    async def test_evidence_is_capped(self, system, clock, capabilities):
        system.settings.max_evidence_entries = 3
        capabilities.compliance_results["check_access_controls.py"] = {
            "compliant": True,
            "evidence": ["users.csv", "groups.csv"],
        }
        check = system.create_compliance_check(_check())

        await system.run_compliance_check(check.id)
        clock.advance(days=1)
        result = await system.run_compliance_check(check.id)

        assert len(result.evidence) == 3
        assert result.evidence[-1] == f"{clock.now.isoformat()} groups.csv"

    def test_automated_check_needs_evaluator(self):
        from secauto.orchestrator.errors import ValidationError
        from secauto.orchestrator.schedulers import validate_compliance_check

        with pytest.raises(ValidationError, match="need an evaluator"):
            validate_compliance_check(_check(evaluator=None))


class TestCompareResult:
    """Tests for compliance result comparison."""

    def test_without_expectation_uses_flag(self):
        from secauto.orchestrator.schedulers import compare_result

        assert compare_result(None, {"compliant": True})
        assert not compare_result(None, {"compliant": False})
        assert not compare_result(None, {})
        assert compare_result(None, True)

    def test_equality_and_subset(self):
        from secauto.orchestrator.schedulers import compare_result

        assert compare_result("ok", "ok")
        assert compare_result({"a": 1}, {"a": 1, "b": 2})
        assert not compare_result({"a": 1}, {"a": 2})
        assert not compare_result({"a": 1}, "a")
