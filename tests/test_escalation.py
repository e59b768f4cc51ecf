"""
Tests for the Alert Escalation Engine.

These tests verify:
1. GUARD: only open, enabled, due instances below max level move
2. TRANSITION: one level per run, escalated_at stamped from the clock
3. FAN-OUT: audience widens cumulatively, nobody is notified twice
4. ISOLATION: one failing instance does not stop the others
"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from crm_alerts.models import AppRole, Notification
from crm_alerts.services.escalation import (
    EscalationEngine,
    EscalationPolicy,
    EscalationStateMachine,
    severity_for_level,
)

from conftest import NOW


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
async def org(make_profile):
    return {
        "gestor": await make_profile(AppRole.GESTOR, office="Escaldes"),
        "office_director": await make_profile(AppRole.OFFICE_DIRECTOR, office="Escaldes"),
        "other_office_director": await make_profile(AppRole.OFFICE_DIRECTOR, office="Encamp"),
        "manager": await make_profile(AppRole.COMMERCIAL_MANAGER, office=None),
        "commercial_director": await make_profile(AppRole.COMMERCIAL_DIRECTOR, office=None),
        "superadmin": await make_profile(AppRole.SUPERADMIN, office=None),
    }


@pytest.fixture
async def office_alert(make_alert):
    return await make_alert(
        target_type="office",
        target_office="Escaldes",
        escalation_hours=4,
        max_escalation_level=3,
    )


async def notifications_for_alert(session, alert_id) -> list[Notification]:
    result = await session.execute(select(Notification).where(Notification.alert_id == alert_id))
    return list(result.scalars().all())


def clock_at(moment):
    return lambda: moment


# =============================================================================
# TEST: STATE MACHINE
# =============================================================================


class TestEscalationStateMachine:

    async def test_guard_uses_last_escalation_over_trigger(self, office_alert, make_instance):
        instance = await make_instance(
            office_alert,
            triggered_at=NOW - timedelta(hours=30),
            escalated_at=NOW - timedelta(hours=2),
            escalation_level=1,
        )
        machine = EscalationStateMachine(clock_at(NOW))
        policy = EscalationPolicy.from_definition(office_alert)

        assert machine.hours_since_last_step(instance) == pytest.approx(2)
        assert machine.can_escalate(instance, policy) is False

    async def test_guard_is_inclusive_at_threshold(self, office_alert, make_instance):
        instance = await make_instance(office_alert, triggered_at=NOW - timedelta(hours=4))
        machine = EscalationStateMachine(clock_at(NOW))

        assert machine.can_escalate(instance, EscalationPolicy.from_definition(office_alert)) is True

    async def test_escalate_refuses_when_guard_fails(self, office_alert, make_instance):
        instance = await make_instance(office_alert, triggered_at=NOW - timedelta(hours=1))
        machine = EscalationStateMachine(clock_at(NOW))

        with pytest.raises(ValueError):
            machine.escalate(instance, EscalationPolicy.from_definition(office_alert))
        assert instance.escalation_level == 0

    @pytest.mark.parametrize("level, severity", [(1, "medium"), (2, "high"), (3, "critical"), (5, "critical")])
    def test_severity_by_level(self, level, severity):
        assert severity_for_level(level).value == severity


# =============================================================================
# TEST: ENGINE RUN
# =============================================================================


class TestEscalationEngine:

    async def test_due_instance_moves_to_level_one(self, session, org, office_alert, make_instance):
        instance = await make_instance(office_alert, triggered_at=NOW - timedelta(hours=5))

        result = await EscalationEngine(session, clock=clock_at(NOW)).run()

        assert result.escalated_count == 1
        assert result.notifications_sent == 1
        assert instance.escalation_level == 1
        assert instance.escalated_at == NOW
        assert instance.escalation_notified_to == [str(org["office_director"].id)]

        notifications = await notifications_for_alert(session, office_alert.id)
        assert [n.user_id for n in notifications] == [org["office_director"].id]
        assert notifications[0].severity == "medium"

    async def test_not_yet_due_instance_is_untouched(self, session, org, office_alert, make_instance):
        instance = await make_instance(office_alert, triggered_at=NOW - timedelta(hours=3))

        result = await EscalationEngine(session, clock=clock_at(NOW)).run()

        assert result.escalated_count == 0
        assert instance.escalation_level == 0
        assert instance.escalated_at is None

    async def test_resolved_instance_is_a_no_op(self, session, org, office_alert, make_instance):
        instance = await make_instance(
            office_alert,
            triggered_at=NOW - timedelta(days=3),
            resolved_at=NOW - timedelta(days=1),
        )

        result = await EscalationEngine(session, clock=clock_at(NOW)).run()

        assert result.escalated_count == 0
        assert instance.escalation_level == 0
        assert await notifications_for_alert(session, office_alert.id) == []

    async def test_disabled_escalation_is_skipped(self, session, org, make_alert, make_instance):
        definition = await make_alert(target_type="office", target_office="Escaldes", escalation_enabled=False)
        await make_instance(definition, triggered_at=NOW - timedelta(days=2))

        result = await EscalationEngine(session, clock=clock_at(NOW)).run()

        assert result.escalated_count == 0

    async def test_max_level_is_never_exceeded(self, session, org, office_alert, make_instance):
        instance = await make_instance(
            office_alert,
            triggered_at=NOW - timedelta(days=5),
            escalated_at=NOW - timedelta(days=1),
            escalation_level=3,
        )

        result = await EscalationEngine(session, clock=clock_at(NOW)).run()

        assert result.escalated_count == 0
        assert instance.escalation_level == 3

    async def test_level_two_adds_managers_without_renotifying(self, session, org, office_alert, make_instance):
        instance = await make_instance(
            office_alert,
            triggered_at=NOW - timedelta(hours=10),
            escalated_at=NOW - timedelta(hours=5),
            escalation_level=1,
            escalation_notified_to=[str(org["office_director"].id)],
        )

        result = await EscalationEngine(session, clock=clock_at(NOW)).run()

        assert instance.escalation_level == 2
        assert result.notifications_sent == 1
        assert instance.escalation_notified_to == [
            str(org["office_director"].id),
            str(org["manager"].id),
        ]
        notifications = await notifications_for_alert(session, office_alert.id)
        assert [(n.user_id, n.severity) for n in notifications] == [(org["manager"].id, "high")]

    async def test_level_three_adds_global_directors(self, session, org, office_alert, make_instance):
        instance = await make_instance(
            office_alert,
            triggered_at=NOW - timedelta(hours=20),
            escalated_at=NOW - timedelta(hours=5),
            escalation_level=2,
            escalation_notified_to=[str(org["office_director"].id), str(org["manager"].id)],
        )

        await EscalationEngine(session, clock=clock_at(NOW)).run()

        recipients = {n.user_id for n in await notifications_for_alert(session, office_alert.id)}
        assert instance.escalation_level == 3
        assert recipients == {org["commercial_director"].id, org["superadmin"].id}

    async def test_gestor_target_uses_gestor_office(self, session, org, make_alert, make_instance):
        definition = await make_alert(target_type="gestor", target_gestor_id=org["gestor"].id)
        await make_instance(definition, triggered_at=NOW - timedelta(hours=5))

        await EscalationEngine(session, clock=clock_at(NOW)).run()

        recipients = [n.user_id for n in await notifications_for_alert(session, definition.id)]
        assert recipients == [org["office_director"].id]

    async def test_repeated_runs_climb_one_level_at_a_time(self, session, org, office_alert, make_instance):
        instance = await make_instance(office_alert, triggered_at=NOW)
        previous_notified: list[str] = []

        for hour in range(5, 60, 5):
            await EscalationEngine(session, clock=clock_at(NOW + timedelta(hours=hour))).run()

            assert instance.escalation_level <= office_alert.max_escalation_level
            assert instance.escalation_notified_to[: len(previous_notified)] == previous_notified
            previous_notified = list(instance.escalation_notified_to)

        notifications = await notifications_for_alert(session, office_alert.id)
        user_ids = [n.user_id for n in notifications]
        assert instance.escalation_level == 3
        assert len(user_ids) == len(set(user_ids)) == 4
        assert org["other_office_director"].id not in user_ids
        assert org["gestor"].id not in user_ids

    async def test_failing_instance_is_isolated(self, session, org, office_alert, make_instance, monkeypatch):
        broken = await make_instance(office_alert, triggered_at=NOW - timedelta(hours=6))
        healthy = await make_instance(office_alert, triggered_at=NOW - timedelta(hours=5))
        broken_id = broken.id
        engine = EscalationEngine(session, clock=clock_at(NOW))
        original = engine.recipients_for_level

        async def flaky(instance, level):
            if instance.id == broken_id:
                raise RuntimeError("directory lookup failed")
            return await original(instance, level)

        monkeypatch.setattr(engine, "recipients_for_level", flaky)

        result = await engine.run()

        assert result.escalated_count == 1
        assert len(result.errors) == 1
        assert str(broken_id) in result.errors[0]
        assert healthy.escalation_level == 1
        await session.refresh(broken)
        assert broken.escalation_level == 0
