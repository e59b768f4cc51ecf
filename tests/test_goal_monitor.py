"""
Tests for the Goal Risk Monitor.

These tests verify:
1. PACING: percentage vs. time-elapsed expectation
2. CLASSIFICATION: at_risk / critical thresholds
3. FAN-OUT: owner and the right directors are notified
4. DEDUP: at most one notification batch per goal per day
5. ISOLATION: one broken goal never aborts the run
"""

from datetime import date

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from crm_alerts.models import AppRole, GoalRiskMark, Notification, Visit
from crm_alerts.services.goal_monitor import (
    GoalRiskMonitor,
    assess_progress,
    classify_risk,
)

from conftest import NOW

PERIOD_START = date(2026, 3, 1)
PERIOD_END = date(2026, 3, 31)
TODAY = NOW.date()


# =============================================================================
# HELPERS
# =============================================================================


async def add_visits(session: AsyncSession, gestor_id, count: int) -> None:
    session.add_all([
        Visit(gestor_id=gestor_id, visit_date=date(2026, 3, 1 + i % 15), result="successful")
        for i in range(count)
    ])
    await session.flush()


async def notifications_for(session: AsyncSession, goal_id) -> list[Notification]:
    result = await session.execute(select(Notification).where(Notification.goal_id == goal_id))
    return list(result.scalars().all())


@pytest.fixture
async def team(make_profile):
    """Owner, director of the owner's office, director elsewhere, commercial director."""
    return {
        "owner": await make_profile(AppRole.GESTOR, office="Escaldes"),
        "office_director": await make_profile(AppRole.OFFICE_DIRECTOR, office="Escaldes"),
        "other_director": await make_profile(AppRole.OFFICE_DIRECTOR, office="Sant Julia"),
        "commercial_director": await make_profile(AppRole.COMMERCIAL_DIRECTOR, office=None),
    }


# =============================================================================
# TEST: PURE PACING
# =============================================================================


class TestAssessProgress:

    def test_fifteen_of_thirty_days_expects_half(self):
        progress = assess_progress(40, 100, PERIOD_START, PERIOD_END, TODAY)

        assert progress.percentage == 40
        assert progress.expected == 50
        assert progress.gap == 10

    def test_percentage_is_capped_at_100(self):
        progress = assess_progress(250, 100, PERIOD_START, PERIOD_END, TODAY)

        assert progress.percentage == 100

    def test_zero_target_means_zero_percentage(self):
        progress = assess_progress(10, 0, PERIOD_START, PERIOD_END, TODAY)

        assert progress.percentage == 0

    def test_single_day_period_does_not_divide_by_zero(self):
        progress = assess_progress(0, 10, TODAY, TODAY, TODAY)

        assert progress.expected == 0

    @pytest.mark.parametrize("current", [0, 1, 33.3, 99.9, 100, 150, 10_000])
    @pytest.mark.parametrize("target", [1, 7, 100, 5_000])
    def test_percentage_stays_in_bounds(self, current, target):
        progress = assess_progress(current, target, PERIOD_START, PERIOD_END, TODAY)

        assert 0 <= progress.percentage <= 100


class TestClassifyRisk:

    @pytest.mark.parametrize(
        "current, expected_risk",
        [
            (40, None),          # gap 10
            (30, None),          # gap exactly 20 is not enough
            (20, "at_risk"),     # gap 30
            (10, "at_risk"),     # gap 40, not strictly above
            (5, "critical"),     # gap 45
        ],
    )
    def test_thresholds(self, current, expected_risk):
        progress = assess_progress(current, 100, PERIOD_START, PERIOD_END, TODAY)

        assert classify_risk(progress) == expected_risk

    def test_critical_implies_both_conditions(self):
        for current in range(0, 101):
            progress = assess_progress(current, 100, PERIOD_START, date(2026, 3, 17), TODAY)
            risk = classify_risk(progress)
            if risk == "critical":
                assert progress.gap > 40 and progress.percentage < 60
            elif risk == "at_risk":
                assert progress.gap > 20 and progress.percentage < 80
                assert not (progress.gap > 40 and progress.percentage < 60)


# =============================================================================
# TEST: MONITOR RUN
# =============================================================================


class TestGoalRiskMonitor:

    async def test_on_pace_goal_sends_nothing(self, session, clock, team, make_goal):
        goal = await make_goal(team["owner"].id)
        await add_visits(session, team["owner"].id, 40)

        result = await GoalRiskMonitor(session, clock=clock).run()

        assert result.goals_checked == 1
        assert result.alerts_sent == 0
        assert await notifications_for(session, goal.id) == []

    async def test_at_risk_goal_notifies_owner_and_office_director(self, session, clock, team, make_goal):
        goal = await make_goal(team["owner"].id)
        await add_visits(session, team["owner"].id, 20)

        result = await GoalRiskMonitor(session, clock=clock).run()

        notifications = await notifications_for(session, goal.id)
        recipients = {n.user_id for n in notifications}
        assert result.at_risk == 1
        assert result.critical == 0
        assert recipients == {
            team["owner"].id,
            team["office_director"].id,
            team["commercial_director"].id,
        }
        assert team["other_director"].id not in recipients
        assert {n.severity for n in notifications} == {"medium"}
        assert all(n.metric_value == 20 and n.threshold_value == 50 for n in notifications)
        assert result.alerts_sent == len(notifications)

    async def test_critical_goal_uses_high_severity(self, session, clock, team, make_goal):
        goal = await make_goal(team["owner"].id)
        await add_visits(session, team["owner"].id, 5)

        result = await GoalRiskMonitor(session, clock=clock).run()

        notifications = await notifications_for(session, goal.id)
        assert result.critical == 1
        assert result.at_risk == 0
        assert {n.severity for n in notifications} == {"high"}

    async def test_second_run_same_day_adds_nothing(self, session, clock, team, make_goal):
        goal = await make_goal(team["owner"].id)
        await add_visits(session, team["owner"].id, 5)
        monitor = GoalRiskMonitor(session, clock=clock)

        first = await monitor.run()
        second = await monitor.run()

        assert first.alerts_sent == 3
        assert second.alerts_sent == 0
        assert second.skipped == 1
        assert len(await notifications_for(session, goal.id)) == 3

    async def test_existing_claim_blocks_notifications(self, session, clock, team, make_goal):
        """A concurrent run that already claimed (goal, today) wins."""
        goal = await make_goal(team["owner"].id)
        session.add(GoalRiskMark(goal_id=goal.id, check_date=TODAY, severity="high"))
        await session.flush()

        result = await GoalRiskMonitor(session, clock=clock).run()

        assert result.skipped == 1
        assert result.alerts_sent == 0
        marks = await session.execute(select(func.count(GoalRiskMark.id)))
        assert marks.scalar() == 1

    async def test_goals_outside_their_period_are_ignored(self, session, clock, team, make_goal):
        await make_goal(team["owner"].id, period_start=date(2026, 1, 1), period_end=date(2026, 1, 31))
        await make_goal(team["owner"].id, period_start=date(2026, 4, 1), period_end=date(2026, 4, 30))

        result = await GoalRiskMonitor(session, clock=clock).run()

        assert result.goals_checked == 0

    async def test_metric_failure_defaults_to_zero_and_continues(self, session, clock, team, make_goal):
        broken = await make_goal(team["owner"].id, metric_type="not_a_metric")
        healthy = await make_goal(team["owner"].id, metric_type="visits")
        await add_visits(session, team["owner"].id, 45)

        result = await GoalRiskMonitor(session, clock=clock).run()

        assert result.goals_checked == 2
        assert len(result.errors) == 1
        assert str(broken.id) in result.errors[0]
        # current=0 against 50% expected is critical
        assert {n.severity for n in await notifications_for(session, broken.id)} == {"high"}
        assert await notifications_for(session, healthy.id) == []

    async def test_unassigned_goal_notifies_directors_only(self, session, clock, team, make_goal):
        goal = await make_goal(None)

        await GoalRiskMonitor(session, clock=clock).run()

        recipients = {n.user_id for n in await notifications_for(session, goal.id)}
        assert recipients == {team["commercial_director"].id}

    async def test_message_summarises_run(self, session, clock, team, make_goal):
        await make_goal(team["owner"].id)

        result = await GoalRiskMonitor(session, clock=clock).run()

        assert result.message == f"Checked 1 goals, sent {result.alerts_sent} alerts"
