"""
Goal Risk Monitor: pacing check for active commercial goals.

Compares each goal's derived progress against a linear time-elapsed
expectation and notifies the owner and the relevant directors when the
goal falls too far behind.

Key responsibilities:
1. Find goals whose period spans today
2. Derive current value through the metric registry
3. Classify at_risk / critical
4. Notify at most once per goal per calendar day
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Literal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, utc_now
from ..core.exceptions import MetricComputationError, PersistenceError
from ..models import Goal, GoalRiskMark, Notification, NotificationSeverity
from .metrics import compute_goal_metric
from .recipients import RecipientResolver, unique_ids

logger = logging.getLogger(__name__)

RiskLevel = Literal["at_risk", "critical"]


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class MonitorConfig:
    """Pacing thresholds, in percentage points."""

    at_risk_gap: float = 20
    at_risk_max_percentage: float = 80

    critical_gap: float = 40
    critical_max_percentage: float = 60


DEFAULT_CONFIG = MonitorConfig()

SEVERITY_BY_RISK: dict[str, NotificationSeverity] = {
    "critical": NotificationSeverity.HIGH,
    "at_risk": NotificationSeverity.MEDIUM,
}


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass(frozen=True)
class GoalProgress:
    """Progress snapshot for one goal on one day."""
    current: float
    percentage: float
    expected: float
    gap: float


@dataclass
class MonitorResult:
    """Outcome of one monitor run."""
    goals_checked: int = 0
    at_risk: int = 0
    critical: int = 0
    alerts_sent: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return f"Checked {self.goals_checked} goals, sent {self.alerts_sent} alerts"


# =============================================================================
# PURE FUNCTIONS
# =============================================================================


def assess_progress(
    current: float,
    target_value: float,
    period_start: date,
    period_end: date,
    today: date,
) -> GoalProgress:
    """Percentage achieved vs. the share of the period already elapsed."""
    percentage = min(100.0, current / target_value * 100) if target_value > 0 else 0.0

    total_days = max(1, (period_end - period_start).days)
    elapsed_days = (today - period_start).days
    expected = max(0.0, elapsed_days / total_days * 100)

    return GoalProgress(
        current=current,
        percentage=percentage,
        expected=expected,
        gap=expected - percentage,
    )


def classify_risk(progress: GoalProgress, config: MonitorConfig = DEFAULT_CONFIG) -> RiskLevel | None:
    is_critical = progress.gap > config.critical_gap and progress.percentage < config.critical_max_percentage
    if is_critical:
        return "critical"

    is_at_risk = progress.gap > config.at_risk_gap and progress.percentage < config.at_risk_max_percentage
    if is_at_risk:
        return "at_risk"

    return None


def day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


# =============================================================================
# GOAL RISK MONITOR
# =============================================================================


class GoalRiskMonitor:
    """
    Daily pacing monitor for goals.

    One goal failing (metric query, notification write) never aborts the
    rest of the batch; the failure lands in `MonitorResult.errors`.
    """

    def __init__(
        self,
        session: AsyncSession,
        clock: Clock = utc_now,
        config: MonitorConfig = DEFAULT_CONFIG,
    ):
        self._session = session
        self._clock = clock
        self._config = config
        self._recipients = RecipientResolver(session)

    async def active_goals(self, today: date) -> list[Goal]:
        result = await self._session.execute(
            select(Goal)
            .where(Goal.period_start <= today, Goal.period_end >= today)
            .order_by(Goal.period_end.asc(), Goal.id)
        )
        return list(result.scalars().all())

    async def run(self) -> MonitorResult:
        now = self._clock()
        today = now.date()
        result = MonitorResult()

        goals = await self.active_goals(today)
        logger.info(f"Goal risk monitor: {len(goals)} active goals on {today}")

        for goal in goals:
            result.goals_checked += 1
            goal_id = goal.id
            try:
                await self._check_goal(goal, today, now, result)
            except Exception as e:
                error_msg = f"Goal {goal_id}: {e}"
                logger.error(f"Failed to check goal: {error_msg}")
                result.errors.append(error_msg)

        logger.info(
            f"Goal risk monitor done: {result.goals_checked} checked, "
            f"{result.at_risk} at risk, {result.critical} critical, "
            f"{result.alerts_sent} notifications"
        )
        return result

    async def _check_goal(
        self,
        goal: Goal,
        today: date,
        now: datetime,
        result: MonitorResult,
    ) -> None:
        try:
            # Savepoint keeps a failed metric query from aborting the run's transaction
            async with self._session.begin_nested():
                current = await compute_goal_metric(self._session, goal)
        except MetricComputationError as e:
            logger.error(f"Metric for goal {goal.id} failed, using 0: {e}")
            result.errors.append(f"Goal {goal.id}: {e}")
            current = 0.0

        progress = assess_progress(current, goal.target_value, goal.period_start, goal.period_end, today)
        risk = classify_risk(progress, self._config)
        if risk is None:
            return

        if risk == "critical":
            result.critical += 1
        else:
            result.at_risk += 1

        if await self._already_notified(goal.id, today):
            result.skipped += 1
            return

        severity = SEVERITY_BY_RISK[risk]
        try:
            async with self._session.begin_nested():
                if not await self._claim(goal.id, today, severity):
                    result.skipped += 1
                    return
                result.alerts_sent += await self._notify(goal, progress, risk, severity, now)
        except IntegrityError as e:
            raise PersistenceError(f"Could not store notifications: {e}") from e

    # =========================================================================
    # DEDUP
    # =========================================================================

    async def _already_notified(self, goal_id: UUID, today: date) -> bool:
        start, end = day_bounds(today)
        result = await self._session.execute(
            select(func.count(Notification.id)).where(
                Notification.goal_id == goal_id,
                Notification.created_at >= start,
                Notification.created_at < end,
            )
        )
        return (result.scalar() or 0) > 0

    async def _claim(self, goal_id: UUID, today: date, severity: NotificationSeverity) -> bool:
        """Insert-or-ignore on (goal_id, check_date). False when another run won."""
        try:
            async with self._session.begin_nested():
                self._session.add(GoalRiskMark(goal_id=goal_id, check_date=today, severity=severity.value))
                await self._session.flush()
        except IntegrityError:
            logger.info(f"Goal {goal_id} already claimed for {today}")
            return False
        return True

    # =========================================================================
    # NOTIFICATIONS
    # =========================================================================

    async def _notify(
        self,
        goal: Goal,
        progress: GoalProgress,
        risk: RiskLevel,
        severity: NotificationSeverity,
        now: datetime,
    ) -> int:
        owner = goal.owner
        owner_name = (owner.full_name or owner.email) if owner else "Unassigned"
        label = goal.description or goal.metric_type
        headline = "critical" if risk == "critical" else "at risk"

        directors = unique_ids(
            await self._recipients.global_directors(),
            await self._recipients.office_directors(owner.office if owner else None),
        )
        directors = [d for d in directors if d != goal.assigned_to]

        metadata = {
            "risk_level": risk,
            "metric_type": goal.metric_type,
            "current_value": progress.current,
            "target_value": goal.target_value,
            "gap": round(progress.gap, 2),
            "owner_id": str(goal.assigned_to) if goal.assigned_to else None,
        }

        notifications = []
        if goal.assigned_to:
            notifications.append(Notification(
                user_id=goal.assigned_to,
                title=f"Your goal is {headline}: {label}",
                message=(
                    f"You are at {progress.percentage:.1f}% of your target while "
                    f"{progress.expected:.1f}% of the period has elapsed."
                ),
                severity=severity.value,
                goal_id=goal.id,
                metric_value=progress.percentage,
                threshold_value=progress.expected,
                extra=dict(metadata),
                created_at=now,
            ))

        for director_id in directors:
            notifications.append(Notification(
                user_id=director_id,
                title=f"Goal {headline}: {owner_name}",
                message=(
                    f"{owner_name} is at {progress.percentage:.1f}% of '{label}' "
                    f"with {progress.expected:.1f}% of the period elapsed."
                ),
                severity=severity.value,
                goal_id=goal.id,
                metric_value=progress.percentage,
                threshold_value=progress.expected,
                extra=dict(metadata),
                created_at=now,
            ))

        self._session.add_all(notifications)
        await self._session.flush()

        logger.info(f"Goal {goal.id} {risk}: {len(notifications)} notifications")
        return len(notifications)
