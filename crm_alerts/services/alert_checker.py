"""
KPI Alert Checker: evaluates alert definitions and opens alert instances.

Each active definition is measured over its period for its target scope
(one gestor, one office, or everybody). A triggered definition appends an
alert history row at escalation level 0 and notifies the targeted gestor
and the directors above them. The escalation engine takes it from there.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, utc_now
from ..core.exceptions import AlertAlreadyResolvedError, AlertNotFoundError
from ..models import (
    AlertDefinition,
    AlertInstance,
    AlertTargetType,
    ConditionType,
    Notification,
    NotificationSeverity,
    PeriodType,
    Profile,
)
from .metrics import MetricScope, compute_metric
from .recipients import RecipientResolver, unique_ids

logger = logging.getLogger(__name__)

EQUALS_TOLERANCE = 0.01

CONDITION_LABELS = {
    ConditionType.BELOW.value: "below",
    ConditionType.ABOVE.value: "above",
    ConditionType.EQUALS.value: "equal to",
}


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class CheckResult:
    """Outcome of one alert check run."""
    alerts_checked: int = 0
    alerts_triggered: int = 0
    notifications_created: int = 0
    errors: list[str] = field(default_factory=list)


# =============================================================================
# PURE FUNCTIONS
# =============================================================================


def _one_month_back(day: date) -> date:
    year, month = (day.year, day.month - 1) if day.month > 1 else (day.year - 1, 12)
    for candidate in (day.day, 30, 29, 28):
        try:
            return day.replace(year=year, month=month, day=candidate)
        except ValueError:
            continue
    raise ValueError(f"Cannot step back a month from {day}")


def period_start(period_type: str, now: datetime) -> date:
    """First day measured for a definition's period."""
    today = now.date()
    if period_type == PeriodType.DAILY.value:
        return today
    if period_type == PeriodType.WEEKLY.value:
        return today - timedelta(days=7)
    if period_type == PeriodType.MONTHLY.value:
        return _one_month_back(today)
    return today - timedelta(days=1)


def condition_met(condition_type: str, value: float, threshold: float) -> bool:
    if condition_type == ConditionType.BELOW.value:
        return value < threshold
    if condition_type == ConditionType.ABOVE.value:
        return value > threshold
    if condition_type == ConditionType.EQUALS.value:
        return abs(value - threshold) < EQUALS_TOLERANCE
    return False


def deviation_severity(value: float, threshold: float) -> NotificationSeverity:
    """Relative distance from the threshold: >30% critical, >15% high."""
    difference = abs(value - threshold)
    deviation = difference / threshold * 100 if threshold > 0 else 100.0

    if deviation > 30:
        return NotificationSeverity.CRITICAL
    if deviation > 15:
        return NotificationSeverity.HIGH
    return NotificationSeverity.MEDIUM


# =============================================================================
# ALERT CHECKER
# =============================================================================


class AlertChecker:
    """Runs every active KPI alert definition once."""

    def __init__(self, session: AsyncSession, clock: Clock = utc_now):
        self._session = session
        self._clock = clock
        self._recipients = RecipientResolver(session)

    async def active_definitions(self) -> list[AlertDefinition]:
        result = await self._session.execute(
            select(AlertDefinition)
            .where(AlertDefinition.active.is_(True))
            .order_by(AlertDefinition.alert_name, AlertDefinition.id)
        )
        return list(result.scalars().all())

    async def run(self) -> CheckResult:
        now = self._clock()
        result = CheckResult()

        definitions = await self.active_definitions()
        if not definitions:
            logger.info("No active alerts")
            return result

        logger.info(f"Checking {len(definitions)} active alerts")

        for definition in definitions:
            result.alerts_checked += 1
            label = f"{definition.alert_name} ({definition.id})"
            try:
                async with self._session.begin_nested():
                    sent = await self._check_definition(definition, now)
            except Exception as e:
                error_msg = f"Alert {label}: {e}"
                logger.error(f"Failed to check alert: {error_msg}")
                result.errors.append(error_msg)
                continue

            if sent is not None:
                result.alerts_triggered += 1
                result.notifications_created += sent

        logger.info(
            f"Alert check done: {result.alerts_checked} checked, "
            f"{result.alerts_triggered} triggered, {result.notifications_created} notifications"
        )
        return result

    async def scope_for(self, definition: AlertDefinition, now: datetime) -> MetricScope:
        start = period_start(definition.period_type, now)
        target_type = definition.target_type or AlertTargetType.GLOBAL.value

        gestor_ids: tuple[UUID, ...] | None = None
        if target_type == AlertTargetType.GESTOR.value and definition.target_gestor_id:
            gestor_ids = (definition.target_gestor_id,)
        elif target_type == AlertTargetType.OFFICE.value and definition.target_office:
            gestor_ids = tuple(await self._recipients.office_members(definition.target_office))

        return MetricScope(gestor_ids=gestor_ids, start=start, end=now.date())

    async def _check_definition(self, definition: AlertDefinition, now: datetime) -> int | None:
        """Returns notifications sent when triggered, None otherwise."""
        scope = await self.scope_for(definition, now)
        value = await compute_metric(self._session, definition.metric_type, scope)
        definition.last_checked = now

        logger.debug(
            f"Metric {definition.metric_type} for {definition.alert_name}: "
            f"{value} (threshold {definition.threshold_value})"
        )

        if not condition_met(definition.condition_type, value, definition.threshold_value):
            await self._session.flush()
            return None

        instance = AlertInstance(
            id=uuid4(),
            alert_id=definition.id,
            alert_name=definition.alert_name,
            metric_type=definition.metric_type,
            metric_value=value,
            threshold_value=definition.threshold_value,
            condition_type=definition.condition_type,
            triggered_at=now,
            escalation_level=0,
            escalation_notified_to=[],
            target_type=definition.target_type or AlertTargetType.GLOBAL.value,
            target_office=definition.target_office,
            target_gestor_id=definition.target_gestor_id,
        )
        self._session.add(instance)

        recipients = await self._recipients_for(definition)
        severity = deviation_severity(value, definition.threshold_value)
        message = await self._message(definition, value)

        self._session.add_all([
            Notification(
                user_id=user_id,
                title=f"KPI alert: {definition.alert_name}",
                message=message,
                severity=severity.value,
                alert_id=definition.id,
                metric_value=value,
                threshold_value=definition.threshold_value,
                extra={"alert_history_id": str(instance.id)},
                created_at=now,
            )
            for user_id in recipients
        ])
        await self._session.flush()

        logger.info(f"Alert triggered: {definition.alert_name} -> {len(recipients)} recipients")
        return len(recipients)

    async def _recipients_for(self, definition: AlertDefinition) -> list[UUID]:
        target_type = definition.target_type or AlertTargetType.GLOBAL.value

        targeted: list[UUID] = []
        if target_type == AlertTargetType.GESTOR.value and definition.target_gestor_id:
            targeted.append(definition.target_gestor_id)
            office = await self._recipients.office_of(definition.target_gestor_id)
            targeted.extend(await self._recipients.office_directors(office))
        elif target_type == AlertTargetType.OFFICE.value and definition.target_office:
            targeted.extend(await self._recipients.office_directors(definition.target_office))

        recipients = unique_ids(targeted, await self._recipients.global_directors())
        if not recipients:
            recipients = await self._recipients.all_directors()
        return recipients

    async def _message(self, definition: AlertDefinition, value: float) -> str:
        target_info = ""
        if definition.target_type == AlertTargetType.OFFICE.value and definition.target_office:
            target_info = f" [Office: {definition.target_office}]"
        elif definition.target_type == AlertTargetType.GESTOR.value and definition.target_gestor_id:
            gestor = await self._session.get(Profile, definition.target_gestor_id)
            target_info = f" [Gestor: {gestor.full_name if gestor and gestor.full_name else 'Unknown'}]"

        condition = CONDITION_LABELS.get(definition.condition_type, definition.condition_type)
        return (
            f"{definition.metric_type}{target_info} is {condition} the threshold "
            f"({definition.threshold_value}). Current value: {value:.2f}"
        )


# =============================================================================
# RESOLUTION
# =============================================================================


async def resolve_alert(
    session: AsyncSession,
    instance_id: UUID,
    resolved_by: UUID | None = None,
    notes: str | None = None,
    clock: Clock = utc_now,
) -> AlertInstance:
    """
    Close an alert instance. Escalation stops acting on it from then on.

    Raises:
        AlertNotFoundError: no instance with this id
        AlertAlreadyResolvedError: resolved_at was already set
    """
    instance = await session.get(AlertInstance, instance_id)
    if instance is None:
        raise AlertNotFoundError(f"Alert {instance_id} not found")
    if instance.is_resolved:
        raise AlertAlreadyResolvedError(f"Alert {instance_id} is already resolved")

    instance.resolved_at = clock()
    instance.resolved_by = resolved_by
    instance.notes = notes
    await session.flush()

    logger.info(f"Alert {instance_id} resolved by {resolved_by}")
    return instance
