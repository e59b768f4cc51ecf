"""
Alert Escalation Engine.

Each unresolved alert instance sits at an escalation level between 0 and
its definition's max level. When it has been quiet for longer than the
definition's escalation window, it moves up one level and the audience
widens:

    level >= 1: office directors of the targeted office
    level >= 2: + commercial managers
    level >= 3: + commercial directors and superadmins

Recipients already notified for an instance are never notified again.
Resolution is external; resolved instances are left alone.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, as_utc, utc_now
from ..models import AlertDefinition, AlertInstance, Notification, NotificationSeverity
from .recipients import RecipientResolver, unique_ids

logger = logging.getLogger(__name__)


# =============================================================================
# STATE MACHINE
# =============================================================================


@dataclass(frozen=True)
class EscalationPolicy:
    enabled: bool
    threshold_hours: float
    max_level: int

    @classmethod
    def from_definition(cls, definition: AlertDefinition | None) -> "EscalationPolicy":
        if definition is None:
            return cls(enabled=False, threshold_hours=24, max_level=0)
        return cls(
            enabled=definition.escalation_enabled,
            threshold_hours=definition.escalation_hours,
            max_level=definition.max_escalation_level,
        )


def severity_for_level(level: int) -> NotificationSeverity:
    if level >= 3:
        return NotificationSeverity.CRITICAL
    if level >= 2:
        return NotificationSeverity.HIGH
    return NotificationSeverity.MEDIUM


class EscalationStateMachine:
    """
    States are (level, open|resolved). The only transition is
    open level N -> open level N+1, taken when `can_escalate` holds.
    """

    def __init__(self, clock: Clock = utc_now):
        self._clock = clock

    def hours_since_last_step(self, instance: AlertInstance) -> float:
        last_step = instance.escalated_at or instance.triggered_at
        return (self._clock() - as_utc(last_step)).total_seconds() / 3600

    def can_escalate(self, instance: AlertInstance, policy: EscalationPolicy) -> bool:
        if instance.is_resolved or not policy.enabled:
            return False
        if instance.escalation_level >= policy.max_level:
            return False
        return self.hours_since_last_step(instance) >= policy.threshold_hours

    def escalate(self, instance: AlertInstance, policy: EscalationPolicy) -> int:
        """Apply one transition and return the new level."""
        if not self.can_escalate(instance, policy):
            raise ValueError(f"Alert {instance.id} cannot escalate from level {instance.escalation_level}")

        instance.escalation_level += 1
        instance.escalated_at = self._clock()
        return instance.escalation_level


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class EscalationResult:
    """Outcome of one escalation run."""
    escalated_count: int = 0
    notifications_sent: int = 0
    errors: list[str] = field(default_factory=list)


# =============================================================================
# ESCALATION ENGINE
# =============================================================================


class EscalationEngine:
    """Advances every open alert instance that is due."""

    def __init__(self, session: AsyncSession, clock: Clock = utc_now):
        self._session = session
        self._clock = clock
        self._machine = EscalationStateMachine(clock)
        self._recipients = RecipientResolver(session)

    async def open_instances(self) -> list[AlertInstance]:
        result = await self._session.execute(
            select(AlertInstance)
            .where(AlertInstance.resolved_at.is_(None))
            .order_by(AlertInstance.triggered_at.asc())
        )
        return list(result.scalars().all())

    async def run(self) -> EscalationResult:
        result = EscalationResult()

        instances = await self.open_instances()
        logger.info(f"Escalation check: {len(instances)} open alerts")

        for instance in instances:
            instance_id = instance.id
            try:
                async with self._session.begin_nested():
                    sent = await self.escalate_instance(instance)
            except Exception as e:
                error_msg = f"Alert {instance_id}: {e}"
                logger.error(f"Failed to escalate alert: {error_msg}")
                result.errors.append(error_msg)
                continue

            if sent is not None:
                result.escalated_count += 1
                result.notifications_sent += sent

        logger.info(
            f"Escalation done: {result.escalated_count} escalated, "
            f"{result.notifications_sent} notifications"
        )
        return result

    async def escalate_instance(self, instance: AlertInstance) -> int | None:
        """Escalate one instance if due. Returns notifications sent, None if not due."""
        policy = EscalationPolicy.from_definition(instance.alert)
        if not self._machine.can_escalate(instance, policy):
            return None

        previous_level = instance.escalation_level
        new_level = self._machine.escalate(instance, policy)

        already_notified = set(instance.escalation_notified_to or [])
        candidates = await self.recipients_for_level(instance, new_level)
        new_recipients = [user_id for user_id in candidates if str(user_id) not in already_notified]

        # Reassign so the JSON column is flagged dirty
        instance.escalation_notified_to = [
            *(instance.escalation_notified_to or []),
            *(str(user_id) for user_id in new_recipients),
        ]

        severity = severity_for_level(new_level)
        now = instance.escalated_at
        self._session.add_all([
            self._notification(instance, user_id, new_level, severity, now)
            for user_id in new_recipients
        ])
        await self._session.flush()

        logger.info(
            f"Alert {instance.id} escalated {previous_level} -> {new_level}, "
            f"{len(new_recipients)} new recipients"
        )
        return len(new_recipients)

    async def recipients_for_level(self, instance: AlertInstance, level: int) -> list[UUID]:
        """Cumulative audience for a level, before removing those already notified."""
        groups: list[list[UUID]] = []

        if level >= 1:
            office = instance.target_office or await self._recipients.office_of(instance.target_gestor_id)
            groups.append(await self._recipients.office_directors(office))
        if level >= 2:
            groups.append(await self._recipients.commercial_managers())
        if level >= 3:
            groups.append(await self._recipients.global_directors())

        return unique_ids(*groups)

    def _notification(
        self,
        instance: AlertInstance,
        user_id: UUID,
        level: int,
        severity: NotificationSeverity,
        now: datetime,
    ) -> Notification:
        return Notification(
            user_id=user_id,
            title=f"Escalated alert (level {level}): {instance.alert_name}",
            message=(
                f"Alert '{instance.alert_name}' is still unresolved. "
                f"{instance.metric_type} = {instance.metric_value:.2f} "
                f"(threshold {instance.threshold_value})."
            ),
            severity=severity.value,
            alert_id=instance.alert_id,
            metric_value=instance.metric_value,
            threshold_value=instance.threshold_value,
            extra={
                "alert_history_id": str(instance.id),
                "escalation_level": level,
            },
            created_at=now,
        )
