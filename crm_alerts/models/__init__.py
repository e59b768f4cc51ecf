"""SQLAlchemy ORM Models for CRM Alerts."""

from .base import Base, JSONType, TimestampMixin, UUIDMixin
from .models import (
    # Enums
    AlertTargetType,
    AppRole,
    ConditionType,
    MetricType,
    NotificationSeverity,
    PeriodType,
    TERMINAL_STATUS_ACTIVE,
    VISIT_RESULT_SUCCESSFUL,
    # People
    Profile,
    UserRole,
    # CRM activity
    Company,
    TpvTerminal,
    Visit,
    VisitSheet,
    # Goals
    Goal,
    GoalRiskMark,
    # Alerts
    AlertDefinition,
    AlertInstance,
    # Notifications & webhooks
    DeliveryLog,
    Notification,
    NotificationChannel,
    Webhook,
)

__all__ = [
    # Base
    "Base",
    "JSONType",
    "UUIDMixin",
    "TimestampMixin",
    # Enums
    "MetricType",
    "AppRole",
    "NotificationSeverity",
    "AlertTargetType",
    "ConditionType",
    "PeriodType",
    "VISIT_RESULT_SUCCESSFUL",
    "TERMINAL_STATUS_ACTIVE",
    # People
    "Profile",
    "UserRole",
    # CRM activity
    "Company",
    "TpvTerminal",
    "Visit",
    "VisitSheet",
    # Goals
    "Goal",
    "GoalRiskMark",
    # Alerts
    "AlertDefinition",
    "AlertInstance",
    # Notifications & webhooks
    "Notification",
    "NotificationChannel",
    "Webhook",
    "DeliveryLog",
]
