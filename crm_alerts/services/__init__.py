"""Pipeline services: metrics, goal monitoring, KPI alerts, escalation, webhooks."""

from .alert_checker import AlertChecker, CheckResult, resolve_alert
from .escalation import (
    EscalationEngine,
    EscalationPolicy,
    EscalationResult,
    EscalationStateMachine,
)
from .goal_monitor import GoalRiskMonitor, MonitorConfig, MonitorResult
from .metrics import METRIC_REGISTRY, MetricScope, compute_goal_metric, compute_metric, register_metric
from .recipients import RecipientResolver
from .webhook_dispatcher import DispatcherConfig, DispatchResult, WebhookDispatcher

__all__ = [
    # Metrics
    "METRIC_REGISTRY",
    "MetricScope",
    "register_metric",
    "compute_metric",
    "compute_goal_metric",
    "RecipientResolver",
    # Goal monitor
    "GoalRiskMonitor",
    "MonitorConfig",
    "MonitorResult",
    # KPI alerts
    "AlertChecker",
    "CheckResult",
    "resolve_alert",
    # Escalation
    "EscalationEngine",
    "EscalationPolicy",
    "EscalationResult",
    "EscalationStateMachine",
    # Webhooks
    "WebhookDispatcher",
    "DispatcherConfig",
    "DispatchResult",
]
