"""Request and response schemas for the pipeline functions."""

from datetime import datetime
from uuid import UUID

from pydantic import Field

from .base import PipelineBaseModel


# =============================================================================
# GOAL RISK MONITOR
# =============================================================================


class GoalRiskMonitorResponse(PipelineBaseModel):
    success: bool = True
    message: str
    goals_checked: int
    alerts_sent: int
    at_risk: int = 0
    critical: int = 0
    skipped: int = 0
    errors: list[str] = []


# =============================================================================
# KPI ALERTS
# =============================================================================


class CheckAlertsResponse(PipelineBaseModel):
    success: bool = True
    alerts_checked: int
    alerts_triggered: int = 0
    notifications_created: int
    errors: list[str] = []


class ResolveAlertRequest(PipelineBaseModel):
    """Body for resolving an alert instance. Both fields are optional."""

    resolved_by: UUID | None = None
    notes: str | None = Field(default=None, max_length=5000)


class ResolveAlertResponse(PipelineBaseModel):
    success: bool = True
    alert_id: UUID
    resolved_at: datetime


# =============================================================================
# ESCALATION
# =============================================================================


class EscalateAlertsResponse(PipelineBaseModel):
    """Escalation run summary. Counters keep their historical camelCase keys."""

    success: bool = True
    escalated_count: int = Field(serialization_alias="escalatedCount")
    notifications_sent: int = Field(serialization_alias="notificationsSent")
    errors: list[str] = []


# =============================================================================
# WEBHOOK DISPATCH
# =============================================================================


class DispatchWebhookRequest(PipelineBaseModel):
    notification_id: UUID | None = None
    channel_name: str = Field(..., min_length=1, max_length=100)
    event_type: str = Field(..., min_length=1, max_length=100)


class WebhookDeliveryResult(PipelineBaseModel):
    webhook_id: UUID
    webhook_name: str
    success: bool
    status: int | None = None
    error: str | None = None
    duration_ms: int = 0


class DispatchWebhookResponse(PipelineBaseModel):
    dispatched: int
    successful: int = 0
    results: list[WebhookDeliveryResult] = []
    message: str | None = None


# =============================================================================
# HEALTH
# =============================================================================


class HealthResponse(PipelineBaseModel):
    status: str
    version: str
