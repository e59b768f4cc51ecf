"""CRM Alerts API Schemas.

- base: shared model configuration and the error envelope
- pipeline: request/response bodies for each function
"""

from .base import ErrorResponse, PipelineBaseModel
from .pipeline import (
    CheckAlertsResponse,
    DispatchWebhookRequest,
    DispatchWebhookResponse,
    EscalateAlertsResponse,
    GoalRiskMonitorResponse,
    HealthResponse,
    ResolveAlertRequest,
    ResolveAlertResponse,
    WebhookDeliveryResult,
)

__all__ = [
    "PipelineBaseModel",
    "ErrorResponse",
    "GoalRiskMonitorResponse",
    "CheckAlertsResponse",
    "ResolveAlertRequest",
    "ResolveAlertResponse",
    "EscalateAlertsResponse",
    "DispatchWebhookRequest",
    "DispatchWebhookResponse",
    "WebhookDeliveryResult",
    "HealthResponse",
]
