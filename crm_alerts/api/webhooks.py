"""
Webhook Dispatch API.

Delivers one notification event to every webhook subscribed to it on the
named channel. Delivery failures are reported per webhook with a 200.
"""

from typing import Annotated

from fastapi import APIRouter, Depends

from ..core import CallerDep, ClockDep, SessionFactoryDep, SettingsDep
from ..schemas import DispatchWebhookRequest, DispatchWebhookResponse, WebhookDeliveryResult
from ..services.webhook_dispatcher import DispatcherConfig, WebhookDispatcher


router = APIRouter(tags=["webhooks"])


def get_webhook_dispatcher(
    session_factory: SessionFactoryDep,
    settings: SettingsDep,
    clock: ClockDep,
) -> WebhookDispatcher:
    return WebhookDispatcher(
        session_factory,
        config=DispatcherConfig.from_settings(settings),
        clock=clock,
    )


WebhookDispatcherDep = Annotated[WebhookDispatcher, Depends(get_webhook_dispatcher)]


@router.post(
    "/dispatch-webhook",
    response_model=DispatchWebhookResponse,
    response_model_exclude_none=True,
    summary="Dispatch a notification event to webhooks",
)
async def dispatch_webhook(
    request: DispatchWebhookRequest,
    caller: CallerDep,
    dispatcher: WebhookDispatcherDep,
):
    result = await dispatcher.dispatch(
        notification_id=request.notification_id,
        channel_name=request.channel_name,
        event_type=request.event_type,
    )

    return DispatchWebhookResponse(
        dispatched=result.dispatched,
        successful=result.successful,
        results=[
            WebhookDeliveryResult(
                webhook_id=outcome.webhook_id,
                webhook_name=outcome.webhook_name,
                success=outcome.success,
                status=outcome.status,
                error=outcome.error,
                duration_ms=outcome.duration_ms,
            )
            for outcome in result.results
        ],
        message=result.message,
    )
