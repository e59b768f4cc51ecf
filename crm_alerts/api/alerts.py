"""
KPI Alerts API: run the alert checker and resolve alert instances.
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends

from ..core import CallerDep, ClockDep, SessionDep
from ..schemas import CheckAlertsResponse, ResolveAlertRequest, ResolveAlertResponse
from ..services.alert_checker import AlertChecker, resolve_alert


router = APIRouter(tags=["alerts"])


def get_alert_checker(session: SessionDep, clock: ClockDep) -> AlertChecker:
    return AlertChecker(session, clock=clock)


AlertCheckerDep = Annotated[AlertChecker, Depends(get_alert_checker)]


@router.post(
    "/check-alerts",
    response_model=CheckAlertsResponse,
    summary="Evaluate active KPI alerts",
)
async def check_alerts(
    caller: CallerDep,
    checker: AlertCheckerDep,
):
    """Evaluate every active alert definition and open instances for those that trigger."""
    result = await checker.run()

    return CheckAlertsResponse(
        success=True,
        alerts_checked=result.alerts_checked,
        alerts_triggered=result.alerts_triggered,
        notifications_created=result.notifications_created,
        errors=result.errors,
    )


@router.post(
    "/alerts/{alert_id}/resolve",
    response_model=ResolveAlertResponse,
    summary="Resolve an alert instance",
    responses={404: {"description": "Alert not found"}, 409: {"description": "Alert already resolved"}},
)
async def resolve_alert_instance(
    alert_id: UUID,
    caller: CallerDep,
    session: SessionDep,
    clock: ClockDep,
    body: ResolveAlertRequest | None = None,
):
    """Mark an alert instance resolved. Escalation stops for it afterwards."""
    body = body or ResolveAlertRequest()
    instance = await resolve_alert(
        session,
        alert_id,
        resolved_by=body.resolved_by,
        notes=body.notes,
        clock=clock,
    )

    return ResolveAlertResponse(
        success=True,
        alert_id=instance.id,
        resolved_at=instance.resolved_at,
    )
