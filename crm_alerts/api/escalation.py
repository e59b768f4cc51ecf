"""Alert Escalation API."""

from typing import Annotated

from fastapi import APIRouter, Depends

from ..core import CallerDep, ClockDep, SessionDep
from ..schemas import EscalateAlertsResponse
from ..services.escalation import EscalationEngine


router = APIRouter(tags=["escalation"])


def get_escalation_engine(session: SessionDep, clock: ClockDep) -> EscalationEngine:
    return EscalationEngine(session, clock=clock)


EscalationEngineDep = Annotated[EscalationEngine, Depends(get_escalation_engine)]


@router.post(
    "/escalate-alerts",
    response_model=EscalateAlertsResponse,
    summary="Escalate unresolved alerts",
    description="""
    Moves every unresolved alert that has waited past its escalation
    window up one level and notifies the newly added recipients.
    """,
)
async def escalate_alerts(
    caller: CallerDep,
    engine: EscalationEngineDep,
):
    result = await engine.run()

    return EscalateAlertsResponse(
        success=True,
        escalated_count=result.escalated_count,
        notifications_sent=result.notifications_sent,
        errors=result.errors,
    )
