"""
Goal Risk Monitor API.

Invoked by the scheduler (cron secret) or an admin (JWT) to run the daily
pacing check over all active goals.
"""

from typing import Annotated

from fastapi import APIRouter, Depends

from ..core import CallerDep, ClockDep, SessionDep
from ..schemas import GoalRiskMonitorResponse
from ..services.goal_monitor import GoalRiskMonitor


router = APIRouter(tags=["goal-monitor"])


# =============================================================================
# DEPENDENCIES
# =============================================================================


def get_goal_risk_monitor(session: SessionDep, clock: ClockDep) -> GoalRiskMonitor:
    return GoalRiskMonitor(session, clock=clock)


GoalRiskMonitorDep = Annotated[GoalRiskMonitor, Depends(get_goal_risk_monitor)]


# =============================================================================
# ENDPOINTS
# =============================================================================


@router.post(
    "/goal-risk-monitor",
    response_model=GoalRiskMonitorResponse,
    summary="Run the goal risk monitor",
    description="""
    Checks every goal whose period spans today. Goals trailing their
    time-elapsed expectation are flagged at_risk or critical and their
    owner and directors are notified, at most once per goal per day.
    """,
)
async def run_goal_risk_monitor(
    caller: CallerDep,
    monitor: GoalRiskMonitorDep,
):
    result = await monitor.run()

    return GoalRiskMonitorResponse(
        success=True,
        message=result.message,
        goals_checked=result.goals_checked,
        alerts_sent=result.alerts_sent,
        at_risk=result.at_risk,
        critical=result.critical,
        skipped=result.skipped,
        errors=result.errors,
    )
