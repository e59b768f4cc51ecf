"""
Pipeline Cron Job: scheduled run of the alert pipeline.

Runs, each in its own transaction:
1. Goal risk monitor
2. KPI alert checker
3. Alert escalation

Typical cron schedule: 0 * * * * (hourly; the monitor dedups per day)
"""

import asyncio
import logging
import sys
import traceback
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ..core.clock import Clock, utc_now
from ..core.config import Settings, get_settings
from ..services.alert_checker import AlertChecker
from ..services.escalation import EscalationEngine
from ..services.goal_monitor import GoalRiskMonitor


logger = logging.getLogger(__name__)

STEPS = ("goals", "alerts", "escalation")


# =============================================================================
# ALERTING
# =============================================================================


async def send_alert(
    title: str,
    message: str,
    severity: str = "error",
    details: dict | None = None,
    settings: Settings | None = None,
    client: httpx.AsyncClient | None = None,
) -> None:
    """
    Tell an operator that the job failed or degraded.

    Goes to the log always, and to the Slack and generic ops webhooks when
    they are configured.
    """
    settings = settings or get_settings()

    log_message = f"[CRON ALERT] {title}: {message}"
    if details:
        log_message += f" | Details: {details}"

    if severity == "critical":
        logger.critical(log_message)
    else:
        logger.error(log_message)

    slack_body, webhook_body = _alert_bodies(title, message, severity, details or {})
    targets = [
        (name, url, body)
        for name, url, body in (
            ("Slack", settings.slack_alerts_webhook_url, slack_body),
            ("webhook", settings.ops_alert_webhook_url, webhook_body),
        )
        if url
    ]

    if not targets:
        return

    async def post_all(http: httpx.AsyncClient) -> None:
        for name, url, payload in targets:
            try:
                response = await http.post(url, json=payload, timeout=10)
                response.raise_for_status()
            except httpx.HTTPError as e:
                logger.error(f"Failed to send {name} alert: {e}")

    if client is not None:
        await post_all(client)
    else:
        async with httpx.AsyncClient() as http:
            await post_all(http)


ALERT_COLORS = {"critical": "#dc2626", "warning": "#f59e0b"}


def _alert_bodies(title: str, message: str, severity: str, details: dict) -> tuple[dict[str, Any], dict[str, Any]]:
    """Slack attachment and generic JSON body for one operator alert."""
    timestamp = datetime.now(timezone.utc).isoformat()

    fields = [{"type": "mrkdwn", "text": f"*{key}*\n{value}"} for key, value in details.items()]
    section: dict[str, Any] = {"type": "section", "text": {"type": "mrkdwn", "text": f"*{title}*\n{message}"}}
    if fields:
        section["fields"] = fields[:10]  # Slack caps section fields at 10

    slack = {
        "text": title,
        "attachments": [{
            "color": ALERT_COLORS.get(severity, ALERT_COLORS["warning"]),
            "blocks": [
                section,
                {"type": "context", "elements": [{"type": "mrkdwn", "text": f"{severity.upper()} at {timestamp}"}]},
            ],
        }],
    }
    generic = {
        "source": "crm-alerts-cron",
        "title": title,
        "message": message,
        "severity": severity,
        "details": details,
        "timestamp": timestamp,
    }
    return slack, generic


# =============================================================================
# JOB
# =============================================================================


async def run_pipeline_job(
    database_url: str | None = None,
    steps: Sequence[str] = STEPS,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    clock: Clock = utc_now,
    settings: Settings | None = None,
) -> dict[str, Any]:
    """
    Run the selected pipeline steps once.

    Each step commits on its own, so a crash in escalation keeps the
    notifications the monitor already wrote.

    Args:
        database_url: async SQLAlchemy URL, used when no session_factory is given
        steps: subset of ("goals", "alerts", "escalation"), run in that order
        session_factory: pre-built factory (tests, embedding)
        clock: time source handed to every step

    Returns:
        Job result summary
    """
    settings = settings or get_settings()
    start_time = datetime.now(timezone.utc)
    logger.info(f"Starting pipeline job at {start_time.isoformat()} (steps: {', '.join(steps)})")

    engine = None
    if session_factory is None:
        engine = create_async_engine(database_url or settings.database_url_async)
        session_factory = async_sessionmaker(engine, expire_on_commit=False)

    results: dict[str, Any] = {
        "started_at": start_time.isoformat(),
        "completed_at": None,
        "goals_checked": 0,
        "goal_alerts_sent": 0,
        "alerts_checked": 0,
        "alert_notifications_created": 0,
        "escalated_count": 0,
        "escalation_notifications_sent": 0,
        "errors": [],
    }

    try:
        if "goals" in steps:
            async with session_factory() as session:
                monitor_result = await GoalRiskMonitor(session, clock=clock).run()
                await session.commit()
            results["goals_checked"] = monitor_result.goals_checked
            results["goal_alerts_sent"] = monitor_result.alerts_sent
            results["errors"].extend(monitor_result.errors)

        if "alerts" in steps:
            async with session_factory() as session:
                check_result = await AlertChecker(session, clock=clock).run()
                await session.commit()
            results["alerts_checked"] = check_result.alerts_checked
            results["alert_notifications_created"] = check_result.notifications_created
            results["errors"].extend(check_result.errors)

        if "escalation" in steps:
            async with session_factory() as session:
                escalation_result = await EscalationEngine(session, clock=clock).run()
                await session.commit()
            results["escalated_count"] = escalation_result.escalated_count
            results["escalation_notifications_sent"] = escalation_result.notifications_sent
            results["errors"].extend(escalation_result.errors)

    except Exception as e:
        error_msg = f"Pipeline job failed: {str(e)}"
        logger.error(error_msg)
        results["errors"].append(error_msg)

        await send_alert(
            title="Alert Pipeline Job Failed",
            message="The scheduled alert pipeline crashed unexpectedly.",
            severity="critical",
            details={
                "error": str(e),
                "traceback": traceback.format_exc()[-500:],  # Last 500 chars
                "started_at": results["started_at"],
                "goal_alerts_before_crash": results["goal_alerts_sent"],
            },
            settings=settings,
        )
        raise

    finally:
        if engine is not None:
            await engine.dispose()

    end_time = datetime.now(timezone.utc)
    results["completed_at"] = end_time.isoformat()
    results["duration_seconds"] = (end_time - start_time).total_seconds()

    logger.info(
        f"Pipeline job completed in {results['duration_seconds']:.2f}s: "
        f"{results['goal_alerts_sent']} goal alerts, "
        f"{results['alert_notifications_created']} KPI alert notifications, "
        f"{results['escalated_count']} escalations"
    )

    # Partial failures: some goals or alerts could not be processed
    if results["errors"]:
        await send_alert(
            title="Alert Pipeline Completed with Warnings",
            message=f"The pipeline completed but {len(results['errors'])} units failed.",
            severity="warning",
            details={"errors": results["errors"][:5]},  # First 5 errors
            settings=settings,
        )

    return results


# =============================================================================
# CLI ENTRY POINT
# =============================================================================


def main():
    """CLI entry point for the pipeline job."""
    import argparse

    settings = get_settings()

    parser = argparse.ArgumentParser(description="Run the CRM alert pipeline")
    parser.add_argument(
        "--database-url",
        default=settings.database_url_async,
        help="Async SQLAlchemy connection string",
    )
    parser.add_argument(
        "--step",
        action="append",
        choices=STEPS,
        dest="steps",
        help="Run only this step (repeatable). Defaults to all steps.",
    )

    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        results = asyncio.run(run_pipeline_job(
            database_url=args.database_url,
            steps=args.steps or STEPS,
            settings=settings,
        ))
        logger.info(f"Job completed: {results}")
    except Exception as e:
        logger.error(f"Job failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
