"""
Background Jobs for CRM Alerts.

- pipeline_cron: scheduled run of monitor, alert checker and escalation
"""

from .pipeline_cron import run_pipeline_job, send_alert

__all__ = ["run_pipeline_job", "send_alert"]
