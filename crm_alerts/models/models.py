"""SQLAlchemy ORM Models for the CRM alert pipeline.

Goals, alert definitions and webhooks are maintained by the admin UI and
are read-only here. Notifications, alert history rows and delivery logs
are written by the handlers.
"""

from datetime import date, datetime
from enum import Enum as PyEnum
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import (
    Boolean,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, JSONType, TimestampMixin, UUIDMixin


# =============================================================================
# ENUMS
# =============================================================================


class MetricType(str, PyEnum):
    VISITS = "visits"
    SUCCESSFUL_VISITS = "successful_visits"
    NEW_CLIENTS = "new_clients"
    VISIT_SHEETS = "visit_sheets"
    COMPANIES = "companies"
    PRODUCTS_OFFERED = "products_offered"
    TPV_VOLUME = "tpv_volume"
    CONVERSION_RATE = "conversion_rate"
    CLIENT_FACTURACION = "client_facturacion"
    FOLLOW_UPS = "follow_ups"


class AppRole(str, PyEnum):
    GESTOR = "gestor"
    OFFICE_DIRECTOR = "office_director"
    COMMERCIAL_DIRECTOR = "commercial_director"
    SUPERADMIN = "superadmin"
    COMMERCIAL_MANAGER = "commercial_manager"


class NotificationSeverity(str, PyEnum):
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertTargetType(str, PyEnum):
    GLOBAL = "global"
    OFFICE = "office"
    GESTOR = "gestor"


class ConditionType(str, PyEnum):
    BELOW = "below"
    ABOVE = "above"
    EQUALS = "equals"


class PeriodType(str, PyEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


VISIT_RESULT_SUCCESSFUL = "successful"
TERMINAL_STATUS_ACTIVE = "active"


# =============================================================================
# PEOPLE
# =============================================================================


class Profile(Base, UUIDMixin):
    """A CRM user: gestor, director or admin."""

    __tablename__ = "profiles"

    full_name: Mapped[str | None] = mapped_column(String(255))
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    office: Mapped[str | None] = mapped_column(String(100), index=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)

    roles: Mapped[list["UserRole"]] = relationship(
        back_populates="profile",
        lazy="selectin",
    )


class UserRole(Base, UUIDMixin):
    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("user_id", "role"),)

    user_id: Mapped[UUID] = mapped_column(ForeignKey("profiles.id"), nullable=False)
    role: Mapped[AppRole] = mapped_column(
        Enum(AppRole, name="app_role", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )

    profile: Mapped["Profile"] = relationship(back_populates="roles")


# =============================================================================
# CRM ACTIVITY (metric inputs)
# =============================================================================


class Company(Base, UUIDMixin):
    __tablename__ = "companies"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    gestor_id: Mapped[UUID | None] = mapped_column(ForeignKey("profiles.id"), index=True)
    annual_revenue: Mapped[float | None] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)


class TpvTerminal(Base, UUIDMixin):
    """Point-of-sale terminal installed at a client company."""

    __tablename__ = "company_tpv_terminals"

    company_id: Mapped[UUID] = mapped_column(ForeignKey("companies.id"), nullable=False, index=True)
    monthly_volume: Mapped[float | None] = mapped_column(Float)
    status: Mapped[str] = mapped_column(String(30), default=TERMINAL_STATUS_ACTIVE, nullable=False)


class Visit(Base, UUIDMixin):
    __tablename__ = "visits"

    gestor_id: Mapped[UUID] = mapped_column(ForeignKey("profiles.id"), nullable=False, index=True)
    company_id: Mapped[UUID | None] = mapped_column(ForeignKey("companies.id"))
    visit_date: Mapped[date] = mapped_column(nullable=False)
    result: Mapped[str | None] = mapped_column(String(50))
    products_offered: Mapped[list[str] | None] = mapped_column(JSONType)


class VisitSheet(Base, UUIDMixin):
    __tablename__ = "visit_sheets"

    gestor_id: Mapped[UUID] = mapped_column(ForeignKey("profiles.id"), nullable=False, index=True)
    company_id: Mapped[UUID | None] = mapped_column(ForeignKey("companies.id"))
    sheet_date: Mapped[date] = mapped_column(nullable=False)
    next_call: Mapped[date | None] = mapped_column()
    next_meeting: Mapped[date | None] = mapped_column()


# =============================================================================
# GOALS
# =============================================================================


class Goal(Base, UUIDMixin):
    """A target for one owner over a period. Progress is always derived."""

    __tablename__ = "goals"

    metric_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_value: Mapped[float] = mapped_column(Float, nullable=False)
    period_start: Mapped[date] = mapped_column(nullable=False)
    period_end: Mapped[date] = mapped_column(nullable=False)
    assigned_to: Mapped[UUID | None] = mapped_column(ForeignKey("profiles.id"), index=True)
    description: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)

    owner: Mapped[Optional["Profile"]] = relationship(lazy="selectin")


class GoalRiskMark(Base, UUIDMixin):
    """Claim on (goal, day). The unique key is the monitor's dedup guard."""

    __tablename__ = "goal_risk_marks"
    __table_args__ = (UniqueConstraint("goal_id", "check_date"),)

    goal_id: Mapped[UUID] = mapped_column(ForeignKey("goals.id"), nullable=False)
    check_date: Mapped[date] = mapped_column(nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)


# =============================================================================
# ALERTS
# =============================================================================


class AlertDefinition(Base, UUIDMixin, TimestampMixin):
    """A KPI alert rule with its escalation policy."""

    __tablename__ = "alerts"

    alert_name: Mapped[str] = mapped_column(String(255), nullable=False)
    metric_type: Mapped[str] = mapped_column(String(50), nullable=False)
    condition_type: Mapped[str] = mapped_column(String(20), default=ConditionType.BELOW.value, nullable=False)
    threshold_value: Mapped[float] = mapped_column(Float, nullable=False)
    period_type: Mapped[str] = mapped_column(String(20), default=PeriodType.MONTHLY.value, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    target_type: Mapped[str | None] = mapped_column(String(20))
    target_office: Mapped[str | None] = mapped_column(String(100))
    target_gestor_id: Mapped[UUID | None] = mapped_column(ForeignKey("profiles.id"))

    escalation_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    escalation_hours: Mapped[int] = mapped_column(Integer, default=24, nullable=False)
    max_escalation_level: Mapped[int] = mapped_column(Integer, default=3, nullable=False)

    last_checked: Mapped[datetime | None] = mapped_column()


class AlertInstance(Base, UUIDMixin):
    """One triggering of an alert definition (alert history row)."""

    __tablename__ = "alert_history"
    __table_args__ = (
        Index("ix_alert_history_open", "resolved_at", "triggered_at"),
    )

    alert_id: Mapped[UUID] = mapped_column(ForeignKey("alerts.id"), nullable=False, index=True)
    alert_name: Mapped[str] = mapped_column(String(255), nullable=False)
    metric_type: Mapped[str] = mapped_column(String(50), nullable=False)
    metric_value: Mapped[float] = mapped_column(Float, nullable=False)
    threshold_value: Mapped[float] = mapped_column(Float, nullable=False)
    condition_type: Mapped[str] = mapped_column(String(20), nullable=False)

    triggered_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column()
    resolved_by: Mapped[UUID | None] = mapped_column(ForeignKey("profiles.id"))
    notes: Mapped[str | None] = mapped_column(Text)

    escalation_level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    escalated_at: Mapped[datetime | None] = mapped_column()
    escalation_notified_to: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)

    target_type: Mapped[str | None] = mapped_column(String(20))
    target_office: Mapped[str | None] = mapped_column(String(100))
    target_gestor_id: Mapped[UUID | None] = mapped_column(ForeignKey("profiles.id"))

    alert: Mapped["AlertDefinition"] = relationship(lazy="selectin")

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None


# =============================================================================
# NOTIFICATIONS
# =============================================================================


class Notification(Base, UUIDMixin):
    """In-app notification for one user. Write-once."""

    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_goal_created", "goal_id", "created_at"),
    )

    user_id: Mapped[UUID | None] = mapped_column(ForeignKey("profiles.id"), index=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    alert_id: Mapped[UUID | None] = mapped_column(ForeignKey("alerts.id"))
    goal_id: Mapped[UUID | None] = mapped_column(ForeignKey("goals.id"))
    metric_value: Mapped[float | None] = mapped_column(Float)
    threshold_value: Mapped[float | None] = mapped_column(Float)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # "metadata" is reserved on declarative classes
    extra: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)


class NotificationChannel(Base, UUIDMixin):
    """Named grouping of event types that webhooks subscribe to."""

    __tablename__ = "notification_channels"

    channel_name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Webhook(Base, UUIDMixin, TimestampMixin):
    """Outbound endpoint bound to a channel."""

    __tablename__ = "notification_webhooks"

    channel_id: Mapped[UUID] = mapped_column(ForeignKey("notification_channels.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    secret_key: Mapped[str | None] = mapped_column(Text)
    headers: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    retry_config: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    events: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_triggered_at: Mapped[datetime | None] = mapped_column()

    channel: Mapped["NotificationChannel"] = relationship(lazy="selectin")


class DeliveryLog(Base, UUIDMixin):
    """One row per outbound attempt, retries included. Append-only."""

    __tablename__ = "webhook_delivery_logs"

    webhook_id: Mapped[UUID] = mapped_column(ForeignKey("notification_webhooks.id"), nullable=False, index=True)
    notification_id: Mapped[UUID | None] = mapped_column(index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    response_status: Mapped[int | None] = mapped_column(Integer)
    response_body: Mapped[str | None] = mapped_column(Text)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
