"""
Metric Registry: derived KPI values for goals and alert definitions.

Every metric is an async strategy `(session, scope) -> float` registered
under one or more metric type names. A scope is a set of gestors (or
everybody) plus an inclusive date range. Current values are never stored;
they are recomputed from CRM activity on every run.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from uuid import UUID

from sqlalchemy import Select, and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import MetricComputationError
from ..models import (
    TERMINAL_STATUS_ACTIVE,
    VISIT_RESULT_SUCCESSFUL,
    Company,
    Goal,
    MetricType,
    TpvTerminal,
    Visit,
    VisitSheet,
)


@dataclass(frozen=True)
class MetricScope:
    """Who and when a metric is computed for."""

    gestor_ids: tuple[UUID, ...] | None  # None means every gestor
    start: date
    end: date

    @property
    def start_at(self) -> datetime:
        return datetime.combine(self.start, time.min, tzinfo=timezone.utc)

    @property
    def end_before(self) -> datetime:
        """Exclusive upper bound covering the whole end day."""
        return datetime.combine(self.end + timedelta(days=1), time.min, tzinfo=timezone.utc)


MetricStrategy = Callable[[AsyncSession, MetricScope], Awaitable[float]]

METRIC_REGISTRY: dict[str, MetricStrategy] = {}


def register_metric(*metric_types: str) -> Callable[[MetricStrategy], MetricStrategy]:
    """Register a strategy under one or more metric type names."""

    def decorator(func: MetricStrategy) -> MetricStrategy:
        for metric_type in metric_types:
            METRIC_REGISTRY[str(metric_type)] = func
        return func

    return decorator


def goal_scope(goal: Goal) -> MetricScope:
    """A goal's metric is scoped to its owner over its own period."""
    owners = (goal.assigned_to,) if goal.assigned_to else ()
    return MetricScope(gestor_ids=owners, start=goal.period_start, end=goal.period_end)


async def compute_metric(session: AsyncSession, metric_type: str, scope: MetricScope) -> float:
    """
    Compute one metric value.

    Raises:
        MetricComputationError: unknown metric type or the query failed
    """
    strategy = METRIC_REGISTRY.get(str(metric_type))
    if strategy is None:
        raise MetricComputationError(f"Unknown metric type: {metric_type}")

    if scope.gestor_ids is not None and len(scope.gestor_ids) == 0:
        return 0.0

    try:
        value = await strategy(session, scope)
    except MetricComputationError:
        raise
    except Exception as e:
        raise MetricComputationError(f"Failed to compute {metric_type}: {e}") from e

    return float(value or 0)


async def compute_goal_metric(session: AsyncSession, goal: Goal) -> float:
    return await compute_metric(session, goal.metric_type, goal_scope(goal))


# =============================================================================
# HELPERS
# =============================================================================


def _for_gestors(query: Select, column, scope: MetricScope) -> Select:
    if scope.gestor_ids is None:
        return query
    return query.where(column.in_(scope.gestor_ids))


def _visits_in_period(scope: MetricScope) -> Select:
    query = select(func.count(Visit.id)).where(
        Visit.visit_date >= scope.start,
        Visit.visit_date <= scope.end,
    )
    return _for_gestors(query, Visit.gestor_id, scope)


async def _scalar(session: AsyncSession, query: Select) -> float:
    result = await session.execute(query)
    return float(result.scalar_one_or_none() or 0)


# =============================================================================
# STRATEGIES
# =============================================================================


@register_metric(MetricType.VISITS.value)
async def total_visits(session: AsyncSession, scope: MetricScope) -> float:
    return await _scalar(session, _visits_in_period(scope))


@register_metric(MetricType.SUCCESSFUL_VISITS.value)
async def successful_visits(session: AsyncSession, scope: MetricScope) -> float:
    query = _visits_in_period(scope).where(Visit.result == VISIT_RESULT_SUCCESSFUL)
    return await _scalar(session, query)


@register_metric(MetricType.CONVERSION_RATE.value, "success_rate")
async def conversion_rate(session: AsyncSession, scope: MetricScope) -> float:
    total = await total_visits(session, scope)
    if total <= 0:
        return 0.0
    successful = await successful_visits(session, scope)
    return successful / total * 100


@register_metric(MetricType.NEW_CLIENTS.value)
async def new_clients(session: AsyncSession, scope: MetricScope) -> float:
    query = select(func.count(Company.id)).where(
        Company.created_at >= scope.start_at,
        Company.created_at < scope.end_before,
    )
    return await _scalar(session, _for_gestors(query, Company.gestor_id, scope))


@register_metric(MetricType.COMPANIES.value)
async def assigned_companies(session: AsyncSession, scope: MetricScope) -> float:
    # Portfolio size is a stock, not a flow: no period filter
    query = select(func.count(Company.id))
    return await _scalar(session, _for_gestors(query, Company.gestor_id, scope))


@register_metric(MetricType.VISIT_SHEETS.value)
async def visit_sheets(session: AsyncSession, scope: MetricScope) -> float:
    query = select(func.count(VisitSheet.id)).where(
        VisitSheet.sheet_date >= scope.start,
        VisitSheet.sheet_date <= scope.end,
    )
    return await _scalar(session, _for_gestors(query, VisitSheet.gestor_id, scope))


@register_metric(MetricType.FOLLOW_UPS.value)
async def follow_ups(session: AsyncSession, scope: MetricScope) -> float:
    query = select(func.count(VisitSheet.id)).where(
        VisitSheet.sheet_date >= scope.start,
        VisitSheet.sheet_date <= scope.end,
        or_(VisitSheet.next_call.isnot(None), VisitSheet.next_meeting.isnot(None)),
    )
    return await _scalar(session, _for_gestors(query, VisitSheet.gestor_id, scope))


@register_metric(MetricType.PRODUCTS_OFFERED.value, "products")
async def products_offered(session: AsyncSession, scope: MetricScope) -> float:
    query = select(Visit.products_offered).where(
        Visit.visit_date >= scope.start,
        Visit.visit_date <= scope.end,
    )
    result = await session.execute(_for_gestors(query, Visit.gestor_id, scope))
    return float(sum(len(products or []) for products in result.scalars().all()))


@register_metric(MetricType.TPV_VOLUME.value)
async def tpv_volume(session: AsyncSession, scope: MetricScope) -> float:
    query = (
        select(func.coalesce(func.sum(TpvTerminal.monthly_volume), 0))
        .join(Company, TpvTerminal.company_id == Company.id)
        .where(TpvTerminal.status == TERMINAL_STATUS_ACTIVE)
    )
    return await _scalar(session, _for_gestors(query, Company.gestor_id, scope))


@register_metric(MetricType.CLIENT_FACTURACION.value, "facturacion")
async def client_facturacion(session: AsyncSession, scope: MetricScope) -> float:
    query = select(func.coalesce(func.sum(Company.annual_revenue), 0))
    return await _scalar(session, _for_gestors(query, Company.gestor_id, scope))


@register_metric("avg_visits_per_gestor")
async def avg_visits_per_gestor(session: AsyncSession, scope: MetricScope) -> float:
    query = select(
        func.count(Visit.id),
        func.count(func.distinct(Visit.gestor_id)),
    ).where(
        and_(Visit.visit_date >= scope.start, Visit.visit_date <= scope.end),
    )
    result = await session.execute(_for_gestors(query, Visit.gestor_id, scope))
    visits, gestors = result.one()
    return visits / gestors if gestors else 0.0
