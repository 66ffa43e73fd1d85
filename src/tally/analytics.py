"""Profitability, client lifetime value and revenue forecasts.

These are business heuristics, not statistical models: overhead is a flat
share of labor, forecasts apply a fixed seasonality table and fixed growth
and conversion multipliers. Every constant comes from AnalyticsConfig.
"""

import logging
import sqlite3
from datetime import date, datetime, timezone

from . import db
from .billing import ProjectNotFound
from .config import AnalyticsConfig
from .recurrence import add_months, days_in_month, next_due_date

logger = logging.getLogger("tally.analytics")

# Invoices that count as revenue
_REVENUE_STATUSES = ["draft", "sent", "paid", "overdue"]

# Payment assumptions used when a client has no paid invoices yet
_DEFAULT_PAYMENT_DAYS = 30
_DEFAULT_ON_TIME_RATE = 80


def _pct(part: float, whole: float) -> float:
    return part / whole * 100 if whole > 0 else 0.0


def project_profitability(
    conn: sqlite3.Connection,
    project_id: str,
    settings: AnalyticsConfig | None = None,
) -> dict:
    """Revenue, costs, profit and time utilization for one project.

    Revenue is the sum of non-cancelled invoice totals. Labor cost uses each
    user's recorded hourly cost, or `default_hourly_cost` when unknown.
    """
    settings = settings or AnalyticsConfig()
    if db.get_project(conn, project_id) is None:
        raise ProjectNotFound(f"Project {project_id} not found")

    invoices = db.list_invoices(conn, project_id=project_id, statuses=_REVENUE_STATUSES)
    entries = db.list_time_entries(conn, project_id)
    hourly_costs = db.get_user_hourly_costs(conn)

    total_revenue = sum(inv.total for inv in invoices)
    labor_costs = sum(
        e.hours * hourly_costs.get(e.user_id, settings.default_hourly_cost) for e in entries
    )
    direct_expenses = 0.0
    overhead = labor_costs * settings.overhead_rate
    total_costs = labor_costs + direct_expenses + overhead
    net_profit = total_revenue - total_costs

    total_hours = sum(e.hours for e in entries)
    billable_hours = sum(e.hours for e in entries if e.billable)

    return {
        "project_id": project_id,
        "total_revenue": round(total_revenue, 2),
        "total_costs": round(total_costs, 2),
        "net_profit": round(net_profit, 2),
        "profit_margin": round(_pct(net_profit, total_revenue), 2),
        "cost_breakdown": {
            "labor": round(labor_costs, 2),
            "overhead": round(overhead, 2),
            "direct_expenses": direct_expenses,
        },
        "time_breakdown": {
            "total_hours": total_hours,
            "billable_hours": billable_hours,
            "utilization_rate": round(_pct(billable_hours, total_hours), 2),
        },
    }


def retention_rate(project_dates: list[date]) -> float:
    """Higher project frequency means higher retention. Needs two projects."""
    if len(project_dates) < 2:
        return 0.0
    ordered = sorted(project_dates)
    gaps = [
        (later - earlier).days
        for earlier, later in zip(ordered, ordered[1:])
        if (later - earlier).days > 0
    ]
    if not gaps:
        return 100.0
    average_gap = sum(gaps) / len(gaps)
    return min(100.0, max(0.0, 100 - (average_gap / 30) * 10))


def average_monthly_value(projects: list[db.Project], default_months: int) -> float:
    if not projects:
        return 0.0
    total_value = sum(p.budget or 0 for p in projects)
    total_months = 0.0
    for project in projects:
        if project.start_date and project.end_date:
            total_months += max(1.0, (project.end_date - project.start_date).days / 30)
        else:
            total_months += default_months
    return total_value / total_months if total_months else 0.0


def payment_history(invoices: list[db.Invoice]) -> dict:
    """Days to payment and on-time share, from invoices marked paid."""
    paid = [inv for inv in invoices if inv.status == "paid" and inv.paid_at and inv.created_at]
    if not paid:
        return {
            "average_payment_days": _DEFAULT_PAYMENT_DAYS,
            "on_time_payment_rate": _DEFAULT_ON_TIME_RATE,
            "total_payments": 0,
        }
    days = []
    on_time = 0
    for inv in paid:
        paid_on = db.parse_date(inv.paid_at)
        days.append((paid_on - db.parse_date(inv.created_at)).days)
        if paid_on <= inv.due_date:
            on_time += 1
    return {
        "average_payment_days": round(sum(days) / len(days)),
        "on_time_payment_rate": round(on_time / len(paid) * 100),
        "total_payments": len(paid),
    }


def risk_score(on_time_payment_rate: float, profit_margin: float, retention: float) -> int:
    """0 (safe) to 100 (risky), starting from 50."""
    score = 50
    if on_time_payment_rate > 80:
        score -= 20
    elif on_time_payment_rate < 50:
        score += 30
    if profit_margin > 20:
        score -= 15
    elif profit_margin < 5:
        score += 25
    if retention > 75:
        score -= 10
    elif retention < 25:
        score += 20
    return min(100, max(0, score))


def client_lifetime_value(
    conn: sqlite3.Connection,
    client_id: str,
    settings: AnalyticsConfig | None = None,
) -> dict:
    settings = settings or AnalyticsConfig()
    if not db.client_exists(conn, client_id):
        raise ValueError(f"Client {client_id} not found")

    projects = db.list_client_projects(conn, client_id)
    invoices = db.list_invoices(conn, client_id=client_id, statuses=_REVENUE_STATUSES)
    total_revenue = sum(inv.total for inv in invoices)
    average_project_value = total_revenue / len(projects) if projects else 0.0

    project_dates = [p.start_date or db.parse_date(p.created_at) for p in projects]
    retention = retention_rate([d for d in project_dates if d is not None])

    total_costs = sum(
        project_profitability(conn, p.id, settings)["total_costs"] for p in projects
    )
    margin = _pct(total_revenue - total_costs, total_revenue)
    history = payment_history(invoices)

    monthly_value = average_monthly_value(projects, settings.default_project_months)
    projected_ltv = monthly_value * settings.expected_lifetime_months * (1 + retention / 100)

    return {
        "client_id": client_id,
        "total_revenue": round(total_revenue, 2),
        "total_projects": len(projects),
        "average_project_value": round(average_project_value, 2),
        "retention_rate": round(retention, 2),
        "profit_margin": round(margin, 2),
        "average_monthly_value": round(monthly_value, 2),
        "projected_ltv": round(projected_ltv, 2),
        "acquisition_cost": settings.acquisition_cost,
        "net_ltv": round(projected_ltv - settings.acquisition_cost, 2),
        "risk_score": risk_score(history["on_time_payment_rate"], margin, retention),
        "payment_history": history,
    }


def _expected_rule_amount(rule: db.RecurringRule) -> float:
    if rule.amount > 0:
        return rule.amount
    model = rule.billing_model or {}
    for key in ("subscription_amount", "retainer_amount", "fixed_amount"):
        if model.get(key):
            return model[key]
    return 0.0


def recurring_revenue(rules: list[db.RecurringRule], month_start: date) -> float:
    """Expected revenue from active rules' occurrences within the month."""
    month_end = month_start.replace(day=days_in_month(month_start.year, month_start.month))
    total = 0.0
    for rule in rules:
        if not rule.is_active:
            continue
        amount = _expected_rule_amount(rule)
        occurrence = rule.next_due
        while occurrence.date() <= month_end:
            if rule.end_date is not None and occurrence > rule.end_date:
                break
            if occurrence.date() >= month_start:
                total += amount
            occurrence = next_due_date(
                occurrence, rule.frequency, rule.day_of_week, rule.day_of_month,
            )
    return total


def projection_confidence(confirmed: float, pipeline: float, recurring: float, months_out: int) -> int:
    confirmed_weight = confirmed / (confirmed + pipeline + recurring + 1)
    time_decay = max(0.5, 1 - months_out * 0.1)
    return round(100 * confirmed_weight * time_decay)


def revenue_forecast(
    conn: sqlite3.Connection,
    months: int = 12,
    settings: AnalyticsConfig | None = None,
    now: datetime | None = None,
) -> list[dict]:
    """Month-by-month revenue projection starting with the current month."""
    settings = settings or AnalyticsConfig()
    if months < 1:
        raise ValueError(f"months must be at least 1, got {months}")
    today = (now or datetime.now(timezone.utc)).date()
    first_month = today.replace(day=1)
    rules = db.list_rules(conn, active_only=True)
    pipeline = 0.0  # no pipeline/CRM data is tracked

    projections = []
    for i in range(months):
        month_start = add_months(first_month, i)
        month_end = month_start.replace(day=days_in_month(month_start.year, month_start.month))

        confirmed = sum(
            inv.total for inv in db.list_invoices(
                conn, statuses=["sent", "paid"], due_from=month_start, due_to=month_end,
            )
        )
        recurring = recurring_revenue(rules, month_start)
        seasonality = settings.seasonality[month_start.month - 1]

        base = confirmed + pipeline * settings.pipeline_conversion + recurring
        projected = base * settings.historical_growth * seasonality * settings.market_trends

        projections.append({
            "period": month_start.strftime("%Y-%m"),
            "projected_revenue": round(projected, 2),
            "confirmed_revenue": round(confirmed, 2),
            "pipeline_revenue": pipeline,
            "recurring_revenue": round(recurring, 2),
            "confidence": projection_confidence(confirmed, pipeline, recurring, i),
            "factors": {
                "historical_growth": settings.historical_growth,
                "pipeline_conversion": settings.pipeline_conversion,
                "seasonality": seasonality,
                "market_trends": settings.market_trends,
            },
        })

    logger.debug("Forecast %d month(s) from %s", months, first_month)
    return projections
