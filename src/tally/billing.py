"""Billing model resolution: turns a project's billable records into line items.

A BillingModel says how a project is billed (hourly, fixed fee, milestone,
retainer, subscription or a mix of those). `resolve` reads the project's
time entries, milestones and contracts and returns a BillingResult: the
amount, the line items, and the ids of the records the invoice will consume.
Nothing is written here; `invoices.assemble_invoice` persists a result and
marks what it consumed.
"""

import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone

from . import db
from .recurrence import add_period, normalize_frequency

logger = logging.getLogger("tally.billing")

MODEL_TYPES = ("hourly", "fixed_fee", "retainer", "subscription", "milestone", "mixed")
COMPONENT_TYPES = ("hourly", "fixed_fee", "retainer", "subscription")
# Components that bill project records; a second one would bill the same records again.
_CONSUMING_COMPONENTS = ("hourly", "fixed_fee", "retainer")

# Fields each model variant may carry. Anything else set on the model is an error.
_VARIANT_FIELDS = {
    "hourly": {"hourly_rate"},
    "fixed_fee": {"fixed_amount"},
    "milestone": {"milestone_ids"},
    "retainer": {"retainer_amount"},
    "subscription": {"subscription_amount", "subscription_frequency"},
    "mixed": {"components"},
}
_ALL_VARIANT_FIELDS = set().union(*_VARIANT_FIELDS.values())

DEFAULT_PERIOD_DAYS = 30


# ============================================================================
# Errors
# ============================================================================


class BillingError(Exception):
    """Base class for billing resolution failures."""


class NoBillableEntries(BillingError):
    pass


class NoMilestonesReady(BillingError):
    pass


class NoActiveRetainer(BillingError):
    pass


class NoActiveSubscription(BillingError):
    pass


class ProjectNotFound(BillingError):
    pass


class InvalidBillingModel(BillingError):
    pass


class MilestoneAlreadyCompleted(BillingError):
    pass


# ============================================================================
# Models
# ============================================================================


@dataclass
class BillingComponent:
    """One part of a mixed billing model."""
    type: str
    name: str
    amount: float = 0  # fixed amount override for retainer / subscription parts
    rate: float | None = None  # hourly rate override
    frequency: str | None = None  # subscription frequency

    def validate(self) -> None:
        if self.type not in COMPONENT_TYPES:
            raise InvalidBillingModel(f"Unknown component type: {self.type!r}")
        if not self.name:
            raise InvalidBillingModel("Billing component needs a name")
        if self.amount < 0:
            raise InvalidBillingModel(f"Component {self.name!r} has a negative amount")
        if self.frequency is not None:
            if self.type != "subscription":
                raise InvalidBillingModel(f"Only subscription components take a frequency ({self.name!r})")
            try:
                normalize_frequency(self.frequency)
            except ValueError as e:
                raise InvalidBillingModel(str(e)) from e
        if self.rate is not None and self.type != "hourly":
            raise InvalidBillingModel(f"Only hourly components take a rate ({self.name!r})")

    def to_model(self) -> "BillingModel":
        if self.type == "hourly":
            return BillingModel(type="hourly", hourly_rate=self.rate)
        if self.type == "fixed_fee":
            return BillingModel(type="fixed_fee")
        if self.type == "retainer":
            return BillingModel(type="retainer", retainer_amount=self.amount or None)
        return BillingModel(
            type="subscription",
            subscription_amount=self.amount or None,
            subscription_frequency=self.frequency,
        )


@dataclass
class BillingModel:
    """How a project is billed. Only the fields of `type` may be set."""
    type: str
    hourly_rate: float | None = None  # overrides per-entry rates when set
    fixed_amount: float | None = None  # agreed fixed fee, checked against milestones
    milestone_ids: list[int] | None = None  # restrict milestone billing to these
    retainer_amount: float | None = None  # overrides the contract's replenishment amount
    subscription_amount: float | None = None  # overrides the contract's periodic amount
    subscription_frequency: str | None = None
    components: list[BillingComponent] | None = None

    def validate(self) -> None:
        if self.type not in MODEL_TYPES:
            raise InvalidBillingModel(f"Unknown billing model type: {self.type!r}")

        allowed = _VARIANT_FIELDS[self.type]
        foreign = sorted(
            name for name in _ALL_VARIANT_FIELDS - allowed
            if getattr(self, name) is not None
        )
        if foreign:
            raise InvalidBillingModel(
                f"{self.type} billing model does not take: {', '.join(foreign)}"
            )

        for name in ("hourly_rate", "fixed_amount", "retainer_amount", "subscription_amount"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise InvalidBillingModel(f"{name} must not be negative")

        if self.subscription_frequency is not None:
            try:
                normalize_frequency(self.subscription_frequency)
            except ValueError as e:
                raise InvalidBillingModel(str(e)) from e

        if self.type == "mixed":
            if not self.components:
                raise InvalidBillingModel("mixed billing model needs at least one component")
            seen = set()
            for component in self.components:
                component.validate()
                if component.type in _CONSUMING_COMPONENTS:
                    if component.type in seen:
                        raise InvalidBillingModel(
                            f"mixed billing model has more than one {component.type} component"
                        )
                    seen.add(component.type)

    def to_dict(self) -> dict:
        data = {"type": self.type}
        for name in sorted(_VARIANT_FIELDS[self.type]):
            value = getattr(self, name)
            if value is None:
                continue
            if name == "components":
                value = [asdict(c) for c in value]
            data[name] = value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "BillingModel":
        if not isinstance(data, dict) or "type" not in data:
            raise InvalidBillingModel("billing model must be an object with a type")
        known = {"type"} | _ALL_VARIANT_FIELDS
        unknown = set(data) - known
        if unknown:
            raise InvalidBillingModel(f"Unknown billing model fields: {', '.join(sorted(unknown))}")
        kwargs = dict(data)
        kwargs["type"] = str(data["type"]).lower()
        if kwargs.get("components") is not None:
            if not isinstance(kwargs["components"], list) or not all(
                isinstance(c, dict) for c in kwargs["components"]
            ):
                raise InvalidBillingModel("components must be a list of objects")
            kwargs["components"] = [
                BillingComponent(
                    type=str(c.get("type", "")).lower(),
                    name=c.get("name", ""),
                    amount=c.get("amount", 0),
                    rate=c.get("rate"),
                    frequency=c["frequency"].lower() if c.get("frequency") else None,
                )
                for c in kwargs["components"]
            ]
        if kwargs.get("subscription_frequency"):
            kwargs["subscription_frequency"] = kwargs["subscription_frequency"].lower()
        model = cls(**kwargs)
        model.validate()
        return model


@dataclass
class LineItem:
    description: str
    quantity: float
    rate: float
    amount: float
    kind: str  # time | milestone | retainer | subscription | component | flat
    user_id: str | None = None
    milestone_id: int | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class BillingResult:
    billing_type: str
    amount: float
    line_items: list[LineItem] = field(default_factory=list)
    time_entry_ids: list[int] = field(default_factory=list)
    milestone_ids: list[int] = field(default_factory=list)
    retainer_id: int | None = None  # retainer to replenish when invoiced
    invoicing_schedule: list[dict] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    period_start: date | None = None
    period_end: date | None = None

    def to_dict(self) -> dict:
        return {
            "billing_type": self.billing_type,
            "amount": self.amount,
            "line_items": [item.to_dict() for item in self.line_items],
            "time_entry_ids": self.time_entry_ids,
            "milestone_ids": self.milestone_ids,
            "retainer_id": self.retainer_id,
            "invoicing_schedule": [
                {**entry, "next_invoice_date": entry["next_invoice_date"].isoformat()}
                for entry in self.invoicing_schedule
            ],
            "warnings": self.warnings,
            "period_start": self.period_start.isoformat() if self.period_start else None,
            "period_end": self.period_end.isoformat() if self.period_end else None,
        }


# ============================================================================
# Resolution
# ============================================================================


def _as_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def _money(value: float) -> float:
    return round(value, 2)


def _resolve_hourly(
    conn: sqlite3.Connection,
    project_id: str,
    model: BillingModel,
    period_start: date,
    period_end: date,
) -> BillingResult:
    entries = db.list_time_entries(
        conn, project_id, start=period_start, end=period_end, billable=True, invoiced=False,
    )
    if not entries:
        raise NoBillableEntries(
            f"No billable uninvoiced time entries for project {project_id} "
            f"between {period_start} and {period_end}"
        )

    by_user: dict[str, list[db.TimeEntry]] = {}
    for entry in entries:
        by_user.setdefault(entry.user_id, []).append(entry)
    names = db.get_user_names(conn, list(by_user))

    line_items = []
    for user_id, user_entries in by_user.items():
        hours = sum(e.hours for e in user_entries)
        if model.hourly_rate is not None:
            amount = hours * model.hourly_rate
        else:
            amount = sum(e.hours * e.rate for e in user_entries)
        line_items.append(LineItem(
            description=f"Time & Materials: {names.get(user_id, user_id)} ({hours:g} hours)",
            quantity=hours,
            rate=_money(amount / hours),
            amount=_money(amount),
            kind="time",
            user_id=user_id,
        ))

    return BillingResult(
        billing_type="hourly",
        amount=_money(sum(item.amount for item in line_items)),
        line_items=line_items,
        time_entry_ids=[e.id for e in entries],
        period_start=period_start,
        period_end=period_end,
    )


def _budget_warnings(
    conn: sqlite3.Connection,
    project: db.Project,
    model: BillingModel,
    amount: float,
) -> list[str]:
    """Overruns are reported, never clamped."""
    warnings = []
    already_invoiced = sum(
        m.amount for m in db.list_milestones(conn, project.id) if m.invoiced
    )
    billed_total = already_invoiced + amount
    if project.budget is not None and billed_total > project.budget:
        warnings.append(
            f"Milestone billing {billed_total:.2f} exceeds project budget {project.budget:.2f}"
        )
    if model.fixed_amount is not None and billed_total > model.fixed_amount:
        warnings.append(
            f"Milestone billing {billed_total:.2f} exceeds fixed fee {model.fixed_amount:.2f}"
        )
    return warnings


def _resolve_milestones(
    conn: sqlite3.Connection,
    project: db.Project,
    model: BillingModel,
) -> BillingResult:
    ready = ready_for_invoicing(conn, project.id)
    if model.milestone_ids is not None:
        wanted = set(model.milestone_ids)
        ready = [m for m in ready if m.id in wanted]
    if not ready:
        raise NoMilestonesReady(f"No completed uninvoiced milestones for project {project.id}")

    line_items = [
        LineItem(
            description=f"Milestone: {m.name}",
            quantity=1,
            rate=m.amount,
            amount=_money(m.amount),
            kind="milestone",
            milestone_id=m.id,
        )
        for m in ready
    ]
    amount = _money(sum(item.amount for item in line_items))
    warnings = _budget_warnings(conn, project, model, amount)
    for warning in warnings:
        logger.warning("Project %s: %s", project.id, warning)

    return BillingResult(
        billing_type=model.type,
        amount=amount,
        line_items=line_items,
        milestone_ids=[m.id for m in ready],
        warnings=warnings,
    )


def _resolve_retainer(
    conn: sqlite3.Connection,
    project_id: str,
    model: BillingModel,
) -> BillingResult:
    contract = db.get_active_contract(conn, project_id, "retainer")
    if contract is None:
        raise NoActiveRetainer(f"No active retainer for project {project_id}")

    amount = _money(model.retainer_amount if model.retainer_amount is not None else contract.amount)
    return BillingResult(
        billing_type="retainer",
        amount=amount,
        line_items=[LineItem(
            description="Retainer Replenishment",
            quantity=1,
            rate=amount,
            amount=amount,
            kind="retainer",
        )],
        retainer_id=contract.id,
    )


def last_subscription_billing_date(conn: sqlite3.Connection, project_id: str) -> date | None:
    """Creation date of the latest non-cancelled invoice that billed a subscription."""
    invoices = db.list_invoices(
        conn, project_id=project_id, statuses=["draft", "sent", "paid", "overdue"],
    )
    dates = [
        db.parse_date(inv.created_at)
        for inv in invoices
        if any(item.get("kind") == "subscription" for item in inv.line_items)
    ]
    return max(dates) if dates else None


def next_subscription_billing_date(
    conn: sqlite3.Connection, project_id: str, contract: db.BillingContract, frequency: str,
) -> date:
    """Last subscription billing (or the contract start) plus one period."""
    last_billed = last_subscription_billing_date(conn, project_id)
    return add_period(last_billed or contract.start_date, frequency)


def _resolve_subscription(
    conn: sqlite3.Connection,
    project_id: str,
    model: BillingModel,
) -> BillingResult:
    contract = db.get_active_contract(conn, project_id, "subscription")
    if contract is None:
        raise NoActiveSubscription(f"No active subscription for project {project_id}")

    frequency = normalize_frequency(model.subscription_frequency or contract.frequency)
    amount = _money(
        model.subscription_amount if model.subscription_amount is not None else contract.amount
    )
    return BillingResult(
        billing_type="subscription",
        amount=amount,
        line_items=[LineItem(
            description=f"{frequency.capitalize()} Subscription",
            quantity=1,
            rate=amount,
            amount=amount,
            kind="subscription",
        )],
        invoicing_schedule=[{
            "component": "subscription",
            "next_invoice_date": next_subscription_billing_date(conn, project_id, contract, frequency),
            "amount": amount,
        }],
    )


def _resolve_mixed(
    conn: sqlite3.Connection,
    project: db.Project,
    model: BillingModel,
    period_start: date,
    period_end: date,
) -> BillingResult:
    result = BillingResult(billing_type="mixed", amount=0)
    for component in model.components:
        part = _resolve_single(conn, project, component.to_model(), period_start, period_end)
        kind = "subscription" if component.type == "subscription" else "component"
        result.line_items.append(LineItem(
            description=component.name,
            quantity=1,
            rate=part.amount,
            amount=part.amount,
            kind=kind,
        ))
        result.time_entry_ids.extend(part.time_entry_ids)
        result.milestone_ids.extend(part.milestone_ids)
        result.warnings.extend(part.warnings)
        if part.retainer_id is not None:
            result.retainer_id = part.retainer_id
        for entry in part.invoicing_schedule:
            result.invoicing_schedule.append({**entry, "component": component.name})
        if part.period_start is not None:
            result.period_start = part.period_start
            result.period_end = part.period_end
    result.amount = _money(sum(item.amount for item in result.line_items))
    return result


def _resolve_single(
    conn: sqlite3.Connection,
    project: db.Project,
    model: BillingModel,
    period_start: date,
    period_end: date,
) -> BillingResult:
    if model.type == "hourly":
        return _resolve_hourly(conn, project.id, model, period_start, period_end)
    if model.type in ("fixed_fee", "milestone"):
        return _resolve_milestones(conn, project, model)
    if model.type == "retainer":
        return _resolve_retainer(conn, project.id, model)
    if model.type == "subscription":
        return _resolve_subscription(conn, project.id, model)
    return _resolve_mixed(conn, project, model, period_start, period_end)


def resolve(
    conn: sqlite3.Connection,
    project_id: str,
    model: BillingModel,
    period_start: date | None = None,
    period_end: date | None = None,
    now: datetime | None = None,
    default_period_days: int = DEFAULT_PERIOD_DAYS,
) -> BillingResult:
    """Compute what a project owes under `model`.

    The period only bounds hourly billing; it defaults to the
    `default_period_days` ending at `now`. Raises a BillingError subclass
    when there is nothing to bill.
    """
    model.validate()
    project = db.get_project(conn, project_id)
    if project is None:
        raise ProjectNotFound(f"Project {project_id} not found")

    now = now or datetime.now(timezone.utc)
    period_end = _as_date(period_end) if period_end else _as_date(now)
    period_start = (
        _as_date(period_start) if period_start
        else period_end - timedelta(days=default_period_days)
    )
    if period_start > period_end:
        raise ValueError(f"Period start {period_start} is after period end {period_end}")

    result = _resolve_single(conn, project, model, period_start, period_end)
    logger.debug(
        "Resolved %s billing for project %s: %.2f over %d line item(s)",
        model.type, project_id, result.amount, len(result.line_items),
    )
    return result


# ============================================================================
# Milestones
# ============================================================================


def ready_for_invoicing(conn: sqlite3.Connection, project_id: str) -> list[db.Milestone]:
    """Milestones that are completed and not yet billed."""
    return [m for m in db.list_milestones(conn, project_id) if m.ready_for_invoicing]


def complete_milestone(
    conn: sqlite3.Connection, milestone_id: int, completed_date: date | None = None,
) -> db.Milestone:
    """Mark a milestone completed. A milestone can only be completed once."""
    milestone = db.get_milestone(conn, milestone_id)
    if milestone is None:
        raise BillingError(f"Milestone {milestone_id} not found")
    completed_date = completed_date or datetime.now(timezone.utc).date()
    if not db.set_milestone_completed(conn, milestone_id, completed_date):
        raise MilestoneAlreadyCompleted(
            f"Milestone {milestone_id} ({milestone.name}) is already completed"
        )
    logger.info("Milestone %d (%s) completed", milestone_id, milestone.name)
    return db.get_milestone(conn, milestone_id)


def fixed_fee_summary(conn: sqlite3.Connection, project_id: str) -> dict:
    """Budget position of a fixed-fee project."""
    project = db.get_project(conn, project_id)
    if project is None:
        raise ProjectNotFound(f"Project {project_id} not found")

    milestones = db.list_milestones(conn, project_id)
    total_amount = sum(m.amount for m in milestones)
    completed_amount = sum(m.amount for m in milestones if m.completed)
    invoiced_amount = sum(m.amount for m in milestones if m.invoiced)
    budget = project.budget if project.budget is not None else total_amount

    return {
        "project_id": project_id,
        "budget": _money(budget),
        "milestone_total": _money(total_amount),
        "completed_amount": _money(completed_amount),
        "invoiced_amount": _money(invoiced_amount),
        "remaining_amount": _money(budget - completed_amount),
        "progress_percent": round(completed_amount / budget * 100, 1) if budget else 0.0,
        "over_budget": total_amount > budget,
        "ready_for_invoicing": [m.id for m in milestones if m.ready_for_invoicing],
    }
