"""Database operations for tally billing records and the invoice job queue."""

import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator

logger = logging.getLogger("tally.db")


class PersistenceError(Exception):
    """Writing billing records failed; nothing was committed."""


# ============================================================================
# Row types
# ============================================================================


@dataclass
class Project:
    id: str
    client_id: str
    name: str
    status: str
    budget: float | None = None
    start_date: date | None = None
    end_date: date | None = None
    created_at: str | None = None


@dataclass
class TimeEntry:
    id: int
    project_id: str
    user_id: str
    description: str
    hours: float
    rate: float
    date: date
    billable: bool = True
    invoiced: bool = False
    invoice_id: int | None = None
    task_id: str | None = None

    @property
    def amount(self) -> float:
        return self.hours * self.rate


@dataclass
class Milestone:
    id: int
    project_id: str
    name: str
    description: str
    amount: float
    target_date: date | None = None
    completed: bool = False
    completed_date: date | None = None
    invoiced: bool = False
    invoice_id: int | None = None

    @property
    def ready_for_invoicing(self) -> bool:
        return self.completed and not self.invoiced


@dataclass
class BillingContract:
    id: int
    project_id: str
    contract_type: str  # "retainer" | "subscription"
    amount: float
    balance: float
    frequency: str
    start_date: date
    is_active: bool = True


@dataclass
class RetainerUsage:
    id: int
    retainer_id: int
    project_id: str
    description: str
    hours: float
    amount: float
    date: date
    remaining_balance: float
    kind: str = "usage"
    invoice_id: int | None = None


@dataclass
class Invoice:
    id: int
    invoice_number: str
    client_id: str
    project_id: str | None
    amount: float
    tax_amount: float
    total: float
    currency: str
    due_date: date
    status: str
    billing_type: str | None = None
    line_items: list[dict] = field(default_factory=list)
    notes: str | None = None
    rule_id: int | None = None
    created_at: str | None = None
    sent_at: str | None = None
    paid_at: str | None = None
    cancelled_at: str | None = None


@dataclass
class RecurringRule:
    id: int
    client_id: str
    name: str
    amount: float
    currency: str
    frequency: str
    start_date: datetime
    next_due: datetime
    project_id: str | None = None
    description: str | None = None
    day_of_week: int | None = None
    day_of_month: int | None = None
    end_date: datetime | None = None
    is_active: bool = True
    template: dict | None = None
    billing_model: dict | None = None
    tax_rate: float | None = None
    last_generated: datetime | None = None
    auto_send: bool = False
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class ScheduledJob:
    id: int
    rule_id: int | None
    scheduled_for: datetime
    status: str
    attempts: int = 0
    error_message: str | None = None
    invoice_id: int | None = None
    created_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None


# ============================================================================
# Connection handling
# ============================================================================


def init_db(db_path: Path) -> None:
    """Initialize database with schema."""
    schema_path = Path(__file__).parent.parent.parent / "schema.sql"
    with sqlite3.connect(db_path) as conn:
        conn.executescript(schema_path.read_text())


@contextmanager
def get_db(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Get database connection with row factory."""
    # timeout=30.0 waits up to 30s for locks instead of failing immediately
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection, name: str = "tally_tx") -> Iterator[sqlite3.Connection]:
    """All-or-nothing block. Nests inside an already open transaction.

    sqlite3.Error raised inside the block is rolled back and re-raised as
    PersistenceError; other exceptions are rolled back and re-raised as is.
    """
    conn.execute(f"SAVEPOINT {name}")
    try:
        yield conn
    except sqlite3.Error as e:
        conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
        conn.execute(f"RELEASE SAVEPOINT {name}")
        raise PersistenceError(str(e)) from e
    except BaseException:
        conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
        conn.execute(f"RELEASE SAVEPOINT {name}")
        raise
    conn.execute(f"RELEASE SAVEPOINT {name}")


def to_db_timestamp(value: datetime) -> str:
    """Normalize to naive UTC ISO format so stored timestamps compare as strings."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(sep="T", timespec="seconds")


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def to_db_date(value: date | datetime | str) -> str:
    if isinstance(value, str):
        return date.fromisoformat(value[:10]).isoformat()
    if isinstance(value, datetime):
        return value.date().isoformat()
    return value.isoformat()


def parse_date(value: str | None) -> date | None:
    if not value:
        return None
    return date.fromisoformat(value[:10])


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Clients, users, projects
# ============================================================================


def create_client(conn: sqlite3.Connection, client_id: str, name: str, email: str | None = None) -> None:
    conn.execute(
        "INSERT INTO clients (id, name, email) VALUES (?, ?, ?)",
        (client_id, name, email),
    )


def client_exists(conn: sqlite3.Connection, client_id: str) -> bool:
    row = conn.execute("SELECT 1 FROM clients WHERE id = ?", (client_id,)).fetchone()
    return row is not None


def upsert_user(conn: sqlite3.Connection, user_id: str, name: str, hourly_cost: float | None = None) -> None:
    conn.execute(
        """
        INSERT INTO users (id, name, hourly_cost) VALUES (?, ?, ?)
        ON CONFLICT (id) DO UPDATE SET name = excluded.name, hourly_cost = excluded.hourly_cost
        """,
        (user_id, name, hourly_cost),
    )


def get_user_names(conn: sqlite3.Connection, user_ids: list[str]) -> dict[str, str]:
    if not user_ids:
        return {}
    placeholders = ",".join("?" for _ in user_ids)
    cursor = conn.execute(
        f"SELECT id, name FROM users WHERE id IN ({placeholders})", list(user_ids),
    )
    return {row["id"]: row["name"] for row in cursor.fetchall()}


def get_user_hourly_costs(conn: sqlite3.Connection) -> dict[str, float]:
    """Known internal labor costs, keyed by user id. Users without one are omitted."""
    cursor = conn.execute("SELECT id, hourly_cost FROM users WHERE hourly_cost IS NOT NULL")
    return {row["id"]: row["hourly_cost"] for row in cursor.fetchall()}


def create_project(
    conn: sqlite3.Connection,
    project_id: str,
    client_id: str,
    name: str,
    budget: float | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    status: str = "active",
) -> None:
    conn.execute(
        """
        INSERT INTO projects (id, client_id, name, status, budget, start_date, end_date)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            project_id, client_id, name, status, budget,
            to_db_date(start_date) if start_date else None,
            to_db_date(end_date) if end_date else None,
        ),
    )


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        client_id=row["client_id"],
        name=row["name"],
        status=row["status"],
        budget=row["budget"],
        start_date=parse_date(row["start_date"]),
        end_date=parse_date(row["end_date"]),
        created_at=row["created_at"],
    )


def get_project(conn: sqlite3.Connection, project_id: str) -> Project | None:
    row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def list_client_projects(conn: sqlite3.Connection, client_id: str) -> list[Project]:
    cursor = conn.execute(
        "SELECT * FROM projects WHERE client_id = ? ORDER BY created_at, id", (client_id,),
    )
    return [_row_to_project(row) for row in cursor.fetchall()]


# ============================================================================
# Time entries
# ============================================================================


def add_time_entry(
    conn: sqlite3.Connection,
    project_id: str,
    user_id: str,
    hours: float,
    rate: float,
    entry_date: date,
    description: str = "",
    billable: bool = True,
    task_id: str | None = None,
) -> int:
    """Record a time entry and return its ID."""
    if hours <= 0:
        raise ValueError(f"hours must be positive, got {hours}")
    if rate < 0:
        raise ValueError(f"rate must not be negative, got {rate}")
    cursor = conn.execute(
        """
        INSERT INTO time_entries (project_id, user_id, description, hours, rate, date, billable, task_id)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (project_id, user_id, description, hours, rate, to_db_date(entry_date),
         1 if billable else 0, task_id),
    )
    return cursor.fetchone()[0]


def _row_to_time_entry(row: sqlite3.Row) -> TimeEntry:
    return TimeEntry(
        id=row["id"],
        project_id=row["project_id"],
        user_id=row["user_id"],
        description=row["description"],
        hours=row["hours"],
        rate=row["rate"],
        date=parse_date(row["date"]),
        billable=bool(row["billable"]),
        invoiced=bool(row["invoiced"]),
        invoice_id=row["invoice_id"],
        task_id=row["task_id"],
    )


def get_time_entry(conn: sqlite3.Connection, entry_id: int) -> TimeEntry | None:
    row = conn.execute("SELECT * FROM time_entries WHERE id = ?", (entry_id,)).fetchone()
    if not row:
        return None
    return _row_to_time_entry(row)


def list_time_entries(
    conn: sqlite3.Connection,
    project_id: str,
    start: date | None = None,
    end: date | None = None,
    billable: bool | None = None,
    invoiced: bool | None = None,
) -> list[TimeEntry]:
    """Time entries for a project, optionally bounded by an inclusive date range."""
    filters = ["project_id = ?"]
    params: list = [project_id]
    if start is not None:
        filters.append("date >= ?")
        params.append(to_db_date(start))
    if end is not None:
        filters.append("date <= ?")
        params.append(to_db_date(end))
    if billable is not None:
        filters.append("billable = ?")
        params.append(1 if billable else 0)
    if invoiced is not None:
        filters.append("invoiced = ?")
        params.append(1 if invoiced else 0)
    cursor = conn.execute(
        f"SELECT * FROM time_entries WHERE {' AND '.join(filters)} ORDER BY date, id",
        params,
    )
    return [_row_to_time_entry(row) for row in cursor.fetchall()]


def mark_time_entries_invoiced(conn: sqlite3.Connection, entry_ids: list[int], invoice_id: int) -> None:
    """Stamp entries with their invoice. Raises if any entry was already invoiced."""
    for entry_id in entry_ids:
        cursor = conn.execute(
            "UPDATE time_entries SET invoiced = 1, invoice_id = ? WHERE id = ? AND invoiced = 0",
            (invoice_id, entry_id),
        )
        if cursor.rowcount != 1:
            raise PersistenceError(f"Time entry {entry_id} is missing or already invoiced")


# ============================================================================
# Milestones
# ============================================================================


def add_milestone(
    conn: sqlite3.Connection,
    project_id: str,
    name: str,
    amount: float,
    target_date: date | None = None,
    description: str = "",
) -> int:
    if amount <= 0:
        raise ValueError(f"milestone amount must be positive, got {amount}")
    cursor = conn.execute(
        """
        INSERT INTO milestones (project_id, name, description, amount, target_date)
        VALUES (?, ?, ?, ?, ?)
        RETURNING id
        """,
        (project_id, name, description, amount, to_db_date(target_date) if target_date else None),
    )
    return cursor.fetchone()[0]


def _row_to_milestone(row: sqlite3.Row) -> Milestone:
    return Milestone(
        id=row["id"],
        project_id=row["project_id"],
        name=row["name"],
        description=row["description"],
        amount=row["amount"],
        target_date=parse_date(row["target_date"]),
        completed=bool(row["completed"]),
        completed_date=parse_date(row["completed_date"]),
        invoiced=bool(row["invoiced"]),
        invoice_id=row["invoice_id"],
    )


def get_milestone(conn: sqlite3.Connection, milestone_id: int) -> Milestone | None:
    row = conn.execute("SELECT * FROM milestones WHERE id = ?", (milestone_id,)).fetchone()
    if not row:
        return None
    return _row_to_milestone(row)


def list_milestones(conn: sqlite3.Connection, project_id: str) -> list[Milestone]:
    cursor = conn.execute(
        "SELECT * FROM milestones WHERE project_id = ? ORDER BY target_date, id", (project_id,),
    )
    return [_row_to_milestone(row) for row in cursor.fetchall()]


def set_milestone_completed(conn: sqlite3.Connection, milestone_id: int, completed_date: date) -> bool:
    """Flip pending -> completed. Returns False if already completed or missing."""
    cursor = conn.execute(
        "UPDATE milestones SET completed = 1, completed_date = ? WHERE id = ? AND completed = 0",
        (to_db_date(completed_date), milestone_id),
    )
    return cursor.rowcount == 1


def mark_milestones_invoiced(conn: sqlite3.Connection, milestone_ids: list[int], invoice_id: int) -> None:
    for milestone_id in milestone_ids:
        cursor = conn.execute(
            """
            UPDATE milestones SET invoiced = 1, invoice_id = ?
            WHERE id = ? AND completed = 1 AND invoiced = 0
            """,
            (invoice_id, milestone_id),
        )
        if cursor.rowcount != 1:
            raise PersistenceError(f"Milestone {milestone_id} is not ready for invoicing")


# ============================================================================
# Billing contracts and retainer usage
# ============================================================================


def create_contract(
    conn: sqlite3.Connection,
    project_id: str,
    contract_type: str,
    amount: float,
    start_date: date,
    frequency: str = "monthly",
) -> int:
    """Create a retainer or subscription contract. Retainers start fully funded."""
    if contract_type not in ("retainer", "subscription"):
        raise ValueError(f"Unknown contract type: {contract_type}")
    balance = amount if contract_type == "retainer" else 0
    cursor = conn.execute(
        """
        INSERT INTO billing_contracts (project_id, contract_type, amount, balance, frequency, start_date)
        VALUES (?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (project_id, contract_type, amount, balance, frequency, to_db_date(start_date)),
    )
    return cursor.fetchone()[0]


def _row_to_contract(row: sqlite3.Row) -> BillingContract:
    return BillingContract(
        id=row["id"],
        project_id=row["project_id"],
        contract_type=row["contract_type"],
        amount=row["amount"],
        balance=row["balance"],
        frequency=row["frequency"],
        start_date=parse_date(row["start_date"]),
        is_active=bool(row["is_active"]),
    )


def get_contract(conn: sqlite3.Connection, contract_id: int) -> BillingContract | None:
    row = conn.execute("SELECT * FROM billing_contracts WHERE id = ?", (contract_id,)).fetchone()
    if not row:
        return None
    return _row_to_contract(row)


def get_active_contract(
    conn: sqlite3.Connection, project_id: str, contract_type: str,
) -> BillingContract | None:
    """Most recent active contract of the given type for a project."""
    row = conn.execute(
        """
        SELECT * FROM billing_contracts
        WHERE project_id = ? AND contract_type = ? AND is_active = 1
        ORDER BY id DESC LIMIT 1
        """,
        (project_id, contract_type),
    ).fetchone()
    if not row:
        return None
    return _row_to_contract(row)


def set_contract_active(conn: sqlite3.Connection, contract_id: int, active: bool) -> None:
    conn.execute(
        "UPDATE billing_contracts SET is_active = ? WHERE id = ?",
        (1 if active else 0, contract_id),
    )


def set_contract_balance(conn: sqlite3.Connection, contract_id: int, balance: float) -> None:
    conn.execute(
        "UPDATE billing_contracts SET balance = ? WHERE id = ?", (balance, contract_id),
    )


def insert_retainer_usage(
    conn: sqlite3.Connection,
    retainer_id: int,
    project_id: str,
    amount: float,
    usage_date: date,
    remaining_balance: float,
    hours: float = 0,
    description: str = "",
    kind: str = "usage",
    invoice_id: int | None = None,
) -> int:
    cursor = conn.execute(
        """
        INSERT INTO retainer_usage (
            retainer_id, project_id, description, hours, amount, date,
            remaining_balance, kind, invoice_id
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (retainer_id, project_id, description, hours, amount, to_db_date(usage_date),
         remaining_balance, kind, invoice_id),
    )
    return cursor.fetchone()[0]


def list_retainer_usage(conn: sqlite3.Connection, retainer_id: int) -> list[RetainerUsage]:
    """Usage and replenishment history in recording order."""
    cursor = conn.execute(
        "SELECT * FROM retainer_usage WHERE retainer_id = ? ORDER BY id", (retainer_id,),
    )
    return [
        RetainerUsage(
            id=row["id"],
            retainer_id=row["retainer_id"],
            project_id=row["project_id"],
            description=row["description"],
            hours=row["hours"],
            amount=row["amount"],
            date=parse_date(row["date"]),
            remaining_balance=row["remaining_balance"],
            kind=row["kind"],
            invoice_id=row["invoice_id"],
        )
        for row in cursor.fetchall()
    ]


# ============================================================================
# Invoices
# ============================================================================


def insert_invoice(
    conn: sqlite3.Connection,
    invoice_number: str,
    client_id: str,
    project_id: str | None,
    amount: float,
    tax_amount: float,
    total: float,
    currency: str,
    due_date: date,
    line_items: list[dict],
    billing_type: str | None = None,
    notes: str | None = None,
    rule_id: int | None = None,
    created_at: datetime | None = None,
) -> int:
    cursor = conn.execute(
        """
        INSERT INTO invoices (
            invoice_number, client_id, project_id, rule_id, amount, tax_amount, total,
            currency, due_date, status, billing_type, line_items, notes, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'draft', ?, ?, ?, ?)
        RETURNING id
        """,
        (
            invoice_number, client_id, project_id, rule_id, amount, tax_amount, total,
            currency, to_db_date(due_date), billing_type, json.dumps(line_items), notes,
            to_db_timestamp(created_at or _now()),
        ),
    )
    invoice_id = cursor.fetchone()[0]
    logger.debug("Inserted invoice %d (%s) for client %s", invoice_id, invoice_number, client_id)
    return invoice_id


def _row_to_invoice(row: sqlite3.Row) -> Invoice:
    return Invoice(
        id=row["id"],
        invoice_number=row["invoice_number"],
        client_id=row["client_id"],
        project_id=row["project_id"],
        amount=row["amount"],
        tax_amount=row["tax_amount"],
        total=row["total"],
        currency=row["currency"],
        due_date=parse_date(row["due_date"]),
        status=row["status"],
        billing_type=row["billing_type"],
        line_items=json.loads(row["line_items"]) if row["line_items"] else [],
        notes=row["notes"],
        rule_id=row["rule_id"],
        created_at=row["created_at"],
        sent_at=row["sent_at"],
        paid_at=row["paid_at"],
        cancelled_at=row["cancelled_at"],
    )


def get_invoice(conn: sqlite3.Connection, invoice_id: int) -> Invoice | None:
    row = conn.execute("SELECT * FROM invoices WHERE id = ?", (invoice_id,)).fetchone()
    if not row:
        return None
    return _row_to_invoice(row)


def get_invoice_by_number(conn: sqlite3.Connection, invoice_number: str) -> Invoice | None:
    row = conn.execute(
        "SELECT * FROM invoices WHERE invoice_number = ?", (invoice_number,),
    ).fetchone()
    if not row:
        return None
    return _row_to_invoice(row)


def list_invoices(
    conn: sqlite3.Connection,
    project_id: str | None = None,
    client_id: str | None = None,
    statuses: list[str] | None = None,
    billing_type: str | None = None,
    due_from: date | None = None,
    due_to: date | None = None,
) -> list[Invoice]:
    filters = []
    params: list = []
    if project_id is not None:
        filters.append("project_id = ?")
        params.append(project_id)
    if client_id is not None:
        filters.append("client_id = ?")
        params.append(client_id)
    if statuses:
        filters.append(f"status IN ({','.join('?' for _ in statuses)})")
        params.extend(statuses)
    if billing_type is not None:
        filters.append("billing_type = ?")
        params.append(billing_type)
    if due_from is not None:
        filters.append("due_date >= ?")
        params.append(to_db_date(due_from))
    if due_to is not None:
        filters.append("due_date <= ?")
        params.append(to_db_date(due_to))
    where_clause = f"WHERE {' AND '.join(filters)}" if filters else ""
    cursor = conn.execute(
        f"SELECT * FROM invoices {where_clause} ORDER BY created_at, id", params,
    )
    return [_row_to_invoice(row) for row in cursor.fetchall()]


def transition_invoice_status(
    conn: sqlite3.Connection,
    invoice_id: int,
    new_status: str,
    from_statuses: tuple[str, ...],
    at: datetime | None = None,
) -> bool:
    """Move an invoice to new_status if it is currently in one of from_statuses."""
    stamp_column = {
        "sent": "sent_at",
        "paid": "paid_at",
        "cancelled": "cancelled_at",
    }.get(new_status)
    placeholders = ",".join("?" for _ in from_statuses)
    stamp_sql = f", {stamp_column} = ?" if stamp_column else ""
    params: list = [new_status]
    if stamp_column:
        params.append(to_db_timestamp(at or _now()))
    params.append(invoice_id)
    params.extend(from_statuses)
    cursor = conn.execute(
        f"UPDATE invoices SET status = ?{stamp_sql} WHERE id = ? AND status IN ({placeholders})",
        params,
    )
    return cursor.rowcount == 1


# ============================================================================
# Recurring rules
# ============================================================================


_RULE_JSON_FIELDS = ("template", "billing_model")
_RULE_BOOL_FIELDS = ("is_active", "auto_send")
_RULE_TIMESTAMP_FIELDS = ("start_date", "end_date", "last_generated", "next_due")
RULE_UPDATABLE_FIELDS = frozenset({
    "client_id", "project_id", "name", "description", "amount", "currency",
    "frequency", "day_of_week", "day_of_month", "start_date", "end_date",
    "is_active", "template", "billing_model", "tax_rate", "last_generated",
    "next_due", "auto_send",
})


def _rule_value_to_db(key: str, value):
    if value is None:
        return None
    if key in _RULE_JSON_FIELDS:
        return json.dumps(value)
    if key in _RULE_BOOL_FIELDS:
        return 1 if value else 0
    if key in _RULE_TIMESTAMP_FIELDS:
        return to_db_timestamp(value)
    return value


def insert_rule(conn: sqlite3.Connection, **fields) -> int:
    """Insert a recurring rule. Keys must be recurring_rules column names."""
    unknown = set(fields) - RULE_UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown rule fields: {', '.join(sorted(unknown))}")
    columns = list(fields)
    values = [_rule_value_to_db(k, fields[k]) for k in columns]
    cursor = conn.execute(
        f"""
        INSERT INTO recurring_rules ({', '.join(columns)})
        VALUES ({', '.join('?' for _ in columns)})
        RETURNING id
        """,
        values,
    )
    return cursor.fetchone()[0]


def _row_to_rule(row: sqlite3.Row) -> RecurringRule:
    return RecurringRule(
        id=row["id"],
        client_id=row["client_id"],
        project_id=row["project_id"],
        name=row["name"],
        description=row["description"],
        amount=row["amount"],
        currency=row["currency"],
        frequency=row["frequency"],
        day_of_week=row["day_of_week"],
        day_of_month=row["day_of_month"],
        start_date=parse_timestamp(row["start_date"]),
        end_date=parse_timestamp(row["end_date"]),
        is_active=bool(row["is_active"]),
        template=json.loads(row["template"]) if row["template"] else None,
        billing_model=json.loads(row["billing_model"]) if row["billing_model"] else None,
        tax_rate=row["tax_rate"],
        last_generated=parse_timestamp(row["last_generated"]),
        next_due=parse_timestamp(row["next_due"]),
        auto_send=bool(row["auto_send"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def get_rule(conn: sqlite3.Connection, rule_id: int) -> RecurringRule | None:
    row = conn.execute("SELECT * FROM recurring_rules WHERE id = ?", (rule_id,)).fetchone()
    if not row:
        return None
    return _row_to_rule(row)


def list_rules(conn: sqlite3.Connection, active_only: bool = False) -> list[RecurringRule]:
    where_clause = "WHERE is_active = 1" if active_only else ""
    cursor = conn.execute(
        f"SELECT * FROM recurring_rules {where_clause} ORDER BY next_due, id",
    )
    return [_row_to_rule(row) for row in cursor.fetchall()]


def update_rule_fields(conn: sqlite3.Connection, rule_id: int, **fields) -> None:
    unknown = set(fields) - RULE_UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown rule fields: {', '.join(sorted(unknown))}")
    if not fields:
        return
    assignments = ", ".join(f"{k} = ?" for k in fields)
    values = [_rule_value_to_db(k, v) for k, v in fields.items()]
    conn.execute(
        f"UPDATE recurring_rules SET {assignments}, updated_at = datetime('now') WHERE id = ?",
        (*values, rule_id),
    )


def delete_rule(conn: sqlite3.Connection, rule_id: int) -> None:
    conn.execute("DELETE FROM recurring_rules WHERE id = ?", (rule_id,))


# ============================================================================
# Scheduled invoice jobs
# ============================================================================


def insert_job(conn: sqlite3.Connection, rule_id: int, scheduled_for: datetime) -> int:
    cursor = conn.execute(
        """
        INSERT INTO scheduled_jobs (rule_id, scheduled_for, status, created_at)
        VALUES (?, ?, 'pending', ?)
        RETURNING id
        """,
        (rule_id, to_db_timestamp(scheduled_for), to_db_timestamp(_now())),
    )
    return cursor.fetchone()[0]


def _row_to_job(row: sqlite3.Row) -> ScheduledJob:
    return ScheduledJob(
        id=row["id"],
        rule_id=row["rule_id"],
        scheduled_for=parse_timestamp(row["scheduled_for"]),
        status=row["status"],
        attempts=row["attempts"],
        error_message=row["error_message"],
        invoice_id=row["invoice_id"],
        created_at=row["created_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )


def get_job(conn: sqlite3.Connection, job_id: int) -> ScheduledJob | None:
    row = conn.execute("SELECT * FROM scheduled_jobs WHERE id = ?", (job_id,)).fetchone()
    if not row:
        return None
    return _row_to_job(row)


def list_jobs(
    conn: sqlite3.Connection,
    status: str | None = None,
    rule_id: int | None = None,
) -> list[ScheduledJob]:
    filters = []
    params: list = []
    if status is not None:
        filters.append("status = ?")
        params.append(status)
    if rule_id is not None:
        filters.append("rule_id = ?")
        params.append(rule_id)
    where_clause = f"WHERE {' AND '.join(filters)}" if filters else ""
    cursor = conn.execute(
        f"SELECT * FROM scheduled_jobs {where_clause} ORDER BY scheduled_for, id", params,
    )
    return [_row_to_job(row) for row in cursor.fetchall()]


def get_due_job_ids(conn: sqlite3.Connection, now: datetime, max_attempts: int) -> list[int]:
    """Pending jobs due at or before `now` that still have attempts left."""
    cursor = conn.execute(
        """
        SELECT id FROM scheduled_jobs
        WHERE status = 'pending' AND scheduled_for <= ? AND attempts < ?
        ORDER BY scheduled_for, id
        """,
        (to_db_timestamp(now), max_attempts),
    )
    return [row[0] for row in cursor.fetchall()]


def claim_job(
    conn: sqlite3.Connection, job_id: int, now: datetime, max_attempts: int,
) -> ScheduledJob | None:
    """Atomically move a due job from pending to processing.

    Returns None if another worker already claimed it, it ran out of
    attempts, or another job for the same rule is processing.
    """
    cursor = conn.execute(
        """
        UPDATE scheduled_jobs
        SET status = 'processing', attempts = attempts + 1,
            started_at = ?, error_message = NULL
        WHERE id = ?
        AND status = 'pending'
        AND attempts < ?
        AND NOT EXISTS (
            SELECT 1 FROM scheduled_jobs other
            WHERE other.rule_id = scheduled_jobs.rule_id
            AND other.status = 'processing'
        )
        RETURNING *
        """,
        (to_db_timestamp(now), job_id, max_attempts),
    )
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_job(row)


def complete_job(conn: sqlite3.Connection, job_id: int, invoice_id: int, now: datetime) -> None:
    conn.execute(
        """
        UPDATE scheduled_jobs
        SET status = 'completed', invoice_id = ?, completed_at = ?, error_message = NULL
        WHERE id = ? AND status = 'processing'
        """,
        (invoice_id, to_db_timestamp(now), job_id),
    )


def fail_job(conn: sqlite3.Connection, job_id: int, error: str, now: datetime) -> None:
    conn.execute(
        """
        UPDATE scheduled_jobs
        SET status = 'failed', error_message = ?, completed_at = ?
        WHERE id = ? AND status = 'processing'
        """,
        (error[:500], to_db_timestamp(now), job_id),
    )


def reset_failed_jobs(conn: sqlite3.Connection, max_attempts: int) -> list[int]:
    """Return failed jobs with attempts left to pending. Returns their IDs."""
    cursor = conn.execute(
        """
        UPDATE scheduled_jobs
        SET status = 'pending', error_message = NULL, completed_at = NULL
        WHERE status = 'failed' AND attempts < ? AND rule_id IS NOT NULL
        RETURNING id
        """,
        (max_attempts,),
    )
    return [row[0] for row in cursor.fetchall()]


def reset_job(conn: sqlite3.Connection, job_id: int) -> bool:
    """Manually reset a failed job to pending with a fresh attempt budget."""
    cursor = conn.execute(
        """
        UPDATE scheduled_jobs
        SET status = 'pending', attempts = 0, error_message = NULL, completed_at = NULL
        WHERE id = ? AND status = 'failed'
        """,
        (job_id,),
    )
    return cursor.rowcount == 1


def delete_pending_jobs_for_rule(conn: sqlite3.Connection, rule_id: int) -> int:
    cursor = conn.execute(
        "DELETE FROM scheduled_jobs WHERE rule_id = ? AND status = 'pending'", (rule_id,),
    )
    return cursor.rowcount


def detach_jobs_from_rule(conn: sqlite3.Connection, rule_id: int) -> None:
    conn.execute("UPDATE scheduled_jobs SET rule_id = NULL WHERE rule_id = ?", (rule_id,))


def has_open_job_for_rule(conn: sqlite3.Connection, rule_id: int) -> bool:
    """True if the rule has a pending, processing or retryable failed job."""
    row = conn.execute(
        """
        SELECT 1 FROM scheduled_jobs
        WHERE rule_id = ? AND status IN ('pending', 'processing', 'failed')
        LIMIT 1
        """,
        (rule_id,),
    ).fetchone()
    return row is not None


def fail_stale_processing_jobs(conn: sqlite3.Connection, now: datetime, stale_minutes: int) -> list[int]:
    """Fail jobs left in processing by a worker that died mid-run."""
    cutoff = now - timedelta(minutes=stale_minutes)
    cursor = conn.execute(
        """
        UPDATE scheduled_jobs
        SET status = 'failed', error_message = 'Job stuck in processing - worker may have crashed',
            completed_at = ?
        WHERE status = 'processing' AND started_at < ?
        RETURNING id
        """,
        (to_db_timestamp(now), to_db_timestamp(cutoff)),
    )
    return [row[0] for row in cursor.fetchall()]


def count_jobs_by_status(conn: sqlite3.Connection) -> dict[str, int]:
    cursor = conn.execute("SELECT status, COUNT(*) AS n FROM scheduled_jobs GROUP BY status")
    return {row["status"]: row["n"] for row in cursor.fetchall()}
