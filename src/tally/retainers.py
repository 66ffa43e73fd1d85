"""Retainer balances.

A retainer contract holds a prepaid balance. Recording usage decrements it
(and may drive it negative, which is reported as overage). Invoicing a
retainer replenishment resets the balance to the contract amount; that
reset is written by `replenish` inside the invoice transaction.
"""

import logging
import sqlite3
from datetime import date, datetime, timezone

from . import db
from .billing import NoActiveRetainer

logger = logging.getLogger("tally.retainers")


def record_usage(
    conn: sqlite3.Connection,
    project_id: str,
    amount: float,
    hours: float = 0,
    description: str = "",
    usage_date: date | None = None,
) -> db.RetainerUsage:
    """Consume `amount` from the project's active retainer."""
    if amount <= 0:
        raise ValueError(f"usage amount must be positive, got {amount}")
    contract = db.get_active_contract(conn, project_id, "retainer")
    if contract is None:
        raise NoActiveRetainer(f"No active retainer for project {project_id}")

    usage_date = usage_date or datetime.now(timezone.utc).date()
    remaining = round(contract.balance - amount, 2)
    with db.transaction(conn, "retainer_usage"):
        db.set_contract_balance(conn, contract.id, remaining)
        usage_id = db.insert_retainer_usage(
            conn, contract.id, project_id, amount, usage_date, remaining,
            hours=hours, description=description,
        )

    if remaining < 0:
        logger.warning(
            "Retainer %d for project %s is overdrawn by %.2f", contract.id, project_id, -remaining,
        )
    return next(u for u in db.list_retainer_usage(conn, contract.id) if u.id == usage_id)


def replenish(
    conn: sqlite3.Connection,
    retainer_id: int,
    invoice_id: int,
    on_date: date,
) -> float:
    """Reset a retainer to its contract amount. Call inside the invoice transaction."""
    contract = db.get_contract(conn, retainer_id)
    if contract is None or not contract.is_active:
        raise NoActiveRetainer(f"Retainer {retainer_id} is missing or inactive")
    db.set_contract_balance(conn, retainer_id, contract.amount)
    db.insert_retainer_usage(
        conn, retainer_id, contract.project_id, contract.amount, on_date, contract.amount,
        description="Retainer Replenishment", kind="replenishment", invoice_id=invoice_id,
    )
    return contract.amount


def retainer_status(conn: sqlite3.Connection, project_id: str) -> dict:
    """Balance and utilization of the project's active retainer."""
    contract = db.get_active_contract(conn, project_id, "retainer")
    if contract is None:
        raise NoActiveRetainer(f"No active retainer for project {project_id}")

    history = db.list_retainer_usage(conn, contract.id)
    # Usage since the last replenishment
    current = []
    for record in history:
        if record.kind == "replenishment":
            current = []
        else:
            current.append(record)

    used = round(sum(u.amount for u in current), 2)
    hours = sum(u.hours for u in current)
    return {
        "retainer_id": contract.id,
        "project_id": project_id,
        "retainer_amount": contract.amount,
        "used_amount": used,
        "used_hours": hours,
        "remaining_balance": contract.balance,
        "overage": round(max(0.0, -contract.balance), 2),
        "utilization_rate": round(used / contract.amount * 100, 1) if contract.amount else 0.0,
        "usage_count": len(current),
    }
