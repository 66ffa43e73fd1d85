"""Invoice assembly and status transitions.

`assemble_invoice` writes the invoice row and marks the records it bills
(time entries, milestones, retainer replenishment) in one SQLite savepoint,
so a failure leaves neither an invoice without marked entries nor marked
entries without an invoice.

Status flow:
    draft -> sent -> paid
    sent -> overdue -> paid
    draft/sent/overdue -> cancelled
Amounts are never changed after creation.
"""

import logging
import sqlite3
import uuid
from dataclasses import asdict
from datetime import date, datetime, timedelta, timezone
from typing import Callable

from . import db, retainers
from .billing import BillingResult, LineItem
from .db import PersistenceError

logger = logging.getLogger("tally.invoices")

# Receives the structured invoice (see invoice_document) for rendering/delivery.
DeliveryHook = Callable[[dict], None]


class InvoiceError(Exception):
    pass


class InvoiceNotFound(InvoiceError):
    pass


class InvalidInvoiceTransition(InvoiceError):
    pass


def generate_invoice_number() -> str:
    return f"INV-{uuid.uuid4().hex[:12].upper()}"


def _line_item_dict(item) -> dict:
    if isinstance(item, LineItem):
        return item.to_dict()
    if isinstance(item, dict):
        if "amount" not in item or "description" not in item:
            raise ValueError("line items need a description and an amount")
        return dict(item)
    raise TypeError(f"Unsupported line item: {item!r}")


def assemble_invoice(
    conn: sqlite3.Connection,
    project_id: str | None,
    client_id: str,
    line_items: list,
    tax_rate: float,
    due_in_days: int,
    currency: str = "USD",
    billing_type: str | None = None,
    notes: str | None = None,
    rule_id: int | None = None,
    time_entry_ids: list[int] | None = None,
    milestone_ids: list[int] | None = None,
    retainer_id: int | None = None,
    now: datetime | None = None,
) -> db.Invoice:
    """Persist a draft invoice and mark everything it bills, atomically.

    Raises PersistenceError (with nothing written) if any write fails,
    including a time entry or milestone that was invoiced in the meantime.
    """
    if tax_rate < 0:
        raise ValueError(f"tax_rate must not be negative, got {tax_rate}")
    if due_in_days < 0:
        raise ValueError(f"due_in_days must not be negative, got {due_in_days}")
    items = [_line_item_dict(item) for item in line_items]
    if not items:
        raise ValueError("An invoice needs at least one line item")

    now = now or datetime.now(timezone.utc)
    amount = round(sum(item["amount"] for item in items), 2)
    tax_amount = round(amount * tax_rate, 2)
    total = amount + tax_amount
    due_date = now.date() + timedelta(days=due_in_days)
    invoice_number = generate_invoice_number()

    try:
        with db.transaction(conn, "assemble_invoice"):
            invoice_id = db.insert_invoice(
                conn,
                invoice_number=invoice_number,
                client_id=client_id,
                project_id=project_id,
                amount=amount,
                tax_amount=tax_amount,
                total=total,
                currency=currency,
                due_date=due_date,
                line_items=items,
                billing_type=billing_type,
                notes=notes,
                rule_id=rule_id,
                created_at=now,
            )
            if time_entry_ids:
                db.mark_time_entries_invoiced(conn, time_entry_ids, invoice_id)
            if milestone_ids:
                db.mark_milestones_invoiced(conn, milestone_ids, invoice_id)
            if retainer_id is not None:
                retainers.replenish(conn, retainer_id, invoice_id, now.date())
    except PersistenceError as e:
        logger.error("Invoice for client %s rolled back: %s", client_id, e)
        raise
    except Exception as e:
        logger.error("Invoice for client %s rolled back: %s", client_id, e)
        raise PersistenceError(str(e)) from e

    logger.info(
        "Created invoice %s for client %s: %.2f + %.2f tax = %.2f %s",
        invoice_number, client_id, amount, tax_amount, total, currency,
    )
    return db.get_invoice(conn, invoice_id)


def create_invoice_from_result(
    conn: sqlite3.Connection,
    result: BillingResult,
    project_id: str | None,
    client_id: str,
    tax_rate: float,
    due_in_days: int,
    currency: str = "USD",
    notes: str | None = None,
    rule_id: int | None = None,
    now: datetime | None = None,
) -> db.Invoice:
    """Assemble an invoice from a resolved billing result."""
    return assemble_invoice(
        conn,
        project_id=project_id,
        client_id=client_id,
        line_items=result.line_items,
        tax_rate=tax_rate,
        due_in_days=due_in_days,
        currency=currency,
        billing_type=result.billing_type,
        notes=notes,
        rule_id=rule_id,
        time_entry_ids=result.time_entry_ids,
        milestone_ids=result.milestone_ids,
        retainer_id=result.retainer_id,
        now=now,
    )


def invoice_document(invoice: db.Invoice) -> dict:
    """Structured invoice handed to the external renderer."""
    document = asdict(invoice)
    document["due_date"] = invoice.due_date.isoformat()
    return document


def get_invoice(conn: sqlite3.Connection, invoice_id: int) -> db.Invoice:
    invoice = db.get_invoice(conn, invoice_id)
    if invoice is None:
        raise InvoiceNotFound(f"Invoice {invoice_id} not found")
    return invoice


def list_invoices(
    conn: sqlite3.Connection,
    project_id: str | None = None,
    client_id: str | None = None,
    status: str | None = None,
    due_from: date | None = None,
    due_to: date | None = None,
) -> list[db.Invoice]:
    return db.list_invoices(
        conn,
        project_id=project_id,
        client_id=client_id,
        statuses=[status] if status else None,
        due_from=due_from,
        due_to=due_to,
    )


def _transition(
    conn: sqlite3.Connection,
    invoice_id: int,
    new_status: str,
    from_statuses: tuple[str, ...],
    now: datetime | None,
) -> db.Invoice:
    invoice = get_invoice(conn, invoice_id)
    if not db.transition_invoice_status(conn, invoice_id, new_status, from_statuses, now):
        raise InvalidInvoiceTransition(
            f"Invoice {invoice.invoice_number} is {invoice.status}, cannot mark {new_status}"
        )
    logger.info("Invoice %s: %s -> %s", invoice.invoice_number, invoice.status, new_status)
    return db.get_invoice(conn, invoice_id)


def send_invoice(
    conn: sqlite3.Connection,
    invoice_id: int,
    delivery: DeliveryHook | None = None,
    now: datetime | None = None,
) -> db.Invoice:
    """Move a draft to sent and hand it to the delivery hook.

    If delivery raises, the invoice stays a draft.
    """
    with db.transaction(conn, "send_invoice"):
        invoice = _transition(conn, invoice_id, "sent", ("draft",), now)
        if delivery is not None:
            delivery(invoice_document(invoice))
    return invoice


def mark_paid(conn: sqlite3.Connection, invoice_id: int, now: datetime | None = None) -> db.Invoice:
    return _transition(conn, invoice_id, "paid", ("sent", "overdue"), now)


def void_invoice(conn: sqlite3.Connection, invoice_id: int, now: datetime | None = None) -> db.Invoice:
    """Cancel an unpaid invoice. Billed entries stay marked invoiced."""
    return _transition(conn, invoice_id, "cancelled", ("draft", "sent", "overdue"), now)


def mark_overdue_invoices(conn: sqlite3.Connection, now: datetime | None = None) -> list[db.Invoice]:
    """Flag sent invoices whose due date has passed."""
    today = (now or datetime.now(timezone.utc)).date()
    overdue = []
    for invoice in db.list_invoices(conn, statuses=["sent"], due_to=today - timedelta(days=1)):
        if db.transition_invoice_status(conn, invoice.id, "overdue", ("sent",)):
            overdue.append(db.get_invoice(conn, invoice.id))
    if overdue:
        logger.info("Marked %d invoice(s) overdue", len(overdue))
    return overdue
