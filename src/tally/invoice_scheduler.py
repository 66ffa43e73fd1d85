"""Recurring invoice rules and the scheduled job queue.

Each active rule has one pending job scheduled for its `next_due`. A poll
(`process_scheduled_jobs`) claims due jobs, resolves the rule's billing
model, assembles the invoice and schedules the rule's next job. A failed
job keeps the rule where it was so the same period is retried, not skipped.

Job states:
    pending -> processing -> completed | failed
    failed -> pending (retry_failed_jobs while attempts < max, or reset_job)

Rules and jobs live in SQLite, so the queue survives restarts. A job is
claimed with a conditional UPDATE, so only one worker ever processes it,
and no two jobs for the same rule are processed at once.
"""

import fcntl
import logging
import os
import signal
import threading
import time
from datetime import date, datetime, time as dt_time, timedelta, timezone
from pathlib import Path

from . import db, invoices
from .billing import BillingModel, BillingResult, InvalidBillingModel, LineItem, resolve
from .config import Config
from .notifications import notify_failed_jobs
from .recurrence import billing_period, next_due_date, normalize_frequency, period_label

logger = logging.getLogger("tally.invoice_scheduler")

_TIMING_FIELDS = frozenset({"frequency", "day_of_week", "day_of_month", "start_date"})
_EDITABLE_FIELDS = frozenset({
    "client_id", "project_id", "name", "description", "amount", "currency",
    "frequency", "day_of_week", "day_of_month", "start_date", "end_date",
    "template", "billing_model", "tax_rate", "auto_send",
})

# Seconds between shutdown checks in the daemon loop
_DAEMON_TICK_SECONDS = 5

_shutdown_requested = False


class SchedulerError(Exception):
    pass


class RuleNotFound(SchedulerError):
    pass


class RuleInactive(SchedulerError):
    pass


def _utc_naive(value: datetime | date | None) -> datetime | None:
    """Normalize to naive UTC. Plain dates become midnight."""
    if value is None:
        return None
    if not isinstance(value, datetime):
        return datetime.combine(value, dt_time())
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _now(now: datetime | None = None) -> datetime:
    return _utc_naive(now or datetime.now(timezone.utc))


def _validate_timing(
    frequency: str,
    day_of_week: int | None,
    day_of_month: int | None,
    start_date: datetime,
    end_date: datetime | None,
) -> str:
    frequency = normalize_frequency(frequency)
    if day_of_week is not None:
        if frequency != "weekly":
            raise ValueError("day_of_week only applies to weekly rules")
        if not 0 <= day_of_week <= 6:
            raise ValueError(f"day_of_week must be 0-6, got {day_of_week}")
    if day_of_month is not None:
        if frequency == "weekly":
            raise ValueError("day_of_month does not apply to weekly rules")
        if not 1 <= day_of_month <= 31:
            raise ValueError(f"day_of_month must be 1-31, got {day_of_month}")
    if end_date is not None and end_date <= start_date:
        raise ValueError("end_date must be after start_date")
    return frequency


def _billing_model_dict(value) -> dict | None:
    if value is None:
        return None
    model = value if isinstance(value, BillingModel) else BillingModel.from_dict(value)
    model.validate()
    return model.to_dict()


class InvoiceScheduler:
    """Rule registry and job queue backed by the tally database."""

    def __init__(
        self,
        config: Config,
        db_path: Path | None = None,
        delivery: invoices.DeliveryHook | None = None,
    ):
        self.config = config
        self.db_path = db_path or config.db_path
        self.delivery = delivery
        self._rule_locks: dict[int, threading.Lock] = {}
        self._rule_locks_guard = threading.Lock()
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def create_rule(
        self,
        client_id: str,
        name: str,
        frequency: str,
        start_date: datetime | date,
        amount: float = 0,
        project_id: str | None = None,
        description: str | None = None,
        currency: str | None = None,
        day_of_week: int | None = None,
        day_of_month: int | None = None,
        end_date: datetime | date | None = None,
        template: dict | None = None,
        billing_model: BillingModel | dict | None = None,
        tax_rate: float | None = None,
        auto_send: bool = False,
    ) -> db.RecurringRule:
        """Create an active rule and schedule its first job."""
        start_date = _utc_naive(start_date)
        end_date = _utc_naive(end_date)
        frequency = _validate_timing(frequency, day_of_week, day_of_month, start_date, end_date)
        model = _billing_model_dict(billing_model)
        if amount < 0:
            raise ValueError(f"amount must not be negative, got {amount}")
        if model is None and amount <= 0:
            raise ValueError("A rule without a billing model needs a positive amount")
        if model is not None and not project_id:
            raise InvalidBillingModel("Rules with a billing model need a project")
        if tax_rate is not None and tax_rate < 0:
            raise ValueError(f"tax_rate must not be negative, got {tax_rate}")

        next_due = next_due_date(start_date, frequency, day_of_week, day_of_month)

        with db.get_db(self.db_path) as conn:
            if not db.client_exists(conn, client_id):
                raise ValueError(f"Client {client_id} not found")
            with db.transaction(conn, "create_rule"):
                rule_id = db.insert_rule(
                    conn,
                    client_id=client_id,
                    project_id=project_id,
                    name=name,
                    description=description,
                    amount=amount,
                    currency=currency or self.config.billing.currency,
                    frequency=frequency,
                    day_of_week=day_of_week,
                    day_of_month=day_of_month,
                    start_date=start_date,
                    end_date=end_date,
                    template=template,
                    billing_model=model,
                    tax_rate=tax_rate,
                    next_due=next_due,
                    auto_send=auto_send,
                )
                if end_date is None or next_due <= end_date:
                    db.insert_job(conn, rule_id, next_due)
            rule = db.get_rule(conn, rule_id)

        logger.info(
            "Created %s rule %d (%s) for client %s, first due %s",
            frequency, rule_id, name, client_id, next_due.isoformat(),
        )
        return rule

    def get_rule(self, rule_id: int) -> db.RecurringRule:
        with db.get_db(self.db_path) as conn:
            rule = db.get_rule(conn, rule_id)
        if rule is None:
            raise RuleNotFound(f"Rule {rule_id} not found")
        return rule

    def list_rules(self, active_only: bool = False) -> list[db.RecurringRule]:
        with db.get_db(self.db_path) as conn:
            return db.list_rules(conn, active_only=active_only)

    def update_rule(self, rule_id: int, **changes) -> db.RecurringRule:
        """Edit a rule. Timing changes recompute next_due and move the pending job."""
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update rule fields: {', '.join(sorted(unknown))}")

        with db.get_db(self.db_path) as conn:
            rule = db.get_rule(conn, rule_id)
            if rule is None:
                raise RuleNotFound(f"Rule {rule_id} not found")

            if "start_date" in changes:
                changes["start_date"] = _utc_naive(changes["start_date"])
            if "end_date" in changes:
                changes["end_date"] = _utc_naive(changes["end_date"])
            if "billing_model" in changes:
                changes["billing_model"] = _billing_model_dict(changes["billing_model"])
            if changes.get("amount") is not None and changes["amount"] < 0:
                raise ValueError("amount must not be negative")

            frequency = _validate_timing(
                changes.get("frequency", rule.frequency),
                changes.get("day_of_week", rule.day_of_week),
                changes.get("day_of_month", rule.day_of_month),
                changes.get("start_date", rule.start_date),
                changes.get("end_date", rule.end_date),
            )
            if "frequency" in changes:
                changes["frequency"] = frequency

            retime = bool(_TIMING_FIELDS & set(changes)) or "end_date" in changes
            with db.transaction(conn, "update_rule"):
                if _TIMING_FIELDS & set(changes):
                    base = rule.last_generated or changes.get("start_date", rule.start_date)
                    changes["next_due"] = next_due_date(
                        base,
                        frequency,
                        changes.get("day_of_week", rule.day_of_week),
                        changes.get("day_of_month", rule.day_of_month),
                    )
                db.update_rule_fields(conn, rule_id, **changes)
                if retime:
                    self._reschedule(conn, db.get_rule(conn, rule_id))
            updated = db.get_rule(conn, rule_id)

        logger.info("Updated rule %d (%s)", rule_id, ", ".join(sorted(changes)))
        return updated

    def _reschedule(self, conn, rule: db.RecurringRule) -> None:
        """Replace the rule's pending job with one at its current next_due."""
        db.delete_pending_jobs_for_rule(conn, rule.id)
        if not rule.is_active:
            return
        if rule.end_date is not None and rule.next_due > rule.end_date:
            return
        if db.has_open_job_for_rule(conn, rule.id):
            # A processing or failed job still owns the current period
            return
        db.insert_job(conn, rule.id, rule.next_due)

    def deactivate_rule(self, rule_id: int) -> db.RecurringRule:
        """Stop generating invoices. Pending jobs fail as inactive when they come due."""
        with db.get_db(self.db_path) as conn:
            if db.get_rule(conn, rule_id) is None:
                raise RuleNotFound(f"Rule {rule_id} not found")
            db.update_rule_fields(conn, rule_id, is_active=False)
            rule = db.get_rule(conn, rule_id)
        logger.info("Deactivated rule %d", rule_id)
        return rule

    def activate_rule(self, rule_id: int) -> db.RecurringRule:
        with db.get_db(self.db_path) as conn:
            rule = db.get_rule(conn, rule_id)
            if rule is None:
                raise RuleNotFound(f"Rule {rule_id} not found")
            with db.transaction(conn, "activate_rule"):
                db.update_rule_fields(conn, rule_id, is_active=True)
                if not db.has_open_job_for_rule(conn, rule_id) and (
                    rule.end_date is None or rule.next_due <= rule.end_date
                ):
                    db.insert_job(conn, rule_id, rule.next_due)
            rule = db.get_rule(conn, rule_id)
        logger.info("Activated rule %d", rule_id)
        return rule

    def delete_rule(self, rule_id: int) -> int:
        """Delete a rule and its pending jobs. Returns the number of jobs removed.

        Completed and failed jobs are kept with their rule reference cleared.
        """
        with db.get_db(self.db_path) as conn:
            if db.get_rule(conn, rule_id) is None:
                raise RuleNotFound(f"Rule {rule_id} not found")
            with db.transaction(conn, "delete_rule"):
                removed = db.delete_pending_jobs_for_rule(conn, rule_id)
                db.detach_jobs_from_rule(conn, rule_id)
                db.delete_rule(conn, rule_id)
        with self._rule_locks_guard:
            self._rule_locks.pop(rule_id, None)
        logger.info("Deleted rule %d (%d pending job(s) cancelled)", rule_id, removed)
        return removed

    # ------------------------------------------------------------------
    # Job processing
    # ------------------------------------------------------------------

    def _rule_lock(self, rule_id: int | None) -> threading.Lock:
        with self._rule_locks_guard:
            return self._rule_locks.setdefault(rule_id, threading.Lock())

    def process_scheduled_jobs(self, now: datetime | None = None) -> list[db.ScheduledJob]:
        """Run every due pending job. Returns the processed jobs in their final state."""
        now = _now(now)
        max_attempts = self.config.scheduler.max_attempts

        with db.get_db(self.db_path) as conn:
            stale = db.fail_stale_processing_jobs(
                conn, now, self.config.scheduler.stale_processing_minutes,
            )
            if stale:
                logger.warning("Failed %d stale processing job(s): %s", len(stale), stale)
            due_ids = db.get_due_job_ids(conn, now, max_attempts)

        processed = []
        for job_id in due_ids:
            job = self._process_job(job_id, now)
            if job is not None:
                processed.append(job)

        failed = [j for j in processed if j.status == "failed"]
        if failed:
            notify_failed_jobs(self.config, failed)
        if processed:
            logger.info(
                "Processed %d job(s): %d completed, %d failed",
                len(processed), len(processed) - len(failed), len(failed),
            )
        return processed

    def _process_job(self, job_id: int, now: datetime) -> db.ScheduledJob | None:
        with db.get_db(self.db_path) as conn:
            pending = db.get_job(conn, job_id)
        if pending is None:
            return None

        lock = self._rule_lock(pending.rule_id)
        if not lock.acquire(blocking=False):
            logger.debug("Rule %s busy, leaving job %d for the next pass", pending.rule_id, job_id)
            return None
        try:
            with db.get_db(self.db_path) as conn:
                job = db.claim_job(conn, job_id, now, self.config.scheduler.max_attempts)
            if job is None:
                logger.debug("Job %d already claimed or not claimable", job_id)
                return None

            logger.info(
                "Processing job %d for rule %s (attempt %d)", job.id, job.rule_id, job.attempts,
            )
            try:
                invoice = self._execute(job, now)
            except Exception as e:
                logger.error("Job %d for rule %s failed: %s", job.id, job.rule_id, e)
                with db.get_db(self.db_path) as conn:
                    db.fail_job(conn, job.id, str(e) or type(e).__name__, now)
            else:
                if invoice is not None and self._auto_send(job.rule_id):
                    self._send(invoice, now)

            with db.get_db(self.db_path) as conn:
                return db.get_job(conn, job.id)
        finally:
            lock.release()

    def _execute(self, job: db.ScheduledJob, now: datetime) -> db.Invoice:
        """Generate the invoice for a claimed job and advance its rule, atomically."""
        with db.get_db(self.db_path) as conn:
            rule = db.get_rule(conn, job.rule_id) if job.rule_id is not None else None
            if rule is None:
                raise RuleNotFound(f"Rule {job.rule_id} not found")
            if not rule.is_active:
                raise RuleInactive(f"Rule {rule.id} is not active")
            if rule.end_date is not None and job.scheduled_for > rule.end_date:
                raise RuleInactive(
                    f"Rule {rule.id} is not active (ended {rule.end_date.isoformat()})"
                )

            result = self._resolve_rule(conn, rule, now)
            tax_rate = rule.tax_rate if rule.tax_rate is not None else self.config.billing.tax_rate
            terms = (rule.template or {}).get(
                "payment_terms_days", self.config.billing.payment_terms_days,
            )

            with db.transaction(conn, "process_job"):
                invoice = invoices.create_invoice_from_result(
                    conn,
                    result,
                    project_id=rule.project_id,
                    client_id=rule.client_id,
                    tax_rate=tax_rate,
                    due_in_days=terms,
                    currency=rule.currency,
                    notes=f"{rule.name} - {period_label(now, rule.frequency)}",
                    rule_id=rule.id,
                    now=now,
                )
                db.complete_job(conn, job.id, invoice.id, now)
                next_due = next_due_date(now, rule.frequency, rule.day_of_week, rule.day_of_month)
                db.update_rule_fields(conn, rule.id, last_generated=now, next_due=next_due)
                if rule.end_date is None or next_due <= rule.end_date:
                    db.insert_job(conn, rule.id, next_due)
                else:
                    logger.info("Rule %d reached its end date, no further jobs", rule.id)

        logger.info(
            "Job %d completed: invoice %s (%.2f %s), rule %d next due %s",
            job.id, invoice.invoice_number, invoice.total, invoice.currency,
            rule.id, next_due.isoformat(),
        )
        return invoice

    def _resolve_rule(self, conn, rule: db.RecurringRule, now: datetime) -> BillingResult:
        """Resolve the rule's billing model, or bill its flat amount when it has none."""
        if rule.billing_model:
            model = BillingModel.from_dict(rule.billing_model)
            if not rule.project_id:
                raise InvalidBillingModel(f"Rule {rule.id} has a billing model but no project")
            period_start, period_end = billing_period(now, rule.frequency)
            return resolve(conn, rule.project_id, model, period_start, period_end, now=now)

        return BillingResult(
            billing_type="recurring",
            amount=rule.amount,
            line_items=[LineItem(
                description=rule.description or rule.name,
                quantity=1,
                rate=rule.amount,
                amount=rule.amount,
                kind="flat",
            )],
        )

    def _auto_send(self, rule_id: int | None) -> bool:
        with db.get_db(self.db_path) as conn:
            rule = db.get_rule(conn, rule_id) if rule_id is not None else None
        return bool(rule and rule.auto_send)

    def _send(self, invoice: db.Invoice, now: datetime) -> None:
        """Auto-send a generated invoice. A delivery failure leaves it as a draft."""
        try:
            with db.get_db(self.db_path) as conn:
                invoices.send_invoice(conn, invoice.id, delivery=self.delivery, now=now)
        except Exception as e:
            logger.error("Auto-send of invoice %s failed: %s", invoice.invoice_number, e)

    def retry_failed_jobs(self, now: datetime | None = None) -> list[db.ScheduledJob]:
        """Requeue failed jobs that have attempts left, then process them."""
        with db.get_db(self.db_path) as conn:
            reset_ids = db.reset_failed_jobs(conn, self.config.scheduler.max_attempts)
        if not reset_ids:
            return []
        logger.info("Retrying %d failed job(s)", len(reset_ids))
        return self.process_scheduled_jobs(now)

    def reset_job(self, job_id: int) -> db.ScheduledJob:
        """Manually requeue a failed job with a fresh attempt budget."""
        with db.get_db(self.db_path) as conn:
            job = db.get_job(conn, job_id)
            if job is None:
                raise SchedulerError(f"Job {job_id} not found")
            if not db.reset_job(conn, job_id):
                raise SchedulerError(f"Job {job_id} is {job.status}, only failed jobs can be reset")
            job = db.get_job(conn, job_id)
        logger.info("Reset job %d to pending", job_id)
        return job

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_jobs(self, status: str | None = None, rule_id: int | None = None) -> list[db.ScheduledJob]:
        with db.get_db(self.db_path) as conn:
            return db.list_jobs(conn, status=status, rule_id=rule_id)

    def get_upcoming_invoices(self, days: int | None = None, now: datetime | None = None) -> list[dict]:
        """Active rules coming due within the next `days` days."""
        now = _now(now)
        days = days if days is not None else self.config.scheduler.upcoming_days
        horizon = now + timedelta(days=days)
        upcoming = []
        for rule in self.list_rules(active_only=True):
            if rule.next_due > horizon:
                continue
            if rule.end_date is not None and rule.next_due > rule.end_date:
                continue
            upcoming.append({
                "rule_id": rule.id,
                "name": rule.name,
                "client_id": rule.client_id,
                "project_id": rule.project_id,
                "amount": rule.amount,
                "currency": rule.currency,
                "frequency": rule.frequency,
                "next_due": rule.next_due.isoformat(),
                "billing_model": (rule.billing_model or {}).get("type"),
            })
        upcoming.sort(key=lambda r: r["next_due"])
        return upcoming

    def get_job_statistics(self) -> dict:
        max_attempts = self.config.scheduler.max_attempts
        with db.get_db(self.db_path) as conn:
            counts = db.count_jobs_by_status(conn)
            exhausted = sum(
                1 for j in db.list_jobs(conn, status="failed") if j.attempts >= max_attempts
            )
            rules = db.list_rules(conn)

        total = sum(counts.values())
        completed = counts.get("completed", 0)
        failed = counts.get("failed", 0)
        finished = completed + failed
        return {
            "total_jobs": total,
            "pending": counts.get("pending", 0),
            "processing": counts.get("processing", 0),
            "completed": completed,
            "failed": failed,
            "exhausted": exhausted,
            "success_rate": round(completed / finished * 100, 1) if finished else 0.0,
            "active_rules": sum(1 for r in rules if r.is_active),
            "total_rules": len(rules),
        }

    # ------------------------------------------------------------------
    # Host entry points
    # ------------------------------------------------------------------

    def run_pass(self, now: datetime | None = None) -> dict:
        """One scheduler cycle: process due jobs, then flag overdue invoices."""
        jobs = self.process_scheduled_jobs(now)
        with db.get_db(self.db_path) as conn:
            overdue = invoices.mark_overdue_invoices(conn, now)
        return {
            "jobs_completed": sum(1 for j in jobs if j.status == "completed"),
            "jobs_failed": sum(1 for j in jobs if j.status == "failed"),
            "invoices_overdue": len(overdue),
        }

    def start_scheduler(self, interval_minutes: int | None = None) -> None:
        """Poll in a background thread until stop_scheduler is called."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Scheduler thread already running")
            return
        interval = interval_minutes or self.config.scheduler.interval_minutes
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop, args=(interval * 60,), daemon=True, name="invoice-scheduler",
        )
        self._thread.start()
        logger.info("Scheduler started (every %d min)", interval)

    def stop_scheduler(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Scheduler stopped")

    def _poll_loop(self, interval_seconds: float) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_pass()
            except Exception as e:
                logger.error("Error processing scheduled invoices: %s", e)
            self._stop_event.wait(interval_seconds)


def _signal_handler(signum, frame):
    """Handle shutdown signals."""
    global _shutdown_requested
    logger.info("Received signal %d, shutting down gracefully...", signum)
    _shutdown_requested = True


def run_daemon(config: Config, delivery: invoices.DeliveryHook | None = None) -> None:
    """
    Run the invoice scheduler as a daemon (continuous loop).
    Handles graceful shutdown via SIGTERM/SIGINT.
    """
    global _shutdown_requested
    _shutdown_requested = False

    # Acquire exclusive lock to prevent multiple daemon instances
    lock_path = config.scheduler.lock_path
    lock_file = open(lock_path, "w")
    try:
        fcntl.flock(lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        logger.error("Another scheduler daemon is already running. Exiting.")
        lock_file.close()
        return

    # Write PID to lock file for debugging
    lock_file.write(str(os.getpid()))
    lock_file.flush()

    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)

    logger.info("STARTUP Invoice scheduler daemon starting (pid: %d)", os.getpid())
    logger.info("STARTUP Database: %s", config.db_path)
    logger.info("STARTUP Poll interval: %d min", config.scheduler.interval_minutes)
    logger.info("STARTUP Max attempts: %d", config.scheduler.max_attempts)
    logger.info("STARTUP Stale processing timeout: %d min", config.scheduler.stale_processing_minutes)
    logger.info("STARTUP Default tax rate: %.2f", config.billing.tax_rate)

    scheduler = InvoiceScheduler(config, delivery=delivery)
    interval_seconds = config.scheduler.interval_minutes * 60
    last_pass = 0.0

    try:
        while not _shutdown_requested:
            now = time.time()
            if now - last_pass >= interval_seconds:
                try:
                    results = scheduler.run_pass()
                    if any(results.values()):
                        logger.info(
                            "Invoice scheduler: %d completed, %d failed, %d overdue",
                            results["jobs_completed"], results["jobs_failed"],
                            results["invoices_overdue"],
                        )
                except Exception as e:
                    logger.error("Error running scheduled invoices: %s", e)
                last_pass = now
            time.sleep(_DAEMON_TICK_SECONDS)
    finally:
        fcntl.flock(lock_file, fcntl.LOCK_UN)
        lock_file.close()

    logger.info("Shutdown complete.")
