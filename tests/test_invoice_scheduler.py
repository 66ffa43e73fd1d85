"""Tests for invoice_scheduler.py module."""

import threading
from datetime import date, datetime
from unittest.mock import MagicMock, patch

import pytest

from tally import db
from tally.billing import InvalidBillingModel
from tally.invoice_scheduler import InvoiceScheduler, RuleNotFound, SchedulerError


FEB_1 = datetime(2024, 2, 1)


@pytest.fixture
def scheduler(seeded_db, make_config):
    return InvoiceScheduler(make_config())


def _monthly_rule(scheduler, **overrides):
    kwargs = {
        "client_id": "acme",
        "name": "Hosting",
        "frequency": "monthly",
        "start_date": datetime(2024, 1, 1),
        "amount": 100.0,
        "day_of_month": 1,
    }
    kwargs.update(overrides)
    return scheduler.create_rule(**kwargs)


def _invoices(db_path):
    with db.get_db(db_path) as conn:
        return db.list_invoices(conn)


class TestCreateRule:
    def test_schedules_first_job(self, scheduler):
        rule = _monthly_rule(scheduler)
        assert rule.next_due == FEB_1
        assert rule.currency == "USD"
        jobs = scheduler.list_jobs(rule_id=rule.id)
        assert [(j.status, j.scheduled_for) for j in jobs] == [("pending", FEB_1)]

    def test_unknown_client(self, scheduler):
        with pytest.raises(ValueError, match="not found"):
            _monthly_rule(scheduler, client_id="nobody")

    def test_flat_rule_needs_amount(self, scheduler):
        with pytest.raises(ValueError):
            _monthly_rule(scheduler, amount=0)

    def test_model_needs_project(self, scheduler):
        with pytest.raises(InvalidBillingModel):
            _monthly_rule(scheduler, amount=0, billing_model={"type": "hourly"})

    def test_invalid_model_rejected(self, scheduler):
        with pytest.raises(InvalidBillingModel):
            _monthly_rule(scheduler, project_id="web", billing_model={"type": "hourly", "retainer_amount": 5})

    def test_day_of_week_only_for_weekly(self, scheduler):
        with pytest.raises(ValueError):
            _monthly_rule(scheduler, day_of_month=None, day_of_week=1)

    def test_end_date_must_follow_start(self, scheduler):
        with pytest.raises(ValueError):
            _monthly_rule(scheduler, end_date=datetime(2023, 12, 1))

    def test_plain_dates_accepted(self, scheduler):
        rule = _monthly_rule(scheduler, start_date=date(2024, 1, 1))
        assert rule.start_date == datetime(2024, 1, 1)
        assert rule.next_due == FEB_1


class TestProcessScheduledJobs:
    def test_monthly_cycle(self, scheduler, seeded_db):
        rule = _monthly_rule(scheduler)

        jobs = scheduler.process_scheduled_jobs(FEB_1)
        assert [j.status for j in jobs] == ["completed"]
        invoices = _invoices(seeded_db)
        assert len(invoices) == 1
        invoice = invoices[0]
        assert invoice.amount == 100
        assert invoice.tax_amount == 10
        assert invoice.total == 110
        assert invoice.rule_id == rule.id
        assert invoice.billing_type == "recurring"
        assert invoice.notes == "Hosting - February 2024"
        assert invoice.due_date == date(2024, 3, 2)
        assert jobs[0].invoice_id == invoice.id

        rule = scheduler.get_rule(rule.id)
        assert rule.last_generated == FEB_1
        assert rule.next_due == datetime(2024, 3, 1)
        pending = scheduler.list_jobs(status="pending")
        assert [j.scheduled_for for j in pending] == [datetime(2024, 3, 1)]

        # Nothing more is due until March
        assert scheduler.process_scheduled_jobs(datetime(2024, 2, 15)) == []
        jobs = scheduler.process_scheduled_jobs(datetime(2024, 3, 1))
        assert [j.status for j in jobs] == ["completed"]
        assert scheduler.get_rule(rule.id).next_due == datetime(2024, 4, 1)
        assert len(_invoices(seeded_db)) == 2

    def test_nothing_due_yet(self, scheduler, seeded_db):
        _monthly_rule(scheduler)
        assert scheduler.process_scheduled_jobs(datetime(2024, 1, 20)) == []
        assert _invoices(seeded_db) == []

    def test_rule_tax_and_terms(self, scheduler, seeded_db):
        _monthly_rule(scheduler, tax_rate=0.2, template={"payment_terms_days": 14})
        scheduler.process_scheduled_jobs(FEB_1)
        invoice = _invoices(seeded_db)[0]
        assert invoice.tax_amount == 20
        assert invoice.due_date == date(2024, 2, 15)

    def test_end_date_stops_scheduling(self, scheduler):
        rule = _monthly_rule(scheduler, end_date=datetime(2024, 2, 15))
        scheduler.process_scheduled_jobs(FEB_1)
        assert scheduler.list_jobs(rule_id=rule.id, status="pending") == []

    def test_last_job_on_end_date_runs_late(self, scheduler, seeded_db):
        rule = _monthly_rule(scheduler, end_date=FEB_1)

        jobs = scheduler.process_scheduled_jobs(datetime(2024, 2, 1, 0, 30))
        assert [j.status for j in jobs] == ["completed"]
        assert len(_invoices(seeded_db)) == 1
        assert scheduler.list_jobs(rule_id=rule.id, status="pending") == []

    @patch("tally.invoice_scheduler.notify_failed_jobs")
    def test_inactive_rule_fails_pending_job(self, mock_notify, scheduler, seeded_db):
        rule = _monthly_rule(scheduler)
        scheduler.deactivate_rule(rule.id)

        jobs = scheduler.process_scheduled_jobs(FEB_1)
        assert len(jobs) == 1
        assert jobs[0].status == "failed"
        assert jobs[0].error_message == f"Rule {rule.id} is not active"
        assert _invoices(seeded_db) == []
        assert scheduler.get_rule(rule.id).next_due == FEB_1
        mock_notify.assert_called_once()
        assert [j.id for j in mock_notify.call_args[0][1]] == [jobs[0].id]

    @patch("tally.invoice_scheduler.notify_failed_jobs")
    def test_failed_job_does_not_advance_rule(self, mock_notify, scheduler, seeded_db):
        rule = _monthly_rule(scheduler, amount=0, project_id="web", billing_model={"type": "hourly"})

        jobs = scheduler.process_scheduled_jobs(FEB_1)
        assert jobs[0].status == "failed"
        assert jobs[0].attempts == 1
        assert "No billable" in jobs[0].error_message
        rule = scheduler.get_rule(rule.id)
        assert rule.next_due == FEB_1
        assert rule.last_generated is None

    @patch("tally.invoice_scheduler.notify_failed_jobs")
    def test_retry_until_exhausted_then_reset(self, mock_notify, scheduler, seeded_db):
        rule = _monthly_rule(scheduler, amount=0, project_id="web", billing_model={"type": "hourly"})

        scheduler.process_scheduled_jobs(FEB_1)
        assert [j.attempts for j in scheduler.retry_failed_jobs(FEB_1)] == [2]
        assert [j.attempts for j in scheduler.retry_failed_jobs(FEB_1)] == [3]
        # Out of attempts: retry leaves it alone
        assert scheduler.retry_failed_jobs(FEB_1) == []

        (job,) = scheduler.list_jobs(rule_id=rule.id)
        assert job.status == "failed"
        assert job.attempts == 3
        assert scheduler.get_job_statistics()["exhausted"] == 1

        with db.get_db(seeded_db) as conn:
            db.add_time_entry(conn, "web", "alice", 10, 100, date(2024, 1, 15))

        reset = scheduler.reset_job(job.id)
        assert reset.status == "pending"
        assert reset.attempts == 0

        jobs = scheduler.process_scheduled_jobs(FEB_1)
        assert [j.status for j in jobs] == ["completed"]
        invoice = _invoices(seeded_db)[0]
        assert invoice.amount == 1000
        assert invoice.billing_type == "hourly"
        assert scheduler.get_rule(rule.id).next_due == datetime(2024, 3, 1)

    @patch("tally.invoice_scheduler.notify_failed_jobs")
    def test_retry_skips_jobs_of_deleted_rules(self, mock_notify, scheduler):
        rule = _monthly_rule(scheduler, amount=0, project_id="web", billing_model={"type": "hourly"})
        scheduler.process_scheduled_jobs(FEB_1)
        scheduler.delete_rule(rule.id)

        assert scheduler.retry_failed_jobs(FEB_1) == []
        (job,) = scheduler.list_jobs()
        assert job.rule_id is None
        assert job.status == "failed"
        assert job.attempts == 1

    def test_reset_only_failed_jobs(self, scheduler):
        rule = _monthly_rule(scheduler)
        (job,) = scheduler.list_jobs(rule_id=rule.id)
        with pytest.raises(SchedulerError):
            scheduler.reset_job(job.id)
        with pytest.raises(SchedulerError):
            scheduler.reset_job(999)

    def test_busy_rule_is_skipped(self, scheduler):
        rule = _monthly_rule(scheduler)
        lock = scheduler._rule_lock(rule.id)
        lock.acquire()
        try:
            assert scheduler.process_scheduled_jobs(FEB_1) == []
        finally:
            lock.release()
        (job,) = scheduler.list_jobs(rule_id=rule.id)
        assert job.status == "pending"
        assert job.attempts == 0


class TestAutoSend:
    def test_sends_generated_invoice(self, seeded_db, make_config):
        delivery = MagicMock()
        scheduler = InvoiceScheduler(make_config(), delivery=delivery)
        _monthly_rule(scheduler, auto_send=True)

        scheduler.process_scheduled_jobs(FEB_1)
        invoice = _invoices(seeded_db)[0]
        assert invoice.status == "sent"
        delivery.assert_called_once()
        assert delivery.call_args[0][0]["invoice_number"] == invoice.invoice_number

    def test_delivery_failure_keeps_draft_and_completes_job(self, seeded_db, make_config):
        delivery = MagicMock(side_effect=RuntimeError("mail server down"))
        scheduler = InvoiceScheduler(make_config(), delivery=delivery)
        _monthly_rule(scheduler, auto_send=True)

        jobs = scheduler.process_scheduled_jobs(FEB_1)
        assert jobs[0].status == "completed"
        assert _invoices(seeded_db)[0].status == "draft"

    def test_no_auto_send_leaves_draft(self, seeded_db, make_config):
        delivery = MagicMock()
        scheduler = InvoiceScheduler(make_config(), delivery=delivery)
        _monthly_rule(scheduler)
        scheduler.process_scheduled_jobs(FEB_1)
        delivery.assert_not_called()
        assert _invoices(seeded_db)[0].status == "draft"


class TestRuleLifecycle:
    def test_update_timing_moves_pending_job(self, scheduler):
        rule = _monthly_rule(scheduler)
        updated = scheduler.update_rule(rule.id, day_of_month=15)
        assert updated.next_due == datetime(2024, 2, 15)
        pending = scheduler.list_jobs(rule_id=rule.id, status="pending")
        assert [j.scheduled_for for j in pending] == [datetime(2024, 2, 15)]

    def test_update_after_generation_uses_last_generated(self, scheduler):
        rule = _monthly_rule(scheduler)
        scheduler.process_scheduled_jobs(FEB_1)
        updated = scheduler.update_rule(rule.id, frequency="quarterly")
        assert updated.next_due == datetime(2024, 5, 1)
        pending = scheduler.list_jobs(rule_id=rule.id, status="pending")
        assert [j.scheduled_for for j in pending] == [datetime(2024, 5, 1)]

    def test_update_non_timing_keeps_schedule(self, scheduler):
        rule = _monthly_rule(scheduler)
        (before,) = scheduler.list_jobs(rule_id=rule.id)
        updated = scheduler.update_rule(rule.id, name="Managed hosting", amount=150)
        assert updated.name == "Managed hosting"
        assert updated.amount == 150
        (after,) = scheduler.list_jobs(rule_id=rule.id)
        assert after.id == before.id

    def test_update_rejects_unknown_fields(self, scheduler):
        rule = _monthly_rule(scheduler)
        with pytest.raises(ValueError):
            scheduler.update_rule(rule.id, next_due=datetime(2030, 1, 1))

    def test_update_missing_rule(self, scheduler):
        with pytest.raises(RuleNotFound):
            scheduler.update_rule(42, name="x")

    def test_activate_schedules_when_no_open_job(self, scheduler):
        rule = _monthly_rule(scheduler)
        scheduler.deactivate_rule(rule.id)
        assert len(scheduler.list_jobs(rule_id=rule.id, status="pending")) == 1

        scheduler.activate_rule(rule.id)
        assert len(scheduler.list_jobs(rule_id=rule.id, status="pending")) == 1

    @patch("tally.invoice_scheduler.notify_failed_jobs")
    def test_activate_after_failed_job_does_not_duplicate(self, mock_notify, scheduler):
        rule = _monthly_rule(scheduler)
        scheduler.deactivate_rule(rule.id)
        scheduler.process_scheduled_jobs(FEB_1)

        scheduler.activate_rule(rule.id)
        assert scheduler.list_jobs(rule_id=rule.id, status="pending") == []
        assert scheduler.get_rule(rule.id).is_active is True
        # The failed job carries the period once it is retried
        jobs = scheduler.retry_failed_jobs(FEB_1)
        assert [j.status for j in jobs] == ["completed"]

    def test_delete_cancels_pending_and_keeps_history(self, scheduler):
        rule = _monthly_rule(scheduler)
        scheduler.process_scheduled_jobs(FEB_1)

        assert scheduler.delete_rule(rule.id) == 1
        with pytest.raises(RuleNotFound):
            scheduler.get_rule(rule.id)
        jobs = scheduler.list_jobs()
        assert [(j.status, j.rule_id) for j in jobs] == [("completed", None)]

    def test_delete_missing_rule(self, scheduler):
        with pytest.raises(RuleNotFound):
            scheduler.delete_rule(42)


class TestQueries:
    def test_upcoming_invoices(self, scheduler):
        soon = _monthly_rule(scheduler)
        _monthly_rule(scheduler, name="Annual licence", frequency="yearly", day_of_month=None)
        paused = _monthly_rule(scheduler, name="Paused")
        scheduler.deactivate_rule(paused.id)

        upcoming = scheduler.get_upcoming_invoices(days=30, now=datetime(2024, 1, 15))
        assert [u["rule_id"] for u in upcoming] == [soon.id]
        assert upcoming[0]["next_due"] == "2024-02-01T00:00:00"
        assert upcoming[0]["amount"] == 100
        assert upcoming[0]["billing_model"] is None

    def test_job_statistics(self, scheduler):
        _monthly_rule(scheduler)
        scheduler.process_scheduled_jobs(FEB_1)
        stats = scheduler.get_job_statistics()
        assert stats["total_jobs"] == 2
        assert stats["completed"] == 1
        assert stats["pending"] == 1
        assert stats["failed"] == 0
        assert stats["success_rate"] == 100.0
        assert stats["active_rules"] == 1
        assert stats["total_rules"] == 1

    def test_run_pass(self, scheduler):
        _monthly_rule(scheduler)
        results = scheduler.run_pass(FEB_1)
        assert results == {"jobs_completed": 1, "jobs_failed": 0, "invoices_overdue": 0}


class TestBackgroundThread:
    def test_start_and_stop(self, scheduler):
        ran = threading.Event()
        with patch.object(scheduler, "run_pass", side_effect=lambda: ran.set()):
            scheduler.start_scheduler(interval_minutes=60)
            assert ran.wait(5)
            scheduler.stop_scheduler(timeout=5)
        assert scheduler._thread is None
