"""Tests for tally.db persistence helpers."""

import sqlite3
from datetime import date, datetime, timedelta, timezone

import pytest

from tally import db


NOW = datetime(2024, 2, 1, 9, 0)


def _make_rule(conn, **overrides) -> int:
    fields = {
        "client_id": "acme",
        "name": "Hosting",
        "amount": 100.0,
        "frequency": "monthly",
        "start_date": datetime(2024, 1, 1),
        "next_due": datetime(2024, 2, 1),
    }
    fields.update(overrides)
    return db.insert_rule(conn, **fields)


class TestTimestamps:
    def test_aware_timestamps_normalize_to_utc(self):
        aware = datetime(2024, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
        assert db.to_db_timestamp(aware) == "2024-01-01T10:00:00"

    def test_naive_timestamp(self):
        assert db.to_db_timestamp(datetime(2024, 1, 1, 12, 0, 30, 999)) == "2024-01-01T12:00:30"

    def test_parse_round_trip(self):
        assert db.parse_timestamp("2024-01-01T10:00:00") == datetime(2024, 1, 1, 10, 0)
        assert db.parse_timestamp(None) is None

    def test_date_helpers(self):
        assert db.to_db_date(datetime(2024, 5, 6, 7, 8)) == "2024-05-06"
        assert db.parse_date("2024-05-06T07:08:00") == date(2024, 5, 6)


class TestTimeEntries:
    def test_rejects_non_positive_hours(self, seeded_conn):
        with pytest.raises(ValueError):
            db.add_time_entry(seeded_conn, "web", "alice", 0, 100, date(2024, 1, 5))

    def test_rejects_negative_rate(self, seeded_conn):
        with pytest.raises(ValueError):
            db.add_time_entry(seeded_conn, "web", "alice", 1, -1, date(2024, 1, 5))

    def test_list_filters(self, seeded_conn):
        db.add_time_entry(seeded_conn, "web", "alice", 2, 100, date(2024, 1, 5))
        db.add_time_entry(seeded_conn, "web", "alice", 3, 100, date(2024, 1, 20), billable=False)
        db.add_time_entry(seeded_conn, "web", "bob", 4, 80, date(2024, 2, 5))

        january = db.list_time_entries(seeded_conn, "web", start=date(2024, 1, 1), end=date(2024, 1, 31))
        assert [e.hours for e in january] == [2, 3]
        billable = db.list_time_entries(seeded_conn, "web", billable=True)
        assert [e.hours for e in billable] == [2, 4]
        assert billable[0].amount == 200

    def test_mark_invoiced_refuses_already_invoiced(self, seeded_conn):
        entry_id = db.add_time_entry(seeded_conn, "web", "alice", 2, 100, date(2024, 1, 5))
        invoice_id = db.insert_invoice(
            seeded_conn, "INV-A", "acme", "web", 200, 20, 220, "USD",
            date(2024, 2, 1), [], created_at=NOW,
        )
        db.mark_time_entries_invoiced(seeded_conn, [entry_id], invoice_id)
        with pytest.raises(db.PersistenceError, match="already invoiced"):
            db.mark_time_entries_invoiced(seeded_conn, [entry_id], invoice_id)


class TestTransaction:
    def test_commits_on_success(self, seeded_conn):
        with db.transaction(seeded_conn, "t1"):
            db.create_client(seeded_conn, "beta", "Beta Inc")
        assert db.client_exists(seeded_conn, "beta")

    def test_rolls_back_on_error(self, seeded_conn):
        with pytest.raises(RuntimeError):
            with db.transaction(seeded_conn, "t1"):
                db.create_client(seeded_conn, "beta", "Beta Inc")
                raise RuntimeError("boom")
        assert not db.client_exists(seeded_conn, "beta")

    def test_wraps_sqlite_errors(self, seeded_conn):
        with pytest.raises(db.PersistenceError):
            with db.transaction(seeded_conn, "t1"):
                db.create_client(seeded_conn, "beta", "Beta Inc")
                db.create_client(seeded_conn, "beta", "Beta again")
        assert not db.client_exists(seeded_conn, "beta")

    def test_nested_rollback_keeps_outer_work(self, seeded_conn):
        with db.transaction(seeded_conn, "outer"):
            db.create_client(seeded_conn, "beta", "Beta Inc")
            with pytest.raises(RuntimeError):
                with db.transaction(seeded_conn, "inner"):
                    db.create_client(seeded_conn, "gamma", "Gamma Ltd")
                    raise RuntimeError("inner failure")
        assert db.client_exists(seeded_conn, "beta")
        assert not db.client_exists(seeded_conn, "gamma")


class TestInvoiceNumbers:
    def test_unique_constraint(self, seeded_conn):
        db.insert_invoice(
            seeded_conn, "INV-DUP", "acme", None, 1, 0, 1, "USD", date(2024, 2, 1), [],
        )
        with pytest.raises(sqlite3.IntegrityError):
            db.insert_invoice(
                seeded_conn, "INV-DUP", "acme", None, 1, 0, 1, "USD", date(2024, 2, 1), [],
            )


class TestRules:
    def test_round_trip(self, seeded_conn):
        rule_id = _make_rule(
            seeded_conn,
            billing_model={"type": "hourly"},
            template={"payment_terms_days": 14},
            auto_send=True,
        )
        rule = db.get_rule(seeded_conn, rule_id)
        assert rule.frequency == "monthly"
        assert rule.start_date == datetime(2024, 1, 1)
        assert rule.next_due == datetime(2024, 2, 1)
        assert rule.billing_model == {"type": "hourly"}
        assert rule.template == {"payment_terms_days": 14}
        assert rule.auto_send is True
        assert rule.is_active is True
        assert rule.last_generated is None

    def test_rejects_unknown_fields(self, seeded_conn):
        with pytest.raises(ValueError, match="Unknown rule fields"):
            _make_rule(seeded_conn, color="blue")

    def test_update_fields(self, seeded_conn):
        rule_id = _make_rule(seeded_conn)
        db.update_rule_fields(seeded_conn, rule_id, is_active=False, last_generated=NOW)
        rule = db.get_rule(seeded_conn, rule_id)
        assert rule.is_active is False
        assert rule.last_generated == NOW


class TestJobClaims:
    def test_claim_marks_processing_and_counts_attempt(self, seeded_conn):
        rule_id = _make_rule(seeded_conn)
        job_id = db.insert_job(seeded_conn, rule_id, datetime(2024, 2, 1))

        job = db.claim_job(seeded_conn, job_id, NOW, max_attempts=3)
        assert job.status == "processing"
        assert job.attempts == 1
        assert job.started_at == "2024-02-01T09:00:00"

    def test_claim_is_exclusive(self, seeded_conn):
        rule_id = _make_rule(seeded_conn)
        job_id = db.insert_job(seeded_conn, rule_id, datetime(2024, 2, 1))
        assert db.claim_job(seeded_conn, job_id, NOW, 3) is not None
        assert db.claim_job(seeded_conn, job_id, NOW, 3) is None

    def test_claim_blocked_while_rule_has_processing_job(self, seeded_conn):
        rule_id = _make_rule(seeded_conn)
        first = db.insert_job(seeded_conn, rule_id, datetime(2024, 2, 1))
        second = db.insert_job(seeded_conn, rule_id, datetime(2024, 2, 1))
        assert db.claim_job(seeded_conn, first, NOW, 3) is not None
        assert db.claim_job(seeded_conn, second, NOW, 3) is None

    def test_claim_respects_max_attempts(self, seeded_conn):
        rule_id = _make_rule(seeded_conn)
        job_id = db.insert_job(seeded_conn, rule_id, datetime(2024, 2, 1))
        seeded_conn.execute("UPDATE scheduled_jobs SET attempts = 3 WHERE id = ?", (job_id,))
        assert db.claim_job(seeded_conn, job_id, NOW, 3) is None

    def test_due_jobs(self, seeded_conn):
        rule_id = _make_rule(seeded_conn)
        due = db.insert_job(seeded_conn, rule_id, datetime(2024, 2, 1))
        db.insert_job(seeded_conn, rule_id, datetime(2024, 3, 1))
        assert db.get_due_job_ids(seeded_conn, NOW, 3) == [due]

    def test_reset_failed_only_with_attempts_left(self, seeded_conn):
        rule_id = _make_rule(seeded_conn)
        retryable = db.insert_job(seeded_conn, rule_id, datetime(2024, 2, 1))
        exhausted = db.insert_job(seeded_conn, rule_id, datetime(2024, 2, 1))
        seeded_conn.execute(
            "UPDATE scheduled_jobs SET status = 'failed', attempts = 1 WHERE id = ?", (retryable,),
        )
        seeded_conn.execute(
            "UPDATE scheduled_jobs SET status = 'failed', attempts = 3 WHERE id = ?", (exhausted,),
        )
        assert db.reset_failed_jobs(seeded_conn, 3) == [retryable]
        assert db.get_job(seeded_conn, exhausted).status == "failed"

    def test_stale_processing_jobs_fail(self, seeded_conn):
        rule_id = _make_rule(seeded_conn)
        job_id = db.insert_job(seeded_conn, rule_id, datetime(2024, 2, 1))
        db.claim_job(seeded_conn, job_id, NOW, 3)

        assert db.fail_stale_processing_jobs(seeded_conn, NOW + timedelta(minutes=10), 30) == []
        assert db.fail_stale_processing_jobs(seeded_conn, NOW + timedelta(minutes=31), 30) == [job_id]
        job = db.get_job(seeded_conn, job_id)
        assert job.status == "failed"
        assert "stuck in processing" in job.error_message
