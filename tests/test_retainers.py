"""Tests for tally.retainers balance tracking."""

from datetime import date

import pytest

from tally import db
from tally.billing import BillingModel, NoActiveRetainer, resolve
from tally.invoices import create_invoice_from_result
from tally.retainers import record_usage, replenish, retainer_status


@pytest.fixture
def retainer_id(seeded_conn):
    return db.create_contract(seeded_conn, "web", "retainer", 2000, date(2024, 1, 1))


class TestRecordUsage:
    def test_decrements_balance(self, seeded_conn, retainer_id):
        usage = record_usage(seeded_conn, "web", 500, hours=5, description="Support", usage_date=date(2024, 1, 10))
        assert usage.remaining_balance == 1500
        assert usage.kind == "usage"
        assert db.get_contract(seeded_conn, retainer_id).balance == 1500

    def test_overdraw_allowed(self, seeded_conn, retainer_id):
        record_usage(seeded_conn, "web", 1500, usage_date=date(2024, 1, 10))
        usage = record_usage(seeded_conn, "web", 800, usage_date=date(2024, 1, 20))
        assert usage.remaining_balance == -300

    def test_rejects_non_positive_amount(self, seeded_conn, retainer_id):
        with pytest.raises(ValueError):
            record_usage(seeded_conn, "web", 0)

    def test_requires_active_retainer(self, seeded_conn):
        with pytest.raises(NoActiveRetainer):
            record_usage(seeded_conn, "web", 100)


class TestRetainerStatus:
    def test_reports_overage(self, seeded_conn, retainer_id):
        record_usage(seeded_conn, "web", 1500, hours=10, usage_date=date(2024, 1, 10))
        record_usage(seeded_conn, "web", 800, hours=4, usage_date=date(2024, 1, 20))

        status = retainer_status(seeded_conn, "web")
        assert status["retainer_id"] == retainer_id
        assert status["used_amount"] == 2300
        assert status["used_hours"] == 14
        assert status["remaining_balance"] == -300
        assert status["overage"] == 300
        assert status["utilization_rate"] == 115.0
        assert status["usage_count"] == 2

    def test_fresh_retainer(self, seeded_conn, retainer_id):
        status = retainer_status(seeded_conn, "web")
        assert status["remaining_balance"] == 2000
        assert status["overage"] == 0
        assert status["utilization_rate"] == 0


class TestReplenish:
    def test_invoice_resets_balance(self, seeded_conn, retainer_id):
        record_usage(seeded_conn, "web", 2300, usage_date=date(2024, 1, 10))
        result = resolve(seeded_conn, "web", BillingModel(type="retainer"))
        invoice = create_invoice_from_result(seeded_conn, result, "web", "acme", 0.1, 30)

        assert invoice.amount == 2000
        assert db.get_contract(seeded_conn, retainer_id).balance == 2000
        status = retainer_status(seeded_conn, "web")
        assert status["used_amount"] == 0
        assert status["usage_count"] == 0

        history = db.list_retainer_usage(seeded_conn, retainer_id)
        assert history[-1].kind == "replenishment"
        assert history[-1].invoice_id == invoice.id

    def test_inactive_retainer_cannot_be_replenished(self, seeded_conn, retainer_id):
        db.set_contract_active(seeded_conn, retainer_id, False)
        with pytest.raises(NoActiveRetainer):
            replenish(seeded_conn, retainer_id, invoice_id=1, on_date=date(2024, 2, 1))
