"""
Integration tests for the Microlending API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from microlending.api import create_app
from microlending.api.auth import LendingSystem, get_lending_system
from microlending.config import LendingConfig


FLAT_LOAN = {
    "client_id": "CLIENT001",
    "principal_amount": "5000.00",
    "structure": "FLAT_RATE",
    "payment_frequency": "WEEKLY",
    "term_count": 4,
    "created_by_id": "officer-1",
    "total_finance_charge": "500.00",
    "start_date": "2024-01-01",
}


@pytest.fixture
def system():
    """In-memory lending system with a late fee of 1% per day after 3 days"""
    settings = LendingConfig(
        _env_file=None,
        database_url="memory://",
        cron_secret="s3cret",
        late_fee_value="1",
        grace_period_days=3,
    )
    system = LendingSystem(settings=settings)
    yield system
    system.close()


@pytest.fixture
def client(system):
    """Create a test client wired to the test lending system"""
    app = create_app()
    app.dependency_overrides[get_lending_system] = lambda: system
    return TestClient(app)


def create_loan(client, **overrides):
    r = client.post("/loans", json={**FLAT_LOAN, **overrides})
    assert r.status_code == 201
    return r.json()["loan"]


class TestHealthEndpoints:
    """Test basic health endpoint"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"


class TestLoanEndpoints:
    """Test loan origination and reads"""

    def test_create_loan_returns_schedule(self, client):
        r = client.post("/loans", json=FLAT_LOAN)
        assert r.status_code == 201
        data = r.json()

        assert data["loan"]["installment_amount"] == "1375.00"
        assert data["loan"]["status"] == "ACTIVE"
        assert [row["due_date"] for row in data["schedule"]] == [
            "2024-01-08", "2024-01-15", "2024-01-22", "2024-01-29"
        ]

    def test_invalid_terms(self, client):
        r = client.post("/loans", json={**FLAT_LOAN, "principal_amount": "abc"})
        assert r.status_code == 400
        assert r.json()["error"] == "INVALID_LOAN_TERMS"

    def test_flat_loan_without_charge(self, client):
        payload = {k: v for k, v in FLAT_LOAN.items() if k != "total_finance_charge"}
        r = client.post("/loans", json=payload)
        assert r.status_code == 400
        assert r.json()["error"] == "INVALID_LOAN_TERMS"

    def test_get_loan_and_tables(self, client):
        loan = create_loan(client)

        r = client.get(f"/loans/{loan['id']}")
        assert r.status_code == 200
        assert r.json()["remaining_capital"] == "5000.00"

        r = client.get(f"/loans/{loan['id']}/amortization")
        table = r.json()["amortization"]
        assert len(table) == 4
        assert table[-1]["balance"] == "0.00"
        assert r.json()["installment_amount"] == "1375.00"
        assert r.json()["effective_rate"] == "10.0000"

        r = client.get(f"/loans/{loan['id']}/schedule")
        assert all(row["status"] == "PENDING" for row in r.json()["schedule"])

    def test_unknown_loan(self, client):
        r = client.get("/loans/missing")
        assert r.status_code == 404
        assert r.json()["error"] == "LOAN_NOT_FOUND"

    def test_list_by_status(self, client):
        loan = create_loan(client)
        create_loan(client, client_id="CLIENT002")
        client.post(f"/loans/{loan['id']}/cancel", json={"canceled_by_id": "manager-1"})

        r = client.get("/loans", params={"status": "CANCELED"})
        assert r.json()["total_count"] == 1
        assert r.json()["loans"][0]["id"] == loan["id"]

        r = client.get("/loans")
        assert r.json()["total_count"] == 2

    def test_cancel_twice(self, client):
        loan = create_loan(client)

        r = client.post(f"/loans/{loan['id']}/cancel",
                        json={"canceled_by_id": "manager-1", "reason": "fraud"})
        assert r.status_code == 200
        assert r.json()["loan"]["status"] == "CANCELED"

        r = client.post(f"/loans/{loan['id']}/cancel", json={"canceled_by_id": "manager-1"})
        assert r.status_code == 400
        assert r.json()["error"] == "PAYMENT_NOT_ALLOWED"

    def test_mark_overdue(self, client):
        loan = create_loan(client)
        action = {"action": "mark_overdue", "user_id": "manager-1", "reason": "no contact"}

        r = client.patch(f"/loans/{loan['id']}", json=action)
        assert r.status_code == 200
        assert r.json()["loan"]["status"] == "OVERDUE"

        r = client.patch(f"/loans/{loan['id']}", json=action)
        assert r.status_code == 400
        assert r.json()["error"] == "INVALID_STATUS_TRANSITION"

        r = client.patch("/loans/missing", json=action)
        assert r.status_code == 404

    def test_unsupported_loan_action(self, client):
        loan = create_loan(client)

        r = client.patch(f"/loans/{loan['id']}",
                         json={"action": "write_off", "user_id": "manager-1"})
        assert r.status_code == 422
        assert client.get(f"/loans/{loan['id']}").json()["status"] == "ACTIVE"


class TestPaymentEndpoints:
    """Test payment registration, preview and reversal"""

    def pay(self, client, loan_id, amount, **extra):
        payload = {
            "loan_id": loan_id,
            "total_amount": amount,
            "created_by_id": "cashier-1",
            "payment_date": "2024-01-08",
        }
        payload.update(extra)
        return client.post("/payments", json=payload)

    def test_register_payment(self, client):
        loan = create_loan(client)

        r = self.pay(client, loan["id"], "1375.00")
        assert r.status_code == 201
        data = r.json()
        assert data["payment"]["capital_applied"] == "1250.00"
        assert data["payment"]["interest_applied"] == "125.00"
        assert data["loan"]["remaining_capital"] == "3750.00"
        assert data["allocation"]["status_changed"] is False

        r = client.get(f"/payments/{data['payment']['id']}")
        assert r.status_code == 200

        r = client.get(f"/loans/{loan['id']}/summary")
        assert r.json()["progress_percentage"] == "25.00"
        assert r.json()["payment_count"] == 1
        assert r.json()["currency_code"] == "DOP"
        assert r.json()["display"]["remaining_capital"] == "DOP 3,750.00"

    def test_late_payment_through_api(self, client):
        loan = create_loan(client)

        r = self.pay(client, loan["id"], "1402.50", payment_date="2024-01-13")
        data = r.json()
        assert data["payment"]["late_fee_applied"] == "27.50"
        assert data["allocation"]["previous_status"] == "OVERDUE"
        assert data["loan"]["status"] == "ACTIVE"

    def test_explicit_components(self, client):
        loan = create_loan(client)

        r = self.pay(client, loan["id"], "1000.00",
                     capital_applied="500.00", interest_applied="100.00")
        assert r.status_code == 400
        assert r.json()["error"] == "INVALID_PAYMENT_AMOUNT"

        r = self.pay(client, loan["id"], "600.00",
                     capital_applied="500.00", interest_applied="100.00")
        assert r.status_code == 201
        assert r.json()["loan"]["remaining_capital"] == "4500.00"

    def test_invalid_amounts(self, client):
        loan = create_loan(client)

        for amount in ("0", "-5", "12.345", "ten"):
            r = self.pay(client, loan["id"], amount)
            assert r.status_code == 400
            assert r.json()["error"] == "INVALID_PAYMENT_AMOUNT"

        assert client.get(f"/loans/{loan['id']}/payments").json()["payments"] == []

    def test_preview_records_nothing(self, client):
        loan = create_loan(client)

        r = client.post("/payments/preview", json={
            "loan_id": loan["id"], "total_amount": "6000.00",
            "created_by_id": "cashier-1", "payment_date": "2024-01-05",
        })
        assert r.status_code == 200
        assert r.json()["excess"] == "500.00"
        assert r.json()["new_status"] == "PAID"
        assert client.get(f"/loans/{loan['id']}/payments").json()["payments"] == []

    def test_reverse_payment(self, client):
        loan = create_loan(client)
        payment = self.pay(client, loan["id"], "1375.00").json()["payment"]

        r = client.post(f"/payments/{payment['id']}/reverse",
                        json={"reversed_by_id": "supervisor-1", "reason": "bounced"})
        assert r.status_code == 201
        data = r.json()
        assert data["payment"]["total_amount"] == "-1375.00"
        assert data["payment"]["reverses_payment_id"] == payment["id"]
        assert data["loan"]["remaining_capital"] == "5000.00"

        r = client.post(f"/payments/{payment['id']}/reverse",
                        json={"reversed_by_id": "supervisor-1"})
        assert r.status_code == 400
        assert r.json()["error"] == "CANNOT_REVERSE_PAYMENT"

    def test_payments_of_the_day(self, client):
        loan = create_loan(client)
        self.pay(client, loan["id"], "1375.00")
        self.pay(client, loan["id"], "1375.00", payment_date="2024-01-15")

        r = client.get("/payments/today", params={"payment_date": "2024-01-08"})
        assert r.status_code == 200
        assert r.json()["total_count"] == 1
        assert r.json()["payments"][0]["payment_date"] == "2024-01-08"

        r = client.get("/payments/today")
        assert r.status_code == 200
        assert r.json()["total_count"] == 0

    def test_reverse_unknown_payment(self, client):
        r = client.post("/payments/missing/reverse", json={"reversed_by_id": "supervisor-1"})
        assert r.status_code == 404
        assert r.json()["error"] == "PAYMENT_NOT_FOUND"


class TestCronEndpoints:
    """Test the overdue sweep trigger"""

    def test_requires_secret(self, client):
        assert client.get("/cron/process-overdue").status_code == 401
        r = client.get("/cron/process-overdue", headers={"Authorization": "Bearer wrong"})
        assert r.status_code == 401

    def test_disabled_without_secret(self, system):
        system.config = LendingConfig(_env_file=None, database_url="memory://", cron_secret="")
        app = create_app()
        app.dependency_overrides[get_lending_system] = lambda: system

        r = TestClient(app).get("/cron/process-overdue",
                                headers={"Authorization": "Bearer "})
        assert r.status_code == 503

    def test_process_overdue(self, client):
        loan = create_loan(client)
        headers = {"Authorization": "Bearer s3cret"}

        r = client.get("/cron/process-overdue", headers=headers)
        assert r.status_code == 200
        data = r.json()
        # Every installment of a 2024 loan is past due, plus the loan itself
        assert data["affected"] == 5
        assert data["success"] is True

        assert client.get(f"/loans/{loan['id']}").json()["status"] == "OVERDUE"
        overdue = client.get("/loans/overdue").json()
        assert [l["id"] for l in overdue["loans"]] == [loan["id"]]

        r = client.get("/cron/process-overdue", headers=headers)
        assert r.json()["affected"] == 0
