"""
Integration tests for the Member Loans API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from datetime import date
from fastapi.testclient import TestClient

from member_loans.api import app
from member_loans.api.system import LoanSystem, get_loan_system
from member_loans.config import MemberLoansConfig
from member_loans.notifications import NotificationGateway
from member_loans.storage import InMemoryStorage


TODAY = date(2024, 1, 15)


class RecordingGateway(NotificationGateway):
    def __init__(self):
        self.notices = []

    def send(self, notice):
        self.notices.append(notice)
        return True


@pytest.fixture
def system():
    """Loan system on in-memory storage with a fixed clock"""
    return LoanSystem(
        config=MemberLoansConfig(database_url="memory://"),
        storage=InMemoryStorage(),
        gateway=RecordingGateway(),
        clock=lambda: TODAY
    )


@pytest.fixture
def client(system):
    """Create a test client with the loan system dependency replaced"""
    app.dependency_overrides[get_loan_system] = lambda: system
    yield TestClient(app)
    app.dependency_overrides.clear()


def create_loan(client, borrower_id="MEM-001", principal="50000", **extra):
    r = client.post("/loans", json={"borrower_id": borrower_id, "principal": principal, **extra})
    assert r.status_code == 201, r.text
    return r.json()


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        """Health endpoint reports the service up"""
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_root(self, client):
        """Root endpoint describes the service"""
        r = client.get("/")
        assert r.status_code == 200
        data = r.json()
        assert data["name"] == "Member Loans API"
        assert "endpoints" in data


class TestLoanEndpoints:
    """End-to-end loan lifecycle"""

    def test_create_loan(self, client):
        """POST /loans returns the created loan with its total due"""
        data = create_loan(client, guarantor_id="MEM-002", notes="Fonds de roulement")

        assert data["status"] == "active"
        assert data["borrower_id"] == "MEM-001"
        assert data["guarantor_id"] == "MEM-002"
        assert data["principal"] == "50000.00"
        assert data["total_due"] == "52500.00"
        assert data["remaining_due"] == "52500.00"
        assert data["origination_date"] == "2024-01-15"
        assert data["due_date"] == "2024-03-15"

    def test_get_loan(self, client):
        """A created loan can be fetched by id"""
        loan = create_loan(client)

        r = client.get(f"/loans/{loan['id']}")
        assert r.status_code == 200
        assert r.json()["id"] == loan["id"]

    def test_unknown_loan_is_404(self, client):
        """Unknown loan ids map to 404"""
        r = client.get("/loans/does-not-exist")
        assert r.status_code == 404
        assert r.json()["error"] == "not_found"

    def test_second_loan_is_409(self, client):
        """A second open loan for one borrower maps to 409"""
        create_loan(client)

        r = client.post("/loans", json={"borrower_id": "MEM-001", "principal": "1000"})
        assert r.status_code == 409
        assert r.json()["error"] == "conflict"
        assert r.json()["detail"] == "this member already has an active loan"

    def test_guarantor_equals_borrower_is_400(self, client):
        """Borrower as own guarantor maps to 400"""
        r = client.post("/loans", json={
            "borrower_id": "MEM-001", "guarantor_id": "MEM-001", "principal": "1000"
        })
        assert r.status_code == 400
        assert r.json()["error"] == "validation_error"

    def test_invalid_principal_is_400(self, client):
        """A non-numeric principal maps to 400"""
        r = client.post("/loans", json={"borrower_id": "MEM-001", "principal": "abc"})
        assert r.status_code == 400

    @pytest.mark.parametrize("principal", ["0.001", "1e27"])
    def test_unusable_principal_is_400(self, client, principal):
        """Sub-cent and oversized principals map to 400 and store nothing"""
        r = client.post("/loans", json={"borrower_id": "MEM-001", "principal": principal})
        assert r.status_code == 400
        assert r.json()["error"] == "validation_error"
        assert client.get("/loans").json()["loans"] == []

    def test_missing_field_is_422(self, client):
        """Schema violations are left to FastAPI as 422"""
        r = client.post("/loans", json={"principal": "1000"})
        assert r.status_code == 422

    def test_list_loans(self, client):
        """Loans can be filtered by status and borrower"""
        first = create_loan(client, borrower_id="A")
        second = create_loan(client, borrower_id="B")
        client.post(f"/loans/{second['id']}/cancel", json={"reason": "duplicate"})

        r = client.get("/loans")
        assert len(r.json()["loans"]) == 2

        r = client.get("/loans", params={"status": "active"})
        assert [loan["id"] for loan in r.json()["loans"]] == [first["id"]]

        r = client.get("/loans", params={"borrower_id": "B"})
        assert r.json()["loans"][0]["status"] == "cancelled"

    def test_list_unknown_status_is_400(self, client):
        """An unknown status filter maps to 400"""
        r = client.get("/loans", params={"status": "lost"})
        assert r.status_code == 400


class TestPaymentEndpoints:
    """Repayment workflow"""

    def test_partial_then_full_payment(self, client):
        """Two payments take the loan through partial to settled"""
        loan = create_loan(client)

        r = client.post(f"/loans/{loan['id']}/payments", json={"amount": "20000", "mode": "mobile_money"})
        assert r.status_code == 201
        assert r.json()["status"] == "partial"
        assert r.json()["remaining_due"] == "32500.00"

        r = client.post(f"/loans/{loan['id']}/payments", json={"amount": "32500"})
        assert r.json()["status"] == "settled"

        r = client.get(f"/loans/{loan['id']}/payments")
        payments = r.json()["payments"]
        assert [p["amount"] for p in payments] == ["20000", "32500"]
        assert payments[0]["mode"] == "mobile_money"

    def test_overpayment_is_422(self, client):
        """Overpayment maps to 422 with the remaining due"""
        loan = create_loan(client)
        client.post(f"/loans/{loan['id']}/payments", json={"amount": "20000"})

        r = client.post(f"/loans/{loan['id']}/payments", json={"amount": "40000"})
        assert r.status_code == 422
        body = r.json()
        assert body["error"] == "overpayment"
        assert body["remaining_due"] == "32500.00"
        assert body["status"] == "partial"

    def test_zero_amount_is_400(self, client):
        """A zero payment maps to 400"""
        loan = create_loan(client)
        r = client.post(f"/loans/{loan['id']}/payments", json={"amount": "0"})
        assert r.status_code == 400

    def test_payment_on_settled_loan_is_409(self, client):
        """Paying a settled loan maps to 409"""
        loan = create_loan(client)
        client.post(f"/loans/{loan['id']}/settle")

        r = client.post(f"/loans/{loan['id']}/payments", json={"amount": "1"})
        assert r.status_code == 409
        assert r.json()["error"] == "invalid_state"

    def test_balance(self, client):
        """The balance endpoint reports paid and remaining amounts"""
        loan = create_loan(client)
        client.post(f"/loans/{loan['id']}/payments", json={"amount": "2500"})

        r = client.get(f"/loans/{loan['id']}/balance")
        assert r.status_code == 200
        assert r.json() == {
            "loan_id": loan["id"],
            "status": "partial",
            "total_due": "52500.00",
            "total_paid": "2500",
            "remaining_due": "50000.00",
            "due_date": "2024-03-15",
            "reconduction_count": 0
        }


class TestLifecycleEndpoints:
    """Settle, reconduct, cancel and the overdue scan"""

    def test_settle(self, client):
        """The settle endpoint closes the loan in one payment"""
        loan = create_loan(client)

        r = client.post(f"/loans/{loan['id']}/settle", json={"mode": "check"})
        assert r.status_code == 200
        assert r.json()["status"] == "settled"
        assert r.json()["remaining_due"] == "0.00"

    def test_reconduct(self, client):
        """The reconduct endpoint compounds interest and moves the due date"""
        loan = create_loan(client)

        r = client.post(f"/loans/{loan['id']}/reconduct")
        assert r.status_code == 200
        data = r.json()
        assert data["reconduction_count"] == 1
        assert data["total_due"] == "55125.00"
        assert data["due_date"] == "2024-05-15"

    def test_reconduct_with_earlier_date_is_400(self, client):
        """A reconduction date before the current due date maps to 400"""
        loan = create_loan(client)
        r = client.post(f"/loans/{loan['id']}/reconduct", json={"new_due_date": "2024-02-01"})
        assert r.status_code == 400

    def test_reconduct_settled_loan_is_409(self, client):
        """Reconducting a settled loan maps to 409"""
        loan = create_loan(client)
        client.post(f"/loans/{loan['id']}/settle")

        r = client.post(f"/loans/{loan['id']}/reconduct")
        assert r.status_code == 409
        assert r.json()["detail"] == "this loan is already settled"

    def test_cancel(self, client):
        """Cancelling frees the borrower for a new loan"""
        loan = create_loan(client)

        r = client.post(f"/loans/{loan['id']}/cancel", json={"reason": "Entered twice"})
        assert r.status_code == 200
        assert r.json()["status"] == "cancelled"
        assert r.json()["cancellation_reason"] == "Entered twice"

        # Borrower may borrow again
        create_loan(client)

    def test_cancel_twice_is_409(self, client):
        """A second cancel maps to 409 and keeps the first reason"""
        loan = create_loan(client)
        client.post(f"/loans/{loan['id']}/cancel", json={"reason": "Entered twice"})

        r = client.post(f"/loans/{loan['id']}/cancel", json={"reason": "Again"})
        assert r.status_code == 409
        assert r.json()["detail"] == "this loan is already cancelled"
        assert client.get(f"/loans/{loan['id']}").json()["cancellation_reason"] == "Entered twice"

    def test_overdue_scan(self, client, system):
        """The scan endpoint flags late loans and notifies once"""
        loan = create_loan(client, guarantor_id="MEM-002")

        r = client.post("/loans/overdue-scan", json={"as_of": "2024-03-16"})
        assert r.status_code == 200
        assert r.json() == {"marked_overdue": [loan["id"]], "count": 1}
        assert client.get(f"/loans/{loan['id']}").json()["status"] == "overdue"
        assert len(system.gateway.notices) == 1

        r = client.post("/loans/overdue-scan", json={"as_of": "2024-03-17"})
        assert r.json()["count"] == 0


class TestMemberAndReportEndpoints:
    """Member history and portfolio summary"""

    def test_member_history(self, client):
        """Member history lists loans borrowed and guaranteed"""
        own = create_loan(client, borrower_id="A")
        guaranteed = create_loan(client, borrower_id="B", guarantor_id="A")

        r = client.get("/members/A/loans")
        assert r.status_code == 200
        data = r.json()
        assert [loan["id"] for loan in data["as_borrower"]] == [own["id"]]
        assert [loan["id"] for loan in data["as_guarantor"]] == [guaranteed["id"]]

    def test_portfolio(self, client):
        """The portfolio endpoint returns summary figures"""
        loan = create_loan(client)
        client.post(f"/loans/{loan['id']}/payments", json={"amount": "20000"})

        r = client.get("/reports/portfolio", params={"as_of": "2024-04-01"})
        assert r.status_code == 200
        data = r.json()
        assert data["as_of"] == "2024-04-01"
        assert data["total_outstanding"] == "32500.00"
        assert data["overdue_count"] == 1
        assert data["count_by_status"]["partial"] == 1
