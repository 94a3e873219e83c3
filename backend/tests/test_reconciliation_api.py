"""
API Tests for the Reconciliation Endpoints

Drives the FastAPI app on in-memory storage:
- Invoice creation and invoice CSV upload
- Statement upload and progress polling
- Transaction listing, operator actions and audit trail
- Error status codes (404, 409, 422)

Run with: pytest backend/tests/test_reconciliation_api.py -v
"""

import time
import uuid

import pytest
from fastapi.testclient import TestClient

from config import Settings
from reconciliation.repository import InMemoryReconciliationRepository
from reconciliation.services import ReconciliationService
from server import create_app

STATEMENT_CSV = (
    "id,date,description,amount,reference\n"
    "1,09-01-2024,ACME CORP PAYMENT,500.00,REF-1\n"
    "2,09-01-2024,PAYROLL,1234.00,REF-2\n"
    "3,bad-date,BROKEN ROW,10.00,REF-3\n"
)

INVOICE_CSV = (
    "id,invoice_number,customer_name,customer_email,amount,status,due_date\n"
    "1,INV-100,Globex Ltd,ap@globex.test,120.00,sent,10-01-2024\n"
    "2,INV-101,Initech,,75.00,overdue,2024-01-20\n"
    "3,INV-102,Hooli,,-5.00,sent,10-01-2024\n"
)


@pytest.fixture
def client(tmp_path):
    service = ReconciliationService(InMemoryReconciliationRepository(), progress_interval=1)
    app = create_app(service=service, settings=Settings(STORAGE_BACKEND="memory"))
    app.state.upload_dir = str(tmp_path)

    with TestClient(app) as test_client:
        yield test_client


def create_acme_invoice(client):
    response = client.post("/api/reconciliation/invoice", json={
        "invoice_number": "INV-1",
        "customer_name": "Acme Corp",
        "amount": "500.00",
        "due_date": "10-01-2024",
    })
    assert response.status_code == 201
    return response.json()


def upload_statement(client, content=STATEMENT_CSV):
    response = client.post(
        "/api/reconciliation/upload",
        files={"file": ("statement.csv", content, "text/csv")},
    )
    assert response.status_code == 202
    return response.json()["batch_id"]


def wait_until_completed(client, batch_id, attempts=200):
    for _ in range(attempts):
        body = client.get(f"/api/reconciliation/{batch_id}").json()
        if body["status"] == "completed":
            return body
        time.sleep(0.01)
    pytest.fail(f"Batch {batch_id} did not complete")


def list_by_description(client, batch_id, **params):
    response = client.get(f"/api/reconciliation/{batch_id}/transactions", params=params)
    assert response.status_code == 200
    return {item["description"]: item for item in response.json()["items"]}


class TestInvoices:

    def test_create_invoice(self, client):
        invoice = create_acme_invoice(client)

        assert invoice["invoice_number"] == "INV-1"
        assert invoice["status"] == "sent"
        assert invoice["due_date"] == "2024-01-10"

    def test_create_invoice_bad_due_date(self, client):
        response = client.post("/api/reconciliation/invoice", json={
            "customer_name": "Acme Corp", "amount": "5.00", "due_date": "2024/01/10",
        })

        assert response.status_code == 422
        assert response.json()["detail"]["parameter"] == "due_date"

    def test_create_invoice_bad_amount(self, client):
        response = client.post("/api/reconciliation/invoice", json={
            "customer_name": "Acme Corp", "amount": "0", "due_date": "10-01-2024",
        })

        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "validation_error"

    def test_upload_invoices(self, client):
        response = client.post(
            "/api/invoices/upload",
            files={"file": ("invoices.csv", INVOICE_CSV, "text/csv")},
        )

        assert response.status_code == 200
        assert response.json() == {"file": "invoices.csv", "invoices_added": 2, "rows_skipped": 1}

        rebuilt = client.post("/api/invoices/rebuild-index").json()
        assert rebuilt == {"amounts": 2, "invoices": 2}

    def test_invoice_upload_file_removed(self, client, tmp_path):
        client.post("/api/invoices/upload", files={"file": ("invoices.csv", INVOICE_CSV, "text/csv")})

        assert list(tmp_path.iterdir()) == []

    def test_create_invoice_sub_cent_amount(self, client):
        response = client.post("/api/reconciliation/invoice", json={
            "customer_name": "Acme Corp", "amount": "500.004", "due_date": "10-01-2024",
        })

        assert response.status_code == 422
        assert response.json()["detail"]["parameter"] == "amount"


class TestBatchEndpoints:

    def test_upload_and_list(self, client):
        create_acme_invoice(client)
        batch_id = upload_statement(client)

        progress = wait_until_completed(client, batch_id)
        assert (progress["processed_count"], progress["total"]) == (2, 2)

        items = list_by_description(client, batch_id)
        assert items["ACME CORP PAYMENT"]["status"] == "auto_matched"
        assert items["PAYROLL"]["status"] == "unmatched"

        stats = client.get(f"/api/reconciliation/{batch_id}/stats").json()
        assert stats["auto_matched_count"] == 1
        assert stats["unmatched_sum"] == "1234.00"

    def test_statement_file_removed_after_ingestion(self, client, tmp_path):
        batch_id = upload_statement(client)
        wait_until_completed(client, batch_id)

        assert list(tmp_path.iterdir()) == []

    def test_search_treats_wildcards_literally(self, client):
        batch_id = upload_statement(client, STATEMENT_CSV + "4,09-01-2024,100% REFUND,7.00,REF-4\n")
        wait_until_completed(client, batch_id)

        assert list(list_by_description(client, batch_id, search="%")) == ["100% REFUND"]
        assert list(list_by_description(client, batch_id, search="_")) == []

    def test_filter_and_search(self, client):
        create_acme_invoice(client)
        batch_id = upload_statement(client)
        wait_until_completed(client, batch_id)

        assert list(list_by_description(client, batch_id, status="unmatched")) == ["PAYROLL"]
        assert list(list_by_description(client, batch_id, search="acme")) == ["ACME CORP PAYMENT"]

        response = client.get(f"/api/reconciliation/{batch_id}/transactions", params={"status": "bogus"})
        assert response.status_code == 422

    def test_pagination(self, client):
        batch_id = upload_statement(client)
        wait_until_completed(client, batch_id)

        first = client.get(f"/api/reconciliation/{batch_id}/transactions", params={"limit": 1}).json()
        second = client.get(
            f"/api/reconciliation/{batch_id}/transactions",
            params={"limit": 1, "cursor": first["next_cursor"]},
        ).json()

        assert first["has_more"] is True
        assert second["has_more"] is False
        assert first["items"][0]["id"] < second["items"][0]["id"]

    def test_unknown_batch(self, client):
        response = client.get(f"/api/reconciliation/{uuid.uuid4()}")

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "not_found"

    def test_invalid_batch_id(self, client):
        response = client.get("/api/reconciliation/not-a-uuid")

        assert response.status_code == 422
        assert response.json()["detail"]["parameter"] == "batch_id"

    def test_bulk_confirm(self, client):
        create_acme_invoice(client)
        batch_id = upload_statement(client)
        wait_until_completed(client, batch_id)

        response = client.post(f"/api/reconciliation/{batch_id}/bulk-confirm", headers={"X-User-Id": "alice"})

        assert response.json() == {"batch_id": batch_id, "transactions_updated": 1}
        items = list_by_description(client, batch_id)
        assert items["ACME CORP PAYMENT"]["status"] == "confirmed"
        assert items["ACME CORP PAYMENT"]["confidence_score"] == 100.0


class TestTransactionEndpoints:

    @pytest.fixture
    def items(self, client):
        create_acme_invoice(client)
        batch_id = upload_statement(client)
        wait_until_completed(client, batch_id)
        return list_by_description(client, batch_id)

    def test_confirm_and_audit(self, client, items):
        tx_id = items["ACME CORP PAYMENT"]["id"]

        response = client.post(f"/api/transactions/{tx_id}/confirm", headers={"X-User-Id": "alice"})
        assert response.status_code == 200
        assert response.json()["status"] == "confirmed"

        audit = client.get(f"/api/transactions/{tx_id}/audit").json()
        assert [e["action"] for e in audit["entries"]] == ["auto_match", "confirm"]
        assert audit["entries"][1]["performed_by"] == "alice"

    def test_confirm_unmatched_conflicts(self, client, items):
        response = client.post(f"/api/transactions/{items['PAYROLL']['id']}/confirm")

        assert response.status_code == 409
        assert response.json()["detail"]["from_status"] == "unmatched"

    def test_reject_without_body(self, client, items):
        response = client.post(f"/api/transactions/{items['ACME CORP PAYMENT']['id']}/reject")

        assert response.status_code == 200
        assert response.json()["status"] == "unmatched"
        assert response.json()["matched_invoice_id"] is None

    def test_manual_match(self, client, items):
        invoice = client.post("/api/reconciliation/invoice", json={
            "customer_name": "Payroll Services", "amount": "1234.00", "due_date": "01-02-2024",
        }).json()

        response = client.post(
            f"/api/transactions/{items['PAYROLL']['id']}/match",
            json={"invoice_id": invoice["id"], "reason": "agreed by phone"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "confirmed"
        assert response.json()["matched_invoice_id"] == invoice["id"]

    def test_manual_match_unknown_invoice(self, client, items):
        response = client.post(
            f"/api/transactions/{items['PAYROLL']['id']}/match",
            json={"invoice_id": str(uuid.uuid4())},
        )

        assert response.status_code == 404
        assert response.json()["detail"]["entity"] == "invoice"

    def test_mark_external(self, client, items):
        response = client.post(
            f"/api/transactions/{items['PAYROLL']['id']}/external",
            json={"reason": "payroll run"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "external"

    def test_unknown_transaction(self, client):
        response = client.post(f"/api/transactions/{uuid.uuid4()}/confirm")

        assert response.status_code == 404


class TestHealth:

    def test_health(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        body = response.json()
        assert body["checks"]["reconciliation"]["status"] == "ready"
        assert body["storage_backend"] == "memory"
