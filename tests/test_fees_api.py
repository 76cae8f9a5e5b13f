from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from tuition_sync.core.dependencies import get_ledger_store
from tuition_sync.main import app


@pytest.fixture
def client(store):
    app.dependency_overrides[get_ledger_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


def _payment(**overrides):
    body = {"student_id": "stu-1", "period_month": 3, "period_year": 2024, "amount": "2000", "method": "cash"}
    body.update(overrides)
    return body


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_record_payment(client):
    response = client.post("/api/v1/fees/payments", json=_payment(receipt_no="R-7"))
    assert response.status_code == 201
    body = response.json()
    assert body["payment"]["transaction_no"] == "TXN-000001"
    assert Decimal(body["fee_record"]["paid_fee"]) == Decimal("2000")
    assert Decimal(body["fee_record"]["pending_fee"]) == Decimal("3000")


def test_same_period_twice_is_409(client):
    assert client.post("/api/v1/fees/payments", json=_payment()).status_code == 201
    response = client.post("/api/v1/fees/payments", json=_payment(amount="100", method="online"))
    assert response.status_code == 409
    assert response.json()["detail"]["reason"] == "duplicate_period"


def test_retry_with_same_payment_id_is_accepted_once(client):
    body = _payment(payment_id="client-generated-1")
    first = client.post("/api/v1/fees/payments", json=body)
    second = client.post("/api/v1/fees/payments", json=body)
    assert first.status_code == second.status_code == 201
    assert second.json()["payment"]["transaction_no"] == first.json()["payment"]["transaction_no"]
    assert len(client.get("/api/v1/fees/payments", params={"student_id": "stu-1"}).json()) == 1


def test_overpayment_is_400(client):
    response = client.post("/api/v1/fees/payments", json=_payment(amount="5000.50"))
    assert response.status_code == 400
    assert response.json()["detail"]["reason"] == "overpayment"


def test_non_positive_amount_is_422(client):
    assert client.post("/api/v1/fees/payments", json=_payment(amount="0")).status_code == 422


def test_unknown_student_is_404(client):
    response = client.get("/api/v1/fees/records/ghost")
    assert response.status_code == 404
    assert response.json()["detail"]["reason"] == "unknown_student"


def test_fee_plan_and_history(client):
    client.post("/api/v1/fees/payments", json=_payment(student_id="stu-2", amount="100"))

    response = client.put("/api/v1/fees/records/stu-2/plan", json={"total_fee": "2000"})
    assert response.status_code == 200
    assert Decimal(response.json()["pending_fee"]) == Decimal("1500")

    assert client.put("/api/v1/fees/records/stu-2/plan", json={"total_fee": "100"}).status_code == 400

    history = client.get("/api/v1/fees/history/stu-2").json()
    assert history["payment_count"] == 1
    assert Decimal(history["total_paid"]) == Decimal("100")
    assert Decimal(history["fee_record"]["paid_fee"]) == Decimal("500")


def test_list_payments_by_period(client):
    client.post("/api/v1/fees/payments", json=_payment(amount="1000"))
    client.post("/api/v1/fees/payments", json=_payment(amount="1000", period_month=4))

    response = client.get("/api/v1/fees/payments", params={"student_id": "stu-1", "month": 4, "year": 2024})
    assert response.status_code == 200
    assert [p["period_month"] for p in response.json()] == [4]


def test_catalog_routes(client):
    created = client.post("/api/v1/catalog/categories", json={"name": "Science", "institute_type": "college"})
    assert created.status_code == 201
    category_id = created.json()["category_id"]

    duplicate = client.post("/api/v1/catalog/categories", json={"name": "science", "institute_type": "college"})
    assert duplicate.status_code == 409
    assert duplicate.json()["detail"]["reason"] == "duplicate_entity"

    course = client.post("/api/v1/catalog/courses", json={
        "name": "Physics", "institute_type": "college", "category_id": category_id, "instructor_id": "staff-college"
    })
    assert course.status_code == 201

    missing = client.put("/api/v1/catalog/courses/nope", json={"name": "Physics", "institute_type": "college"})
    assert missing.status_code == 404

    listed = client.get("/api/v1/catalog/courses", params={"category_id": category_id}).json()
    assert [c["name"] for c in listed] == ["Physics"]
    assert len(client.get("/api/v1/catalog/staff", params={"institute_type": "school"}).json()) == 1


def test_list_payments_by_recorded_date(client):
    for month in (3, 4):
        client.post("/api/v1/fees/payments", json=_payment(
            amount="1000", period_month=month, recorded_at=f"2024-0{month}-15T08:00:00Z"
        ))

    response = client.get("/api/v1/fees/payments", params={
        "student_id": "stu-1", "start_date": "2024-04-01", "end_date": "2024-04-30"
    })
    assert response.status_code == 200
    assert [p["period_month"] for p in response.json()] == [4]
    assert client.get("/api/v1/fees/payments", params={"end_date": "not-a-date"}).status_code == 422
