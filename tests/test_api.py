from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from circulation.main import app, get_system


@pytest.fixture
def client(system, monkeypatch):
    monkeypatch.delenv("SWEEP_ENABLED", raising=False)
    app.dependency_overrides[get_system] = lambda: system
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def book(client):
    response = client.post("/items", json={"title": "Dune", "author": "Frank Herbert", "isbn": "9780441013593"})
    assert response.status_code == 201
    return response.json()


def test_root(client):
    assert client.get("/").json() == {"message": "Library Circulation Backend is running"}


def test_health_without_database(client):
    body = client.get("/test").json()
    assert body["backend"] == "✅ Running"
    assert body["connection_status"] == "Not Connected"


def test_create_and_list_items(client, book):
    assert book["status"] == "AVAILABLE"
    assert client.get(f"/items/{book['id']}").json()["title"] == "Dune"
    assert [i["id"] for i in client.get("/items", params={"status": "AVAILABLE"}).json()] == [book["id"]]
    assert client.get("/items", params={"status": "LOST"}).json() == []


def test_invalid_id_format(client):
    response = client.get("/items/not-an-id")
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid ID format"


def test_missing_item_is_404(client):
    response = client.get("/items/65f000000000000000000000")
    assert response.status_code == 404
    assert response.json()["code"] == "item_not_found"


def test_checkout_and_return(client, book, clock):
    response = client.post("/loans/checkout", json={"item_id": book["id"], "borrower_id": "A"})
    assert response.status_code == 201
    loan = response.json()
    assert loan["status"] == "CHECKED_OUT"

    clock.advance(days=17)
    detail = client.get(f"/loans/{loan['id']}").json()
    assert detail["current_fine"] == 1.50

    returned = client.post(f"/loans/{loan['id']}/return", json={"condition": "GOOD"}).json()
    assert returned["loan"]["status"] == "RETURNED"
    assert returned["loan"]["fine_amount"] == 1.50
    assert returned["promoted"] is None

    paid = client.post(f"/loans/{loan['id']}/payments", json={"amount": 1.5}).json()
    assert paid["fine_paid"] == 1.5


def test_checkout_conflicts_map_to_409(client, book):
    client.post("/loans/checkout", json={"item_id": book["id"], "borrower_id": "A"})
    response = client.post("/loans/checkout", json={"item_id": book["id"], "borrower_id": "B"})
    assert response.status_code == 409
    assert response.json()["code"] == "item_unavailable"


def test_past_due_date_is_422(client, book, clock):
    due = (clock.now - timedelta(days=1)).isoformat()
    response = client.post("/loans/checkout", json={"item_id": book["id"], "borrower_id": "A", "due_date": due})
    assert response.status_code == 422
    assert response.json()["code"] == "invalid_due_date"


def test_holds_and_queue(client, book):
    loan = client.post("/loans/checkout", json={"item_id": book["id"], "borrower_id": "A"}).json()
    b = client.post("/reservations", json={"item_id": book["id"], "borrower_id": "B"})
    c = client.post("/reservations", json={"item_id": book["id"], "borrower_id": "C"}).json()
    assert b.status_code == 201

    assert client.get(f"/reservations/{c['id']}/position").json()["position"] == 2
    queue = client.get(f"/items/{book['id']}/queue").json()
    assert [e["reservation"]["borrower_id"] for e in queue] == ["B", "C"]

    returned = client.post(f"/loans/{loan['id']}/return", json={}).json()
    assert returned["promoted"]["borrower_id"] == "B"

    blocked = client.post("/loans/checkout", json={"item_id": book["id"], "borrower_id": "D"})
    assert blocked.status_code == 409
    assert blocked.json()["code"] == "item_reserved"

    cancelled = client.post(f"/reservations/{c['id']}/cancel").json()
    assert cancelled["status"] == "CANCELLED"

    mine = client.get("/reservations", params={"borrower_id": "B"}).json()
    assert [r["status"] for r in mine] == ["READY_FOR_PICKUP"]


def test_hold_on_available_item_is_409(client, book):
    response = client.post("/reservations", json={"item_id": book["id"], "borrower_id": "B"})
    assert response.status_code == 409
    assert response.json()["code"] == "item_available"


def test_force_status_requires_reason(client, book):
    assert client.post(f"/items/{book['id']}/status", json={"status": "LOST"}).status_code == 422

    response = client.post(f"/items/{book['id']}/status", json={"status": "LOST", "reason": "stocktake"})
    assert response.status_code == 200
    assert response.json()["status"] == "LOST"


def test_delete_item(client, book):
    assert client.delete(f"/items/{book['id']}").json() == {"status": "deleted", "id": book["id"]}
    assert client.get(f"/items/{book['id']}").status_code == 404


def test_sweep_endpoint(client, book, clock):
    client.post("/loans/checkout", json={"item_id": book["id"], "borrower_id": "A"})
    clock.advance(days=15)

    body = client.post("/sweep", json={}).json()
    assert [e["kind"] for e in body["events"]] == ["OVERDUE"]
    assert body["summary"]["failed"] == 0

    assert client.post("/sweep", json={"jobs": ["bogus"]}).status_code == 400
    assert client.get("/reports/overdue").json()[0]["days_overdue"] == 1


def test_reports(client, book):
    assert client.get("/reports/inventory").json()["total"] == 1
    assert client.get("/reports/circulation").json()["open_loans"] == 0
    assert client.get("/reports/stale-pickups").json() == []
