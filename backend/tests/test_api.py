import pytest
from fastapi.testclient import TestClient

from journeyflow.api.dependencies import get_executor
from journeyflow.main import app
from journeyflow.services.tracking_links import make_click_token

JOURNEY = {
    "id": "j1",
    "name": "Welcome",
    "status": "ACTIVE",
    "nodes": [
        {"id": "t1", "type": "trigger", "trigger": {"kind": "manual"}},
        {"id": "d1", "type": "delay", "delay": {"value": 2, "unit": "hours"}},
        {"id": "g1", "type": "goal"},
    ],
    "edges": [{"source": "t1", "target": "d1"}, {"source": "d1", "target": "g1"}],
}


@pytest.fixture
def client(executor):
    app.dependency_overrides[get_executor] = lambda: executor
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def saved(client):
    response = client.put("/api/journeys/j1", json=JOURNEY)
    assert response.status_code == 200
    return response.json()


def test_save_and_read_journey(client, saved):
    assert saved == {"journey_id": "j1", "status": "ACTIVE", "warnings": []}
    body = client.get("/api/journeys/j1").json()
    assert [node["id"] for node in body["journey"]["nodes"]] == ["t1", "d1", "g1"]
    assert client.get("/api/journeys/missing").status_code == 404


def test_invalid_journey_is_rejected(client):
    broken = dict(JOURNEY, edges=[{"source": "t1", "target": "ghost"}])
    assert client.put("/api/journeys/j1", json=broken).status_code == 422


def test_manual_enrollment_and_processing(client, saved):
    response = client.post("/api/journeys/j1/enrollments", json={"customer_id": "c1"})
    body = response.json()
    assert body["enrolled"] is True
    enrollment_id = body["enrollment"]["id"]
    assert body["enrollment"]["current_node_id"] == "t1"

    processed = client.post(f"/api/enrollments/{enrollment_id}/process").json()
    assert processed["current_node_id"] == "d1"
    assert client.get(f"/api/enrollments/{enrollment_id}").json()["status"] == "ACTIVE"


def test_enrollment_blocked_by_paused_journey(client, saved):
    client.post("/api/journeys/j1/status", json={"status": "PAUSED"})
    body = client.post("/api/journeys/j1/enrollments", json={"customer_id": "c1"}).json()
    assert body == {"enrolled": False, "enrollment": None}


def test_missing_enrollment_returns_404(client):
    assert client.get("/api/enrollments/nope").status_code == 404
    response = client.post("/api/enrollments/nope/process")
    assert response.status_code == 404
    assert response.json()["detail"]["error"] == "not_found"


def test_csv_import(client, saved):
    response = client.post(
        "/api/journeys/j1/enrollments/import",
        files={"file": ("contacts.csv", b"Customer ID,Name\nc1,Ana\nc404,Ghost\n", "text/csv")},
    )
    assert response.json() == {"rows": 2, "enrolled": 2, "rejected": 0, "errors": []}

    bad = client.post(
        "/api/journeys/j1/enrollments/import", files={"file": ("contacts.csv", b"email\nx@y.z\n", "text/csv")}
    )
    assert bad.status_code == 422


def test_commerce_event_enrolls_customer(client, saved):
    journey = dict(JOURNEY, id="orders", nodes=[dict(JOURNEY["nodes"][0], trigger={"kind": "order_placed"})] + JOURNEY["nodes"][1:])
    client.put("/api/journeys/orders", json=journey)
    body = client.post("/api/events", json={"topic": "orders/create", "customer_id": "c1"}).json()
    assert body["event"] == "order_created"
    assert len(body["enrollment_ids"]) == 1


def test_engagement_and_click_tracking(client, saved):
    enrollment_id = client.post("/api/journeys/j1/enrollments", json={"customer_id": "c1"}).json()["enrollment"]["id"]

    opened = client.post("/api/track/engagement", json={"enrollment_id": enrollment_id, "type": "message_opened"})
    assert opened.json()["recorded"] is True
    assert client.post("/api/track/engagement", json={"enrollment_id": enrollment_id, "type": "nope"}).status_code == 422

    token = make_click_token(enrollment_id, "j1", "a1")
    response = client.get(
        "/api/track/click", params={"token": token, "url": "https://shop.example/sale"}, follow_redirects=False
    )
    assert response.status_code == 302
    assert response.headers["location"] == "https://shop.example/sale"
    actions = client.get(f"/api/enrollments/{enrollment_id}").json()["actions"]
    assert [a["type"] for a in actions] == ["message_opened", "link_clicked"]

    forged = client.get(
        "/api/track/click", params={"token": "forged", "url": "https://shop.example"}, follow_redirects=False
    )
    assert forged.status_code == 302


def test_inbound_message(client):
    body = client.post("/api/events/inbound-message", json={"phone": "+1 555 123 4567", "customer_id": "c1"}).json()
    assert body["phone"] == "15551234567"
    assert body["window_expires_at"] is not None
