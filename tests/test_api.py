"""
Test the capture and admin HTTP API through FastAPI's TestClient
"""

import re

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from capture_relay.api.app import create_app
from capture_relay.api.middleware import RequestLoggingMiddleware
from capture_relay.core.config import ApplicationConfig
from capture_relay.core.store import MemoryStore
from capture_relay.engine.relay import RelayEngine

REQUEST_ID = re.compile(r"^\d{8}_\d{6}_\d{3}$")


@pytest.fixture
def relay(fake_upstream):
    return RelayEngine(MemoryStore(), upstream=fake_upstream(), retention_days=0, upstream_timeout_seconds=2.0)


@pytest.fixture
def client(relay):
    config = ApplicationConfig(config_file=None, ensure_directories=False)
    with TestClient(create_app(config, relay=relay)) as test_client:
        yield test_client


def test_banner_and_health(client):
    banner = client.get("/")
    assert banner.status_code == 200
    assert banner.json()["capture"] == "active"
    assert banner.json()["intercept"] == "paused"

    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "healthy"


def test_capture_request_returns_request_id(client):
    response = client.post("/capture/request", json={
        "url": "https://api.example.com/v1/user",
        "method": "GET",
        "headers": {"Accept": "*/*"},
        "extra_field": "kept",
    })

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert REQUEST_ID.match(response.headers["X-Request-Id"])
    assert body["request_id"] == response.headers["X-Request-Id"]

    stored = client.get(f"/admin/requests/{body['request_id']}").json()
    assert stored["extra_field"] == "kept"
    assert stored["capture_type"] == "rewrite_request"


def test_capture_request_requires_url(client):
    response = client.post("/capture/request", json={"method": "GET"})

    assert response.status_code == 422
    assert response.json()["error"] == "ValidationError"
    assert response.json()["request_id"]


def test_rule_then_modify_end_to_end(client):
    created = client.post("/admin/response-rules", json={
        "host": "api.example.com",
        "method": "GET",
        "pathRegex": "^/v1/user$",
        "responseStatus": 200,
        "responseBody": '{"ok":true}',
    })
    assert created.status_code == 201
    rule_id = created.json()["id"]

    reply = client.post("/capture/response/modify", json={
        "url": "https://api.example.com/v1/user",
        "method": "GET",
        "status": 200,
        "headers": {"content-type": "application/json"},
        "body": '{"ok":false}',
    })

    assert reply.status_code == 200
    assert reply.json() == {
        "modified": True,
        "status": 200,
        "headers": {"content-type": "application/json"},
        "body": '{"ok":true}',
    }

    modified = client.get("/admin/modified-responses-paginated").json()
    assert modified["pagination"]["total"] == 1
    assert modified["data"][0]["matchedRule"] == rule_id


def test_modify_with_invalid_payload_still_answers(client):
    reply = client.post("/capture/response/modify", json={"method": "GET"})

    assert reply.status_code == 200
    assert reply.json()["modified"] is False
    assert reply.json()["error"]


def test_invalid_rule_regex_is_400(client):
    response = client.post("/admin/response-rules", json={"host": "*", "pathRegex": "("})

    assert response.status_code == 400
    assert response.json()["error"] == "RuleValidationError"


def test_rule_lifecycle(client):
    rule = client.post("/admin/intercept-rules", json={"host": "shop.test", "name": "cart"}).json()

    updated = client.put(f"/admin/intercept-rules/{rule['id']}", json={"name": "basket", "id": "hijack"})
    assert updated.status_code == 200
    assert updated.json()["id"] == rule["id"]
    assert updated.json()["name"] == "basket"

    disabled = client.patch(f"/admin/intercept-rules/{rule['id']}/disable")
    assert disabled.json()["rule"]["enabled"] is False

    toggled = client.patch(f"/admin/intercept-rules/{rule['id']}/status", json={"enabled": True})
    assert toggled.json()["rule"]["enabled"] is True

    bad_toggle = client.patch(f"/admin/intercept-rules/{rule['id']}/status", json={"enabled": "yes"})
    assert bad_toggle.status_code == 400

    assert client.delete(f"/admin/intercept-rules/{rule['id']}").status_code == 200
    missing = client.get(f"/admin/intercept-rules/{rule['id']}")
    assert missing.status_code == 404
    assert missing.json()["error"] == "RuleNotFoundError"


def test_clearing_rules_requires_token(client):
    client.post("/admin/capture-rules", json={"host": "api.example.com"})

    refused = client.request("DELETE", "/admin/capture-rules", json={"confirm": "yes"})
    assert refused.status_code == 400
    assert len(client.get("/admin/capture-rules").json()) == 1

    cleared = client.request("DELETE", "/admin/capture-rules", json={"confirm": "YES_DELETE_ALL_RULES"})
    assert cleared.json() == {"success": True, "deletedCount": 1}
    assert client.get("/admin/capture-rules").json() == []


def test_capture_toggle(client):
    assert client.post("/admin/capture-status", json={"enabled": "off"}).status_code == 400

    paused = client.post("/admin/capture-status", json={"enabled": False}).json()
    assert paused["status"]["status"] == "paused"

    client.post("/capture/request", json={"url": "https://api.example.com/"})
    assert client.get("/admin/requests").json() == []

    assert client.get("/admin/capture-status").json()["enabled"] is False


def test_intercept_and_release(client, relay):
    client.post("/admin/intercept-status", json={"enabled": True})
    client.post("/admin/intercept-rules", json={"host": "shop.test", "modifyBody": "edited"})

    held = client.post("/capture/request", json={
        "url": "https://shop.test/cart",
        "method": "POST",
        "body": "original",
    }).json()
    assert held["intercepted"] is True

    record = client.get(f"/admin/intercepted/{held['request_id']}").json()
    assert record["released"] is False
    assert record["originalRequest"]["body"] == "original"

    listing = client.get("/admin/intercepted-paginated").json()
    assert listing["pagination"]["total"] == 1

    released = client.post(f"/admin/intercepted/{held['request_id']}/release")
    assert released.status_code == 200
    assert released.json()["request"]["released"] is True
    assert released.json()["request"]["response"]["status"] == 200

    again = client.post(f"/admin/intercepted/{held['request_id']}/release")
    assert again.status_code == 200
    assert len(relay.upstream.calls) == 1
    assert relay.upstream.calls[0]["body"] == "edited"

    assert client.post("/admin/intercepted/missing/release").status_code == 404

    batch = client.post("/admin/intercepted/release-batch", json={"ids": [held["request_id"], "missing"]}).json()
    assert batch["released"] == 1
    assert client.post("/admin/intercepted/release-batch", json={"ids": []}).status_code == 400


def test_pagination_and_hosts(client):
    for index in range(5):
        client.post("/capture/response", json={
            "url": f"https://host{index % 2}.test/items/{index}",
            "method": "GET",
            "status": 200,
            "body": f"item {index}",
        })

    page = client.get("/admin/responses-paginated", params={"page": 1, "limit": 2}).json()
    assert page["pagination"] == {"total": 5, "page": 1, "limit": 2, "totalPages": 3}

    filtered = client.get("/admin/responses-paginated", params={"host": "host0.test"}).json()
    assert filtered["pagination"]["total"] == 3

    regex = client.get("/admin/responses-paginated", params={"keyword": "ITEM [34]", "isRegex": "true"}).json()
    assert regex["pagination"]["total"] == 2

    assert client.get("/admin/responses-paginated", params={"limit": 5000}).status_code == 422

    assert sorted(client.get("/admin/hosts").json()) == ["host0.test", "host1.test"]
    active = client.get("/admin/hosts/active").json()
    assert active["hosts"][0]["hostname"] == "host0.test"
    assert active["hosts"][0]["count"] == 3

    stats = client.get("/admin/stats").json()
    assert stats["totalResponses"] == 5


def test_deletes(client):
    request_id = client.post("/capture/request", json={"url": "https://a.test/"}).json()["request_id"]
    client.post("/capture/response", json={"url": "https://a.test/", "request_id": request_id, "status": 200})

    assert client.delete("/admin/requests/missing").status_code == 404
    deleted = client.delete(f"/admin/requests/{request_id}").json()
    assert deleted == {"success": True, "deletedCount": 1}
    assert client.get("/admin/responses").json() == []


def test_clear_all_data_requires_token(client):
    client.post("/capture/request", json={"url": "https://a.test/"})

    assert client.request("DELETE", "/admin/all-data", json={"confirm": "nope"}).status_code == 400
    assert len(client.get("/admin/requests").json()) == 1

    cleared = client.request("DELETE", "/admin/all-data", json={"confirm": "YES_DELETE_ALL"}).json()
    assert cleared["success"] is True
    assert cleared["deleted"]["requests"] == 1
    assert client.get("/admin/requests").json() == []


def test_store_status(client):
    status = client.get("/admin/status").json()

    assert "files" in status
    assert "requests" in status["files"]
    assert status["config"]["server"]["port"] == 3000
    assert status["config"]["relay"]["intercept_enabled"] is False


def test_oversized_body_is_refused():
    app = FastAPI()
    app.middleware("http")(RequestLoggingMiddleware(max_body_bytes=10))

    @app.post("/echo")
    async def echo():
        return {"ok": True}

    client = TestClient(app)

    assert client.post("/echo", content=b"x" * 5).status_code == 200
    refused = client.post("/echo", content=b"x" * 50)
    assert refused.status_code == 413
    assert refused.json()["error"] == "PayloadTooLarge"
    assert REQUEST_ID.match(refused.headers["X-Request-Id"])


def test_numeric_ids_and_timestamps_are_accepted(client):
    captured = client.post("/capture/request", json={
        "url": "https://a.test/x",
        "id": 7,
        "timestamp": 1700000000000,
    })
    assert captured.status_code == 200
    assert captured.json()["request_id"] == "7"

    stored = client.get("/admin/requests/7").json()
    assert stored["timestamp"] == "2023-11-14T22:13:20.000Z"

    answered = client.post("/capture/response", json={
        "url": "https://a.test/x",
        "request_id": 42,
        "timestamp": 1700000000,
        "status": 200,
    })
    assert answered.status_code == 200
    assert answered.json()["request_id"] == "42"

    response = client.get("/admin/responses/42").json()
    assert response["timestamp"] == "2023-11-14T22:13:20.000Z"
