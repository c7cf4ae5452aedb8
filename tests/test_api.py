"""HTTP and websocket surface tests."""
import pytest
from fastapi.testclient import TestClient

from fleetwatch.core.config import settings
from fleetwatch.main import create_app


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "database_url_async", f"sqlite+aiosqlite:///{tmp_path / 'api.db'}")
    monkeypatch.setattr(settings, "auto_create_schema", True)
    monkeypatch.setattr(settings, "retention_days", 0)
    monkeypatch.setattr(settings, "log_dir", None)
    with TestClient(create_app()) as c:
        yield c


def log_payload(machine_id="machine-1", timestamp="2024-01-01T00:00:00Z", users=("alice",), **extra):
    payload = {
        "machineId": machine_id,
        "machineName": machine_id.title(),
        "timestamp": timestamp,
        "logIntervalSeconds": 30,
        "cpu": {
            "nproc": 32,
            "loadAvg": 8.3,
            "memoryUsed": 48 * 1024**3,
            "memoryTotal": 128 * 1024**3,
            "storageUsed": 480 * 1024**3,
            "storageTotal": 2000 * 1024**3,
        },
        "gpus": [
            {
                "index": 0,
                "name": "NVIDIA RTX A6000",
                "utilizationPct": 75,
                "memoryUsed": 6 * 1024**3,
                "memoryTotal": 24 * 1024**3,
                "powerWatts": 220,
                "users": list(users),
            }
        ],
    }
    payload.update(extra)
    return payload


def test_health(client):
    assert client.get("/api/v1/health").json() == {"status": "ok"}


def test_ingest_returns_stored_entry(client):
    r = client.post("/api/v1/machine-logs", json=log_payload())
    assert r.status_code == 201
    body = r.json()
    assert isinstance(body["id"], int)
    assert body["machineId"] == "machine-1"
    assert body["gpus"][0]["users"] == ["alice"]


def test_ingest_rejects_negative_readings(client):
    payload = log_payload()
    payload["cpu"]["nproc"] = -1
    assert client.post("/api/v1/machine-logs", json=payload).status_code == 422


def test_delete_unknown_entry(client):
    assert client.delete("/api/v1/machine-logs/12345").status_code == 404


def test_machines_lists_latest_snapshot_with_summary(client):
    client.post("/api/v1/machine-logs", json=log_payload(timestamp="2024-01-01T00:00:00Z"))
    client.post("/api/v1/machine-logs", json=log_payload(timestamp="2024-01-01T00:00:30Z", users=()))
    client.post("/api/v1/machine-logs", json=log_payload(machine_id="machine-2", gpus=[]))

    body = client.get("/api/v1/machines").json()

    assert [m["snapshot"]["machineId"] for m in body] == ["machine-1", "machine-2"]
    assert body[0]["snapshot"]["timestamp"].startswith("2024-01-01T00:00:30")
    assert body[0]["summary"]["ram"]["displayLabel"] == "48 GB / 128 GB"
    assert body[0]["summary"]["cpu"]["displayPercent"] == 26
    assert body[1]["summary"]["gpu"]["utilizationPercent"] == 0


def test_usage_by_user_hourly(client):
    client.post("/api/v1/machine-logs", json=log_payload(timestamp="2024-01-01T00:00:00Z"))
    client.post("/api/v1/machine-logs", json=log_payload(timestamp="2024-01-01T01:00:00Z"))

    r = client.get(
        "/api/v1/usage/users/alice",
        params={"from": "2024-01-01T00:00:00Z", "to": "2024-01-01T02:00:00Z", "unit": "hour", "timezone": "UTC"},
    )

    assert r.status_code == 200
    body = r.json()
    assert len(body) == 2
    assert body[0]["id"] == "alice"
    assert body[0]["gpuHours"] == pytest.approx(30 / 3600)
    assert body[0]["bucket"] < body[1]["bucket"]


def test_usage_leaderboards(client):
    client.post("/api/v1/machine-logs", json=log_payload(users=("alice", "bob")))
    client.post("/api/v1/machine-logs", json=log_payload(timestamp="2024-01-01T00:00:30Z", users=("bob",)))
    window = {"from": "2024-01-01T00:00:00Z", "to": "2024-01-02T00:00:00Z"}

    users = client.get("/api/v1/usage/users", params=window).json()
    machines = client.get("/api/v1/usage/machines", params=window).json()

    assert [u["id"] for u in users] == ["bob", "alice"]
    assert machines == [{"id": "machine-1", "gpuHours": pytest.approx(90 / 3600)}]


@pytest.mark.parametrize(
    "params",
    [
        {"unit": "minute"},
        {"timezone": "Atlantis/Capital"},
        {"timezone": "America"},
        {"from": "not-a-date"},
    ],
)
def test_usage_validation_errors(client, params):
    query = {"from": "2024-01-01T00:00:00Z", "to": "2024-01-02T00:00:00Z", **params}
    r = client.get("/api/v1/usage/machines/machine-1", params=query)
    assert r.status_code == 422
    assert "detail" in r.json()


def test_websocket_streams_snapshot_diffs(client):
    with client.websocket_connect("/api/v1/ws/machines") as ws:
        assert ws.receive_json() == {"kind": "ready"}

        first = client.post("/api/v1/machine-logs", json=log_payload()).json()
        add = ws.receive_json()
        assert add["kind"] == "add"
        assert add["machineId"] == "machine-1"
        assert add["summary"]["gpu"]["displayPercent"] == 75

        client.post("/api/v1/machine-logs", json=log_payload(timestamp="2024-01-01T00:00:30Z"))
        change = ws.receive_json()
        assert change["kind"] == "change"
        assert change["snapshot"]["timestamp"].startswith("2024-01-01T00:00:30")

        client.delete(f"/api/v1/machine-logs/{first['id']}")
        assert ws.receive_json()["kind"] == "change"
