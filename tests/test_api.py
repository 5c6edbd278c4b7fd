from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from threat_detection_engine.api import create_app


@pytest.fixture
def client(engine):
    return TestClient(create_app(engine, run_scheduler=False))


def activity_payload(when, ip="10.0.0.1", agent="Mozilla/5.0", **extra):
    return {"timestamp": when.isoformat(), "ip": ip, "user_agent": agent, **extra}


def test_healthcheck(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_activity_endpoint_reports_anomalies(client, clock):
    for index in range(5):
        payload = activity_payload(clock(), ip=f"10.0.0.{index}", agent=f"agent-{index}")
        client.post("/identities/U1/activity", json=payload)

    response = client.post(
        "/identities/U1/activity",
        json=activity_payload(clock(), ip="198.51.100.7", agent="evil-bot/1.0"),
    )

    assert response.status_code == 200
    assert response.json() == {"anomalies": ["unknown_device", "unknown_location"], "score": 45}


def test_activity_endpoint_accepts_naive_timestamps(engine, client, clock):
    naive = clock().replace(tzinfo=None)
    response = client.post("/identities/U2/activity", json=activity_payload(naive, session_duration=120))
    assert response.status_code == 200
    assert engine.get_profile("U2").last_activity_at == clock()


def test_activity_endpoint_validates_payload(client, clock):
    response = client.post("/identities/U1/activity", json={"timestamp": clock().isoformat()})
    assert response.status_code == 422


def test_login_outcomes_raise_brute_force_threat(client):
    for _ in range(4):
        body = client.post("/login-outcomes", json={"key": "alice", "success": False}).json()
        assert body == {"detected": False, "threats": []}

    body = client.post("/login-outcomes", json={"key": "alice", "success": False, "identity_id": "U1"}).json()
    assert body["detected"] is True
    [threat] = body["threats"]
    assert threat["type"] == "brute_force"
    assert threat["response_actions"][0]["type"] == "lockout"
    assert threat["response_actions"][0]["duration_seconds"] == 1800


def test_scan_endpoint(client):
    flagged = client.post("/scan", json={"text": "1 OR 1=1", "identity_id": "U1"}).json()
    assert flagged["detected"] is True
    assert [threat["type"] for threat in flagged["threats"]] == ["sql_injection"]
    assert flagged["threats"][0]["severity"] == "critical"

    clean = client.post("/scan", json={"text": "hello world"}).json()
    assert clean == {"detected": False, "threats": []}


def test_threat_lifecycle_over_http(client):
    threat = client.post(
        "/permission-checks", json={"identity_id": "U1", "permission": "superadmin", "current_role": "viewer"}
    ).json()["threats"][0]
    threat_id = threat["id"]

    listed = client.get("/threats", params={"identity_id": "U1", "severity": "critical"}).json()
    assert [item["id"] for item in listed] == [threat_id]

    investigation = client.post(f"/threats/{threat_id}/investigate", json={"investigator": "analyst"}).json()
    assert investigation["threat"]["status"] == "investigating"
    assert investigation["profile"] is None
    assert len(investigation["recommendations"]) == 3

    executed = client.post(f"/threats/{threat_id}/respond").json()
    assert [action["type"] for action in executed] == ["terminate_session", "alert", "lockout"]
    assert all(action["executed_by"] == "threat_detection_engine" for action in executed)

    mitigated = client.post(f"/threats/{threat_id}/mitigate", json={"mitigation": "role revoked"})
    assert mitigated.status_code == 200
    assert mitigated.json()["status"] == "mitigated"

    conflict = client.post(f"/threats/{threat_id}/false-positive", json={"reason": "late"})
    assert conflict.status_code == 409
    assert "cannot move from mitigated" in conflict.json()["detail"]

    assert client.get("/threats", params={"status": "active"}).json() == []


def test_unknown_threat_returns_404(client):
    response = client.post("/threats/does-not-exist/mitigate", json={"mitigation": "n/a"})
    assert response.status_code == 404
    assert response.json() == {"detail": "Threat not found: does-not-exist"}

    assert client.post("/threats/does-not-exist/respond").status_code == 404


def test_risk_score_endpoints(client):
    calculated = client.post("/identities/U2/risk-score")
    assert calculated.status_code == 200
    body = calculated.json()
    assert body["display_name"] == "bob"
    assert body["total_score"] == pytest.approx(5.0)
    assert body["level"] == "low"
    assert [factor["name"] for factor in body["factors"]] == ["behavior", "threats", "reputation", "device_trust"]

    assert [score["identity_id"] for score in client.get("/risk-scores", params={"level": "low"}).json()] == ["U2"]
    assert client.get("/risk-scores", params={"min_score": 50}).json() == []


def test_analytics_endpoint(client, clock):
    client.post("/scan", json={"text": "<script>alert(1)</script>", "ip": "203.0.113.5"})

    body = client.get("/analytics").json()
    assert body["total_threats_detected"] == 1
    assert body["threats_by_type"]["xss_attempt"] == 1
    assert body["top_threat_sources"] == [{"source": "203.0.113.5", "count": 1}]

    later = client.get(
        "/analytics",
        params={
            "start": (clock() + timedelta(hours=1)).isoformat(),
            "end": (clock() + timedelta(hours=2)).isoformat(),
        },
    ).json()
    assert later["total_threats_detected"] == 0


def test_lifespan_runs_scheduler(engine):
    app = create_app(engine)
    with TestClient(app) as client:
        assert client.get("/health").status_code == 200
        assert app.state.scheduler.running
    assert not app.state.scheduler.running


def test_lifespan_without_scheduler(engine):
    app = create_app(engine, run_scheduler=False)
    with TestClient(app):
        assert not app.state.scheduler.running
