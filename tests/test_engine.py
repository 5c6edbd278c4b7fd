from datetime import timedelta

import pytest

from conftest import establish_baseline, make_activity
from threat_detection_engine import (
    AuditRecord,
    EngineScheduler,
    EventKind,
    InvalidThreatTransitionError,
    ThreatNotFoundError,
    ThreatSeverity,
    ThreatStatus,
    ThreatType,
)


def test_investigation_collects_related_threats_and_recommendations(engine):
    first = engine.check_permission_request("U1", "superadmin", "viewer")
    second = engine.check_permission_request("U1", "delete_all", "editor")
    engine.detect_sql_injection("1 OR 1=1", identity_id="U1")

    investigation = engine.investigate(first.id, "analyst@example.com")

    assert investigation.threat.status is ThreatStatus.INVESTIGATING
    assert investigation.related_threats == [second]
    assert investigation.profile is None
    assert investigation.recommendations[0] == "Immediately lock the affected account"


def test_mitigation_resolves_threat_and_emits_event(engine, recorder, clock):
    threat = engine.check_permission_request("U1", "admin", "user")
    engine.investigate(threat.id, "analyst")
    clock.advance(minutes=10)

    mitigated = engine.mitigate(threat.id, "role revoked")

    assert mitigated.status is ThreatStatus.MITIGATED
    assert mitigated.resolution == "role revoked"
    assert mitigated.resolved_at == clock()
    assert recorder.of(EventKind.THREAT_MITIGATED) == [{"threat_id": threat.id, "mitigation": "role revoked"}]
    assert engine.get_active_threats(status=ThreatStatus.ACTIVE) == []


def test_terminal_threats_cannot_change_status(engine):
    threat = engine.detect_xss("<script>alert(1)</script>")
    engine.mark_false_positive(threat.id, "pen test")

    with pytest.raises(InvalidThreatTransitionError):
        engine.mitigate(threat.id, "too late")
    with pytest.raises(InvalidThreatTransitionError):
        engine.investigate(threat.id, "analyst")
    assert engine.get_active_threats()[0].status is ThreatStatus.FALSE_POSITIVE


def test_unknown_threat_id_raises_not_found(engine):
    with pytest.raises(ThreatNotFoundError) as excinfo:
        engine.mitigate("missing", "n/a")
    assert str(excinfo.value) == "Threat not found: missing"
    with pytest.raises(KeyError):
        engine.respond("missing")


def test_respond_executes_planned_actions_once(engine, recorder, clock):
    threat = engine.check_permission_request("U1", "superadmin", "viewer")

    executed = engine.respond(threat.id)

    assert [action.executed_at for action in executed] == [clock()] * 3
    assert all(action.executed_by == "threat_detection_engine" for action in executed)
    assert recorder.of(EventKind.SESSION_TERMINATED) == [{"target": "U1", "reason": "threat_detection"}]
    assert recorder.of(EventKind.ACCOUNT_LOCKED)[0]["duration"] == timedelta(hours=1)
    assert recorder.of(EventKind.SECURITY_ALERT)[0]["target"] == "security_team"
    assert engine.respond(threat.id) == []


def test_active_threat_filters(engine):
    engine.check_permission_request("U1", "superadmin", "viewer")
    engine.detect_sql_injection("UNION SELECT", identity_id="U2")
    engine.detect_xss("javascript:alert(1)", identity_id="U2")

    assert len(engine.get_active_threats(identity_id="U2")) == 2
    assert len(engine.get_active_threats(severity=ThreatSeverity.CRITICAL)) == 2
    [xss] = engine.get_active_threats(type=ThreatType.XSS_ATTEMPT)
    assert xss.identity_id == "U2"


@pytest.mark.asyncio
async def test_security_analytics(engine, clock):
    start, end = clock() - timedelta(hours=1), clock() + timedelta(hours=1)
    escalation = engine.check_permission_request("U1", "superadmin", "viewer")
    engine.detect_sql_injection("1 OR 1=1", identity_id="U2", ip="203.0.113.5")
    clock.advance(minutes=10)
    engine.mitigate(escalation.id, "role revoked")
    await engine.score("U1")

    analytics = await engine.get_security_analytics(start, end)

    assert analytics.total_threats_detected == 2
    assert analytics.threats_by_type["privilege_escalation"] == 1
    assert analytics.threats_by_type["sql_injection"] == 1
    assert analytics.threats_by_type["brute_force"] == 0
    assert analytics.threats_by_severity == {"low": 0, "medium": 0, "high": 0, "critical": 2}
    assert analytics.top_threatened_identities == [
        {"identity_id": "U1", "display_name": "alice", "threat_count": 1},
        {"identity_id": "U2", "display_name": "bob", "threat_count": 1},
    ]
    assert analytics.top_threat_sources == [{"source": "203.0.113.5", "count": 1}]
    assert analytics.mitigated_threats == 1
    assert analytics.false_positives == 0
    assert analytics.response_time == {"average": 600.0, "min": 600.0, "max": 600.0}
    assert analytics.average_risk_score == pytest.approx(5.0)


@pytest.mark.asyncio
async def test_security_analytics_ignores_threats_outside_range(engine, clock):
    engine.detect_xss("<iframe src=x>")
    analytics = await engine.get_security_analytics(clock() + timedelta(hours=1), clock() + timedelta(hours=2))
    assert analytics.total_threats_detected == 0
    assert analytics.response_time == {"average": 0.0, "min": 0.0, "max": 0.0}


@pytest.mark.asyncio
async def test_cleanup_collects_resolved_threats_and_idle_identities(engine, clock):
    await engine.observe("U1", make_activity(clock()))
    await engine.score("U1")
    resolved = engine.detect_xss("<script>x</script>")
    engine.mark_false_positive(resolved.id, "benign")
    active = engine.detect_sql_injection("DROP TABLE users")
    engine.record_login_outcome("alice", False, now=clock())

    clock.advance(days=31)
    summary = engine.cleanup()

    assert summary == {"login_keys": 1, "threats": 1, "profiles": 1, "risk_scores": 0}
    assert engine.get_active_threats() == [active]
    assert engine.get_profile("U1") is None
    assert engine.get_risk_scores() == []


@pytest.mark.asyncio
async def test_recent_identities_survive_cleanup(engine, clock):
    await engine.observe("U1", make_activity(clock()))
    clock.advance(days=29)
    await engine.observe("U1", make_activity(clock()))
    clock.advance(days=2)

    assert engine.cleanup()["profiles"] == 0
    assert engine.get_profile("U1") is not None


@pytest.mark.asyncio
async def test_anomaly_scan_flags_outliers_and_feeds_behavior(engine, audit_log, recorder, clock):
    await establish_baseline(engine, "U1", clock())
    now = clock()
    for minute in range(6):
        audit_log.append(AuditRecord(identity_id="U1", action="login_failed", timestamp=now - timedelta(minutes=minute)))
    audit_log.append(AuditRecord(identity_id="U1", action="role_change", timestamp=now - timedelta(minutes=1)))
    for index in range(101):
        audit_log.append(AuditRecord(identity_id="U2", action="read", timestamp=now - timedelta(seconds=index)))
    audit_log.append(AuditRecord(identity_id="U2", action="role_change", timestamp=now - timedelta(hours=2)))

    anomalies = await engine.scan_anomalies()

    assert [(a.identity_id, a.type, a.severity) for a in anomalies] == [
        ("U1", "failed_attempts", ThreatSeverity.HIGH),
        ("U1", "privilege_escalation", ThreatSeverity.CRITICAL),
        ("U2", "access_spike", ThreatSeverity.MEDIUM),
    ]
    assert recorder.of(EventKind.ANOMALY_DETECTED) == anomalies
    assert engine.get_profile("U1").anomalies_since(now - timedelta(hours=1)) == [
        "failed_attempts",
        "privilege_escalation",
    ]
    risk = await engine.score("U1")
    assert risk.behavior_score == 20


@pytest.mark.asyncio
async def test_refresh_baselines_visits_every_profile(engine, clock):
    await engine.observe("U1", make_activity(clock(), resource="/reports"))
    await engine.observe("U2", make_activity(clock()))

    assert engine.refresh_baselines() == 2
    pattern = engine.get_profile("U1").access_patterns["/reports"]
    assert pattern.average_frequency == pytest.approx(1 / 7)


def test_scheduler_lists_periodic_jobs(engine):
    scheduler = EngineScheduler(engine)
    assert [(name, interval) for name, interval, _ in scheduler.jobs()] == [
        ("baseline_refresh", timedelta(hours=1)),
        ("risk_recalculation", timedelta(minutes=5)),
        ("cleanup", timedelta(minutes=30)),
        ("ml_flush", timedelta(hours=1)),
        ("impossible_travel", timedelta(minutes=1)),
        ("anomaly_scan", timedelta(seconds=60)),
    ]


@pytest.mark.asyncio
async def test_scheduler_runs_sync_and_async_jobs(engine, clock):
    await engine.observe("U1", make_activity(clock()))
    scheduler = EngineScheduler(engine)

    assert await scheduler.run_once("ml_flush") == 1
    [score] = await scheduler.run_once("risk_recalculation")
    assert score.identity_id == "U1"
    with pytest.raises(KeyError):
        await scheduler.run_once("defragment")


@pytest.mark.asyncio
async def test_scheduler_logs_failing_job(engine, caplog):
    def broken():
        raise RuntimeError("flush target unavailable")

    engine.flush_features = broken
    scheduler = EngineScheduler(engine)

    assert await scheduler.run_once("ml_flush") is None
    assert "Periodic job ml_flush failed" in caplog.text


@pytest.mark.asyncio
async def test_scheduler_start_and_stop(engine):
    scheduler = EngineScheduler(engine)
    scheduler.start()
    assert scheduler.running
    assert len(scheduler._tasks) == 6
    await scheduler.stop()
    assert not scheduler.running
