from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_activity
from threat_detection_engine import (
    ActionType,
    EngineConfig,
    EventKind,
    GeoPoint,
    ThreatDetectionEngine,
    ThreatSeverity,
    ThreatType,
)
from threat_detection_engine.collaborators import StaticGeoLocator
from threat_detection_engine.security_monitors import Signature, haversine_km

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

NEW_YORK = GeoPoint(40.7128, -74.0060, "New York")
LONDON = GeoPoint(51.5074, -0.1278, "London")


def test_brute_force_raises_on_fifth_failure_with_lockout(engine, recorder):
    results = [
        engine.record_login_outcome("alice:10.0.0.1", False, now=T0 + timedelta(seconds=offset))
        for offset in range(5)
    ]

    assert results[:4] == [None, None, None, None]
    threat = results[4]
    assert threat.type is ThreatType.BRUTE_FORCE
    assert threat.severity is ThreatSeverity.HIGH
    assert threat.indicators == ["Failed attempts: 5", "Target: alice:10.0.0.1"]
    [lockout] = threat.response_actions
    assert lockout.type is ActionType.LOCKOUT
    assert lockout.duration == timedelta(minutes=30)
    assert lockout.executed_at is None
    assert recorder.of(EventKind.THREAT_DETECTED) == [threat]


def test_brute_force_keeps_raising_until_success(engine):
    for offset in range(5):
        engine.record_login_outcome("alice", False, now=T0 + timedelta(seconds=offset))

    sixth = engine.record_login_outcome("alice", False, now=T0 + timedelta(seconds=5))
    assert sixth is not None
    assert "6 failed attempts" in sixth.description

    assert engine.record_login_outcome("alice", True, now=T0 + timedelta(seconds=6)) is None
    assert engine.record_login_outcome("alice", False, now=T0 + timedelta(seconds=7)) is None
    assert len(engine.get_active_threats(type=ThreatType.BRUTE_FORCE)) == 2


def test_brute_force_window_slides(engine):
    for offset in range(4):
        engine.record_login_outcome("bob", False, now=T0 + timedelta(minutes=offset))

    # the first two failures have aged out of the 15 minute window
    assert engine.record_login_outcome("bob", False, now=T0 + timedelta(minutes=16)) is None


def test_brute_force_uses_configured_threshold(clock):
    engine = ThreatDetectionEngine(
        EngineConfig(brute_force_max_attempts=2, brute_force_lockout=timedelta(minutes=5)), clock=clock
    )
    engine.record_login_outcome("carol", False, identity_id="U3", ip="192.0.2.9", now=T0)
    threat = engine.record_login_outcome("carol", False, identity_id="U3", ip="192.0.2.9", now=T0)
    assert threat.identity_id == "U3"
    assert threat.ip_address == "192.0.2.9"
    assert threat.response_actions[0].duration == timedelta(minutes=5)


def test_brute_force_cleanup_drops_stale_keys(engine, clock):
    engine.record_login_outcome("dave", False, now=clock() - timedelta(hours=25))
    engine.record_login_outcome("erin", False, now=clock())
    assert engine.brute_force.cleanup(clock()) == 1
    assert set(engine.brute_force.attempts) == {"erin"}


def test_sql_injection_tautology_is_flagged(engine):
    threat = engine.detect_sql_injection("1 OR 1=1")
    assert threat.type is ThreatType.SQL_INJECTION
    assert threat.severity is ThreatSeverity.CRITICAL
    assert "OR 1=1" in threat.indicators
    assert [action.type for action in threat.response_actions] == [ActionType.TERMINATE_SESSION, ActionType.ALERT]


def test_plain_text_is_not_flagged(engine, recorder):
    assert engine.detect_sql_injection("hello world") is None
    assert engine.detect_xss("hello world") is None
    assert engine.scan_input("hello world") == []
    assert recorder.events == []


def test_sql_signatures_are_case_insensitive_and_collect_all_matches(engine):
    threat = engine.detect_sql_injection("x'; drop table users; -- ")
    assert threat.indicators == ["drop", "--"]


def test_xss_attempt_is_high_severity(engine):
    threat = engine.detect_xss('<img src=x onerror="alert(1)">')
    assert threat.type is ThreatType.XSS_ATTEMPT
    assert threat.severity is ThreatSeverity.HIGH
    assert any(indicator.startswith("onerror") for indicator in threat.indicators)


def test_scan_input_runs_both_matchers(engine):
    threats = engine.scan_input("<script>document.cookie</script> UNION SELECT", identity_id="U1", ip="203.0.113.5")
    assert {threat.type for threat in threats} == {ThreatType.SQL_INJECTION, ThreatType.XSS_ATTEMPT}
    assert all(threat.identity_id == "U1" and threat.ip_address == "203.0.113.5" for threat in threats)


def test_signatures_are_pluggable(engine):
    engine.sql_injection.add_signature(Signature.compile("sleep", r"\bpg_sleep\s*\(", ThreatSeverity.CRITICAL))
    threat = engine.detect_sql_injection("1; pg_sleep(5)")
    assert "pg_sleep(" in threat.indicators


def test_privilege_escalation_for_unprivileged_role(engine):
    threat = engine.check_permission_request("U1", "superadmin", "viewer")
    assert threat.severity is ThreatSeverity.CRITICAL
    assert threat.identity_id == "U1"
    assert [action.type for action in threat.response_actions] == [
        ActionType.TERMINATE_SESSION,
        ActionType.ALERT,
        ActionType.LOCKOUT,
    ]
    assert threat.response_actions[2].duration == timedelta(hours=1)


def test_privileged_role_or_ordinary_permission_is_allowed(engine):
    assert engine.check_permission_request("U1", "superadmin", "admin") is None
    assert engine.check_permission_request("U1", "read", "viewer") is None


def test_haversine_new_york_to_london():
    assert haversine_km(NEW_YORK, LONDON) == pytest.approx(5570, rel=0.01)


@pytest.mark.asyncio
async def test_impossible_travel_flags_transatlantic_hop(clock):
    locator = StaticGeoLocator({"198.51.100.1": NEW_YORK, "203.0.113.1": LONDON})
    engine = ThreatDetectionEngine(locator=locator, clock=clock)

    await engine.observe("U1", make_activity(T0, ip="198.51.100.1"))
    await engine.observe("U1", make_activity(T0 + timedelta(hours=1), ip="203.0.113.1"))

    [threat] = engine.check_impossible_travel()
    assert threat.type is ThreatType.IMPOSSIBLE_TRAVEL
    assert threat.identity_id == "U1"
    assert threat.ip_address == "203.0.113.1"
    assert threat.evidence[0]["distance_km"] == pytest.approx(5570, rel=0.01)
    assert engine.check_impossible_travel() == []


@pytest.mark.asyncio
async def test_plausible_travel_is_not_flagged(clock):
    locator = StaticGeoLocator({"198.51.100.1": NEW_YORK, "203.0.113.1": LONDON})
    engine = ThreatDetectionEngine(locator=locator, clock=clock)

    await engine.observe("U1", make_activity(T0, ip="198.51.100.1"))
    engine.check_impossible_travel()
    await engine.observe("U1", make_activity(T0 + timedelta(hours=8), ip="203.0.113.1"))

    assert engine.check_impossible_travel() == []


@pytest.mark.asyncio
async def test_late_arriving_older_login_does_not_mask_travel(clock):
    locator = StaticGeoLocator(
        {
            "198.51.100.1": NEW_YORK,
            "192.0.2.33": GeoPoint(48.8566, 2.3522, "Paris"),
            "203.0.113.1": LONDON,
        }
    )
    engine = ThreatDetectionEngine(locator=locator, clock=clock)

    await engine.observe("U1", make_activity(T0, ip="198.51.100.1"))
    assert engine.check_impossible_travel() == []
    await engine.observe("U1", make_activity(T0 - timedelta(hours=20), ip="192.0.2.33"))
    assert engine.check_impossible_travel() == []
    assert engine.travel.last_site["U1"].ip == "198.51.100.1"

    await engine.observe("U1", make_activity(T0 + timedelta(hours=1), ip="203.0.113.1"))
    [threat] = engine.check_impossible_travel()
    assert threat.evidence[0]["from_ip"] == "198.51.100.1"
    assert threat.evidence[0]["to_ip"] == "203.0.113.1"


@pytest.mark.asyncio
async def test_impossible_travel_without_locator_is_a_no_op(engine):
    await engine.observe("U1", make_activity(T0, ip="198.51.100.1"))
    assert engine.check_impossible_travel() == []
    assert engine.travel.pending == {}
