import asyncio
from datetime import timedelta

from threat_detection_engine import Activity, GeoPoint, ThreatDetectionEngine
from threat_detection_engine.collaborators import InMemoryIdentityDirectory, StaticGeoLocator
from threat_detection_engine.models import utcnow


async def main() -> None:
    now = utcnow()
    locator = StaticGeoLocator(
        {
            "198.51.100.10": GeoPoint(40.7128, -74.0060, "New York"),
            "203.0.113.20": GeoPoint(51.5074, -0.1278, "London"),
        }
    )
    engine = ThreatDetectionEngine(directory=InMemoryIdentityDirectory({"alice": "Alice Example"}), locator=locator)
    engine.bus.subscribe(None, lambda kind, payload: print(f"  event: {kind.value}"))

    print("Building a baseline for alice")
    for index in range(5):
        await engine.observe(
            "alice",
            Activity(now - timedelta(hours=2), f"198.51.100.{10 + index}", f"Mozilla/5.0 device-{index}", "/orders", 900),
        )

    result = await engine.observe("alice", Activity(now, "203.0.113.20", "python-requests/2.31", "/admin/export", 30))
    print("Anomalies:", result.anomalies, "score:", result.score)

    engine.scan_input("' OR 1=1 --", identity_id="alice", ip="203.0.113.20")
    engine.check_permission_request("alice", "superadmin", "viewer")
    for threat in engine.check_impossible_travel():
        print("Travel:", threat.description)

    risk = await engine.score("alice")
    print(f"Risk score: {risk.total_score:.1f} ({risk.level.value})")
    for factor in risk.factors:
        print(f"- {factor.name}: {factor.value:.0f} x {factor.weight} = {factor.contribution:.1f}")

    for threat in engine.get_active_threats(identity_id="alice"):
        print(f"{threat.severity.value:>8} {threat.type.value}: {threat.description}")
    print("Feature vectors buffered:", len(engine.collector.buffer))
    print("Baseline established:", engine.get_profile("alice").baseline_established)


if __name__ == "__main__":
    asyncio.run(main())
