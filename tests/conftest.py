from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Tuple

import pytest

from threat_detection_engine import Activity, EngineConfig, ThreatDetectionEngine
from threat_detection_engine.collaborators import InMemoryAuditLog, InMemoryIdentityDirectory
from threat_detection_engine.events import EventBus, EventKind


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class EventRecorder:
    """Collects published events, optionally for a single kind."""

    def __init__(self, bus: EventBus, kind: Optional[EventKind] = None):
        self.events: List[Tuple[EventKind, Any]] = []
        self.close = bus.subscribe(kind, self)

    def __call__(self, kind: EventKind, payload: Any) -> None:
        self.events.append((kind, payload))

    def of(self, kind: EventKind) -> List[Any]:
        return [payload for seen, payload in self.events if seen is kind]


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def audit_log():
    return InMemoryAuditLog()


@pytest.fixture
def directory():
    return InMemoryIdentityDirectory({"U1": "alice", "U2": "bob"})


@pytest.fixture
def engine(clock, audit_log, directory):
    return ThreatDetectionEngine(EngineConfig(), directory=directory, audit_log=audit_log, clock=clock)


@pytest.fixture
def recorder(engine):
    return EventRecorder(engine.bus)


def make_activity(when: datetime, ip: str = "10.0.0.1", agent: str = "Mozilla/5.0", **extra) -> Activity:
    return Activity(timestamp=when, ip=ip, user_agent=agent, **extra)


async def establish_baseline(engine: ThreatDetectionEngine, identity: str, when: datetime, count: int = 5) -> None:
    """Five distinct IP/device pairs give ten data points, enough for a baseline."""
    for index in range(count):
        await engine.observe(identity, make_activity(when, ip=f"10.0.0.{index}", agent=f"agent-{index}"))
