from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .events import EventBus, EventKind
from .exceptions import InvalidThreatTransitionError, ThreatNotFoundError
from .models import ThreatIndicator, ThreatSeverity, ThreatStatus, ThreatType, utcnow

logger = logging.getLogger(__name__)


class ThreatRegistry:
    """Table of detected threats and their status lifecycle."""

    def __init__(self, bus: EventBus, clock: Callable[[], datetime] = utcnow):
        self.bus = bus
        self.clock = clock
        self.threats: Dict[str, ThreatIndicator] = {}

    def register(self, threat: ThreatIndicator) -> ThreatIndicator:
        if threat.detected_at is None:
            threat.detected_at = self.clock()
        self.threats[threat.id] = threat
        logger.warning(
            "Threat detected: %s (%s) %s", threat.type.value, threat.severity.value, threat.description
        )
        self.bus.publish(EventKind.THREAT_DETECTED, threat)
        return threat

    def get(self, threat_id: str) -> ThreatIndicator:
        threat = self.threats.get(threat_id)
        if threat is None:
            raise ThreatNotFoundError(threat_id)
        return threat

    def filter(
        self,
        *,
        identity_id: Optional[str] = None,
        severity: Optional[ThreatSeverity] = None,
        type: Optional[ThreatType] = None,
        status: Optional[ThreatStatus] = None,
    ) -> List[ThreatIndicator]:
        threats = list(self.threats.values())
        if identity_id is not None:
            threats = [t for t in threats if t.identity_id == identity_id]
        if severity is not None:
            threats = [t for t in threats if t.severity == severity]
        if type is not None:
            threats = [t for t in threats if t.type == type]
        if status is not None:
            threats = [t for t in threats if t.status == status]
        return threats

    def active_for(self, identity_id: str) -> List[ThreatIndicator]:
        return self.filter(identity_id=identity_id, status=ThreatStatus.ACTIVE)

    def count_for(self, identity_id: str, type: ThreatType) -> int:
        return sum(1 for t in self.threats.values() if t.identity_id == identity_id and t.type == type)

    def transition(self, threat_id: str, status: ThreatStatus, note: Optional[str] = None) -> ThreatIndicator:
        threat = self.get(threat_id)
        if threat.status.is_terminal:
            raise InvalidThreatTransitionError(threat_id, threat.status.value, status.value)
        threat.status = status
        if status.is_terminal:
            threat.resolved_at = self.clock()
            threat.resolution = note
        return threat

    def mitigate(self, threat_id: str, mitigation: str) -> ThreatIndicator:
        threat = self.transition(threat_id, ThreatStatus.MITIGATED, mitigation)
        logger.info("Threat %s mitigated: %s", threat_id, mitigation)
        self.bus.publish(EventKind.THREAT_MITIGATED, {"threat_id": threat_id, "mitigation": mitigation})
        return threat

    def mark_false_positive(self, threat_id: str, reason: str) -> ThreatIndicator:
        threat = self.transition(threat_id, ThreatStatus.FALSE_POSITIVE, reason)
        logger.info("Threat %s marked as false positive: %s", threat_id, reason)
        self.bus.publish(EventKind.THREAT_FALSE_POSITIVE, {"threat_id": threat_id, "reason": reason})
        return threat

    def cleanup(self, retention: timedelta) -> int:
        now = self.clock()
        stale = [
            threat_id
            for threat_id, threat in self.threats.items()
            if threat.status != ThreatStatus.ACTIVE and now - threat.detected_at > retention
        ]
        for threat_id in stale:
            del self.threats[threat_id]
        return len(stale)
