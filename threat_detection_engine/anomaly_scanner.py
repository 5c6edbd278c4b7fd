from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .collaborators import AuditLog
from .config import EngineConfig
from .events import EventBus, EventKind
from .models import AuditRecord, ScanAnomaly, ThreatSeverity, utcnow

logger = logging.getLogger(__name__)

PRIVILEGE_CHANGE_ACTIONS = frozenset({"role_change", "permission_change"})


class AnomalyScanner:
    """Batch pass over the trailing audit window looking for per-identity outliers.

    Findings are announced as ``anomaly_detected`` events; no threat records
    are created here.
    """

    def __init__(
        self,
        config: EngineConfig,
        audit_log: AuditLog,
        bus: EventBus,
        on_anomaly: Optional[Callable[[ScanAnomaly], None]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.audit_log = audit_log
        self.bus = bus
        self.on_anomaly = on_anomaly
        self.clock = clock

    async def scan(self) -> List[ScanAnomaly]:
        now = self.clock()
        try:
            records = await self.audit_log.query(since=now - self.config.scan_window, until=now)
        except Exception as exc:
            logger.warning("Anomaly scan skipped, audit query failed: %s", exc)
            return []

        anomalies = self.evaluate(records, now)
        for anomaly in anomalies:
            logger.warning("Anomaly detected: %s", anomaly.description)
            if self.on_anomaly is not None:
                self.on_anomaly(anomaly)
            self.bus.publish(EventKind.ANOMALY_DETECTED, anomaly)
        return anomalies

    def evaluate(self, records: List[AuditRecord], now: datetime) -> List[ScanAnomaly]:
        by_identity: Dict[str, List[AuditRecord]] = defaultdict(list)
        for record in records:
            by_identity[record.identity_id].append(record)

        anomalies: List[ScanAnomaly] = []
        for identity_id, logs in by_identity.items():
            if len(logs) > self.config.access_spike_threshold:
                anomalies.append(
                    ScanAnomaly(
                        type="access_spike",
                        description=f"Identity {identity_id} performed {len(logs)} actions in the last hour",
                        identity_id=identity_id,
                        timestamp=now,
                        severity=ThreatSeverity.MEDIUM,
                        details={"action_count": len(logs)},
                    )
                )

            failed = [log for log in logs if "failed" in log.action]
            if len(failed) > self.config.failed_attempts_threshold:
                anomalies.append(
                    ScanAnomaly(
                        type="failed_attempts",
                        description=f"Identity {identity_id} had {len(failed)} failed attempts",
                        identity_id=identity_id,
                        timestamp=now,
                        severity=ThreatSeverity.HIGH,
                        details={"failed_count": len(failed)},
                    )
                )

            privilege_changes = [log for log in logs if log.action in PRIVILEGE_CHANGE_ACTIONS]
            if privilege_changes:
                anomalies.append(
                    ScanAnomaly(
                        type="privilege_escalation",
                        description=f"Identity {identity_id} attempted privilege changes",
                        identity_id=identity_id,
                        timestamp=now,
                        severity=ThreatSeverity.CRITICAL,
                        details={"actions": [log.action for log in privilege_changes]},
                    )
                )
        return anomalies
