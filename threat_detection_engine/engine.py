from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from .anomaly_scanner import AnomalyScanner
from .behavior_analyzer import BehaviorProfileStore
from .collaborators import (
    AuditLog,
    GeoLocator,
    IdentityDirectory,
    InMemoryAuditLog,
    InMemoryIdentityDirectory,
)
from .config import EngineConfig
from .events import EventBus
from .feature_collector import FeatureVectorCollector
from .models import (
    Activity,
    BehaviorProfile,
    Investigation,
    ObservationResult,
    ResponseAction,
    RiskLevel,
    RiskScore,
    ScanAnomaly,
    SecurityAnalytics,
    ThreatIndicator,
    ThreatSeverity,
    ThreatStatus,
    ThreatType,
    utcnow,
)
from .response import ResponseOrchestrator
from .risk_scoring import RiskScorer
from .security_monitors import (
    BruteForceDetector,
    ImpossibleTravelDetector,
    PrivilegeEscalationDetector,
    scan_text,
    sql_injection_matcher,
    xss_matcher,
)
from .store import IdentityStore
from .threat_registry import ThreatRegistry

logger = logging.getLogger(__name__)

RECOMMENDATIONS: Dict[ThreatSeverity, List[str]] = {
    ThreatSeverity.CRITICAL: [
        "Immediately lock the affected account",
        "Review all recent activity from this identity",
        "Check for data exfiltration attempts",
    ],
    ThreatSeverity.HIGH: [
        "Enable enhanced monitoring for this identity",
        "Require MFA for all future logins",
        "Review identity permissions",
    ],
    ThreatSeverity.MEDIUM: [
        "Monitor identity activity closely",
        "Consider requiring password reset",
    ],
    ThreatSeverity.LOW: [
        "Continue monitoring",
        "Update security awareness training",
    ],
}


class ThreatDetectionEngine:
    """Owns every per-identity map and serves the detection, response and query surface.

    Construct one per process and hand it to the API, the scheduler and any
    event subscribers. All state mutation happens synchronously between the
    awaited collaborator calls.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        directory: IdentityDirectory | None = None,
        audit_log: AuditLog | None = None,
        locator: GeoLocator | None = None,
        bus: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or EngineConfig()
        self.bus = bus or EventBus()
        self.directory = directory or InMemoryIdentityDirectory()
        self.audit_log = audit_log or InMemoryAuditLog()
        self.clock = clock

        self.threats = ThreatRegistry(self.bus, clock)
        self.orchestrator = ResponseOrchestrator(self.bus, clock)
        self.collector = FeatureVectorCollector(self.bus, self.config.ml_buffer_size)
        self.brute_force = BruteForceDetector(self.config, self.threats, clock)
        self.sql_injection = sql_injection_matcher(self.threats)
        self.xss = xss_matcher(self.threats)
        self.privilege = PrivilegeEscalationDetector(self.config, self.threats)
        self.travel = ImpossibleTravelDetector(self.config, self.threats, locator)

        profiles: IdentityStore[BehaviorProfile] = IdentityStore(
            self.config.max_identities, self.config.identity_idle_ttl, on_evict=self._forget_identity
        )
        self.behavior = BehaviorProfileStore(
            self.config,
            self.bus,
            self.directory,
            self.collector,
            profiles,
            feature_context=self._feature_context,
            clock=clock,
        )
        self.risk = RiskScorer(
            self.config,
            self.behavior,
            self.threats,
            self.audit_log,
            self.directory,
            self.orchestrator,
            clock=clock,
        )
        self.scanner = AnomalyScanner(
            self.config, self.audit_log, self.bus, on_anomaly=self._record_scan_anomaly, clock=clock
        )

    # inbound activity and detections

    async def observe(self, identity_id: str, activity: Activity) -> ObservationResult:
        result = await self.behavior.observe(identity_id, activity)
        self.travel.record_login(identity_id, activity.ip, activity.timestamp, activity.user_agent)
        return result

    def record_login_outcome(
        self,
        key: str,
        success: bool,
        *,
        identity_id: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ThreatIndicator | None:
        return self.brute_force.record(
            key, success, identity_id=identity_id, ip=ip, user_agent=user_agent, now=now
        )

    def scan_input(
        self,
        text: str,
        *,
        identity_id: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> List[ThreatIndicator]:
        return scan_text(
            [self.sql_injection, self.xss], text, identity_id=identity_id, ip=ip, user_agent=user_agent
        )

    def detect_sql_injection(self, text: str, **context) -> ThreatIndicator | None:
        return self.sql_injection.detect(text, **context)

    def detect_xss(self, text: str, **context) -> ThreatIndicator | None:
        return self.xss.detect(text, **context)

    def check_permission_request(
        self, identity_id: str, requested_permission: str, current_role: str
    ) -> ThreatIndicator | None:
        return self.privilege.detect(identity_id, requested_permission, current_role)

    # threat lifecycle

    def investigate(self, threat_id: str, investigator: str) -> Investigation:
        threat = self.threats.transition(threat_id, ThreatStatus.INVESTIGATING)
        related = [
            candidate
            for candidate in self.threats.filter(identity_id=threat.identity_id, type=threat.type)
            if candidate.id != threat_id
        ]
        profile = self.behavior.get(threat.identity_id) if threat.identity_id else None
        logger.info("Threat %s under investigation by %s", threat_id, investigator)
        return Investigation(
            threat=threat,
            related_threats=related,
            profile=profile,
            recommendations=list(RECOMMENDATIONS[threat.severity]),
        )

    def mitigate(self, threat_id: str, mitigation: str) -> ThreatIndicator:
        return self.threats.mitigate(threat_id, mitigation)

    def mark_false_positive(self, threat_id: str, reason: str) -> ThreatIndicator:
        return self.threats.mark_false_positive(threat_id, reason)

    def respond(self, threat_id: str) -> List[ResponseAction]:
        """Executes the containment actions planned on a threat."""
        threat = self.threats.get(threat_id)
        pending = [action for action in threat.response_actions if action.executed_at is None]
        return self.orchestrator.execute_all(pending)

    # risk scoring

    async def score(self, identity_id: str) -> RiskScore:
        return await self.risk.score(identity_id)

    async def recalculate_risk_scores(self) -> List[RiskScore]:
        return await self.risk.recalculate_all(self.behavior.profiles)

    # periodic maintenance

    def refresh_baselines(self) -> int:
        return self.behavior.refresh_baselines()

    async def scan_anomalies(self) -> List[ScanAnomaly]:
        return await self.scanner.scan()

    def check_impossible_travel(self) -> List[ThreatIndicator]:
        return self.travel.check()

    def flush_features(self) -> int:
        return self.collector.flush()

    def cleanup(self) -> Dict[str, int]:
        now = self.clock()
        summary = {
            "login_keys": self.brute_force.cleanup(now),
            "threats": self.threats.cleanup(self.config.threat_retention),
            "profiles": len(self.behavior.profiles.expire(now)),
            "risk_scores": len(self.risk.scores.expire(now)),
        }
        logger.info("Cleanup removed %s", summary)
        return summary

    # read-only queries

    def get_profile(self, identity_id: str) -> Optional[BehaviorProfile]:
        return self.behavior.get(identity_id)

    def get_active_threats(
        self,
        *,
        identity_id: Optional[str] = None,
        severity: Optional[ThreatSeverity] = None,
        type: Optional[ThreatType] = None,
        status: Optional[ThreatStatus] = None,
    ) -> List[ThreatIndicator]:
        return self.threats.filter(identity_id=identity_id, severity=severity, type=type, status=status)

    def get_risk_scores(
        self,
        *,
        min_score: Optional[float] = None,
        max_score: Optional[float] = None,
        level: Optional[RiskLevel] = None,
    ) -> List[RiskScore]:
        scores = self.risk.scores.values()
        if min_score is not None:
            scores = [s for s in scores if s.total_score >= min_score]
        if max_score is not None:
            scores = [s for s in scores if s.total_score <= max_score]
        if level is not None:
            scores = [s for s in scores if s.level == level]
        return scores

    async def get_security_analytics(self, start: datetime, end: datetime) -> SecurityAnalytics:
        threats = [t for t in self.threats.threats.values() if start <= t.detected_at <= end]

        by_type = {kind.value: 0 for kind in ThreatType}
        by_severity = {severity.value: 0 for severity in ThreatSeverity}
        identity_counts: Counter[str] = Counter()
        source_counts: Counter[str] = Counter()
        for threat in threats:
            by_type[threat.type.value] += 1
            by_severity[threat.severity.value] += 1
            if threat.identity_id:
                identity_counts[threat.identity_id] += 1
            if threat.ip_address:
                source_counts[threat.ip_address] += 1

        top_identities = []
        for identity_id, count in identity_counts.most_common(10):
            top_identities.append(
                {"identity_id": identity_id, "display_name": await self._display_name(identity_id), "threat_count": count}
            )

        scores = self.risk.scores.values()
        average = sum(s.total_score for s in scores) / len(scores) if scores else 0.0
        high_risk = sum(1 for s in scores if s.level in (RiskLevel.HIGH, RiskLevel.CRITICAL))

        return SecurityAnalytics(
            start=start,
            end=end,
            total_threats_detected=len(threats),
            threats_by_type=by_type,
            threats_by_severity=by_severity,
            top_threatened_identities=top_identities,
            top_threat_sources=[{"source": ip, "count": count} for ip, count in source_counts.most_common(10)],
            average_risk_score=average,
            high_risk_identities=high_risk,
            mitigated_threats=sum(1 for t in threats if t.status == ThreatStatus.MITIGATED),
            false_positives=sum(1 for t in threats if t.status == ThreatStatus.FALSE_POSITIVE),
            response_time=self._response_times(threats),
        )

    # internals

    def _response_times(self, threats: List[ThreatIndicator]) -> Dict[str, float]:
        durations = [
            (t.resolved_at - t.detected_at).total_seconds() for t in threats if t.resolved_at is not None
        ]
        if not durations:
            return {"average": 0.0, "min": 0.0, "max": 0.0}
        return {"average": sum(durations) / len(durations), "min": min(durations), "max": max(durations)}

    async def _display_name(self, identity_id: str) -> str:
        profile = self.behavior.get(identity_id)
        if profile is not None:
            return profile.display_name
        try:
            return await self.directory.display_name(identity_id) or "unknown"
        except Exception as exc:
            logger.warning("Identity lookup failed for %s: %s", identity_id, exc)
            return "unknown"

    def _feature_context(self, identity_id: str) -> Tuple[int, int]:
        return (
            self.brute_force.failed_count(identity_id),
            self.threats.count_for(identity_id, ThreatType.PRIVILEGE_ESCALATION),
        )

    def _record_scan_anomaly(self, anomaly: ScanAnomaly) -> None:
        self.behavior.record_anomalies(anomaly.identity_id, [anomaly.type])

    def _forget_identity(self, identity_id: str, _profile: BehaviorProfile) -> None:
        self.risk.scores.pop(identity_id)
        self.travel.forget(identity_id)
