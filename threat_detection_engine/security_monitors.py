from __future__ import annotations

import logging
import math
import re
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Deque, Dict, Iterable, List, Optional, Sequence

from .collaborators import GeoLocator
from .config import EngineConfig
from .models import (
    ActionType,
    GeoPoint,
    ResponseAction,
    ThreatIndicator,
    ThreatSeverity,
    ThreatType,
    utcnow,
)
from .threat_registry import ThreatRegistry

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    lat1, lat2 = math.radians(a.latitude), math.radians(b.latitude)
    dlat = lat2 - lat1
    dlon = math.radians(b.longitude - a.longitude)
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))


def _terminate_and_alert(target: str = "current") -> List[ResponseAction]:
    return [
        ResponseAction(type=ActionType.TERMINATE_SESSION, target=target),
        ResponseAction(type=ActionType.ALERT, target="security_team"),
    ]


@dataclass(slots=True)
class _LoginAttempts:
    timestamps: Deque[datetime] = field(default_factory=deque)
    identity_id: Optional[str] = None


class BruteForceDetector:
    """Sliding-window failure counter per opaque key (account, account+IP, ...).

    Every failure at or above the threshold raises a new threat; only a
    successful attempt or the window draining resets the count.
    """

    def __init__(self, config: EngineConfig, registry: ThreatRegistry, clock: Callable[[], datetime] = utcnow):
        self.config = config
        self.registry = registry
        self.clock = clock
        self.attempts: Dict[str, _LoginAttempts] = {}

    def record(
        self,
        key: str,
        success: bool,
        *,
        identity_id: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ThreatIndicator | None:
        now = now or self.clock()
        if success:
            self.attempts.pop(key, None)
            return None

        attempts = self.attempts.setdefault(key, _LoginAttempts())
        if identity_id is not None:
            attempts.identity_id = identity_id
        window = self.config.brute_force_window
        while attempts.timestamps and now - attempts.timestamps[0] >= window:
            attempts.timestamps.popleft()
        attempts.timestamps.append(now)

        failures = len(attempts.timestamps)
        if failures < self.config.brute_force_max_attempts:
            return None

        window_seconds = int(window.total_seconds())
        threat = ThreatIndicator(
            type=ThreatType.BRUTE_FORCE,
            severity=ThreatSeverity.HIGH,
            description=f"Brute force attack detected: {failures} failed attempts in {window_seconds}s",
            indicators=[f"Failed attempts: {failures}", f"Target: {key}"],
            risk_score=75,
            identity_id=attempts.identity_id,
            ip_address=ip,
            user_agent=user_agent,
            evidence=list(attempts.timestamps),
            response_actions=[
                ResponseAction(type=ActionType.LOCKOUT, target=key, duration=self.config.brute_force_lockout)
            ],
            detected_at=now,
        )
        return self.registry.register(threat)

    def failed_count(self, identity_id: str) -> int:
        return sum(len(a.timestamps) for a in self.attempts.values() if a.identity_id == identity_id)

    def cleanup(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        retention = self.config.login_attempt_retention
        removed = 0
        for key in list(self.attempts):
            attempts = self.attempts[key]
            while attempts.timestamps and now - attempts.timestamps[0] >= retention:
                attempts.timestamps.popleft()
            if not attempts.timestamps:
                del self.attempts[key]
                removed += 1
        return removed


@dataclass(frozen=True, slots=True)
class Signature:
    tag: str
    pattern: "re.Pattern[str]"
    severity: ThreatSeverity

    @classmethod
    def compile(cls, tag: str, expression: str, severity: ThreatSeverity) -> "Signature":
        return cls(tag=tag, pattern=re.compile(expression, re.IGNORECASE), severity=severity)


SQL_INJECTION_SIGNATURES: List[Signature] = [
    Signature.compile("sql_keyword", r"\b(SELECT|INSERT|UPDATE|DELETE|DROP|CREATE|ALTER|EXEC|UNION)\b", ThreatSeverity.CRITICAL),
    Signature.compile("sql_or_tautology", r"\bOR\b\s*\d+\s*=\s*\d+", ThreatSeverity.CRITICAL),
    Signature.compile("sql_and_tautology", r"\bAND\b\s*\d+\s*=\s*\d+", ThreatSeverity.CRITICAL),
    Signature.compile("sql_comment", r"--|#|/\*|\*/", ThreatSeverity.CRITICAL),
    Signature.compile("sql_time_delay", r"\bWAITFOR\s+DELAY\b", ThreatSeverity.CRITICAL),
    Signature.compile("sql_benchmark", r"\bBENCHMARK\b", ThreatSeverity.CRITICAL),
]

XSS_SIGNATURES: List[Signature] = [
    Signature.compile("script_block", r"<script[^>]*>.*?</script>", ThreatSeverity.HIGH),
    Signature.compile("javascript_uri", r"javascript:", ThreatSeverity.HIGH),
    Signature.compile("event_handler", r"on\w+\s*=", ThreatSeverity.HIGH),
    Signature.compile("iframe_tag", r"<iframe[^>]*>", ThreatSeverity.HIGH),
    Signature.compile("embed_tag", r"<embed[^>]*>", ThreatSeverity.HIGH),
    Signature.compile("object_tag", r"<object[^>]*>", ThreatSeverity.HIGH),
    Signature.compile("document_access", r"document\.(cookie|write|location)", ThreatSeverity.HIGH),
    Signature.compile("window_access", r"window\.(location|open)", ThreatSeverity.HIGH),
    Signature.compile("eval_call", r"eval\s*\(", ThreatSeverity.HIGH),
    Signature.compile("css_expression", r"expression\s*\(", ThreatSeverity.HIGH),
]


class SignatureMatcher:
    """Runs an ordered signature list over one input string."""

    def __init__(
        self,
        registry: ThreatRegistry,
        threat_type: ThreatType,
        signatures: Iterable[Signature],
        severity: ThreatSeverity,
        risk_score: float,
        description: str,
    ):
        self.registry = registry
        self.threat_type = threat_type
        self.signatures = list(signatures)
        self.severity = severity
        self.risk_score = risk_score
        self.description = description

    def add_signature(self, signature: Signature) -> None:
        self.signatures.append(signature)

    def matches(self, text: str) -> List[str]:
        found: List[str] = []
        for signature in self.signatures:
            found.extend(match.group(0) for match in signature.pattern.finditer(text))
        return found

    def detect(
        self,
        text: str,
        *,
        identity_id: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ThreatIndicator | None:
        found = self.matches(text)
        if not found:
            return None
        threat = ThreatIndicator(
            type=self.threat_type,
            severity=self.severity,
            description=self.description,
            indicators=found,
            risk_score=self.risk_score,
            identity_id=identity_id,
            ip_address=ip,
            user_agent=user_agent,
            evidence=[{"input": text, "patterns": found}],
            response_actions=_terminate_and_alert(),
        )
        return self.registry.register(threat)


def sql_injection_matcher(registry: ThreatRegistry) -> SignatureMatcher:
    return SignatureMatcher(
        registry,
        ThreatType.SQL_INJECTION,
        SQL_INJECTION_SIGNATURES,
        ThreatSeverity.CRITICAL,
        risk_score=90,
        description="SQL injection attempt detected",
    )


def xss_matcher(registry: ThreatRegistry) -> SignatureMatcher:
    return SignatureMatcher(
        registry,
        ThreatType.XSS_ATTEMPT,
        XSS_SIGNATURES,
        ThreatSeverity.HIGH,
        risk_score=80,
        description="Cross-site scripting attempt detected",
    )


class PrivilegeEscalationDetector:
    def __init__(self, config: EngineConfig, registry: ThreatRegistry):
        self.config = config
        self.registry = registry

    def detect(self, identity_id: str, requested_permission: str, current_role: str) -> ThreatIndicator | None:
        if current_role not in self.config.unprivileged_roles:
            return None
        if requested_permission not in self.config.privileged_permissions:
            return None
        threat = ThreatIndicator(
            type=ThreatType.PRIVILEGE_ESCALATION,
            severity=ThreatSeverity.CRITICAL,
            description=f"Privilege escalation attempt: {current_role} -> {requested_permission}",
            indicators=[f"Current role: {current_role}", f"Requested: {requested_permission}"],
            risk_score=85,
            identity_id=identity_id,
            evidence=[
                {"identity_id": identity_id, "current_role": current_role, "requested_permission": requested_permission}
            ],
            response_actions=[
                *_terminate_and_alert(identity_id),
                ResponseAction(type=ActionType.LOCKOUT, target=identity_id, duration=self.config.escalation_lockout),
            ],
        )
        return self.registry.register(threat)


@dataclass(slots=True)
class LoginSite:
    ip: str
    timestamp: datetime
    user_agent: Optional[str] = None
    point: Optional[GeoPoint] = None


class ImpossibleTravelDetector:
    """Compares successive located logins of an identity against a maximum travel speed."""

    def __init__(
        self,
        config: EngineConfig,
        registry: ThreatRegistry,
        locator: Optional[GeoLocator] = None,
    ):
        self.config = config
        self.registry = registry
        self.locator = locator
        self.pending: Dict[str, List[LoginSite]] = defaultdict(list)
        self.last_site: Dict[str, LoginSite] = {}

    def record_login(self, identity_id: str, ip: str, timestamp: datetime, user_agent: Optional[str] = None) -> None:
        self.pending[identity_id].append(LoginSite(ip=ip, timestamp=timestamp, user_agent=user_agent))

    def forget(self, identity_id: str) -> None:
        self.pending.pop(identity_id, None)
        self.last_site.pop(identity_id, None)

    def check(self) -> List[ThreatIndicator]:
        if self.locator is None:
            if self.pending:
                logger.debug("No geolocator configured; dropping %d pending login trails", len(self.pending))
                self.pending.clear()
            return []

        threats: List[ThreatIndicator] = []
        pending, self.pending = self.pending, defaultdict(list)
        for identity_id, sites in pending.items():
            for site in sorted(sites, key=lambda s: s.timestamp):
                threat = self._compare(identity_id, site)
                if threat is not None:
                    threats.append(threat)
        return threats

    def _compare(self, identity_id: str, site: LoginSite) -> ThreatIndicator | None:
        try:
            site.point = self.locator.locate(site.ip)
        except Exception as exc:
            logger.warning("Geolocation failed for %s: %s", site.ip, exc)
            return None
        if site.point is None:
            return None

        previous = self.last_site.get(identity_id)
        if previous is not None and site.timestamp < previous.timestamp:
            logger.debug("Ignoring out-of-order login for %s from %s", identity_id, site.ip)
            return None
        self.last_site[identity_id] = site
        if previous is None or previous.point is None:
            return None

        distance = haversine_km(previous.point, site.point)
        if distance == 0:
            return None
        hours = (site.timestamp - previous.timestamp).total_seconds() / 3600
        speed = distance / hours if hours > 0 else math.inf
        if speed <= self.config.impossible_travel_speed_kmh:
            return None

        threat = ThreatIndicator(
            type=ThreatType.IMPOSSIBLE_TRAVEL,
            severity=ThreatSeverity.HIGH,
            description=f"Impossible travel detected: {distance:.1f}km in {hours:.2f}h",
            indicators=[
                f"From: {previous.ip} {previous.point.label}".strip(),
                f"To: {site.ip} {site.point.label}".strip(),
                f"Speed: {speed:.0f} km/h" if math.isfinite(speed) else "Speed: simultaneous logins",
            ],
            risk_score=70,
            identity_id=identity_id,
            ip_address=site.ip,
            user_agent=site.user_agent,
            evidence=[
                {
                    "distance_km": distance,
                    "elapsed_hours": hours,
                    "from_ip": previous.ip,
                    "to_ip": site.ip,
                }
            ],
            response_actions=[
                ResponseAction(type=ActionType.CHALLENGE, target=identity_id, parameters={"type": "mfa"}),
                ResponseAction(type=ActionType.ALERT, target="security_team"),
            ],
        )
        return self.registry.register(threat)


def scan_text(matchers: Sequence[SignatureMatcher], text: str, **context) -> List[ThreatIndicator]:
    threats = [matcher.detect(text, **context) for matcher in matchers]
    return [threat for threat in threats if threat is not None]
