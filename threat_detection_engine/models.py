from __future__ import annotations

import secrets
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Mapping, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_threat_id() -> str:
    return secrets.token_hex(16)


class ThreatType(str, Enum):
    BRUTE_FORCE = "brute_force"
    ACCOUNT_ENUMERATION = "account_enumeration"
    PRIVILEGE_ESCALATION = "privilege_escalation"
    SUSPICIOUS_API_USAGE = "suspicious_api_usage"
    XSS_ATTEMPT = "xss_attempt"
    SQL_INJECTION = "sql_injection"
    RATE_LIMIT_VIOLATION = "rate_limit_violation"
    ANOMALOUS_BEHAVIOR = "anomalous_behavior"
    IMPOSSIBLE_TRAVEL = "impossible_travel"
    UNKNOWN_DEVICE = "unknown_device"
    SESSION_HIJACKING = "session_hijacking"
    DATA_EXFILTRATION = "data_exfiltration"


class ThreatSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ThreatStatus(str, Enum):
    ACTIVE = "active"
    INVESTIGATING = "investigating"
    MITIGATED = "mitigated"
    FALSE_POSITIVE = "false_positive"

    @property
    def is_terminal(self) -> bool:
        return self in (ThreatStatus.MITIGATED, ThreatStatus.FALSE_POSITIVE)


class ActionType(str, Enum):
    LOCKOUT = "lockout"
    CHALLENGE = "challenge"
    TERMINATE_SESSION = "terminate_session"
    ALERT = "alert"
    RESTRICT_ACCESS = "restrict_access"
    MONITOR = "monitor"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class FeatureLabel(str, Enum):
    NORMAL = "normal"
    SUSPICIOUS = "suspicious"
    MALICIOUS = "malicious"


@dataclass(slots=True)
class Activity:
    timestamp: datetime
    ip: str
    user_agent: str
    resource: Optional[str] = None
    session_duration: Optional[float] = None
    action: str = "access"


@dataclass(slots=True)
class ObservationResult:
    anomalies: List[str]
    score: float


@dataclass(slots=True)
class AccessPattern:
    resource: str
    daily_access: List[int] = field(default_factory=lambda: [0] * 24)
    weekly_access: List[int] = field(default_factory=lambda: [0] * 7)
    average_frequency: float = 0.0
    last_accessed: Optional[datetime] = None

    def record(self, timestamp: datetime) -> None:
        self.daily_access[timestamp.hour] += 1
        self.weekly_access[timestamp.weekday()] += 1
        self.average_frequency = sum(self.weekly_access) / 7
        self.last_accessed = timestamp


@dataclass(slots=True)
class BehaviorProfile:
    identity_id: str
    display_name: str
    login_hours: List[float] = field(default_factory=lambda: [0.0] * 24)
    recent_locations: List[str] = field(default_factory=list)
    recent_devices: List[str] = field(default_factory=list)
    average_session_duration: float = 0.0
    access_patterns: Dict[str, AccessPattern] = field(default_factory=dict)
    baseline_established: bool = False
    last_updated: datetime = field(default_factory=utcnow)
    observation_count: int = 0
    location_changes: int = 0
    last_ip: Optional[str] = None
    last_activity_at: Optional[datetime] = None
    recent_activity: Deque[Tuple[datetime, bool]] = field(default_factory=deque)
    recent_anomalies: Deque[Tuple[datetime, str]] = field(default_factory=deque)

    def data_points(self) -> int:
        return len(self.recent_locations) + len(self.recent_devices)

    def anomalies_since(self, since: datetime) -> List[str]:
        return [tag for timestamp, tag in self.recent_anomalies if timestamp >= since]


@dataclass(slots=True)
class ResponseAction:
    type: ActionType
    target: str
    duration: Optional[timedelta] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    executed_at: Optional[datetime] = None
    executed_by: Optional[str] = None


@dataclass(slots=True)
class ThreatIndicator:
    type: ThreatType
    severity: ThreatSeverity
    description: str
    indicators: List[str]
    risk_score: float
    identity_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    evidence: List[Any] = field(default_factory=list)
    response_actions: List[ResponseAction] = field(default_factory=list)
    id: str = field(default_factory=new_threat_id)
    detected_at: Optional[datetime] = None
    status: ThreatStatus = ThreatStatus.ACTIVE
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None


@dataclass(slots=True)
class RiskFactor:
    name: str
    value: float
    weight: float
    contribution: float
    description: str


@dataclass(slots=True)
class RiskScore:
    identity_id: str
    display_name: str
    behavior_score: float
    threat_score: float
    reputation_score: float
    device_trust_score: float
    total_score: float
    level: RiskLevel
    factors: List[RiskFactor]
    calculated_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class AuditRecord:
    identity_id: str
    action: str
    timestamp: datetime
    details: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ScanAnomaly:
    type: str
    description: str
    identity_id: str
    timestamp: datetime
    severity: ThreatSeverity
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class MLFeatureVector:
    identity_id: str
    timestamp: datetime
    login_hour: int
    login_day_of_week: int
    session_duration: float
    failed_login_count: int
    unique_ips: int
    unique_devices: int
    api_call_rate: float
    data_access_volume: int
    privileged_actions: int
    time_since_last_login: float
    location_change_rate: float
    abnormal_time_login: bool
    new_device: bool
    new_location: bool
    label: FeatureLabel = FeatureLabel.NORMAL


@dataclass(slots=True)
class GeoPoint:
    latitude: float
    longitude: float
    label: str = ""


@dataclass(slots=True)
class Investigation:
    threat: ThreatIndicator
    related_threats: List[ThreatIndicator]
    profile: Optional[BehaviorProfile]
    recommendations: List[str]


@dataclass(slots=True)
class SecurityAnalytics:
    start: datetime
    end: datetime
    total_threats_detected: int
    threats_by_type: Dict[str, int]
    threats_by_severity: Dict[str, int]
    top_threatened_identities: List[Dict[str, Any]]
    top_threat_sources: List[Dict[str, Any]]
    average_risk_score: float
    high_risk_identities: int
    mitigated_threats: int
    false_positives: int
    response_time: Dict[str, float]
