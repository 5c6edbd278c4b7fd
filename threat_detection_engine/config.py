from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from datetime import timedelta
from typing import Dict, FrozenSet, Mapping, Optional


def _default_weights() -> Dict[str, float]:
    return {"behavior": 0.3, "threats": 0.4, "reputation": 0.2, "device_trust": 0.1}


def _default_severity_weights() -> Dict[str, float]:
    return {"critical": 40.0, "high": 25.0, "medium": 15.0, "low": 5.0}


@dataclass(slots=True)
class EngineConfig:
    """Thresholds, weights, windows and intervals for the threat detection engine."""

    # brute force
    brute_force_max_attempts: int = 5
    brute_force_window: timedelta = timedelta(minutes=15)
    brute_force_lockout: timedelta = timedelta(minutes=30)
    login_attempt_retention: timedelta = timedelta(hours=24)

    # behavior baselines
    max_recent_locations: int = 10
    max_recent_devices: int = 5
    baseline_data_points: int = 10
    session_duration_weight: float = 0.1
    login_hour_increment: float = 0.1
    normal_hour_frequency: float = 0.1
    normal_hour_tolerance: int = 2
    session_deviation_factor: float = 2.0
    recent_anomaly_window: timedelta = timedelta(hours=1)

    # impossible travel
    impossible_travel_speed_kmh: float = 900.0

    # privilege escalation
    privileged_permissions: FrozenSet[str] = frozenset({"admin", "superadmin", "delete_all", "modify_system"})
    unprivileged_roles: FrozenSet[str] = frozenset({"user", "viewer", "editor"})
    escalation_lockout: timedelta = timedelta(hours=1)

    # risk scoring
    risk_weights: Dict[str, float] = field(default_factory=_default_weights)
    severity_weights: Dict[str, float] = field(default_factory=_default_severity_weights)
    low_risk_threshold: float = 30.0
    medium_risk_threshold: float = 50.0
    high_risk_threshold: float = 70.0
    reputation_window: timedelta = timedelta(days=30)
    reputation_actions: FrozenSet[str] = frozenset({"security_violation", "threat_detected"})
    critical_lockout: timedelta = timedelta(hours=1)

    # anomaly scan
    scan_window: timedelta = timedelta(hours=1)
    access_spike_threshold: int = 100
    failed_attempts_threshold: int = 5

    # feature vectors
    ml_buffer_size: int = 10_000

    # retention
    max_identities: int = 100_000
    identity_idle_ttl: timedelta = timedelta(days=30)
    threat_retention: timedelta = timedelta(days=7)

    # periodic tasks
    baseline_refresh_interval: timedelta = timedelta(hours=1)
    risk_recalculation_interval: timedelta = timedelta(minutes=5)
    cleanup_interval: timedelta = timedelta(minutes=30)
    ml_flush_interval: timedelta = timedelta(hours=1)
    impossible_travel_interval: timedelta = timedelta(minutes=1)
    anomaly_scan_interval: timedelta = timedelta(seconds=60)

    def risk_level(self, total: float) -> str:
        if total < self.low_risk_threshold:
            return "low"
        if total < self.medium_risk_threshold:
            return "medium"
        if total < self.high_risk_threshold:
            return "high"
        return "critical"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, prefix: str = "THREAT_ENGINE_") -> "EngineConfig":
        """Build a config, overriding scalar fields from ``THREAT_ENGINE_<FIELD>`` variables.

        Durations are read as seconds. Collection-valued fields keep their defaults.
        """
        environ = os.environ if environ is None else environ
        defaults = cls()
        overrides: Dict[str, object] = {}
        for item in fields(cls):
            raw = environ.get(f"{prefix}{item.name.upper()}")
            if raw is None:
                continue
            current = getattr(defaults, item.name)
            if isinstance(current, bool):
                overrides[item.name] = raw.strip().lower() in {"1", "true", "yes", "on"}
            elif isinstance(current, timedelta):
                overrides[item.name] = timedelta(seconds=float(raw))
            elif isinstance(current, int):
                overrides[item.name] = int(raw)
            elif isinstance(current, float):
                overrides[item.name] = float(raw)
        return cls(**overrides)


def mongodb_uri() -> str:
    return os.getenv("MONGODB_URI", "mongodb://mongo:27017/")


def mongodb_database() -> str:
    return os.getenv("MONGODB_DATABASE", "threat_detection")


def broker_url() -> str:
    return os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0")


def result_backend() -> str:
    return os.getenv("CELERY_RESULT_BACKEND", broker_url())


def webhook_url(default: Optional[str] = None) -> Optional[str]:
    return os.getenv("SECURITY_WEBHOOK_URL", default)


def geoip_database_path() -> Optional[str]:
    return os.getenv("GEOIP_DATABASE_PATH")
