"""Behavioral Threat Detection & Risk-Scoring Engine."""

from .config import EngineConfig
from .engine import ThreatDetectionEngine
from .events import EventBus, EventKind
from .exceptions import InvalidThreatTransitionError, ThreatEngineError, ThreatNotFoundError
from .models import (
    ActionType,
    Activity,
    AuditRecord,
    GeoPoint,
    ObservationResult,
    ResponseAction,
    RiskLevel,
    RiskScore,
    ThreatIndicator,
    ThreatSeverity,
    ThreatStatus,
    ThreatType,
)
from .scheduler import EngineScheduler

__all__ = [
    "EngineConfig",
    "ThreatDetectionEngine",
    "EventBus",
    "EventKind",
    "ThreatEngineError",
    "ThreatNotFoundError",
    "InvalidThreatTransitionError",
    "ActionType",
    "Activity",
    "AuditRecord",
    "GeoPoint",
    "ObservationResult",
    "ResponseAction",
    "RiskLevel",
    "RiskScore",
    "ThreatIndicator",
    "ThreatSeverity",
    "ThreatStatus",
    "ThreatType",
    "EngineScheduler",
]
