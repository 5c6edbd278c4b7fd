"""Errors raised by the threat detection engine."""

from __future__ import annotations

from typing import Optional


class ThreatEngineError(Exception):
    """Base class for engine errors."""


class ThreatNotFoundError(ThreatEngineError, KeyError):
    def __init__(self, threat_id: str):
        super().__init__(f"Threat not found: {threat_id}")
        self.threat_id = threat_id

    def __str__(self) -> str:
        return str(self.args[0])


class InvalidThreatTransitionError(ThreatEngineError):
    def __init__(self, threat_id: str, current: str, requested: str, reason: Optional[str] = None):
        message = f"Threat {threat_id} cannot move from {current} to {requested}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.threat_id = threat_id
        self.current = current
        self.requested = requested
