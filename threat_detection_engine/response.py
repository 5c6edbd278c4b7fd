from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Tuple

from .events import EventBus, EventKind
from .models import ActionType, ResponseAction, utcnow

logger = logging.getLogger(__name__)

EXECUTOR = "threat_detection_engine"


class ResponseOrchestrator:
    """Executes containment actions by announcing them on the event bus.

    Enforcement (locking accounts, killing sessions) belongs to whoever
    subscribes to the emitted events; no session or account state lives here.
    """

    def __init__(self, bus: EventBus, clock: Callable[[], datetime] = utcnow, executor: str = EXECUTOR):
        self.bus = bus
        self.clock = clock
        self.executor = executor

    def execute(self, action: ResponseAction) -> ResponseAction:
        action.executed_at = self.clock()
        action.executed_by = self.executor
        level, message, kind, payload = self._dispatch(action)
        logger.log(level, message, action.target)
        self.bus.publish(kind, payload)
        self.bus.publish(EventKind.RESPONSE_ACTION_EXECUTED, action)
        return action

    def execute_all(self, actions: Iterable[ResponseAction]) -> List[ResponseAction]:
        return [self.execute(action) for action in actions]

    def _dispatch(self, action: ResponseAction) -> Tuple[int, str, EventKind, Dict[str, Any]]:
        params = action.parameters or {}
        if action.type is ActionType.LOCKOUT:
            return (
                logging.WARNING,
                "Executing lockout for target: %s",
                EventKind.ACCOUNT_LOCKED,
                {"target": action.target, "duration": action.duration, "reason": "threat_detection"},
            )
        if action.type is ActionType.CHALLENGE:
            return (
                logging.INFO,
                "Executing authentication challenge for target: %s",
                EventKind.AUTH_CHALLENGE_REQUIRED,
                {"target": action.target, "type": params.get("type", "mfa")},
            )
        if action.type is ActionType.TERMINATE_SESSION:
            return (
                logging.WARNING,
                "Terminating session for target: %s",
                EventKind.SESSION_TERMINATED,
                {"target": action.target, "reason": "threat_detection"},
            )
        if action.type is ActionType.ALERT:
            return (
                logging.ERROR,
                "Security alert for target: %s",
                EventKind.SECURITY_ALERT,
                {
                    "target": action.target,
                    "priority": params.get("priority", "high"),
                    "message": params.get("message"),
                },
            )
        if action.type is ActionType.RESTRICT_ACCESS:
            return (
                logging.WARNING,
                "Restricting access for target: %s",
                EventKind.ACCESS_RESTRICTED,
                {"target": action.target, "restrictions": params.get("restrictions"), "duration": action.duration},
            )
        return (
            logging.INFO,
            "Enhanced monitoring activated for target: %s",
            EventKind.ENHANCED_MONITORING,
            {"target": action.target, "level": params.get("level", "high")},
        )
