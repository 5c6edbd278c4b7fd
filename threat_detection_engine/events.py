from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    THREAT_DETECTED = "threat_detected"
    THREAT_MITIGATED = "threat_mitigated"
    THREAT_FALSE_POSITIVE = "threat_false_positive"
    BASELINE_ESTABLISHED = "baseline_established"
    ANOMALY_DETECTED = "anomaly_detected"
    ACCOUNT_LOCKED = "account_locked"
    AUTH_CHALLENGE_REQUIRED = "auth_challenge_required"
    SESSION_TERMINATED = "session_terminated"
    SECURITY_ALERT = "security_alert"
    ACCESS_RESTRICTED = "access_restricted"
    ENHANCED_MONITORING = "enhanced_monitoring"
    RESPONSE_ACTION_EXECUTED = "response_action_executed"
    ML_DATA_READY = "ml_data_ready"


Handler = Callable[[EventKind, Any], None]


class EventBus:
    """Synchronous publish/subscribe channel keyed by :class:`EventKind`.

    Handlers run in subscription order inside ``publish``. A failing handler is
    logged and does not stop delivery to the remaining handlers.
    """

    def __init__(self) -> None:
        self._handlers: Dict[EventKind, List[Handler]] = defaultdict(list)
        self._wildcard: List[Handler] = []

    def subscribe(self, kind: Optional[EventKind], handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``kind``; ``None`` subscribes to every kind.

        Returns a callable that removes the subscription.
        """
        bucket = self._wildcard if kind is None else self._handlers[kind]
        bucket.append(handler)

        def unsubscribe() -> None:
            if handler in bucket:
                bucket.remove(handler)

        return unsubscribe

    def publish(self, kind: EventKind, payload: Any) -> None:
        for handler in [*self._handlers.get(kind, ()), *self._wildcard]:
            try:
                handler(kind, payload)
            except Exception:
                logger.exception("Event handler %r failed for %s", handler, kind.value)

    async def drain(self) -> None:
        """Waits on subscribers that hand their I/O off the event loop."""
        handlers = [*self._wildcard]
        for bucket in self._handlers.values():
            handlers.extend(bucket)
        for handler in handlers:
            drain = getattr(handler, "drain", None)
            if drain is not None:
                await drain()


class BlockingDelivery:
    """Runs a subscriber's blocking I/O in the loop's default executor.

    ``publish`` is called from coroutines, so network and database writes made
    by subscribers are handed off the event loop. Outside a running loop the
    call happens inline.
    """

    def __init__(self, name: str):
        self.name = name
        self.pending: Set[asyncio.Future] = set()

    def submit(self, func: Callable[..., Any], *args: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            func(*args)
            return
        future = loop.run_in_executor(None, func, *args)
        self.pending.add(future)
        future.add_done_callback(self._finished)

    async def drain(self) -> None:
        """Waits for every delivery submitted so far."""
        if self.pending:
            await asyncio.gather(*list(self.pending), return_exceptions=True)

    def _finished(self, future: asyncio.Future) -> None:
        self.pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Background %s delivery failed", self.name, exc_info=exc)
