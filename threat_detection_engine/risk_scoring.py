from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from .behavior_analyzer import BehaviorProfileStore
from .collaborators import AuditLog, IdentityDirectory
from .config import EngineConfig
from .models import ActionType, ResponseAction, RiskFactor, RiskLevel, RiskScore, utcnow
from .response import ResponseOrchestrator
from .store import IdentityStore
from .threat_registry import ThreatRegistry

logger = logging.getLogger(__name__)


class RiskScorer:
    """Combines behavior, active threats, reputation and device trust into a 0-100 score.

    Scores overwrite the previous snapshot for the identity. Moving into the
    high or critical tier fires the matching containment actions once per
    transition.
    """

    def __init__(
        self,
        config: EngineConfig,
        behavior: BehaviorProfileStore,
        threats: ThreatRegistry,
        audit_log: AuditLog,
        directory: IdentityDirectory,
        orchestrator: ResponseOrchestrator,
        scores: Optional[IdentityStore[RiskScore]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.behavior = behavior
        self.threats = threats
        self.audit_log = audit_log
        self.directory = directory
        self.orchestrator = orchestrator
        if scores is None:
            scores = IdentityStore(config.max_identities, config.identity_idle_ttl)
        self.scores = scores
        self.clock = clock

    async def score(self, identity_id: str) -> RiskScore:
        weights = self.config.risk_weights
        behavior_score = self.behavior_score(identity_id)
        threat_score = self.threat_score(identity_id)
        reputation_score = await self.reputation_score(identity_id)
        device_trust_score = self.device_trust_score(identity_id)
        display_name = await self._display_name(identity_id)

        factors = [
            self._factor("behavior", behavior_score, weights["behavior"], "Behavior anomaly score"),
            self._factor("threats", threat_score, weights["threats"], "Active threats associated with identity"),
            self._factor("reputation", reputation_score, weights["reputation"], "Security incidents in history"),
            self._factor("device_trust", device_trust_score, weights["device_trust"], "Trust level of known devices"),
        ]
        total = max(0.0, min(sum(factor.contribution for factor in factors), 100.0))
        level = RiskLevel(self.config.risk_level(total))

        risk = RiskScore(
            identity_id=identity_id,
            display_name=display_name,
            behavior_score=behavior_score,
            threat_score=threat_score,
            reputation_score=reputation_score,
            device_trust_score=device_trust_score,
            total_score=total,
            level=level,
            factors=factors,
            calculated_at=self.clock(),
        )

        previous = self.scores.peek(identity_id)
        self.scores.set(identity_id, risk, self.clock())
        if previous is None or previous.level != level:
            self._respond(risk)
        return risk

    async def recalculate_all(self, identity_ids: Iterable[str]) -> List[RiskScore]:
        results: List[RiskScore] = []
        for identity_id in list(identity_ids):
            try:
                results.append(await self.score(identity_id))
            except Exception:
                logger.exception("Risk recalculation failed for %s", identity_id)
        return results

    def behavior_score(self, identity_id: str) -> float:
        profile = self.behavior.get(identity_id)
        if profile is None or not profile.baseline_established:
            return 0.0
        since = self.clock() - self.config.recent_anomaly_window
        return float(min(len(profile.anomalies_since(since)) * 10, 100))

    def threat_score(self, identity_id: str) -> float:
        weights = self.config.severity_weights
        score = sum(weights.get(threat.severity.value, 0.0) for threat in self.threats.active_for(identity_id))
        return float(min(score, 100))

    async def reputation_score(self, identity_id: str) -> float:
        since = self.clock() - self.config.reputation_window
        try:
            incidents = await self.audit_log.count(
                identity_id=identity_id, actions=self.config.reputation_actions, since=since
            )
        except Exception as exc:
            logger.warning("Reputation lookup failed for %s: %s", identity_id, exc)
            return 0.0
        return float(min(incidents * 5, 100))

    def device_trust_score(self, identity_id: str) -> float:
        profile = self.behavior.get(identity_id)
        if profile is None:
            return 50.0
        devices = len(profile.recent_devices)
        if devices <= 2:
            return 10.0
        if devices <= 4:
            return 30.0
        return 50.0

    async def _display_name(self, identity_id: str) -> str:
        profile = self.behavior.get(identity_id)
        if profile is not None and profile.display_name != "unknown":
            return profile.display_name
        try:
            return await self.directory.display_name(identity_id) or "unknown"
        except Exception as exc:
            logger.warning("Identity lookup failed for %s: %s", identity_id, exc)
            return "unknown"

    def _factor(self, name: str, value: float, weight: float, description: str) -> RiskFactor:
        return RiskFactor(name=name, value=value, weight=weight, contribution=value * weight, description=description)

    def _respond(self, risk: RiskScore) -> None:
        target = risk.identity_id
        if risk.level is RiskLevel.CRITICAL:
            logger.error("Critical risk detected for %s: score %.1f", target, risk.total_score)
            self.orchestrator.execute_all(
                [
                    ResponseAction(type=ActionType.TERMINATE_SESSION, target=target),
                    ResponseAction(type=ActionType.LOCKOUT, target=target, duration=self.config.critical_lockout),
                    ResponseAction(
                        type=ActionType.ALERT,
                        target="security_team",
                        parameters={
                            "priority": "critical",
                            "message": f"Critical risk detected for {target}: score {risk.total_score:.1f}",
                        },
                    ),
                ]
            )
        elif risk.level is RiskLevel.HIGH:
            logger.warning("High risk detected for %s: score %.1f", target, risk.total_score)
            self.orchestrator.execute_all(
                [
                    ResponseAction(type=ActionType.CHALLENGE, target=target, parameters={"type": "mfa"}),
                    ResponseAction(type=ActionType.MONITOR, target=target, parameters={"level": "high"}),
                ]
            )
