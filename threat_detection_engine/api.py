from __future__ import annotations

import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .collaborators import GeoIP2Locator
from .config import EngineConfig, geoip_database_path, mongodb_database, webhook_url
from .engine import ThreatDetectionEngine
from .exceptions import InvalidThreatTransitionError, ThreatNotFoundError
from .models import (
    Activity,
    Investigation,
    ResponseAction,
    RiskLevel,
    RiskScore,
    SecurityAnalytics,
    ThreatIndicator,
    ThreatSeverity,
    ThreatStatus,
    ThreatType,
)
from .persistence import MongoAuditLog, MongoEventSink, MongoIdentityDirectory
from .scheduler import EngineScheduler
from .tasks import FeatureBatchDispatcher
from .webhook import WebhookNotifier


class ActivityPayload(BaseModel):
    timestamp: datetime
    ip: str
    user_agent: str
    resource: Optional[str] = None
    session_duration: Optional[float] = Field(default=None, ge=0)
    action: str = "access"


class LoginOutcomePayload(BaseModel):
    key: str
    success: bool
    identity_id: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None


class ScanPayload(BaseModel):
    text: str
    identity_id: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None


class PermissionCheckPayload(BaseModel):
    identity_id: str
    permission: str
    current_role: str


class InvestigatePayload(BaseModel):
    investigator: str


class MitigatePayload(BaseModel):
    mitigation: str


class FalsePositivePayload(BaseModel):
    reason: str


class ObservationResponse(BaseModel):
    anomalies: List[str]
    score: float


class ResponseActionResponse(BaseModel):
    type: str
    target: str
    duration_seconds: Optional[float] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    executed_at: Optional[datetime] = None
    executed_by: Optional[str] = None


class ThreatResponse(BaseModel):
    id: str
    type: ThreatType
    severity: ThreatSeverity
    status: ThreatStatus
    description: str
    indicators: List[str]
    risk_score: float
    identity_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    detected_at: datetime
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None
    evidence: List[Any] = Field(default_factory=list)
    response_actions: List[ResponseActionResponse] = Field(default_factory=list)


class DetectionResponse(BaseModel):
    detected: bool
    threats: List[ThreatResponse]


class ProfileSummaryResponse(BaseModel):
    identity_id: str
    display_name: str
    baseline_established: bool
    known_devices: List[str]
    known_locations: List[str]
    average_session_duration: float


class InvestigationResponse(BaseModel):
    threat: ThreatResponse
    related_threats: List[ThreatResponse]
    profile: Optional[ProfileSummaryResponse] = None
    recommendations: List[str]


class RiskFactorResponse(BaseModel):
    name: str
    value: float
    weight: float
    contribution: float
    description: str


class RiskScoreResponse(BaseModel):
    identity_id: str
    display_name: str
    behavior_score: float
    threat_score: float
    reputation_score: float
    device_trust_score: float
    total_score: float
    level: RiskLevel
    factors: List[RiskFactorResponse]
    calculated_at: datetime


class AnalyticsResponse(BaseModel):
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


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _to_activity(payload: ActivityPayload) -> Activity:
    data = payload.model_dump()
    data["timestamp"] = _aware(payload.timestamp)
    return Activity(**data)


def _serialize_action(action: ResponseAction) -> ResponseActionResponse:
    return ResponseActionResponse(
        type=action.type.value,
        target=action.target,
        duration_seconds=action.duration.total_seconds() if action.duration else None,
        parameters=jsonable_encoder(action.parameters),
        executed_at=action.executed_at,
        executed_by=action.executed_by,
    )


def _serialize_threat(threat: ThreatIndicator) -> ThreatResponse:
    return ThreatResponse(
        id=threat.id,
        type=threat.type,
        severity=threat.severity,
        status=threat.status,
        description=threat.description,
        indicators=list(threat.indicators),
        risk_score=threat.risk_score,
        identity_id=threat.identity_id,
        ip_address=threat.ip_address,
        user_agent=threat.user_agent,
        detected_at=threat.detected_at,
        resolved_at=threat.resolved_at,
        resolution=threat.resolution,
        evidence=jsonable_encoder(threat.evidence),
        response_actions=[_serialize_action(action) for action in threat.response_actions],
    )


def _serialize_detection(threats: List[ThreatIndicator]) -> DetectionResponse:
    return DetectionResponse(detected=bool(threats), threats=[_serialize_threat(t) for t in threats])


def _serialize_investigation(investigation: Investigation) -> InvestigationResponse:
    profile = investigation.profile
    summary = None
    if profile is not None:
        summary = ProfileSummaryResponse(
            identity_id=profile.identity_id,
            display_name=profile.display_name,
            baseline_established=profile.baseline_established,
            known_devices=list(profile.recent_devices),
            known_locations=list(profile.recent_locations),
            average_session_duration=profile.average_session_duration,
        )
    return InvestigationResponse(
        threat=_serialize_threat(investigation.threat),
        related_threats=[_serialize_threat(t) for t in investigation.related_threats],
        profile=summary,
        recommendations=investigation.recommendations,
    )


def _serialize_risk(score: RiskScore) -> RiskScoreResponse:
    return RiskScoreResponse(
        identity_id=score.identity_id,
        display_name=score.display_name,
        behavior_score=score.behavior_score,
        threat_score=score.threat_score,
        reputation_score=score.reputation_score,
        device_trust_score=score.device_trust_score,
        total_score=score.total_score,
        level=score.level,
        factors=[RiskFactorResponse(**jsonable_encoder(factor)) for factor in score.factors],
        calculated_at=score.calculated_at,
    )


def _serialize_analytics(analytics: SecurityAnalytics) -> AnalyticsResponse:
    return AnalyticsResponse(**jsonable_encoder(analytics))


def build_engine(config: EngineConfig | None = None) -> ThreatDetectionEngine:
    """Wire an engine from the environment.

    MongoDB collaborators and the audit sink are used when ``MONGODB_URI`` is
    set; otherwise the engine runs with in-memory collaborators.
    """
    config = config or EngineConfig.from_env()
    uri = os.getenv("MONGODB_URI")
    geoip_path = geoip_database_path()
    locator = GeoIP2Locator(geoip_path) if geoip_path else None

    if not uri:
        engine = ThreatDetectionEngine(config, locator=locator)
    else:
        database = mongodb_database()
        engine = ThreatDetectionEngine(
            config,
            directory=MongoIdentityDirectory(uri=uri, database=database),
            audit_log=MongoAuditLog(uri=uri, database=database),
            locator=locator,
        )
        engine.bus.subscribe(None, MongoEventSink(uri=uri, database=database, clock=engine.clock))
        engine.bus.subscribe(None, FeatureBatchDispatcher())

    if webhook_url():
        engine.bus.subscribe(None, WebhookNotifier())
    return engine


def create_app(engine: ThreatDetectionEngine | None = None, run_scheduler: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler = EngineScheduler(app.state.engine)
        app.state.scheduler = scheduler
        if run_scheduler:
            scheduler.start()
        try:
            yield
        finally:
            await scheduler.stop()
            await app.state.engine.bus.drain()

    app = FastAPI(title="Threat Detection Engine API", version="1.0.0", lifespan=lifespan)
    app.state.engine = engine or build_engine()

    @app.exception_handler(ThreatNotFoundError)
    async def threat_not_found(request: Request, exc: ThreatNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidThreatTransitionError)
    async def invalid_transition(request: Request, exc: InvalidThreatTransitionError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    # every handler is a coroutine so engine state is only touched from the event loop

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/identities/{identity_id}/activity", response_model=ObservationResponse)
    async def observe(identity_id: str, payload: ActivityPayload) -> ObservationResponse:
        result = await app.state.engine.observe(identity_id, _to_activity(payload))
        return ObservationResponse(anomalies=result.anomalies, score=result.score)

    @app.post("/login-outcomes", response_model=DetectionResponse)
    async def login_outcome(payload: LoginOutcomePayload) -> DetectionResponse:
        threat = app.state.engine.record_login_outcome(
            payload.key,
            payload.success,
            identity_id=payload.identity_id,
            ip=payload.ip,
            user_agent=payload.user_agent,
        )
        return _serialize_detection([threat] if threat else [])

    @app.post("/scan", response_model=DetectionResponse)
    async def scan(payload: ScanPayload) -> DetectionResponse:
        threats = app.state.engine.scan_input(
            payload.text, identity_id=payload.identity_id, ip=payload.ip, user_agent=payload.user_agent
        )
        return _serialize_detection(threats)

    @app.post("/permission-checks", response_model=DetectionResponse)
    async def permission_check(payload: PermissionCheckPayload) -> DetectionResponse:
        threat = app.state.engine.check_permission_request(
            payload.identity_id, payload.permission, payload.current_role
        )
        return _serialize_detection([threat] if threat else [])

    @app.get("/threats", response_model=List[ThreatResponse])
    async def list_threats(
        identity_id: Optional[str] = None,
        severity: Optional[ThreatSeverity] = None,
        type: Optional[ThreatType] = None,
        status: Optional[ThreatStatus] = None,
    ) -> List[ThreatResponse]:
        threats = app.state.engine.get_active_threats(
            identity_id=identity_id, severity=severity, type=type, status=status
        )
        return [_serialize_threat(threat) for threat in threats]

    @app.post("/threats/{threat_id}/investigate", response_model=InvestigationResponse)
    async def investigate(threat_id: str, payload: InvestigatePayload) -> InvestigationResponse:
        return _serialize_investigation(app.state.engine.investigate(threat_id, payload.investigator))

    @app.post("/threats/{threat_id}/mitigate", response_model=ThreatResponse)
    async def mitigate(threat_id: str, payload: MitigatePayload) -> ThreatResponse:
        return _serialize_threat(app.state.engine.mitigate(threat_id, payload.mitigation))

    @app.post("/threats/{threat_id}/false-positive", response_model=ThreatResponse)
    async def false_positive(threat_id: str, payload: FalsePositivePayload) -> ThreatResponse:
        return _serialize_threat(app.state.engine.mark_false_positive(threat_id, payload.reason))

    @app.post("/threats/{threat_id}/respond", response_model=List[ResponseActionResponse])
    async def respond(threat_id: str) -> List[ResponseActionResponse]:
        return [_serialize_action(action) for action in app.state.engine.respond(threat_id)]

    @app.get("/risk-scores", response_model=List[RiskScoreResponse])
    async def risk_scores(
        min_score: Optional[float] = None,
        max_score: Optional[float] = None,
        level: Optional[RiskLevel] = None,
    ) -> List[RiskScoreResponse]:
        scores = app.state.engine.get_risk_scores(min_score=min_score, max_score=max_score, level=level)
        return [_serialize_risk(score) for score in scores]

    @app.post("/identities/{identity_id}/risk-score", response_model=RiskScoreResponse)
    async def calculate_risk(identity_id: str) -> RiskScoreResponse:
        return _serialize_risk(await app.state.engine.score(identity_id))

    @app.get("/analytics", response_model=AnalyticsResponse)
    async def analytics(start: Optional[datetime] = None, end: Optional[datetime] = None) -> AnalyticsResponse:
        end = _aware(end) if end else app.state.engine.clock()
        start = _aware(start) if start else end - timedelta(hours=24)
        return _serialize_analytics(await app.state.engine.get_security_analytics(start, end))

    return app
