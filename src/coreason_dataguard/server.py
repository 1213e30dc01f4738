# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_dataguard

"""FastAPI server implementation for the DataGuard service.

This module provides the HTTP interface for duplicate detection, input
validation, threat checks and rate-limit administration. Every route is
rate limited through a preset selected by name.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import Field

from coreason_dataguard.exceptions import DataGuardError, IdentityBlocked, RateLimitExceeded
from coreason_dataguard.main import DataGuard
from coreason_dataguard.models import (
    BlockedIdentity,
    CandidateRecord,
    DataGuardModel,
    EntityType,
    FieldCheck,
    FieldRule,
    FileMeta,
    QualitySnapshot,
    RateLimitDecision,
    ScanRun,
    SimilarityMatch,
    ThreatCategory,
    ThreatEvent,
    ValidationResult,
)
from coreason_dataguard.rate_limiter import RateLimiter
from coreason_dataguard.utils.logger import logger


class ScanRequest(DataGuardModel):
    """Request model for a population scan."""

    entity_type: Optional[EntityType] = None
    threshold: float = 0.7
    limit: int = Field(default=100, ge=1, le=1000)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)


class ScanResponse(DataGuardModel):
    duplicates: List[SimilarityMatch]
    count: int
    scan_duration_ms: int
    scan_id: str
    truncated: bool


class CheckRequest(DataGuardModel):
    """Fields of an incoming record. `id` is only needed to exclude an already stored record."""

    id: str = "incoming"
    entity_type: EntityType = EntityType.INTAKE
    email: Optional[str] = None
    name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    threshold: Optional[float] = None


class CheckResponse(DataGuardModel):
    has_duplicates: bool
    duplicates: List[SimilarityMatch]
    count: int


class MergeRequest(DataGuardModel):
    match_id: str
    survivor_id: str
    resolved_by: str = "admin"


class DismissRequest(DataGuardModel):
    match_id: str
    resolved_by: str = "admin"


class SuccessResponse(DataGuardModel):
    success: bool


class DuplicateStatsResponse(DataGuardModel):
    total_scans: int
    total_matches: int
    merged: int
    dismissed: int
    average_top_score: float


class ValueRequest(DataGuardModel):
    value: Optional[str] = None


class ObjectValidationRequest(DataGuardModel):
    data: Dict[str, Any]
    field_schema: Dict[str, FieldRule] = Field(alias="schema")


class TextRequest(DataGuardModel):
    text: str
    field_name: str = "input"


class SanitizeResponse(DataGuardModel):
    sanitized: str


class ThreatCheckResponse(DataGuardModel):
    threats: List[ThreatEvent]


class QualityMetricsResponse(DataGuardModel):
    total_scans: int
    total_matches: int
    merged: int
    dismissed: int
    average_top_score: float
    threat_events_24h: int
    blocked_events_24h: int


class BlockRequest(DataGuardModel):
    ip: str = Field(min_length=1)
    reason: str = "Blocked by administrator"
    expires_at: Optional[datetime] = None
    blocked_by: str = "admin"


class UnblockRequest(DataGuardModel):
    ip: str = Field(min_length=1)


class EndpointCount(DataGuardModel):
    endpoint: str
    count: int


class RateLimitStatsResponse(DataGuardModel):
    tracked_keys: int
    blocked_keys: int
    events_24h: int
    blocked_events_24h: int
    top_endpoints: List[EndpointCount]
    blocked_identities: List[BlockedIdentity]


class HealthResponse(DataGuardModel):
    """Response model for service health check."""

    status: str
    database: str
    signatures: int


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manages the lifecycle of the DataGuard application.

    Builds the DataGuard facade (audit sink, block cache, compiled threat
    signatures) on startup and closes the audit sink on shutdown.
    """
    guard = DataGuard()
    app.state.guard = guard
    try:
        yield
    finally:
        guard.close()


app = FastAPI(title="CoReason DataGuard", lifespan=lifespan)


def get_guard(request: Request) -> DataGuard:
    guard: DataGuard = request.app.state.guard
    return guard


def client_ip(request: Request, trust_forwarded_headers: bool = True) -> str:
    """Resolves the caller ip: first X-Forwarded-For entry, X-Real-IP, then the socket peer."""
    if trust_forwarded_headers:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = request.headers.get("x-real-ip")
        if real_ip and real_ip.strip():
            return real_ip.strip()
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"


def rate_limit(preset: str) -> Callable[[Request, Response], RateLimitDecision]:
    """Builds a dependency that counts the request against the named preset.

    The decision is kept on `request.state` so error responses carry the
    same quota headers as successful ones.
    """

    def dependency(request: Request, response: Response) -> RateLimitDecision:
        guard = get_guard(request)
        ip = client_ip(request, guard.settings.trust_forwarded_headers)
        path = request.url.path
        try:
            decision = guard.rate_limiter.enforce(RateLimiter.make_key(ip, path), preset, ip=ip, endpoint=path)
        except (IdentityBlocked, RateLimitExceeded) as e:
            request.state.rate_limit_decision = e.decision
            raise
        request.state.rate_limit_decision = decision
        for name, value in decision.headers().items():
            response.headers[name] = value
        return decision

    return dependency


def rate_limit_headers(request: Request) -> Optional[Dict[str, str]]:
    decision: Optional[RateLimitDecision] = getattr(request.state, "rate_limit_decision", None)
    return decision.headers() if decision is not None else None


@app.exception_handler(DataGuardError)
async def dataguard_error_handler(request: Request, exc: DataGuardError) -> JSONResponse:
    """Translates domain errors into `{error, message}` bodies."""
    content: Dict[str, Any] = {"error": exc.error_code, "message": exc.message}
    if isinstance(exc, RateLimitExceeded):
        content["retryAfter"] = exc.retry_after_seconds
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected with {exc.error_code}")
    return JSONResponse(status_code=exc.status_code, content=content, headers=rate_limit_headers(request))


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    response = await request_validation_exception_handler(request, exc)
    response.headers.update(rate_limit_headers(request) or {})
    return response


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    # Fail closed without leaking internals
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": "INTERNAL_ERROR", "message": "Internal Server Error"},
        headers=rate_limit_headers(request),
    )


# --- duplicates ---


@app.post("/duplicates/scan", response_model=ScanResponse, dependencies=[Depends(rate_limit("sensitive"))])
async def scan_duplicates(body: ScanRequest, guard: DataGuard = Depends(get_guard)) -> ScanResponse:
    """Scans the population for duplicate pairs.

    The pairwise pass runs in the thread pool, bounded by the caller's
    timeout or the configured default.
    """
    timeout = body.timeout_seconds or guard.settings.scan_timeout_seconds
    result = await run_in_threadpool(
        guard.detector.scan,
        entity_type=body.entity_type,
        threshold=body.threshold,
        limit=body.limit,
        timeout_seconds=timeout,
    )
    return ScanResponse(
        duplicates=result.matches,
        count=len(result.matches),
        scan_duration_ms=result.run.duration_ms,
        scan_id=result.run.scan_id,
        truncated=result.truncated,
    )


@app.post("/duplicates/check", response_model=CheckResponse, dependencies=[Depends(rate_limit("standard"))])
def check_duplicates(body: CheckRequest, guard: DataGuard = Depends(get_guard)) -> CheckResponse:
    record = CandidateRecord.model_validate(body.model_dump(exclude={"threshold"}))
    matches = guard.detector.check(record, threshold=body.threshold)
    return CheckResponse(has_duplicates=bool(matches), duplicates=matches, count=len(matches))


@app.post("/duplicates/merge", response_model=SuccessResponse, dependencies=[Depends(rate_limit("authenticated"))])
def merge_duplicates(body: MergeRequest, guard: DataGuard = Depends(get_guard)) -> SuccessResponse:
    guard.detector.merge(body.match_id, body.survivor_id, resolved_by=body.resolved_by)
    return SuccessResponse(success=True)


@app.post("/duplicates/dismiss", response_model=SuccessResponse, dependencies=[Depends(rate_limit("authenticated"))])
def dismiss_duplicate(body: DismissRequest, guard: DataGuard = Depends(get_guard)) -> SuccessResponse:
    guard.detector.dismiss(body.match_id, resolved_by=body.resolved_by)
    return SuccessResponse(success=True)


@app.get("/duplicates/history", response_model=List[ScanRun], dependencies=[Depends(rate_limit("authenticated"))])
def scan_history(
    entity_type: Optional[EntityType] = Query(default=None, alias="entityType"),
    limit: int = Query(default=50, ge=1, le=500),
    guard: DataGuard = Depends(get_guard),
) -> List[ScanRun]:
    return guard.detector.history(entity_type, limit)


@app.get(
    "/duplicates/stats", response_model=DuplicateStatsResponse, dependencies=[Depends(rate_limit("authenticated"))]
)
def duplicate_stats(guard: DataGuard = Depends(get_guard)) -> DuplicateStatsResponse:
    return DuplicateStatsResponse(**guard.detector.stats())


# --- validation ---


@app.post("/validate/email", response_model=FieldCheck, dependencies=[Depends(rate_limit("standard"))])
def validate_email(body: ValueRequest, guard: DataGuard = Depends(get_guard)) -> FieldCheck:
    return guard.validator.validate_email(body.value)


@app.post("/validate/phone", response_model=FieldCheck, dependencies=[Depends(rate_limit("standard"))])
def validate_phone(body: ValueRequest, guard: DataGuard = Depends(get_guard)) -> FieldCheck:
    return guard.validator.validate_phone(body.value)


@app.post("/validate/url", response_model=FieldCheck, dependencies=[Depends(rate_limit("standard"))])
def validate_url(body: ValueRequest, guard: DataGuard = Depends(get_guard)) -> FieldCheck:
    return guard.validator.validate_url(body.value)


@app.post("/validate/file", response_model=FieldCheck, dependencies=[Depends(rate_limit("standard"))])
def validate_file(body: FileMeta, guard: DataGuard = Depends(get_guard)) -> FieldCheck:
    return guard.validator.validate_file(body)


@app.post("/validate/object", response_model=ValidationResult, dependencies=[Depends(rate_limit("standard"))])
def validate_object(body: ObjectValidationRequest, guard: DataGuard = Depends(get_guard)) -> ValidationResult:
    return guard.validator.validate_object(body.data, body.field_schema)


@app.post("/sanitize", response_model=SanitizeResponse, dependencies=[Depends(rate_limit("standard"))])
def sanitize(body: TextRequest, guard: DataGuard = Depends(get_guard)) -> SanitizeResponse:
    return SanitizeResponse(sanitized=guard.validator.sanitize(body.text))


@app.post("/security/check", response_model=ThreatCheckResponse, dependencies=[Depends(rate_limit("standard"))])
def security_check(body: TextRequest, request: Request, guard: DataGuard = Depends(get_guard)) -> ThreatCheckResponse:
    """Operator endpoint: returns pattern details and records each finding."""
    threats = guard.validator.detect_threats(
        body.text,
        field_name=body.field_name,
        ip=client_ip(request, guard.settings.trust_forwarded_headers),
        user_agent=request.headers.get("user-agent"),
    )
    guard.log_threats(threats)
    return ThreatCheckResponse(threats=threats)


@app.get("/security/events", response_model=List[ThreatEvent], dependencies=[Depends(rate_limit("authenticated"))])
def security_events(
    category: Optional[ThreatCategory] = None,
    limit: int = Query(default=100, ge=1, le=500),
    guard: DataGuard = Depends(get_guard),
) -> List[ThreatEvent]:
    return guard.threat_events(category=category, limit=limit)


# --- metrics ---


@app.get("/metrics", response_model=QualityMetricsResponse, dependencies=[Depends(rate_limit("authenticated"))])
def quality_metrics(guard: DataGuard = Depends(get_guard)) -> QualityMetricsResponse:
    return QualityMetricsResponse(**guard.quality_metrics())


@app.post(
    "/metrics/calculate", response_model=QualitySnapshot, dependencies=[Depends(rate_limit("authenticated"))]
)
def calculate_metrics(guard: DataGuard = Depends(get_guard)) -> QualitySnapshot:
    """Stores today's data quality snapshot, replacing an earlier one from the same day."""
    return guard.record_quality_snapshot()


@app.get(
    "/metrics/history", response_model=List[QualitySnapshot], dependencies=[Depends(rate_limit("authenticated"))]
)
def metrics_history(
    days: int = Query(default=30, ge=1, le=365), guard: DataGuard = Depends(get_guard)
) -> List[QualitySnapshot]:
    return guard.quality_history(days)


# --- rate limits ---


@app.post("/rate-limits/block", response_model=SuccessResponse, dependencies=[Depends(rate_limit("authenticated"))])
def block_ip(body: BlockRequest, guard: DataGuard = Depends(get_guard)) -> SuccessResponse:
    guard.rate_limiter.block(body.ip, body.reason, blocked_by=body.blocked_by, expires_at=body.expires_at)
    return SuccessResponse(success=True)


@app.post("/rate-limits/unblock", response_model=SuccessResponse, dependencies=[Depends(rate_limit("authenticated"))])
def unblock_ip(body: UnblockRequest, guard: DataGuard = Depends(get_guard)) -> SuccessResponse:
    return SuccessResponse(success=guard.rate_limiter.unblock(body.ip))


@app.get(
    "/rate-limits/stats", response_model=RateLimitStatsResponse, dependencies=[Depends(rate_limit("authenticated"))]
)
def rate_limit_stats(guard: DataGuard = Depends(get_guard)) -> RateLimitStatsResponse:
    return RateLimitStatsResponse(**guard.rate_limiter.stats())


@app.get("/health", response_model=HealthResponse)
def health(guard: DataGuard = Depends(get_guard)) -> HealthResponse:
    """Checks the health of the DataGuard service.

    Raises:
        HTTPException: 503 if the audit sink does not answer.
    """
    report = guard.health()
    if report["status"] != "ok":
        raise HTTPException(status_code=503, detail="Unhealthy: audit sink unavailable")
    return HealthResponse(**report)
