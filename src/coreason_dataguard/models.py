# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_dataguard

"""
Data models for the CoReason DataGuard core.

This module defines the Pydantic models shared by the duplicate detection,
validation, threat detection and rate limiting components. JSON payloads use
camelCase aliases while Python attributes stay snake_case.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

import regex
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

SCORED_FIELDS = ("email", "company", "name", "phone", "domain")

DEFAULT_FIELD_WEIGHTS: Dict[str, float] = {
    "email": 0.35,
    "company": 0.25,
    "name": 0.20,
    "phone": 0.15,
    "domain": 0.05,
}

FREE_MAIL_PROVIDERS = ["gmail.com", "yahoo.com", "hotmail.com", "outlook.com", "aol.com", "icloud.com"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DataGuardModel(BaseModel):
    """Base model: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EntityType(str, Enum):
    CLIENT = "client"
    LEAD = "lead"
    INTAKE = "intake"


class Confidence(str, Enum):
    """
    Confidence band derived from a composite similarity score.

    Attributes:
        EXACT: Score of 1.0.
        HIGH: Score at or above the high threshold.
        MEDIUM: Score at or above the medium threshold.
        LOW: Score at or above the low threshold.
        NONE: Anything below.
    """

    EXACT = "exact"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


class ResolutionAction(str, Enum):
    MERGE = "merge"
    DISMISS = "dismiss"


class CandidateRecord(DataGuardModel):
    """
    Flattened, immutable snapshot of a client, lead or intake submission.

    Attributes:
        id: Identifier of the record within its entity type.
        entity_type: Kind of business entity the record belongs to.
        email: Contact email.
        name: Full contact name. Built from first/last name when absent.
        company: Company name.
        phone: Phone number in any formatting.
        website: Optional website, used for the domain when email has none.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    entity_type: EntityType = EntityType.INTAKE
    email: str = ""
    name: str = ""
    company: str = ""
    phone: str = ""
    website: str = ""

    @model_validator(mode="before")
    @classmethod
    def _compose_name(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if not data.get("name"):
            first = data.pop("firstName", None) or data.pop("first_name", None) or ""
            last = data.pop("lastName", None) or data.pop("last_name", None) or ""
            data["name"] = f"{first} {last}".strip()
        else:
            for key in ("firstName", "first_name", "lastName", "last_name"):
                data.pop(key, None)
        return data

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> Any:
        if isinstance(v, int):
            return str(v)
        return v

    @field_validator("email", "name", "company", "phone", "website", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @property
    def key(self) -> str:
        """Identity of the record across entity types."""
        return f"{self.entity_type.value}:{self.id}"

    @property
    def domain(self) -> str:
        """Lowercased domain taken from the email, else from the website."""
        email = self.email.strip()
        if "@" in email:
            return email.rsplit("@", 1)[1].lower()

        website = self.website.strip()
        if not website:
            return ""
        if not website.lower().startswith(("http://", "https://")):
            website = f"https://{website}"
        try:
            host = urlsplit(website).hostname or ""
        except ValueError:
            return ""
        return host[4:] if host.startswith("www.") else host


class ConfidenceThresholds(DataGuardModel):
    """Lower bounds of each confidence band. Must be non-increasing from exact to low."""

    exact: float = Field(default=1.0, ge=0.0, le=1.0)
    high: float = Field(default=0.85, ge=0.0, le=1.0)
    medium: float = Field(default=0.70, ge=0.0, le=1.0)
    low: float = Field(default=0.50, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_order(self) -> "ConfidenceThresholds":
        if not (self.exact >= self.high >= self.medium >= self.low):
            raise ValueError("Confidence thresholds must satisfy exact >= high >= medium >= low")
        return self


class ScoringPolicy(DataGuardModel):
    """
    Tunable configuration for similarity scoring.

    Attributes:
        weights: Weight per scored field. Fields absent here are not scored.
        thresholds: Confidence band boundaries.
        matched_field_threshold: Per-field similarity at which a field counts as matched.
        ignored_email_domains: Domains that never count as a shared company domain.
    """

    weights: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_FIELD_WEIGHTS))
    thresholds: ConfidenceThresholds = Field(default_factory=ConfidenceThresholds)
    matched_field_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    ignored_email_domains: List[str] = Field(default_factory=lambda: list(FREE_MAIL_PROVIDERS))

    @field_validator("weights")
    @classmethod
    def _check_weights(cls, v: Dict[str, float]) -> Dict[str, float]:
        unknown = set(v) - set(SCORED_FIELDS)
        if unknown:
            raise ValueError(f"Unknown scored fields: {sorted(unknown)}")
        if any(w < 0 for w in v.values()):
            raise ValueError("Field weights must be non-negative")
        if not any(w > 0 for w in v.values()):
            raise ValueError("At least one field weight must be positive")
        return v


class SimilarityMatch(DataGuardModel):
    """Result of comparing two candidate records."""

    match_id: str
    record_id_a: str
    record_id_b: str
    entity_type_a: EntityType
    entity_type_b: EntityType
    score: float = Field(ge=0.0, le=1.0)
    matched_fields: List[str] = Field(default_factory=list)
    field_scores: Dict[str, float] = Field(default_factory=dict)
    confidence: Confidence
    content_hash: str
    flagged: bool = False


class ScanRun(DataGuardModel):
    """Metadata about one detection pass."""

    scan_id: str
    entity_type_filter: Optional[EntityType] = None
    threshold: float
    limit: int
    started_at: datetime = Field(default_factory=utc_now)
    duration_ms: int = 0
    match_count: int = 0
    truncated: bool = False


class ScanResult(DataGuardModel):
    run: ScanRun
    matches: List[SimilarityMatch] = Field(default_factory=list)

    @property
    def truncated(self) -> bool:
        return self.run.truncated


class ResolutionDecision(DataGuardModel):
    """Operator decision applied to a match. Terminal once recorded."""

    match_id: str
    content_hash: str
    action: ResolutionAction
    record_id_a: str
    record_id_b: str
    survivor_id: Optional[str] = None
    resolved_by: str = "admin"
    resolved_at: datetime = Field(default_factory=utc_now)


class FieldType(str, Enum):
    EMAIL = "email"
    PHONE = "phone"
    URL = "url"
    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"


class FieldRule(DataGuardModel):
    """Validation rule for a single field of an object schema."""

    type: FieldType = FieldType.TEXT
    required: bool = False
    min_length: Optional[int] = Field(default=None, ge=0)
    max_length: Optional[int] = Field(default=None, ge=0)
    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[str] = Field(default=None, max_length=500)

    @field_validator("pattern")
    @classmethod
    def _compile_pattern(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            regex.compile(v)
        except regex.error as e:
            raise ValueError(f"Invalid pattern: {e}") from None
        return v


class FieldCheck(DataGuardModel):
    """Outcome of validating a single value: either a normalized value or an error."""

    valid: bool
    value: Optional[Any] = None
    error: Optional[str] = None


class FileMeta(DataGuardModel):
    filename: str
    mime_type: Optional[str] = None
    size_bytes: int = Field(ge=0)

    @property
    def extension(self) -> str:
        name = self.filename.lower()
        if "." not in name:
            return ""
        return name[name.rfind(".") :]


class FieldValidationError(DataGuardModel):
    field: str
    reason: str


class ValidationResult(DataGuardModel):
    valid: bool
    errors: Dict[str, str] = Field(default_factory=dict)
    sanitized: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_failures(cls, failures: List[FieldValidationError], sanitized: Dict[str, Any]) -> "ValidationResult":
        errors: Dict[str, str] = {}
        for failure in failures:
            # First reason per field wins, the rest are usually consequences of it
            errors.setdefault(failure.field, failure.reason)
        return cls(valid=not errors, errors=errors, sanitized=sanitized)


class ThreatCategory(str, Enum):
    XSS = "xss"
    SQL_INJECTION = "sql_injection"


class ThreatSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ThreatEvent(DataGuardModel):
    """Append-only audit record of a detected injection or XSS pattern."""

    pattern: str
    category: ThreatCategory
    severity: ThreatSeverity
    field_name: str = "input"
    truncated_input: str = ""
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class QualitySnapshot(DataGuardModel):
    """Daily data-quality metrics. One row per day; recalculating replaces it."""

    snapshot_date: date
    total_scans: int = 0
    total_matches: int = 0
    merged: int = 0
    dismissed: int = 0
    average_top_score: float = 0.0
    threat_events_24h: int = 0
    blocked_events_24h: int = 0
    recorded_at: datetime = Field(default_factory=utc_now)


class RateLimitPreset(DataGuardModel):
    """Named rolling-window configuration."""

    name: str
    window_ms: int = Field(gt=0)
    max_requests: int = Field(gt=0)
    block_duration_ms: int = Field(gt=0)


RATE_LIMIT_PRESETS: Dict[str, RateLimitPreset] = {
    # Strict limit for public form submissions
    "publicForm": RateLimitPreset(name="publicForm", window_ms=60_000, max_requests=5, block_duration_ms=300_000),
    "standard": RateLimitPreset(name="standard", window_ms=60_000, max_requests=60, block_duration_ms=60_000),
    "authenticated": RateLimitPreset(
        name="authenticated", window_ms=60_000, max_requests=120, block_duration_ms=30_000
    ),
    "sensitive": RateLimitPreset(name="sensitive", window_ms=3_600_000, max_requests=10, block_duration_ms=3_600_000),
}


class RateLimitStatus(str, Enum):
    OPEN = "open"
    THROTTLED = "throttled"
    BLOCKED = "blocked"


@dataclass
class RateLimitState:
    """Mutable per-key counter. Times are epoch seconds."""

    window_start: float
    count: int = 0
    blocked_until: Optional[float] = None


class RateLimitDecision(DataGuardModel):
    """Allow/deny outcome for one request, with the quota metadata exposed as headers."""

    allowed: bool
    key: str
    status: RateLimitStatus
    limit: int
    remaining: int
    reset_at: int
    retry_after_seconds: Optional[int] = None

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if self.retry_after_seconds is not None:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


class BlockedIdentity(DataGuardModel):
    """Persistent block, independent of the rolling window. No expiry means permanent."""

    ip: str
    reason: str
    blocked_by: str = "system"
    blocked_at: datetime = Field(default_factory=utc_now)
    expires_at: Optional[datetime] = None

    @field_validator("blocked_at", "expires_at")
    @classmethod
    def _assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def is_active(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return True
        return self.expires_at > (now or utc_now())


class RateLimitEvent(DataGuardModel):
    ip: str
    endpoint: str
    request_count: int
    blocked: bool
    blocked_until: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
