# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_dataguard

"""CoReason DataGuard: duplicate detection, input validation and rate limiting."""

from coreason_dataguard.audit import AuditSink
from coreason_dataguard.blocking import (
    AllPairsBlocking,
    BlockingStrategy,
    DomainBlocking,
    NamePrefixBlocking,
    UnionBlocking,
    get_blocking_strategy,
)
from coreason_dataguard.candidates import CandidateSource, InMemoryCandidateSource, JsonlCandidateSource
from coreason_dataguard.config import Settings
from coreason_dataguard.detector import DuplicateDetectionEngine
from coreason_dataguard.exceptions import (
    AlreadyResolved,
    DataGuardError,
    FileTooLarge,
    FileValidationError,
    IdentityBlocked,
    InvalidSurvivor,
    InvalidThreshold,
    MatchNotFound,
    PersistenceUnavailable,
    RateLimitExceeded,
    UnsupportedFileType,
)
from coreason_dataguard.main import DataGuard
from coreason_dataguard.models import (
    BlockedIdentity,
    CandidateRecord,
    Confidence,
    EntityType,
    QualitySnapshot,
    RateLimitDecision,
    RateLimitPreset,
    ScanResult,
    ScanRun,
    ScoringPolicy,
    SimilarityMatch,
    ThreatEvent,
    ValidationResult,
)
from coreason_dataguard.rate_limiter import InMemoryRateLimitStore, RateLimiter, RateLimitStore
from coreason_dataguard.similarity import SimilarityScorer, levenshtein_distance
from coreason_dataguard.threats import DEFAULT_SIGNATURES, ThreatDetector, ThreatSignature
from coreason_dataguard.validation import ValidationEngine, sanitize

__version__ = "0.1.0"

__all__ = [
    "AllPairsBlocking",
    "AlreadyResolved",
    "AuditSink",
    "BlockedIdentity",
    "BlockingStrategy",
    "CandidateRecord",
    "CandidateSource",
    "Confidence",
    "DEFAULT_SIGNATURES",
    "DataGuard",
    "DataGuardError",
    "DomainBlocking",
    "DuplicateDetectionEngine",
    "EntityType",
    "FileTooLarge",
    "FileValidationError",
    "IdentityBlocked",
    "InMemoryCandidateSource",
    "InMemoryRateLimitStore",
    "InvalidSurvivor",
    "InvalidThreshold",
    "JsonlCandidateSource",
    "MatchNotFound",
    "NamePrefixBlocking",
    "PersistenceUnavailable",
    "QualitySnapshot",
    "RateLimitDecision",
    "RateLimitExceeded",
    "RateLimitPreset",
    "RateLimitStore",
    "RateLimiter",
    "ScanResult",
    "ScanRun",
    "ScoringPolicy",
    "Settings",
    "SimilarityMatch",
    "SimilarityScorer",
    "ThreatDetector",
    "ThreatEvent",
    "ThreatSignature",
    "UnionBlocking",
    "UnsupportedFileType",
    "ValidationEngine",
    "ValidationResult",
    "get_blocking_strategy",
    "levenshtein_distance",
    "sanitize",
]
