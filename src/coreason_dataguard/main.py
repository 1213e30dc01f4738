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
Main entry point for the CoReason DataGuard core.

This module exposes the `DataGuard` class, which wires duplicate detection,
validation, threat detection and rate limiting to one audit sink from a
single `Settings` object.
"""

import time
from datetime import date, datetime, timedelta, timezone
from types import TracebackType
from typing import Any, Callable, Dict, List, Optional, Type

from coreason_dataguard.audit import AuditSink
from coreason_dataguard.blocking import get_blocking_strategy
from coreason_dataguard.candidates import CandidateSource, InMemoryCandidateSource, JsonlCandidateSource
from coreason_dataguard.config import Settings
from coreason_dataguard.detector import DuplicateDetectionEngine
from coreason_dataguard.models import QualitySnapshot, ScoringPolicy, ThreatCategory, ThreatEvent
from coreason_dataguard.rate_limiter import InMemoryRateLimitStore, RateLimiter
from coreason_dataguard.similarity import SimilarityScorer
from coreason_dataguard.threats import ThreatDetector
from coreason_dataguard.utils.logger import logger
from coreason_dataguard.validation import ValidationEngine


class DataGuard:
    """
    The main interface for the data quality and protection core.
    Coordinates DuplicateDetectionEngine, ValidationEngine and RateLimiter.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        source: Optional[CandidateSource] = None,
        sink: Optional[AuditSink] = None,
        policy: Optional[ScoringPolicy] = None,
        timer: Callable[[], float] = time.time,
    ) -> None:
        """
        Initializes every component.

        Args:
            settings: Runtime configuration. Read from the environment when omitted.
            source: Candidate population. Defaults to the configured JSON Lines
                file, or an empty in-memory source.
            sink: Audit sink. Defaults to sqlite at `settings.database_path`.
            policy: Scoring weights and confidence bands.
            timer: Epoch-seconds clock for rate limiting.
        """
        self.settings = settings or Settings()
        self._timer = timer
        self.sink = sink or AuditSink(
            self.settings.database_path, max_pending_writes=self.settings.audit_max_pending_writes
        )

        if source is None:
            if self.settings.candidates_path is not None:
                source = JsonlCandidateSource(self.settings.candidates_path)
            else:
                source = InMemoryCandidateSource()
        self.source = source

        self.policy = policy or ScoringPolicy()
        self.detector = DuplicateDetectionEngine(
            source=self.source,
            sink=self.sink,
            scorer=SimilarityScorer(self.policy),
            blocking=get_blocking_strategy(self.settings.blocking_strategy, self.policy.ignored_email_domains),
            check_threshold=self.settings.check_threshold,
            flag_threshold=self.settings.flag_threshold,
        )
        self.validator = ValidationEngine(
            allowed_extensions=self.settings.allowed_file_extensions,
            max_file_bytes=self.settings.max_file_bytes,
            allowed_mime_types=self.settings.allowed_mime_types,
            allow_local_urls=self.settings.allow_local_urls,
            threat_detector=ThreatDetector(max_input_chars=self.settings.threat_input_max_chars),
            pattern_timeout_seconds=self.settings.pattern_timeout_seconds,
        )
        self.rate_limiter = RateLimiter(
            store=InMemoryRateLimitStore(max_keys=self.settings.rate_limit_max_keys, timer=timer),
            sink=self.sink,
            timer=timer,
            block_cache_refresh_seconds=self.settings.block_cache_refresh_seconds,
        )
        blocks = self.rate_limiter.load_blocks()
        logger.info(f"DataGuard ready ({blocks} persistent blocks, blocking={self.detector.blocking.name})")

    def log_threats(self, events: List[ThreatEvent]) -> None:
        """Appends threat findings to the audit sink without waiting for the write."""
        if not events:
            return
        for event in events:
            logger.warning(
                f"Threat pattern {event.pattern} ({event.category.value}, {event.severity.value}) "
                f"in field {event.field_name} from {event.ip or 'unknown'}"
            )
        self.sink.defer(self.sink.record_threats, events)

    def threat_events(self, category: Optional[ThreatCategory] = None, limit: int = 100) -> List[ThreatEvent]:
        """Operator read path over recorded threat findings, newest first."""
        return self.sink.list_threats(limit=limit, category=category)

    def quality_metrics(self) -> Dict[str, Any]:
        """Current duplicate statistics plus the last 24h of threat and rate-limit activity."""
        metrics = dict(self.detector.stats())
        metrics["threat_events_24h"] = self.sink.count_threats()
        metrics["blocked_events_24h"] = self.sink.rate_limit_stats()["blocked_events_24h"]
        return metrics

    def record_quality_snapshot(self) -> QualitySnapshot:
        """
        Calculates the current metrics and stores them as today's snapshot.

        Recalculating on the same day replaces the earlier snapshot.

        Raises:
            PersistenceUnavailable: If the snapshot cannot be stored.
        """
        snapshot = QualitySnapshot(snapshot_date=self._today(), **self.quality_metrics())
        self.sink.upsert_snapshot(snapshot)
        logger.info(f"Recorded data quality snapshot for {snapshot.snapshot_date.isoformat()}")
        return snapshot

    def quality_history(self, days: int = 30) -> List[QualitySnapshot]:
        """Snapshots of the last `days` days, newest first."""
        return self.sink.list_snapshots(since=self._today() - timedelta(days=days))

    def _today(self) -> date:
        return datetime.fromtimestamp(self._timer(), tz=timezone.utc).date()

    def health(self) -> Dict[str, Any]:
        sink_ok = self.sink.ping()
        return {
            "status": "ok" if sink_ok else "degraded",
            "database": "ok" if sink_ok else "unavailable",
            "signatures": len(self.validator.threat_detector.signatures),
        }

    def close(self) -> None:
        self.sink.close()
        logger.info("DataGuard closed")

    def __enter__(self) -> "DataGuard":
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        self.close()
