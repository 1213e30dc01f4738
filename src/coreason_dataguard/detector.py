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
Duplicate detection over a candidate population.

The engine scores record pairs with a `SimilarityScorer`, keeps the pairs
above a threshold and records operator decisions so that a resolved pair
never reappears while both records stay unchanged.
"""

import math
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from cachetools import LRUCache

from coreason_dataguard.audit import AuditSink
from coreason_dataguard.blocking import AllPairsBlocking, BlockingStrategy
from coreason_dataguard.candidates import CandidateSource
from coreason_dataguard.exceptions import (
    AlreadyResolved,
    InvalidSurvivor,
    InvalidThreshold,
    MatchNotFound,
    PersistenceUnavailable,
)
from coreason_dataguard.models import (
    CandidateRecord,
    EntityType,
    ResolutionAction,
    ResolutionDecision,
    ScanResult,
    ScanRun,
    SimilarityMatch,
    utc_now,
)
from coreason_dataguard.similarity import SimilarityScorer
from coreason_dataguard.utils.logger import logger

# Pairs scored between two deadline checks
_DEADLINE_CHECK_INTERVAL = 64


def _check_threshold(threshold: float) -> None:
    if threshold is None or math.isnan(threshold) or not 0.0 <= threshold <= 1.0:
        raise InvalidThreshold(threshold)


class DuplicateDetectionEngine:
    """
    Orchestrates scans, real-time checks and resolution decisions.

    Attributes:
        source: Read interface to the candidate population.
        sink: Audit sink for scan history and decisions. Optional for in-process use.
        scorer: Pairwise scorer.
        blocking: Pair pre-filter used by scans.
        check_threshold: Default threshold for `check`.
        flag_threshold: `check` matches at or above this are flagged.
    """

    def __init__(
        self,
        source: CandidateSource,
        sink: Optional[AuditSink] = None,
        scorer: Optional[SimilarityScorer] = None,
        blocking: Optional[BlockingStrategy] = None,
        check_threshold: float = 0.7,
        flag_threshold: float = 0.85,
        max_tracked_matches: int = 10_000,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        _check_threshold(check_threshold)
        _check_threshold(flag_threshold)
        self.source = source
        self.sink = sink
        self.scorer = scorer or SimilarityScorer()
        self.blocking: BlockingStrategy = blocking or AllPairsBlocking()
        self.check_threshold = check_threshold
        self.flag_threshold = flag_threshold
        self._timer = timer
        self._matches: LRUCache = LRUCache(maxsize=max_tracked_matches)
        self._resolutions: Dict[str, ResolutionDecision] = {}
        self._lock = threading.RLock()
        self._load_resolutions()

    def _load_resolutions(self) -> None:
        if self.sink is None:
            return
        try:
            decisions = self.sink.load_resolutions()
        except PersistenceUnavailable as e:
            logger.warning(f"Could not load resolution decisions, resolved pairs may reappear: {e}")
            return
        with self._lock:
            for decision in decisions:
                self._resolutions[decision.content_hash] = decision
        logger.info(f"Loaded {len(decisions)} resolution decisions")

    def is_resolved(self, content_hash: str) -> bool:
        with self._lock:
            return content_hash in self._resolutions

    def _remember(self, matches: List[SimilarityMatch]) -> None:
        with self._lock:
            for match in matches:
                self._matches[match.match_id] = match

    def scan(
        self,
        entity_type: Optional[EntityType] = None,
        threshold: float = 0.7,
        limit: int = 100,
        timeout_seconds: Optional[float] = None,
    ) -> ScanResult:
        """
        Scores every candidate pair of the population and keeps the best matches.

        Args:
            entity_type: Restrict the population to one entity type. None scans all.
            threshold: Minimum composite score to retain a pair.
            limit: Maximum number of matches returned. Bounds output, not work.
            timeout_seconds: Deadline for the pairwise pass. When exceeded the
                scan stops and returns what it found so far, marked truncated.

        Returns:
            The persisted ScanRun and its matches, best first.

        Raises:
            InvalidThreshold: If threshold is outside [0, 1].
            ValueError: If limit is smaller than 1.
        """
        _check_threshold(threshold)
        if limit < 1:
            raise ValueError(f"limit must be at least 1, got {limit}")

        started_at = utc_now()
        start = self._timer()
        deadline = start + timeout_seconds if timeout_seconds is not None else None

        records = self.source.fetch_candidates(entity_type)
        logger.info(
            f"Starting duplicate scan over {len(records)} records "
            f"(entity_type={entity_type.value if entity_type else 'all'}, threshold={threshold}, "
            f"blocking={self.blocking.name})"
        )

        found: List[SimilarityMatch] = []
        truncated = False
        for scored, (i, j) in enumerate(self.blocking.candidate_pairs(records)):
            if deadline is not None and scored % _DEADLINE_CHECK_INTERVAL == 0 and self._timer() >= deadline:
                truncated = True
                break
            a, b = records[i], records[j]
            if a.key == b.key:
                continue
            match = self.scorer.score(a, b)
            if match.score >= threshold and not self.is_resolved(match.content_hash):
                found.append(match)

        found.sort(key=lambda m: (-m.score, m.match_id))
        matches = found[:limit]

        run = ScanRun(
            scan_id=uuid.uuid4().hex,
            entity_type_filter=entity_type,
            threshold=threshold,
            limit=limit,
            started_at=started_at,
            duration_ms=int((self._timer() - start) * 1000),
            match_count=len(matches),
            truncated=truncated,
        )
        self._remember(matches)

        if self.sink is not None:
            try:
                self.sink.record_scan(run, matches)
            except PersistenceUnavailable as e:
                logger.error(f"Scan {run.scan_id} completed but could not be recorded: {e}")

        if truncated:
            logger.warning(f"Scan {run.scan_id} hit its {timeout_seconds}s deadline; returning partial results")
        logger.info(f"Scan {run.scan_id} found {len(matches)} matches in {run.duration_ms}ms")
        return ScanResult(run=run, matches=matches)

    def check(self, record: CandidateRecord, threshold: Optional[float] = None) -> List[SimilarityMatch]:
        """
        Compares one incoming record against the whole existing population.

        Nothing is persisted. Matches at or above the flag threshold are
        marked `flagged` so the caller can surface them inline.

        Args:
            record: The incoming record.
            threshold: Minimum score, defaults to `check_threshold`.

        Returns:
            Matches best first, excluding the record itself and resolved pairs.
        """
        threshold = self.check_threshold if threshold is None else threshold
        _check_threshold(threshold)

        matches: List[SimilarityMatch] = []
        for candidate in self.source.fetch_candidates(None):
            if candidate.key == record.key:
                continue
            match = self.scorer.score(record, candidate)
            if match.score < threshold or self.is_resolved(match.content_hash):
                continue
            if match.score >= self.flag_threshold:
                match = match.model_copy(update={"flagged": True})
            matches.append(match)

        matches.sort(key=lambda m: (-m.score, m.match_id))
        self._remember(matches)
        return matches

    def get_match(self, match_id: str) -> SimilarityMatch:
        """
        Raises:
            MatchNotFound: If the id was never produced by a scan or check.
        """
        with self._lock:
            match = self._matches.get(match_id)
        if match is None and self.sink is not None:
            match = self.sink.get_match(match_id)
        if match is None:
            raise MatchNotFound(match_id)
        return match

    def merge(self, match_id: str, survivor_id: str, resolved_by: str = "admin") -> ResolutionDecision:
        """
        Records that the pair is one entity, with `survivor_id` as the canonical record.

        Reassigning references from the merged record is left to the owners
        of the entities.

        Raises:
            MatchNotFound: Unknown match id.
            AlreadyResolved: A decision already exists for this content.
            InvalidSurvivor: survivor_id is neither side of the match.
        """
        match = self.get_match(match_id)
        with self._lock:
            existing = self._resolutions.get(match.content_hash)
            if existing is not None:
                raise AlreadyResolved(match_id, existing.action.value)
            if survivor_id not in (match.record_id_a, match.record_id_b):
                raise InvalidSurvivor(match_id, survivor_id)
            decision = self._resolve(match, ResolutionAction.MERGE, resolved_by, survivor_id)
        logger.info(f"Merged match {match_id}: survivor {survivor_id} (by {resolved_by})")
        return decision

    def dismiss(self, match_id: str, resolved_by: str = "admin") -> ResolutionDecision:
        """
        Records that the pair is not a duplicate. Dismissing twice is a no-op.

        Raises:
            MatchNotFound: Unknown match id.
            AlreadyResolved: The pair was already merged.
        """
        match = self.get_match(match_id)
        with self._lock:
            existing = self._resolutions.get(match.content_hash)
            if existing is not None:
                if existing.action == ResolutionAction.DISMISS:
                    return existing
                raise AlreadyResolved(match_id, existing.action.value)
            decision = self._resolve(match, ResolutionAction.DISMISS, resolved_by)
        logger.info(f"Dismissed match {match_id} (by {resolved_by})")
        return decision

    def _resolve(
        self,
        match: SimilarityMatch,
        action: ResolutionAction,
        resolved_by: str,
        survivor_id: Optional[str] = None,
    ) -> ResolutionDecision:
        decision = ResolutionDecision(
            match_id=match.match_id,
            content_hash=match.content_hash,
            action=action,
            record_id_a=match.record_id_a,
            record_id_b=match.record_id_b,
            survivor_id=survivor_id,
            resolved_by=resolved_by,
        )
        # Persisted before it becomes visible in memory
        if self.sink is not None:
            self.sink.record_resolution(decision)
        self._resolutions[match.content_hash] = decision
        return decision

    def history(self, entity_type: Optional[EntityType] = None, limit: int = 50) -> List[ScanRun]:
        """Most recent scans first."""
        if self.sink is None:
            return []
        return self.sink.list_scans(entity_type, limit)

    def stats(self) -> Dict[str, Any]:
        if self.sink is None:
            with self._lock:
                actions = [d.action for d in self._resolutions.values()]
            return {
                "total_scans": 0,
                "total_matches": 0,
                "merged": actions.count(ResolutionAction.MERGE),
                "dismissed": actions.count(ResolutionAction.DISMISS),
                "average_top_score": 0.0,
            }
        return self.sink.duplicate_stats()
