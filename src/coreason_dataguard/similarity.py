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
Similarity scoring between candidate records.

Scores are deterministic and explainable: every field contributes a
similarity in [0, 1] and the composite is the weighted mean over the fields
populated on both sides.
"""

import hashlib
import re
from typing import Dict, Optional, Tuple

from coreason_dataguard.models import (
    CandidateRecord,
    Confidence,
    ScoringPolicy,
    SimilarityMatch,
)

_WHITESPACE_RE = re.compile(r"\s+")
_PUNCTUATION_RE = re.compile(r"[^\w\s]")
_LEGAL_SUFFIX_RE = re.compile(r"\b(inc|llc|ltd|corp|corporation|company|co|limited)\b\.?", re.IGNORECASE)
_NON_DIGIT_RE = re.compile(r"\D")

_BINARY_FIELDS = ("email", "phone", "domain")


def levenshtein_distance(a: str, b: str) -> int:
    """
    Computes the edit distance between two strings.

    Uses the classic dynamic programme with two rolling rows sized to the
    shorter string, so memory is O(min(len(a), len(b))).

    Args:
        a: First string.
        b: Second string.

    Returns:
        Minimum number of single-character insertions, deletions and substitutions.
    """
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    current = [0] * (len(b) + 1)
    for i, char_a in enumerate(a, start=1):
        current[0] = i
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current[j] = min(
                previous[j] + 1,  # deletion
                current[j - 1] + 1,  # insertion
                previous[j - 1] + cost,  # substitution
            )
        previous, current = current, previous
    return previous[len(b)]


def string_similarity(a: str, b: str) -> float:
    """Returns 1 - distance / max length, or 0.0 when either side is empty."""
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return 1.0 - levenshtein_distance(a, b) / max(len(a), len(b))


def normalize_name(value: str) -> str:
    value = _WHITESPACE_RE.sub(" ", value.strip().lower())
    return _PUNCTUATION_RE.sub("", value).strip()


def normalize_company(value: str) -> str:
    value = _WHITESPACE_RE.sub(" ", value.strip().lower())
    value = _LEGAL_SUFFIX_RE.sub("", value)
    value = _PUNCTUATION_RE.sub("", value)
    return _WHITESPACE_RE.sub(" ", value).strip()


def normalize_email(value: str) -> str:
    return value.strip().lower()


def normalize_phone(value: str) -> str:
    """Digits only, keeping the last ten so country prefixes do not break matches."""
    return _NON_DIGIT_RE.sub("", value)[-10:]


def classify(score: float, policy: Optional[ScoringPolicy] = None) -> Confidence:
    """Maps a composite score to its confidence band."""
    thresholds = (policy or ScoringPolicy()).thresholds
    if score >= thresholds.exact:
        return Confidence.EXACT
    if score >= thresholds.high:
        return Confidence.HIGH
    if score >= thresholds.medium:
        return Confidence.MEDIUM
    if score >= thresholds.low:
        return Confidence.LOW
    return Confidence.NONE


class SimilarityScorer:
    """
    Weighted fuzzy comparison of two candidate records.

    Name and company get Levenshtein partial credit. Email, phone and domain
    are binary because partial credit on identifiers is misleading. Fields
    empty on either side are dropped from both numerator and denominator.
    """

    def __init__(self, policy: Optional[ScoringPolicy] = None) -> None:
        self.policy = policy or ScoringPolicy()

    def normalized_fields(self, record: CandidateRecord) -> Dict[str, str]:
        """Returns the comparison form of every scored field of a record."""
        domain = record.domain
        if domain in self.policy.ignored_email_domains:
            domain = ""
        return {
            "email": normalize_email(record.email),
            "company": normalize_company(record.company),
            "name": normalize_name(record.name),
            "phone": normalize_phone(record.phone),
            "domain": domain,
        }

    def content_hash(self, a: CandidateRecord, b: CandidateRecord) -> str:
        """
        Order-independent digest of the compared field values of a pair.

        Resolution decisions key on this so that a dismissed pair stays
        dismissed while both records are unchanged, and comes back if either
        record is edited.
        """
        digests = sorted(self._record_digest(r) for r in (a, b))
        return hashlib.sha256("|".join(digests).encode("utf-8")).hexdigest()

    @staticmethod
    def match_id(a: CandidateRecord, b: CandidateRecord) -> str:
        """Stable identifier of an unordered record pair."""
        keys = "|".join(sorted((a.key, b.key)))
        return hashlib.sha256(keys.encode("utf-8")).hexdigest()[:16]

    def field_scores(self, a: CandidateRecord, b: CandidateRecord) -> Dict[str, float]:
        """Per-field similarity for the fields populated on both sides."""
        fields_a = self.normalized_fields(a)
        fields_b = self.normalized_fields(b)
        scores: Dict[str, float] = {}
        for field, weight in self.policy.weights.items():
            if weight <= 0:
                continue
            value_a, value_b = fields_a[field], fields_b[field]
            if not value_a or not value_b:
                continue
            if field in _BINARY_FIELDS:
                scores[field] = 1.0 if value_a == value_b else 0.0
            else:
                scores[field] = string_similarity(value_a, value_b)
        return scores

    def composite(self, scores: Dict[str, float]) -> float:
        """Weighted mean of the included field scores, renormalized over their weights."""
        weights = self.policy.weights
        total_weight = sum(weights[f] for f in scores)
        if total_weight <= 0:
            return 0.0
        weighted = sum(weights[f] * s for f, s in scores.items())
        return min(1.0, max(0.0, weighted / total_weight))

    def score(self, a: CandidateRecord, b: CandidateRecord) -> SimilarityMatch:
        """
        Compares two records.

        Args:
            a: First record.
            b: Second record.

        Returns:
            A SimilarityMatch carrying the composite score, matched fields and confidence band.
        """
        scores = self.field_scores(a, b)
        total = self.composite(scores)
        matched = sorted(f for f, s in scores.items() if s >= self.policy.matched_field_threshold)
        first, second = self._ordered(a, b)
        return SimilarityMatch(
            match_id=self.match_id(a, b),
            record_id_a=first.id,
            record_id_b=second.id,
            entity_type_a=first.entity_type,
            entity_type_b=second.entity_type,
            score=total,
            matched_fields=matched,
            field_scores=scores,
            confidence=classify(total, self.policy),
            content_hash=self.content_hash(a, b),
        )

    def _record_digest(self, record: CandidateRecord) -> str:
        fields = self.normalized_fields(record)
        payload = "\x1f".join(f"{k}={fields[k]}" for k in sorted(fields))
        return hashlib.sha256(f"{record.key}\x1e{payload}".encode("utf-8")).hexdigest()

    @staticmethod
    def _ordered(a: CandidateRecord, b: CandidateRecord) -> Tuple[CandidateRecord, CandidateRecord]:
        return (a, b) if a.key <= b.key else (b, a)
