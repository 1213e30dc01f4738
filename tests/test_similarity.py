# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_dataguard

from typing import Callable, List

import pytest

from coreason_dataguard.models import (
    CandidateRecord,
    Confidence,
    ConfidenceThresholds,
    EntityType,
    ScoringPolicy,
)
from coreason_dataguard.similarity import (
    SimilarityScorer,
    classify,
    levenshtein_distance,
    normalize_company,
    normalize_phone,
    string_similarity,
)


@pytest.fixture
def scorer() -> SimilarityScorer:
    return SimilarityScorer()


@pytest.mark.parametrize(
    "a, b, expected",
    [
        ("", "", 0),
        ("abc", "", 3),
        ("", "abc", 3),
        ("kitten", "sitting", 3),
        ("flaw", "lawn", 2),
        ("john smith", "jon smith", 1),
        ("same", "same", 0),
    ],
)
def test_levenshtein_distance(a: str, b: str, expected: int) -> None:
    assert levenshtein_distance(a, b) == expected
    assert levenshtein_distance(b, a) == expected


@pytest.mark.parametrize(
    "a, b, c",
    [
        ("abc", "abd", "xyz"),
        ("kitten", "sitting", "mitten"),
        ("", "ab", "ba"),
        ("smith", "smyth", "smithe"),
    ],
)
def test_levenshtein_triangle_inequality(a: str, b: str, c: str) -> None:
    assert levenshtein_distance(a, c) <= levenshtein_distance(a, b) + levenshtein_distance(b, c)


def test_string_similarity_bounds() -> None:
    assert string_similarity("", "abc") == 0.0
    assert string_similarity("abc", "abc") == 1.0
    assert string_similarity("abcd", "abcx") == pytest.approx(0.75)


def test_normalizers() -> None:
    assert normalize_company("  Acme Corp. ") == "acme"
    assert normalize_company("Widgets, Inc") == "widgets"
    assert normalize_company("Cobalt Company LLC") == "cobalt"
    assert normalize_phone("+1 (555) 123-4567") == "5551234567"


def test_identical_records_score_exact(
    scorer: SimilarityScorer, make_population: Callable[..., List[CandidateRecord]]
) -> None:
    for record in make_population(20):
        match = scorer.score(record, record)
        assert match.score == 1.0
        assert match.confidence == Confidence.EXACT


def test_score_is_symmetric_and_bounded(
    scorer: SimilarityScorer, make_population: Callable[..., List[CandidateRecord]]
) -> None:
    records = make_population(15)
    for a in records:
        for b in records:
            forward = scorer.score(a, b)
            backward = scorer.score(b, a)
            assert forward.score == backward.score
            assert forward.match_id == backward.match_id
            assert forward.content_hash == backward.content_hash
            assert 0.0 <= forward.score <= 1.0


def test_empty_records_score_zero(scorer: SimilarityScorer) -> None:
    match = scorer.score(CandidateRecord(id="1"), CandidateRecord(id="2"))
    assert match.score == 0.0
    assert match.confidence == Confidence.NONE
    assert match.matched_fields == []
    assert match.field_scores == {}


def test_single_shared_field_equals_its_similarity(scorer: SimilarityScorer) -> None:
    a = CandidateRecord(id="1", name="Katherine Jones")
    b = CandidateRecord(id="2", name="Catherine Jones")
    match = scorer.score(a, b)
    assert match.score == pytest.approx(string_similarity("katherine jones", "catherine jones"))
    assert list(match.field_scores) == ["name"]


def test_field_missing_on_one_side_is_excluded(scorer: SimilarityScorer) -> None:
    a = CandidateRecord(id="1", name="Ann Lee", company="Lee Holdings")
    b = CandidateRecord(id="2", name="Ann Lee")
    match = scorer.score(a, b)
    assert "company" not in match.field_scores
    assert match.score == 1.0


def test_john_and_jon_smith(scorer: SimilarityScorer) -> None:
    a = CandidateRecord(id="1", name="John Smith", email="john@co.com")
    b = CandidateRecord(id="2", name="Jon Smith", email="john@co.com")
    match = scorer.score(a, b)
    # (0.35 * 1 + 0.20 * 0.9 + 0.05 * 1) / 0.60
    assert match.score == pytest.approx(0.58 / 0.60)
    assert match.confidence == Confidence.HIGH
    assert match.matched_fields == ["domain", "email", "name"]


def test_email_and_phone_are_binary(scorer: SimilarityScorer) -> None:
    a = CandidateRecord(id="1", email="ann@acme.io", phone="+1 (555) 123-4567")
    b = CandidateRecord(id="2", email="anne@acme.io", phone="555.123.4567")
    scores = scorer.score(a, b).field_scores
    assert scores["email"] == 0.0
    assert scores["phone"] == 1.0
    assert scores["domain"] == 1.0


def test_email_comparison_is_case_insensitive(scorer: SimilarityScorer) -> None:
    a = CandidateRecord(id="1", email="Ann@ACME.io")
    b = CandidateRecord(id="2", email="ann@acme.io")
    assert scorer.score(a, b).field_scores["email"] == 1.0


def test_free_mail_domain_is_not_scored(scorer: SimilarityScorer) -> None:
    a = CandidateRecord(id="1", name="Bob Stone", email="bob@gmail.com")
    b = CandidateRecord(id="2", name="Rob Stone", email="rob@gmail.com")
    assert "domain" not in scorer.score(a, b).field_scores


def test_domain_falls_back_to_website(scorer: SimilarityScorer) -> None:
    a = CandidateRecord(id="1", website="https://www.acme.io/about")
    b = CandidateRecord(id="2", email="sales@acme.io")
    assert a.domain == "acme.io"
    assert scorer.score(a, b).field_scores == {"domain": 1.0}


def test_company_suffixes_are_ignored(scorer: SimilarityScorer) -> None:
    a = CandidateRecord(id="1", company="Acme Corp")
    b = CandidateRecord(id="2", company="ACME, Inc.")
    assert scorer.score(a, b).field_scores["company"] == 1.0


def test_records_are_ordered_by_key(scorer: SimilarityScorer) -> None:
    lead = CandidateRecord(id="9", entity_type=EntityType.LEAD, name="X")
    client = CandidateRecord(id="1", entity_type=EntityType.CLIENT, name="X")
    match = scorer.score(lead, client)
    assert (match.entity_type_a, match.record_id_a) == (EntityType.CLIENT, "1")
    assert (match.entity_type_b, match.record_id_b) == (EntityType.LEAD, "9")


def test_content_hash_changes_when_a_record_is_edited(scorer: SimilarityScorer) -> None:
    a = CandidateRecord(id="1", name="Ann Lee")
    b = CandidateRecord(id="2", name="Anne Lee")
    edited = CandidateRecord(id="2", name="Anne Leigh")
    assert scorer.content_hash(a, b) != scorer.content_hash(a, edited)
    assert scorer.match_id(a, b) == scorer.match_id(a, edited)


def test_custom_weights_and_thresholds() -> None:
    policy = ScoringPolicy(
        weights={"name": 1.0},
        thresholds=ConfidenceThresholds(exact=1.0, high=0.95, medium=0.9, low=0.8),
    )
    scorer = SimilarityScorer(policy)
    a = CandidateRecord(id="1", name="John Smith", email="john@co.com")
    b = CandidateRecord(id="2", name="Jon Smith", email="other@co.com")
    match = scorer.score(a, b)
    assert match.score == pytest.approx(0.9)
    assert match.confidence == Confidence.MEDIUM
    assert set(match.field_scores) == {"name"}


@pytest.mark.parametrize(
    "score, expected",
    [
        (1.0, Confidence.EXACT),
        (0.999, Confidence.HIGH),
        (0.85, Confidence.HIGH),
        (0.84, Confidence.MEDIUM),
        (0.70, Confidence.MEDIUM),
        (0.5, Confidence.LOW),
        (0.49, Confidence.NONE),
        (0.0, Confidence.NONE),
    ],
)
def test_classify_default_bands(score: float, expected: Confidence) -> None:
    assert classify(score) == expected


def test_policy_rejects_bad_configuration() -> None:
    with pytest.raises(ValueError):
        ScoringPolicy(weights={"fax": 1.0})
    with pytest.raises(ValueError):
        ScoringPolicy(weights={"name": 0.0})
    with pytest.raises(ValueError):
        ConfidenceThresholds(high=0.5, medium=0.7)
