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

from coreason_dataguard.blocking import (
    AllPairsBlocking,
    DomainBlocking,
    KeyBlocking,
    NamePrefixBlocking,
    UnionBlocking,
    get_blocking_strategy,
)
from coreason_dataguard.models import CandidateRecord


@pytest.fixture
def records() -> List[CandidateRecord]:
    return [
        CandidateRecord(id="0", name="John Smith", email="john@acme.io"),
        CandidateRecord(id="1", name="Jon Smith", email="jon@acme.io"),
        CandidateRecord(id="2", name="Johanna Burke", email="jo@gmail.com"),
        CandidateRecord(id="3", name="Mary Jones", email="mary@gmail.com"),
        CandidateRecord(id="4", company="No Name Ltd"),
    ]


def test_all_pairs(records: List[CandidateRecord]) -> None:
    pairs = list(AllPairsBlocking().candidate_pairs(records))
    assert len(pairs) == 10
    assert all(i < j for i, j in pairs)


def test_domain_blocking_ignores_free_mail(records: List[CandidateRecord]) -> None:
    pairs = list(DomainBlocking().candidate_pairs(records))
    assert pairs == [(0, 1)]


def test_name_prefix_blocking(records: List[CandidateRecord]) -> None:
    pairs = set(NamePrefixBlocking().candidate_pairs(records))
    # "joh" and "jon" differ, "joh" is shared by John and Johanna
    assert pairs == {(0, 2)}


def test_records_without_keys_are_never_paired(records: List[CandidateRecord]) -> None:
    for strategy in (DomainBlocking(), NamePrefixBlocking()):
        assert all(4 not in pair for pair in strategy.candidate_pairs(records))


def test_union_deduplicates(records: List[CandidateRecord]) -> None:
    union = UnionBlocking([DomainBlocking(), NamePrefixBlocking(), DomainBlocking()])
    pairs = list(union.candidate_pairs(records))
    assert sorted(pairs) == [(0, 1), (0, 2)]
    assert len(pairs) == len(set(pairs))


def test_blocked_pairs_are_a_subset_of_all_pairs(make_population: Callable[..., List[CandidateRecord]]) -> None:
    population = make_population(60)
    everything = set(AllPairsBlocking().candidate_pairs(population))
    blocked = set(get_blocking_strategy("domain_or_name_prefix").candidate_pairs(population))
    assert blocked <= everything
    assert len(blocked) < len(everything)


@pytest.mark.parametrize(
    "name, expected",
    [
        ("none", "none"),
        ("domain", "domain"),
        ("name_prefix", "name_prefix"),
        ("domain_or_name_prefix", "domain_or_name_prefix"),
    ],
)
def test_get_blocking_strategy(name: str, expected: str) -> None:
    assert get_blocking_strategy(name).name == expected


def test_get_blocking_strategy_unknown() -> None:
    with pytest.raises(ValueError, match="Unknown blocking strategy"):
        get_blocking_strategy("soundex")


def test_key_blocking_requires_block_keys() -> None:
    with pytest.raises(TypeError):
        KeyBlocking()  # type: ignore[abstract]
