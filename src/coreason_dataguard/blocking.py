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
Population pre-filtering for duplicate scans.

A blocking strategy decides which record pairs are worth scoring. Scoring is
untouched by the choice: strategies only shrink the O(n^2) pair space.
"""

from abc import ABC, abstractmethod
from collections import defaultdict
from itertools import combinations
from typing import Dict, Iterable, Iterator, List, Optional, Protocol, Sequence, Set, Tuple, runtime_checkable

from coreason_dataguard.models import FREE_MAIL_PROVIDERS, CandidateRecord
from coreason_dataguard.similarity import normalize_name

Pair = Tuple[int, int]


@runtime_checkable
class BlockingStrategy(Protocol):
    """Yields index pairs (i < j) of records that should be scored."""

    name: str

    def candidate_pairs(self, records: Sequence[CandidateRecord]) -> Iterator[Pair]: ...


class AllPairsBlocking:
    """Every unordered pair. Fine for populations in the low thousands."""

    name = "none"

    def candidate_pairs(self, records: Sequence[CandidateRecord]) -> Iterator[Pair]:
        return combinations(range(len(records)), 2)


class KeyBlocking(ABC):
    """Pairs records that share at least one blocking key. Records without a key are never paired."""

    name = "key"

    @abstractmethod
    def block_keys(self, record: CandidateRecord) -> Iterable[str]:
        """Keys the record is filed under."""

    def candidate_pairs(self, records: Sequence[CandidateRecord]) -> Iterator[Pair]:
        blocks: Dict[str, List[int]] = defaultdict(list)
        for index, record in enumerate(records):
            for key in set(self.block_keys(record)):
                blocks[key].append(index)

        seen: Set[Pair] = set()
        for members in blocks.values():
            for pair in combinations(members, 2):
                if pair not in seen:
                    seen.add(pair)
                    yield pair


class DomainBlocking(KeyBlocking):
    name = "domain"

    def __init__(self, ignored_domains: Optional[Iterable[str]] = None) -> None:
        self.ignored_domains = set(FREE_MAIL_PROVIDERS if ignored_domains is None else ignored_domains)

    def block_keys(self, record: CandidateRecord) -> Iterable[str]:
        domain = record.domain
        if domain and domain not in self.ignored_domains:
            yield domain


class NamePrefixBlocking(KeyBlocking):
    name = "name_prefix"

    def __init__(self, prefix_length: int = 3) -> None:
        self.prefix_length = prefix_length

    def block_keys(self, record: CandidateRecord) -> Iterable[str]:
        name = normalize_name(record.name)
        if name:
            yield name[: self.prefix_length]


class UnionBlocking:
    """Deduplicated union of the pairs produced by several strategies."""

    def __init__(self, strategies: Sequence[BlockingStrategy]) -> None:
        self.strategies = list(strategies)
        self.name = "_or_".join(s.name for s in self.strategies)

    def candidate_pairs(self, records: Sequence[CandidateRecord]) -> Iterator[Pair]:
        seen: Set[Pair] = set()
        for strategy in self.strategies:
            for pair in strategy.candidate_pairs(records):
                if pair not in seen:
                    seen.add(pair)
                    yield pair


def get_blocking_strategy(name: str, ignored_domains: Optional[Iterable[str]] = None) -> BlockingStrategy:
    """Resolves a configured strategy name."""
    if name == "none":
        return AllPairsBlocking()
    if name == "domain":
        return DomainBlocking(ignored_domains)
    if name == "name_prefix":
        return NamePrefixBlocking()
    if name == "domain_or_name_prefix":
        return UnionBlocking([DomainBlocking(ignored_domains), NamePrefixBlocking()])
    raise ValueError(f"Unknown blocking strategy: {name}")
