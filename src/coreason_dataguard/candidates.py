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
Candidate population sources.

The core never owns entity storage: the surrounding application hands it
records through `CandidateSource.fetch_candidates`.
"""

import json
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, runtime_checkable

from pydantic import ValidationError

from coreason_dataguard.models import CandidateRecord, EntityType
from coreason_dataguard.utils.logger import logger


@runtime_checkable
class CandidateSource(Protocol):
    def fetch_candidates(self, entity_type: Optional[EntityType] = None) -> List[CandidateRecord]: ...


class InMemoryCandidateSource:
    """Candidate source backed by a dict keyed on record identity. Thread-safe."""

    def __init__(self, records: Optional[Iterable[CandidateRecord]] = None) -> None:
        self._records: Dict[str, CandidateRecord] = {}
        self._lock = threading.Lock()
        if records:
            self.register(*records)

    def register(self, *records: CandidateRecord) -> None:
        """Adds or replaces records."""
        with self._lock:
            for record in records:
                self._records[record.key] = record

    def remove(self, record: CandidateRecord) -> None:
        with self._lock:
            self._records.pop(record.key, None)

    def fetch_candidates(self, entity_type: Optional[EntityType] = None) -> List[CandidateRecord]:
        with self._lock:
            records = list(self._records.values())
        if entity_type is None:
            return records
        return [r for r in records if r.entity_type == entity_type]


class JsonlCandidateSource:
    """
    Reads candidate records from a JSON Lines file on every fetch.

    Malformed lines are skipped with a warning so one bad export row does
    not take the whole population down.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def fetch_candidates(self, entity_type: Optional[EntityType] = None) -> List[CandidateRecord]:
        if not self.path.exists():
            logger.warning(f"Candidate file {self.path} does not exist; population is empty.")
            return []

        records: List[CandidateRecord] = []
        # Decoded per line: a badly encoded line is skipped like any other malformed one
        with self.path.open("rb") as handle:
            for line_no, raw in enumerate(handle, start=1):
                try:
                    line = raw.decode("utf-8").strip()
                    if not line:
                        continue
                    record = CandidateRecord.model_validate(json.loads(line))
                except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as e:
                    logger.warning(f"Skipping malformed candidate at {self.path}:{line_no}: {e}")
                    continue
                if entity_type is None or record.entity_type == entity_type:
                    records.append(record)
        return records
