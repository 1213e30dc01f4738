# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_dataguard

import os
import tempfile

# Keep file logs out of the working tree; must happen before the logger module is imported
os.environ.setdefault("DATAGUARD_LOG_DIR", tempfile.mkdtemp(prefix="dataguard-logs-"))

from typing import Callable, Generator, List  # noqa: E402

import pytest  # noqa: E402
from faker import Faker  # noqa: E402

from coreason_dataguard.audit import AuditSink  # noqa: E402
from coreason_dataguard.candidates import InMemoryCandidateSource  # noqa: E402
from coreason_dataguard.models import CandidateRecord, EntityType  # noqa: E402
from coreason_dataguard.utils.logger import logger  # noqa: E402


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink(tmp_path) -> Generator[AuditSink, None, None]:
    audit = AuditSink(str(tmp_path / "audit.db"))
    yield audit
    audit.close()


@pytest.fixture
def source() -> InMemoryCandidateSource:
    return InMemoryCandidateSource()


@pytest.fixture
def fake() -> Faker:
    Faker.seed(1234)
    return Faker()


@pytest.fixture
def make_population(fake: Faker) -> Callable[[int], List[CandidateRecord]]:
    """Builds distinct synthetic records; names and emails are unique per population."""

    def _make(size: int, entity_type: EntityType = EntityType.LEAD) -> List[CandidateRecord]:
        fake.unique.clear()
        return [
            CandidateRecord(
                id=str(i),
                entity_type=entity_type,
                name=fake.unique.name(),
                email=fake.unique.email(),
                company=fake.company(),
                phone=fake.numerify("###-###-####"),
            )
            for i in range(size)
        ]

    return _make


@pytest.fixture
def log_sink() -> Generator[List[str], None, None]:
    """Captures WARNING and above emitted through loguru."""
    logs: List[str] = []
    handler_id = logger.add(lambda msg: logs.append(str(msg)), level="WARNING")
    yield logs
    logger.remove(handler_id)
