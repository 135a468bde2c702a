from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List

import pytest

from qabank.config import EngineConfig
from qabank.domain import SourceDocument
from qabank.index import CorpusIndex, load, read_documents
from qabank.services import QueryService

SAMPLES_DIR = Path(__file__).resolve().parent.parent / "samples"
SAMPLE_PATHS = [
    str(SAMPLES_DIR / "django_questions.md"),
    str(SAMPLES_DIR / "python_questions.md"),
]


class FakeClock:
    """Manually advanced clock for idle-timeout and scheduling tests."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def make_config(**overrides) -> EngineConfig:
    values = dict(
        corpus_paths=[],
        strip_markdown=True,
        idle_timeout_seconds=1800.0,
        category_penalty=0.5,
        excerpt_length=120,
        grading_threshold=0.5,
        snapshot_path=None,
        history_db=None,
        log_level="INFO",
    )
    values.update(overrides)
    return EngineConfig(**values)


def document(key: str, text: str, title: str = "") -> SourceDocument:
    return SourceDocument(key=key, title=title or key.title(), text=text)


@pytest.fixture
def sample_paths() -> List[str]:
    return list(SAMPLE_PATHS)


@pytest.fixture(scope="session")
def sample_index() -> CorpusIndex:
    return load(read_documents(SAMPLE_PATHS))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def service(clock: FakeClock) -> QueryService:
    query_service = QueryService(make_config(), clock=clock)
    query_service.load_corpus(SAMPLE_PATHS)
    return query_service
