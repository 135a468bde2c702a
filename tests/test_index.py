from __future__ import annotations

import json
import threading

import pytest

from qabank.errors import LoadCancelled, LoadError, NotFoundError
from qabank.index import CorpusIndex, IndexHolder, load, read_documents
from qabank.models import Question, SearchFilters
from qabank.validators import ValidationError

from conftest import SAMPLE_PATHS, document

PENALTY_DOC = """## Cooking Basics

### 1. How to cook pasta?

**Answer:** Boil water first.

## Travel Basics

### 2. How to store pasta?

**Answer:** In a sealed jar.
"""


def test_sample_corpus_loads_cleanly(sample_index):
    assert len(sample_index) == 106
    assert len(sample_index.categories) == 9
    assert sample_index.skipped == 1
    assert sample_index.documents == ["django-questions", "python-questions"]
    assert "Coding Challenges" in sample_index.categories
    assert "Python Basics" in sample_index.categories


def test_every_id_resolves_to_a_prompt(sample_index):
    for question in sample_index:
        resolved = sample_index.get_by_id(question.id)
        assert resolved.prompt.strip()
        assert resolved.category in sample_index.categories


def test_unknown_id_raises(sample_index):
    with pytest.raises(NotFoundError):
        sample_index.get_by_id("django-questions-999")


def test_identical_loads_give_identical_snapshots():
    first = load(read_documents(SAMPLE_PATHS))
    second = load(read_documents(SAMPLE_PATHS))

    assert first.snapshot_bytes() == second.snapshot_bytes()
    assert first.fingerprint == second.fingerprint


def test_search_ranks_prompt_match_first(sample_index):
    hits = sample_index.search("select_related")

    assert hits[0].question.prompt == "What is the difference between select_related and prefetch_related?"
    assert hits[0].score == 2.0
    assert len(hits) > 1
    assert all(hit.score < hits[0].score for hit in hits[1:])


def test_search_absent_token_returns_nothing(sample_index):
    assert sample_index.search("zzzxqj") == []


def test_search_without_terms(sample_index):
    assert sample_index.search("the of and") == []

    hits = sample_index.search("", SearchFilters(category="django orm"))
    assert len(hits) == 10
    assert all(hit.score == 0.0 for hit in hits)
    assert [hit.question.id for hit in hits] == sample_index.ordered(hit.question.id for hit in hits)


def test_search_filters(sample_index):
    hits = sample_index.search("queryset", SearchFilters(category="Django ORM"))

    assert hits
    assert {hit.question.category for hit in hits} == {"Django ORM"}
    assert sample_index.search("queryset", SearchFilters(category="Cooking")) == []
    assert sample_index.search("queryset", SearchFilters(tags=["no-such-tag"])) == []


def test_search_penalises_questions_outside_named_category():
    index = load([document("trips", PENALTY_DOC)])

    hits = index.search("pasta travel")

    assert [(hit.question.prompt, hit.score) for hit in hits] == [
        ("How to store pasta?", 2.0),
        ("How to cook pasta?", 1.5),
    ]

    filtered = index.search("pasta travel", SearchFilters(category="Cooking Basics"))
    assert [(hit.question.prompt, hit.score) for hit in filtered] == [("How to cook pasta?", 2.0)]


def test_category_and_tag_lookups(sample_index):
    orm = sample_index.by_category("Django ORM")

    assert len(orm) == 10
    assert {question.category for question in orm} == {"Django ORM"}
    assert sample_index.by_tag("django-orm") == orm
    with pytest.raises(NotFoundError):
        sample_index.by_category("Cooking")
    with pytest.raises(NotFoundError):
        sample_index.by_tag("no-such-tag")


def test_snapshot_round_trip_preserves_queries(sample_index):
    restored = CorpusIndex.from_snapshot(json.loads(sample_index.snapshot_bytes()))

    assert restored.snapshot_bytes() == sample_index.snapshot_bytes()
    for question in sample_index:
        assert restored.get_by_id(question.id) == question
    for query in ("select_related", "python decorators", "middleware", "generator"):
        assert restored.search(query) == sample_index.search(query)


def test_snapshot_with_unknown_version_is_rejected(sample_index):
    payload = sample_index.to_snapshot()
    payload["version"] = 99

    with pytest.raises(LoadError):
        CorpusIndex.from_snapshot(payload)


def test_corrupt_snapshot_is_rejected(sample_index):
    payload = sample_index.to_snapshot()
    del payload["questions"]

    with pytest.raises(LoadError):
        CorpusIndex.from_snapshot(payload)


def test_duplicate_ids_fail_validation():
    question = Question(id="a-1", document="a", category="A", prompt="What?")

    with pytest.raises(ValidationError):
        CorpusIndex([question, question], categories=["A"])


def test_orphan_category_fails_validation():
    question = Question(id="a-1", document="a", category="A", prompt="What?")

    with pytest.raises(ValidationError):
        CorpusIndex([question], categories=["B"])


def test_duplicate_document_keys_get_suffixes():
    text = "## Topic\n### 1. What?\nThat.\n"

    index = load([document("notes", text), document("notes", text)])

    assert index.documents == ["notes", "notes-2"]
    assert "notes-2-1" in index


def test_missing_document_fails_load(tmp_path):
    with pytest.raises(LoadError):
        read_documents([str(tmp_path / "missing.md")])
    with pytest.raises(LoadError):
        read_documents([])


def test_cancelled_load_raises():
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(LoadCancelled):
        load(read_documents(SAMPLE_PATHS), cancel_event=cancel)


def test_index_holder_swaps_whole_snapshots(sample_index):
    holder = IndexHolder()

    assert not holder.loaded
    with pytest.raises(NotFoundError):
        holder.current

    assert holder.swap(sample_index) is None
    assert holder.current is sample_index
