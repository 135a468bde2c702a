from __future__ import annotations

import random
import threading
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from qabank.domain import LearnerState, ReviewState, SessionState, TagStats
from qabank.errors import InvalidSessionState, LoadCancelled, LoadError, NotFoundError
from qabank.models import NextQuestion, Question, QuizPolicy, SearchFilters, SessionComplete
from qabank.services import (
    QueryService,
    grade_answer_text,
    weighted_draw,
)

from conftest import SAMPLE_PATHS, make_config

ORM_POLICY = QuizPolicy(mode="random", category="Django ORM", seed=7)


def _run_to_completion(service: QueryService, session_id: str):
    seen = []
    step = service.current_question(session_id)
    while isinstance(step, NextQuestion):
        seen.append(step.question.id)
        step = service.submit_answer(session_id, step.question.id, was_correct=True)
    return seen, step


def test_sample_scenario_loads_enough_questions(sample_paths):
    service = QueryService(make_config())

    summary = service.load_corpus(sample_paths)

    assert summary.questions_parsed >= 100
    assert summary.categories_discovered >= 4
    assert summary.questions_skipped == 1
    assert [d.kind for d in summary.diagnostics] == ["skipped-record"]


def test_random_session_visits_category_once(service):
    session_id = service.start_quiz_session(ORM_POLICY)

    seen, final = _run_to_completion(service, session_id)

    assert len(seen) == 10
    assert len(set(seen)) == 10
    assert {service.get_question(qid).category for qid in seen} == {"Django ORM"}
    assert isinstance(final, SessionComplete)
    assert (final.total, final.correct) == (10, 10)


def test_seeded_sessions_share_order(service):
    first = service.sessions.start(ORM_POLICY)
    second = service.sessions.start(ORM_POLICY)

    assert first.question_ids == second.question_ids
    assert first.session_id != second.session_id


def test_completed_session_rejects_answers(service):
    session_id = service.start_quiz_session(ORM_POLICY)
    seen, _ = _run_to_completion(service, session_id)
    session = service.sessions.get(session_id)
    before = list(session.history)

    assert session.state is SessionState.COMPLETED
    with pytest.raises(InvalidSessionState):
        service.submit_answer(session_id, seen[-1], was_correct=False)
    with pytest.raises(InvalidSessionState):
        service.submit_answer(session_id, seen[0], was_correct=True)
    assert session.history == before


def test_out_of_order_answer_is_rejected(service):
    session = service.sessions.start(ORM_POLICY)
    later = session.question_ids[3]

    with pytest.raises(InvalidSessionState):
        service.submit_answer(session.session_id, later, was_correct=True)
    with pytest.raises(InvalidSessionState):
        service.submit_answer(session.session_id, "not-a-question", was_correct=True)
    assert session.history == []
    assert session.state is SessionState.CREATED


def test_resubmission_overwrites_last_answer(service):
    policy = QuizPolicy(mode="category-locked", category="Django ORM", seed=3, learner_id="amira")
    session = service.sessions.start(policy)
    first, second = session.question_ids[:2]

    step = service.submit_answer(session.session_id, first, was_correct=False)
    again = service.submit_answer(session.session_id, first, was_correct=True)

    assert step == again
    assert again.question.id == second
    assert len(session.history) == 1
    assert session.history[0].was_correct is True
    assert session.state is SessionState.IN_PROGRESS

    learner = service.repository.get_learner_state("amira")
    assert learner.tags["django-orm"].attempts == 1
    assert learner.tags["django-orm"].correct == 1
    assert learner.reviews[first].reviews == 1


def test_submit_requires_flag_or_text(service):
    session = service.sessions.start(ORM_POLICY)

    with pytest.raises(ValueError):
        service.submit_answer(session.session_id, session.question_ids[0])


def test_answer_text_is_graded_by_key_terms():
    question = Question(
        id="x-1",
        document="x",
        category="Caching",
        prompt="What is caching?",
        answer="Caching stores computed results for reuse.",
    )

    assert grade_answer_text(question, "it stores computed results", 0.5)
    assert not grade_answer_text(question, "no clue", 0.5)


def test_category_locked_requires_category():
    with pytest.raises(ValidationError):
        QuizPolicy(mode="category-locked")


def test_unknown_category_or_empty_pool(service):
    with pytest.raises(NotFoundError):
        service.start_quiz_session(QuizPolicy(mode="random", category="Cooking"))
    with pytest.raises(NotFoundError):
        service.start_quiz_session(QuizPolicy(mode="random", tags=("no-such-tag",)))


def test_limit_truncates_queue(service):
    session_id = service.start_quiz_session(QuizPolicy(mode="random", limit=3, seed=1))

    seen, final = _run_to_completion(service, session_id)

    assert len(seen) == 3
    assert final.total == 3


def test_weakness_weighted_prefers_weak_tags(tmp_path):
    lines = ["## Weak Spots"]
    lines += [f"### {n}. What is it?\nSomething." for n in range(1, 6)]
    lines += ["## Strong Suits"]
    lines += [f"### {n}. What is it?\nSomething." for n in range(6, 11)]
    path = tmp_path / "drills.md"
    path.write_text("\n".join(lines), encoding="utf-8")

    service = QueryService(make_config())
    service.load_corpus([str(path)])
    learner = LearnerState(
        tags={
            "weak-spots": TagStats(attempts=1_000_000, correct=0),
            "strong-suits": TagStats(attempts=1_000_000, correct=1_000_000),
        }
    )
    service.repository.save_learner_state("kai", learner)

    session = service.sessions.start(QuizPolicy(mode="weakness-weighted", seed=11, learner_id="kai"))

    categories = [service.get_question(qid).category for qid in session.question_ids]
    assert categories[:5] == ["Weak Spots"] * 5
    assert sorted(session.question_ids) == sorted(q.id for q in service.index)


def test_weighted_draw_returns_every_id_once():
    drawn = weighted_draw(["a", "b", "c"], [0.0, 0.0, 1.0], random.Random(0))

    assert drawn[0] == "c"
    assert sorted(drawn) == ["a", "b", "c"]
    assert sorted(weighted_draw(["a", "b"], [0.0, 0.0], random.Random(0))) == ["a", "b"]


def test_end_session_reports_and_persists(service):
    session = service.sessions.start(ORM_POLICY)
    for qid, correct in zip(session.question_ids[:3], (True, False, True)):
        service.submit_answer(session.session_id, qid, was_correct=correct)

    report = service.end_session(session.session_id)

    assert (report.total, report.correct, report.remaining) == (3, 2, 7)
    assert report.state == "in_progress"
    assert report.by_category["Django ORM"].total == 3
    assert report.by_category["Django ORM"].correct == 2
    with pytest.raises(NotFoundError):
        service.current_question(session.session_id)

    record = service.session_history(session.session_id)
    assert record.state == "completed"
    assert [entry.question_id for entry in record.history] == session.question_ids[:3]
    assert record.ended_at is not None


def test_idle_sessions_expire(service, clock):
    policy = QuizPolicy(mode="random", category="Django ORM", idle_timeout_seconds=60)
    session_id = service.start_quiz_session(policy)

    clock.advance(30)
    assert isinstance(service.current_question(session_id), NextQuestion)
    clock.advance(61)

    with pytest.raises(NotFoundError):
        service.current_question(session_id)
    assert service.session_history(session_id).history == []
    assert session_id not in service.sessions.active_sessions()


def test_failed_reload_keeps_previous_index(service, tmp_path):
    fingerprint = service.index.fingerprint

    with pytest.raises(LoadError):
        service.load_corpus([str(tmp_path / "missing.md")])

    assert service.index.fingerprint == fingerprint
    assert service.search("select_related")


def test_cancelled_reload_keeps_previous_index(service):
    fingerprint = service.index.fingerprint
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(LoadCancelled):
        service.load_corpus(SAMPLE_PATHS[:1], cancel_event=cancel)

    assert service.index.fingerprint == fingerprint


def test_queries_before_any_load():
    service = QueryService(make_config())

    with pytest.raises(NotFoundError):
        service.search("django")
    with pytest.raises(NotFoundError):
        service.get_question("django-questions-1")


def test_search_summaries_carry_excerpts(service):
    results = service.search("middleware", SearchFilters(category="Django Advanced Topics"))

    assert results[0].excerpt == "What is middleware?"
    assert results[0].category == "Django Advanced Topics"
    assert "django-orm" in service.tags()
    assert service.categories()[0] == "Django Basics"


def test_snapshot_round_trip_through_service(service, tmp_path):
    path = tmp_path / "corpus.json"
    service.save_snapshot(str(path))

    restored = QueryService(make_config())
    summary = restored.load_snapshot(str(path))

    assert summary.questions_parsed == len(service.index)
    assert restored.search("select_related") == service.search("select_related")


def test_snapshot_requires_a_location(service):
    with pytest.raises(LoadError):
        service.save_snapshot()


def test_review_state_scheduling():
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    first = ReviewState.first(True, now)
    assert (first.stability, first.reviews, first.lapses) == (1.5, 1, 0)
    assert first.due == now + timedelta(days=1.5)

    assert first.recall_probability(now) == 1.0
    assert first.recall_probability(now + timedelta(days=1.5)) == pytest.approx(0.9)

    lapsed = first.reviewed(False, now + timedelta(days=3))
    assert (lapsed.lapses, lapsed.reviews) == (1, 2)
    assert lapsed.stability == pytest.approx(0.45)
    assert lapsed.difficulty > first.difficulty

    recalled = first.reviewed(True, now + timedelta(days=3))
    assert recalled.stability > first.stability
    assert recalled.due - recalled.last_review == timedelta(days=recalled.stability)

    missed = ReviewState.first(False, now)
    assert (missed.stability, missed.lapses) == (0.2, 1)


def test_concurrent_submissions_to_one_session_are_serialized(service):
    session = service.sessions.start(ORM_POLICY)
    head, following = session.question_ids[:2]
    barrier = threading.Barrier(8)
    outcomes = []
    outcomes_lock = threading.Lock()

    def submit():
        barrier.wait()
        try:
            step = service.submit_answer(session.session_id, head, was_correct=True)
        except InvalidSessionState:
            result = "rejected"
        else:
            result = step.question.id
        with outcomes_lock:
            outcomes.append(result)

    threads = [threading.Thread(target=submit) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(session.history) == 1
    assert session.history[0].question_id == head
    assert outcomes == [following] * 8
