"""Core services: quiz sessions over a corpus index and the query facade."""
from __future__ import annotations

import logging
import random
import threading
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union
from uuid import uuid4

from .config import EngineConfig
from .domain import LearnerState, QuizSession, ReviewState, SessionState
from .errors import InvalidSessionState, LoadCancelled, LoadError, NotFoundError
from .extractor import ExtractOptions
from .index import CorpusIndex, IndexHolder, load, read_documents
from .metrics import METRICS
from .models import (
    AnswerRecord,
    CategoryBreakdown,
    CorpusSummary,
    NextQuestion,
    Question,
    QuestionSummary,
    QuizPolicy,
    SearchFilters,
    SessionComplete,
    SessionRecord,
    SessionReport,
)
from .repositories import HistoryRepository, SnapshotStore
from .storage import JsonSnapshotStore, SqliteHistoryRepository
from .text import excerpt, keywords, tokenize

logger = logging.getLogger(__name__)


SessionStep = Union[NextQuestion, SessionComplete]

DUE_BOOST = 1.5
KEY_TERM_LIMIT = 8


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryHistoryRepository(HistoryRepository):
    """Keeps finished sessions and learner state in process memory."""

    def __init__(self) -> None:
        self._sessions: Dict[str, SessionRecord] = {}
        self._learners: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def save_session(self, record: SessionRecord) -> None:
        with self._lock:
            self._sessions[record.session_id] = record.model_copy(deep=True)

    def get_session(self, session_id: str) -> SessionRecord:
        with self._lock:
            try:
                return self._sessions[session_id].model_copy(deep=True)
            except KeyError:
                raise NotFoundError(f"Unknown session id: {session_id}") from None

    def list_sessions(self, learner_id: Optional[str] = None) -> List[SessionRecord]:
        with self._lock:
            records = [
                record.model_copy(deep=True)
                for record in self._sessions.values()
                if learner_id is None or record.policy.learner_id == learner_id
            ]
        return sorted(records, key=lambda record: (record.created_at, record.session_id))

    def get_learner_state(self, learner_id: str) -> LearnerState:
        with self._lock:
            payload = self._learners.get(learner_id)
        return LearnerState.from_dict(payload) if payload else LearnerState()

    def save_learner_state(self, learner_id: str, state: LearnerState) -> None:
        with self._lock:
            self._learners[learner_id] = state.to_dict()


def weighted_draw(question_ids: Sequence[str], weights: Sequence[float], rng: random.Random) -> List[str]:
    """Draw every id once, heavier weights tending to come first."""

    available = list(question_ids)
    remaining = list(weights)
    output: List[str] = []
    while available:
        total = sum(remaining)
        if total <= 0:
            choice_index = rng.randrange(len(available))
        else:
            pick = rng.uniform(0, total)
            cumulative = 0.0
            choice_index = len(available) - 1
            for idx, weight in enumerate(remaining):
                cumulative += weight
                if pick <= cumulative:
                    choice_index = idx
                    break
        output.append(available.pop(choice_index))
        remaining.pop(choice_index)
    return output


def grade_answer_text(question: Question, answer_text: str, threshold: float) -> bool:
    """Keyword recall of the answer's leading key terms; no attempt at understanding."""

    expected = keywords(question.answer)[:KEY_TERM_LIMIT] or keywords(question.prompt)
    if not expected:
        return False
    given = set(tokenize(answer_text))
    recall = sum(1 for term in expected if term in given) / len(expected)
    return recall >= threshold


class QuizSessionManager:
    """Allocates sessions, grades submissions and keeps learner history."""

    def __init__(
        self,
        index_source: Callable[[], CorpusIndex],
        repository: HistoryRepository,
        *,
        idle_timeout_seconds: float = 1800.0,
        grading_threshold: float = 0.5,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._index_source = index_source
        self._repository = repository
        self._idle_timeout_seconds = idle_timeout_seconds
        self._grading_threshold = grading_threshold
        self._clock = clock or _utcnow
        self._sessions: Dict[str, QuizSession] = {}
        self._lock = threading.Lock()
        self._learner_lock = threading.Lock()

    # region Lifecycle
    def start(self, policy: QuizPolicy) -> QuizSession:
        """Allocate a session whose queue is drawn according to ``policy``."""

        self.expire_idle()
        index = self._index_source()
        pool = self._eligible(index, policy)
        if not pool:
            raise NotFoundError("No questions match the session policy")

        rng = random.Random(policy.seed)
        now = self._clock()
        if policy.mode == "weakness-weighted":
            learner = self._repository.get_learner_state(policy.learner_id)
            weights = [
                learner.weakness(list(index.get_by_id(qid).tags))
                * (DUE_BOOST if learner.is_due(qid, now) else 1.0)
                for qid in pool
            ]
            queue = weighted_draw(pool, weights, rng)
        else:
            queue = list(pool)
            rng.shuffle(queue)
        if policy.limit is not None:
            queue = queue[: policy.limit]

        session = QuizSession(
            session_id=uuid4().hex,
            policy=policy,
            queue=deque(queue),
            question_ids=list(queue),
            created_at=now,
            last_activity=now,
            corpus=index,
        )
        with self._lock:
            self._sessions[session.session_id] = session
        METRICS.record_session_started(policy.mode)
        logger.info(
            "Started %s session %s with %d questions", policy.mode, session.session_id, len(queue)
        )
        return session

    def _eligible(self, index: CorpusIndex, policy: QuizPolicy) -> List[str]:
        ids = set(index.category_ids(policy.category)) if policy.category else {q.id for q in index}
        for tag in policy.tags:
            ids &= index.tag_ids(tag)
        return index.ordered(ids)

    def get(self, session_id: str) -> QuizSession:
        with self._lock:
            try:
                return self._sessions[session_id]
            except KeyError:
                raise NotFoundError(f"Unknown session id: {session_id}") from None

    def active_sessions(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def end(self, session_id: str, reason: str = "ended") -> SessionReport:
        """Close a session, persist its history and report the outcome."""

        with self._lock:
            try:
                session = self._sessions.pop(session_id)
            except KeyError:
                raise NotFoundError(f"Unknown session id: {session_id}") from None
        with session.lock:
            now = self._clock()
            report = self._report(session)
            session.state = SessionState.COMPLETED
            self._repository.save_session(session.to_record(ended_at=now))
        METRICS.record_session_ended(reason)
        logger.info(
            "Session %s %s: %d/%d correct", session_id, reason, report.correct, report.total
        )
        return report

    def expire_idle(self, now: Optional[datetime] = None) -> List[str]:
        """End sessions idle past their timeout; returns the expired ids."""

        now = now or self._clock()
        with self._lock:
            expired = [
                session_id
                for session_id, session in self._sessions.items()
                if session.is_idle(
                    now, session.policy.idle_timeout_seconds or self._idle_timeout_seconds
                )
            ]
        ended: List[str] = []
        for session_id in expired:
            try:
                self.end(session_id, reason="expired")
            except NotFoundError:
                continue
            ended.append(session_id)
        return ended

    # endregion

    # region Answers
    def current(self, session_id: str) -> SessionStep:
        self.expire_idle()
        session = self.get(session_id)
        with session.lock:
            return self._step(session)

    def submit_answer(
        self,
        session_id: str,
        question_id: str,
        was_correct: Optional[bool] = None,
        answer_text: Optional[str] = None,
    ) -> SessionStep:
        """Record an answer for the head question and advance the queue.

        Re-submitting the question answered last, before anything else is
        answered, replaces that record. Any other id, or any call on a completed
        session, raises :class:`InvalidSessionState` and leaves history alone.
        """

        self.expire_idle()
        session = self.get(session_id)
        with session.lock:
            if session.state is SessionState.COMPLETED:
                raise InvalidSessionState(f"Session {session_id} is already completed")

            question = session.corpus.get_by_id(question_id) if question_id in session.corpus else None
            if question is None:
                raise InvalidSessionState(f"Question {question_id} is not part of session {session_id}")
            if was_correct is None:
                if not answer_text:
                    raise ValueError("Either was_correct or answer_text must be provided")
                was_correct = grade_answer_text(question, answer_text, self._grading_threshold)

            now = self._clock()
            record = AnswerRecord(
                question_id=question_id,
                was_correct=was_correct,
                answer_text=answer_text,
                timestamp=now,
            )

            if question_id == session.head:
                session.queue.popleft()
                session.history.append(record)
                session.previous_review = self._apply_outcome(session, question, record, None)
                METRICS.record_answer(was_correct)
            elif session.history and session.history[-1].question_id == question_id:
                previous = session.history[-1]
                session.history[-1] = record
                self._apply_outcome(session, question, record, previous)
                logger.debug("Session %s overwrote answer for %s", session_id, question_id)
            else:
                raise InvalidSessionState(
                    f"Question {question_id} is not the current question of session {session_id}"
                )

            session.last_activity = now
            session.state = SessionState.COMPLETED if not session.queue else SessionState.IN_PROGRESS
            return self._step(session)

    def _apply_outcome(
        self,
        session: QuizSession,
        question: Question,
        record: AnswerRecord,
        previous: Optional[AnswerRecord],
    ) -> Optional[ReviewState]:
        """Fold an answer into learner state; returns the review state it replaced."""

        learner_id = session.policy.learner_id
        with self._learner_lock:
            learner = self._repository.get_learner_state(learner_id)
            if previous is None:
                before = learner.reviews.get(question.id)
                learner.register_outcome(list(question.tags), record.was_correct)
            else:
                before = session.previous_review
                learner.revise_outcome(list(question.tags), previous.was_correct, record.was_correct)
            if before is None:
                review = ReviewState.first(record.was_correct, record.timestamp)
            else:
                review = before.reviewed(record.was_correct, record.timestamp)
            learner.reviews[question.id] = review
            self._repository.save_learner_state(learner_id, learner)
        return before

    def _step(self, session: QuizSession) -> SessionStep:
        if not session.queue:
            return SessionComplete(
                session_id=session.session_id,
                total=len(session.history),
                correct=sum(1 for record in session.history if record.was_correct),
            )
        return NextQuestion(
            session_id=session.session_id,
            question=session.corpus.get_by_id(session.queue[0]),
            position=session.position,
            remaining=len(session.queue),
        )

    def _report(self, session: QuizSession) -> SessionReport:
        breakdown: Dict[str, CategoryBreakdown] = {}
        for record in session.history:
            category = session.corpus.get_by_id(record.question_id).category
            entry = breakdown.setdefault(category, CategoryBreakdown())
            entry.total += 1
            if record.was_correct:
                entry.correct += 1
        return SessionReport(
            session_id=session.session_id,
            state=session.state.value,
            total=len(session.history),
            correct=sum(1 for record in session.history if record.was_correct),
            remaining=len(session.queue),
            by_category=breakdown,
        )

    # endregion


class QueryService:
    """Facade binding the index holder and the session manager."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        repository: Optional[HistoryRepository] = None,
        snapshot_store: Optional[SnapshotStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._holder = IndexHolder()
        self._repository = repository or InMemoryHistoryRepository()
        self._snapshot_store = snapshot_store
        self._load_lock = threading.Lock()
        self.sessions = QuizSessionManager(
            lambda: self._holder.current,
            self._repository,
            idle_timeout_seconds=self._config.idle_timeout_seconds,
            grading_threshold=self._config.grading_threshold,
            clock=clock,
        )

    @classmethod
    def from_config(cls, config: EngineConfig) -> "QueryService":
        repository: HistoryRepository
        if config.history_db:
            repository = SqliteHistoryRepository(Path(config.history_db))
        else:
            repository = InMemoryHistoryRepository()
        store = JsonSnapshotStore(Path(config.snapshot_path)) if config.snapshot_path else None
        return cls(config, repository=repository, snapshot_store=store)

    @property
    def index(self) -> CorpusIndex:
        return self._holder.current

    @property
    def repository(self) -> HistoryRepository:
        return self._repository

    # region Corpus
    def load_corpus(
        self, paths: Sequence[str], cancel_event: Optional[threading.Event] = None
    ) -> CorpusSummary:
        """Build a new index from ``paths`` and make it active.

        On any failure, cancellation included, the previous index stays active.
        """

        METRICS.record_load_attempt()
        with self._load_lock:
            try:
                documents = read_documents(paths)
                index = load(
                    documents,
                    ExtractOptions(strip_markdown=self._config.strip_markdown),
                    category_penalty=self._config.category_penalty,
                    cancel_event=cancel_event,
                )
                if cancel_event is not None and cancel_event.is_set():
                    raise LoadCancelled("Corpus load cancelled")
            except LoadError as exc:
                METRICS.record_load_failure(type(exc).__name__)
                logger.error("Corpus load failed: %s", exc)
                raise
            self._holder.swap(index)
        METRICS.record_load_success(len(index), index.skipped)
        return self.summary()

    def summary(self) -> CorpusSummary:
        index = self._holder.current
        return CorpusSummary(
            questions_parsed=len(index),
            questions_skipped=index.skipped,
            categories=index.categories,
            documents=index.documents,
            fingerprint=index.fingerprint,
            diagnostics=index.diagnostics,
        )

    def save_snapshot(self, path: Optional[str] = None) -> None:
        store = self._store(path)
        index = self._holder.current
        store.save(index)
        logger.info("Wrote snapshot of corpus %s", index.fingerprint[:12])

    def load_snapshot(self, path: Optional[str] = None) -> CorpusSummary:
        store = self._store(path)
        METRICS.record_load_attempt()
        with self._load_lock:
            try:
                index = store.load(category_penalty=self._config.category_penalty)
            except LoadError as exc:
                METRICS.record_load_failure(type(exc).__name__)
                logger.error("Snapshot load failed: %s", exc)
                raise
            self._holder.swap(index)
        METRICS.record_load_success(len(index), index.skipped)
        return self.summary()

    def _store(self, path: Optional[str]) -> SnapshotStore:
        if path:
            return JsonSnapshotStore(Path(path))
        if self._snapshot_store is not None:
            return self._snapshot_store
        raise LoadError("No snapshot path configured")

    # endregion

    # region Queries
    def get_question(self, question_id: str) -> Question:
        return self._holder.current.get_by_id(question_id)

    def search(self, text: str, filters: Optional[SearchFilters] = None) -> List[QuestionSummary]:
        hits = self._holder.current.search(text, filters)
        METRICS.record_search(len(hits))
        return [
            QuestionSummary(
                id=hit.question.id,
                category=hit.question.category,
                excerpt=excerpt(hit.question.prompt, self._config.excerpt_length),
                score=hit.score,
            )
            for hit in hits
        ]

    def categories(self) -> List[str]:
        return self._holder.current.categories

    def tags(self) -> List[str]:
        return self._holder.current.tags

    # endregion

    # region Sessions
    def start_quiz_session(self, policy: QuizPolicy) -> str:
        return self.sessions.start(policy).session_id

    def current_question(self, session_id: str) -> SessionStep:
        return self.sessions.current(session_id)

    def submit_answer(
        self,
        session_id: str,
        question_id: str,
        was_correct: Optional[bool] = None,
        answer_text: Optional[str] = None,
    ) -> SessionStep:
        return self.sessions.submit_answer(session_id, question_id, was_correct, answer_text)

    def end_session(self, session_id: str) -> SessionReport:
        return self.sessions.end(session_id)

    def session_history(self, session_id: str) -> SessionRecord:
        return self._repository.get_session(session_id)

    # endregion


__all__ = [
    "InMemoryHistoryRepository",
    "QueryService",
    "QuizSessionManager",
    "grade_answer_text",
    "weighted_draw",
]
