"""Domain state shared across services and repositories."""
from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Deque, Dict, List, Optional

from .models import AnswerRecord, QuizPolicy, SessionRecord

if TYPE_CHECKING:
    from .index import CorpusIndex


LEECH_LAPSES = 3
RECALL_TARGET = 0.9
START_DIFFICULTY = 5.0
DIFFICULTY_BOUNDS = (1.0, 10.0)
MIN_STABILITY = 0.1
FIRST_STABILITY_DAYS = {True: 1.5, False: 0.2}
RECALL_GROWTH = 1.2
LAPSE_FACTOR = 0.3


@dataclass(frozen=True)
class SourceDocument:
    """Raw markdown handed to the extractor, keyed by a slug of its file stem."""

    key: str
    title: str
    text: str


@dataclass(frozen=True)
class RawBlock:
    """Heading-delimited unit of document text."""

    level: int
    heading: str
    body: str
    line: int


class SessionState(str, Enum):
    CREATED = "created"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass
class QuizSession:
    """Mutable state of one quiz run, owned by the caller that started it."""

    session_id: str
    policy: QuizPolicy
    queue: Deque[str]
    created_at: datetime
    last_activity: datetime
    question_ids: List[str] = field(default_factory=list)
    history: List[AnswerRecord] = field(default_factory=list)
    state: SessionState = SessionState.CREATED
    corpus: Optional["CorpusIndex"] = field(default=None, repr=False, compare=False)
    previous_review: Optional["ReviewState"] = field(default=None, repr=False)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def head(self) -> Optional[str]:
        return self.queue[0] if self.queue else None

    @property
    def position(self) -> int:
        return len(self.history) + 1

    def is_idle(self, now: datetime, timeout_seconds: float) -> bool:
        return (now - self.last_activity).total_seconds() > timeout_seconds

    def to_record(self, ended_at: Optional[datetime] = None) -> SessionRecord:
        return SessionRecord(
            session_id=self.session_id,
            policy=self.policy,
            state=self.state.value,
            question_ids=list(self.question_ids),
            history=list(self.history),
            created_at=self.created_at,
            ended_at=ended_at,
        )


@dataclass
class ReviewState:
    """FSRS-style scheduling parameters for one question."""

    stability: float
    difficulty: float
    due: datetime
    last_review: Optional[datetime] = None
    lapses: int = 0
    reviews: int = 0

    @property
    def is_leech(self) -> bool:
        return self.lapses >= LEECH_LAPSES and self.stability <= 1.0

    @classmethod
    def first(cls, recalled: bool, now: datetime) -> "ReviewState":
        stability = FIRST_STABILITY_DAYS[recalled]
        return cls(
            stability=stability,
            difficulty=START_DIFFICULTY,
            due=now + timedelta(days=stability),
            last_review=now,
            lapses=0 if recalled else 1,
            reviews=1,
        )

    def recall_probability(self, now: datetime) -> float:
        """Forgetting curve: falls to ``RECALL_TARGET`` once ``stability`` days have passed."""
        if self.last_review is None:
            return 1.0
        days = max((now - self.last_review).total_seconds() / 86400, 0.0)
        return RECALL_TARGET ** (days / max(self.stability, MIN_STABILITY))

    def reviewed(self, recalled: bool, now: datetime) -> "ReviewState":
        """State after another review; surprising outcomes move the schedule most."""

        surprise = 1.0 - self.recall_probability(now)
        low, high = DIFFICULTY_BOUNDS
        shift = -0.2 if recalled else 1.0
        difficulty = min(high, max(low, self.difficulty + shift * surprise))
        if recalled:
            stability = self.stability * (1.0 + RECALL_GROWTH * (1.0 - difficulty / high) * surprise)
        else:
            stability = self.stability * LAPSE_FACTOR
        stability = max(MIN_STABILITY, stability)
        return replace(
            self,
            stability=stability,
            difficulty=difficulty,
            due=now + timedelta(days=stability),
            last_review=now,
            lapses=self.lapses if recalled else self.lapses + 1,
            reviews=self.reviews + 1,
        )

    def to_dict(self) -> dict:
        return {
            "stability": self.stability,
            "difficulty": self.difficulty,
            "due": self.due.isoformat(),
            "last_review": self.last_review.isoformat() if self.last_review else None,
            "lapses": self.lapses,
            "reviews": self.reviews,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "ReviewState":
        last_review = payload.get("last_review")
        return cls(
            stability=float(payload["stability"]),
            difficulty=float(payload["difficulty"]),
            due=datetime.fromisoformat(payload["due"]),
            last_review=datetime.fromisoformat(last_review) if last_review else None,
            lapses=int(payload.get("lapses", 0)),
            reviews=int(payload.get("reviews", 0)),
        )


@dataclass
class TagStats:
    attempts: int = 0
    correct: int = 0

    @property
    def weakness(self) -> float:
        """Smoothed incorrect rate; 0.5 for a tag never attempted."""
        return (self.attempts - self.correct + 1) / (self.attempts + 2)


@dataclass
class LearnerState:
    """Keeps track of per-tag performance and review schedules for one learner."""

    tags: Dict[str, TagStats] = field(default_factory=dict)
    reviews: Dict[str, ReviewState] = field(default_factory=dict)

    def register_outcome(self, tags: List[str], was_correct: bool) -> None:
        for tag in tags:
            stats = self.tags.setdefault(tag, TagStats())
            stats.attempts += 1
            if was_correct:
                stats.correct += 1

    def revise_outcome(self, tags: List[str], previous: bool, current: bool) -> None:
        """Replace an earlier outcome for the same attempt without counting a new one."""
        if previous == current:
            return
        for tag in tags:
            stats = self.tags.setdefault(tag, TagStats(attempts=1, correct=int(previous)))
            stats.correct = max(0, min(stats.attempts, stats.correct + (1 if current else -1)))

    def weakness(self, tags: List[str]) -> float:
        if not tags:
            return TagStats().weakness
        return sum(self.tags.get(tag, TagStats()).weakness for tag in tags) / len(tags)

    def is_due(self, question_id: str, now: datetime) -> bool:
        review = self.reviews.get(question_id)
        if review is None:
            return False
        return review.due <= now or review.is_leech

    def to_dict(self) -> dict:
        return {
            "tags": {
                tag: {"attempts": stats.attempts, "correct": stats.correct}
                for tag, stats in sorted(self.tags.items())
            },
            "reviews": {qid: review.to_dict() for qid, review in sorted(self.reviews.items())},
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "LearnerState":
        state = cls()
        for tag, stats in (payload.get("tags") or {}).items():
            state.tags[tag] = TagStats(
                attempts=int(stats.get("attempts", 0)), correct=int(stats.get("correct", 0))
            )
        for qid, review in (payload.get("reviews") or {}).items():
            state.reviews[qid] = ReviewState.from_dict(review)
        return state


__all__ = [
    "LearnerState",
    "QuizSession",
    "RawBlock",
    "ReviewState",
    "SessionState",
    "SourceDocument",
    "TagStats",
]
