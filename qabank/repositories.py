"""Repository interfaces for qabank persistent state."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from .domain import LearnerState
from .index import CorpusIndex
from .models import SessionRecord


class SessionHistoryRepository(ABC):
    """Persist finished quiz sessions keyed by session id."""

    @abstractmethod
    def save_session(self, record: SessionRecord) -> None:
        """Persist (or replace) the record of a session."""

    @abstractmethod
    def get_session(self, session_id: str) -> SessionRecord:
        """Return a stored session; raises ``NotFoundError`` when unknown."""

    @abstractmethod
    def list_sessions(self, learner_id: Optional[str] = None) -> List[SessionRecord]:
        """Return stored sessions in creation order, optionally for one learner."""


class LearnerStateRepository(ABC):
    """Maintain per-learner performance and review schedules."""

    @abstractmethod
    def get_learner_state(self, learner_id: str) -> LearnerState:
        """Return the persisted learner state, creating it if necessary."""

    @abstractmethod
    def save_learner_state(self, learner_id: str, state: LearnerState) -> None:
        """Persist the updated learner state."""


class HistoryRepository(SessionHistoryRepository, LearnerStateRepository):
    """Combined store the session manager writes to."""


class SnapshotStore(ABC):
    """Serialized copies of a built index for fast restarts."""

    @abstractmethod
    def save(self, index: CorpusIndex) -> None:
        """Write the snapshot, replacing any previous one."""

    @abstractmethod
    def load(self, category_penalty: float = 0.5) -> CorpusIndex:
        """Rebuild an index from the stored snapshot; raises ``LoadError``."""


__all__ = [
    "HistoryRepository",
    "LearnerStateRepository",
    "SessionHistoryRepository",
    "SnapshotStore",
]
