"""Simple in-process metrics registry for engine instrumentation."""
from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List


@dataclass
class MetricsRegistry:
    """Holds counters exposed by the query service."""

    load_attempts: int = 0
    load_successes: int = 0
    load_failures: int = 0
    load_failure_reasons: Counter = field(default_factory=Counter)
    questions_parsed: List[int] = field(default_factory=list)
    questions_skipped: int = 0
    diagnostics: Counter = field(default_factory=Counter)
    searches: int = 0
    empty_searches: int = 0
    sessions_started: Counter = field(default_factory=Counter)
    sessions_ended: Counter = field(default_factory=Counter)
    answer_outcomes: Counter = field(default_factory=Counter)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record_load_attempt(self) -> None:
        with self._lock:
            self.load_attempts += 1

    def record_load_success(self, parsed: int, skipped: int) -> None:
        with self._lock:
            self.load_successes += 1
            self.questions_parsed.append(parsed)
            self.questions_skipped += skipped

    def record_load_failure(self, reason: str) -> None:
        with self._lock:
            self.load_failures += 1
            self.load_failure_reasons[reason] += 1

    def record_diagnostic(self, kind: str) -> None:
        with self._lock:
            self.diagnostics[kind] += 1

    def record_search(self, hits: int) -> None:
        with self._lock:
            self.searches += 1
            if hits == 0:
                self.empty_searches += 1

    def record_session_started(self, mode: str) -> None:
        with self._lock:
            self.sessions_started[mode] += 1

    def record_session_ended(self, reason: str) -> None:
        with self._lock:
            self.sessions_ended[reason] += 1

    def record_answer(self, was_correct: bool) -> None:
        with self._lock:
            self.answer_outcomes["correct" if was_correct else "incorrect"] += 1

    @property
    def load_success_rate(self) -> float:
        if self.load_attempts == 0:
            return 0.0
        return self.load_successes / self.load_attempts

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            return {
                "load_attempts": self.load_attempts,
                "load_successes": self.load_successes,
                "load_failures": self.load_failures,
                "load_failure_reasons": dict(self.load_failure_reasons),
                "load_success_rate": self.load_success_rate,
                "last_questions_parsed": self.questions_parsed[-1] if self.questions_parsed else 0,
                "questions_skipped": self.questions_skipped,
                "diagnostics": dict(self.diagnostics),
                "searches": self.searches,
                "empty_searches": self.empty_searches,
                "sessions_started": dict(self.sessions_started),
                "sessions_ended": dict(self.sessions_ended),
                "answer_outcomes": dict(self.answer_outcomes),
            }


METRICS = MetricsRegistry()

__all__ = ["METRICS", "MetricsRegistry"]
