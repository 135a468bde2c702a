"""Typed failures raised by the indexing and quiz services."""
from __future__ import annotations

from typing import Optional


class QABankError(Exception):
    """Base class for every failure the engine reports to callers."""


class ParseError(QABankError):
    """A single block could not be turned into a record.

    Never fatal: the extractor records it as a diagnostic and moves on.
    """

    def __init__(self, message: str, *, source: str = "", line: Optional[int] = None) -> None:
        super().__init__(message)
        self.source = source
        self.line = line


class LoadError(QABankError):
    """A corpus load could not complete; the active index stays in service."""


class LoadCancelled(LoadError):
    """The caller cancelled a reload before the new index was swapped in."""


class NotFoundError(QABankError, LookupError):
    """Unknown question id, category, tag or session id."""


class InvalidSessionState(QABankError, ValueError):
    """Operation attempted against a completed session or out of order."""


__all__ = [
    "QABankError",
    "ParseError",
    "LoadError",
    "LoadCancelled",
    "NotFoundError",
    "InvalidSessionState",
]
