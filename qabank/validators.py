"""Validation of extracted records before they are published in an index."""
from __future__ import annotations

from typing import Iterable, Sequence

from .models import Question


class ValidationError(ValueError):
    """Raised when a built corpus breaks one of its invariants."""


def _assert_prompt(question: Question) -> None:
    if not question.prompt.strip():
        raise ValidationError(f"Question {question.id} has an empty prompt")


def _assert_category(question: Question, categories: Sequence[str]) -> None:
    if question.category not in categories:
        raise ValidationError(
            f"Question {question.id} references undiscovered category '{question.category}'"
        )


def _assert_snippets(question: Question) -> None:
    for snippet in question.code_snippets:
        if snippet.language != snippet.language.lower():
            raise ValidationError(f"Question {question.id} has a non-normalised language hint")


def validate_corpus(questions: Iterable[Question], categories: Sequence[str]) -> None:
    """Validate record invariants: unique ids, non-empty prompts, no orphan categories."""

    seen_ids = set()
    for question in questions:
        if question.id in seen_ids:
            raise ValidationError(f"Duplicate question identifier detected: {question.id}")
        seen_ids.add(question.id)
        _assert_prompt(question)
        _assert_category(question, categories)
        _assert_snippets(question)

    if len(set(categories)) != len(categories):
        raise ValidationError("Category names must be unique")


__all__ = ["ValidationError", "validate_corpus"]
