"""Pydantic models for the qabank engine."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator


PolicyMode = Literal["random", "weakness-weighted", "category-locked"]


class CodeSnippet(BaseModel):
    """Fenced code block lifted out of a question body."""

    model_config = ConfigDict(frozen=True)

    language: str = ""
    code: str


class Question(BaseModel):
    """One extracted interview question."""

    model_config = ConfigDict(frozen=True)

    id: str
    document: str
    number: Optional[int] = None
    category: str
    prompt: str
    context: str = ""
    answer: str = ""
    explanation: str = ""
    code_snippets: Tuple[CodeSnippet, ...] = ()
    tags: Tuple[str, ...] = ()

    @field_validator("prompt")
    def validate_prompt(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Questions require a non-empty prompt")
        return value

    @field_validator("tags")
    def normalise_tags(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        return tuple(sorted({tag.lower() for tag in value if tag}))


class QuestionSummary(BaseModel):
    """Search hit returned to callers."""

    id: str
    category: str
    excerpt: str
    score: float


class Diagnostic(BaseModel):
    """Non-fatal problem found while parsing or extracting a document."""

    model_config = ConfigDict(frozen=True)

    kind: str
    source: str
    line: Optional[int] = None
    message: str


class CorpusSummary(BaseModel):
    """Outcome of a successful corpus load."""

    questions_parsed: int
    questions_skipped: int
    categories: List[str]
    documents: List[str]
    fingerprint: str
    diagnostics: List[Diagnostic] = Field(default_factory=list)

    @computed_field
    @property
    def categories_discovered(self) -> int:
        return len(self.categories)


class SearchFilters(BaseModel):
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class QuizPolicy(BaseModel):
    """Selection policy snapshot taken when a session starts."""

    model_config = ConfigDict(frozen=True)

    mode: PolicyMode = "random"
    category: Optional[str] = None
    tags: Tuple[str, ...] = ()
    limit: Optional[int] = Field(default=None, ge=1)
    seed: Optional[int] = None
    learner_id: str = "anonymous"
    idle_timeout_seconds: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def validate_category(self) -> "QuizPolicy":
        if self.mode == "category-locked" and not self.category:
            raise ValueError("category-locked sessions require a category")
        return self


class AnswerRecord(BaseModel):
    """One graded answer inside a session."""

    question_id: str
    was_correct: bool
    answer_text: Optional[str] = None
    timestamp: datetime


class NextQuestion(BaseModel):
    session_id: str
    question: Question
    position: int
    remaining: int


class SessionComplete(BaseModel):
    session_id: str
    total: int
    correct: int


class CategoryBreakdown(BaseModel):
    total: int = 0
    correct: int = 0


class SessionReport(BaseModel):
    """Summary produced when a session ends."""

    session_id: str
    state: str
    total: int
    correct: int
    remaining: int
    by_category: Dict[str, CategoryBreakdown] = Field(default_factory=dict)


class SessionRecord(BaseModel):
    """Persisted form of a finished session."""

    session_id: str
    policy: QuizPolicy
    state: str
    question_ids: List[str]
    history: List[AnswerRecord]
    created_at: datetime
    ended_at: Optional[datetime] = None


class LoadCorpusRequest(BaseModel):
    paths: List[str]


class SubmitAnswerRequest(BaseModel):
    question_id: str
    was_correct: Optional[bool] = None
    answer_text: Optional[str] = None

    @model_validator(mode="after")
    def validate_input(self) -> "SubmitAnswerRequest":
        if self.was_correct is None and not self.answer_text:
            raise ValueError("Either was_correct or answer_text must be provided")
        return self


class StartSessionResponse(BaseModel):
    session_id: str
    first: NextQuestion


__all__ = [
    "AnswerRecord",
    "CategoryBreakdown",
    "CodeSnippet",
    "CorpusSummary",
    "Diagnostic",
    "LoadCorpusRequest",
    "NextQuestion",
    "PolicyMode",
    "Question",
    "QuestionSummary",
    "QuizPolicy",
    "SearchFilters",
    "SessionComplete",
    "SessionRecord",
    "SessionReport",
    "StartSessionResponse",
    "SubmitAnswerRequest",
]
