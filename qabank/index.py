"""Immutable in-memory index over extracted questions."""
from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Sequence

from .domain import SourceDocument
from .errors import LoadCancelled, LoadError, NotFoundError
from .extractor import ExtractOptions, extract_document
from .metrics import METRICS
from .models import Diagnostic, Question, SearchFilters
from .text import keywords, slugify, tokenize
from .validators import ValidationError, validate_corpus

logger = logging.getLogger(__name__)


SNAPSHOT_VERSION = 1
DEFAULT_CATEGORY_PENALTY = 0.5


@dataclass(frozen=True)
class SearchHit:
    question: Question
    score: float


class CorpusIndex:
    """One immutable snapshot of the corpus.

    Lookups never mutate state, so any number of threads can read the same
    instance. A reload builds a new instance and swaps it in through
    :class:`IndexHolder`.
    """

    def __init__(
        self,
        questions: Iterable[Question],
        *,
        categories: Sequence[str],
        documents: Sequence[str] = (),
        diagnostics: Sequence[Diagnostic] = (),
        skipped: int = 0,
        fingerprint: str = "",
        category_penalty: float = DEFAULT_CATEGORY_PENALTY,
    ) -> None:
        ordered = tuple(questions)
        validate_corpus(ordered, list(categories))

        self._ordered = ordered
        self._categories = tuple(categories)
        self._documents = tuple(documents)
        self._diagnostics = tuple(diagnostics)
        self._skipped = skipped
        self._fingerprint = fingerprint
        self._category_penalty = category_penalty

        self._by_id: Mapping[str, Question] = MappingProxyType({q.id: q for q in ordered})
        self._position: Mapping[str, int] = MappingProxyType({q.id: pos for pos, q in enumerate(ordered)})

        tokens: Dict[str, set] = {}
        prompt_tokens: Dict[str, FrozenSet[str]] = {}
        by_category: Dict[str, set] = {name: set() for name in self._categories}
        by_tag: Dict[str, set] = {}
        for question in ordered:
            prompt_tokens[question.id] = frozenset(tokenize(question.prompt))
            body = " ".join((question.context, question.answer, question.explanation))
            for token in prompt_tokens[question.id].union(tokenize(body)):
                tokens.setdefault(token, set()).add(question.id)
            by_category[question.category].add(question.id)
            for tag in question.tags:
                by_tag.setdefault(tag, set()).add(question.id)

        self._tokens = MappingProxyType({k: frozenset(v) for k, v in tokens.items()})
        self._prompt_tokens = MappingProxyType(prompt_tokens)
        self._by_category = MappingProxyType({k: frozenset(v) for k, v in by_category.items()})
        self._by_tag = MappingProxyType({k: frozenset(v) for k, v in by_tag.items()})
        self._category_lookup = MappingProxyType({name.lower(): name for name in self._categories})
        self._category_terms = MappingProxyType(
            {name: frozenset(keywords(name)) for name in self._categories}
        )

    # region Read access
    def __len__(self) -> int:
        return len(self._ordered)

    def __iter__(self) -> Iterator[Question]:
        return iter(self._ordered)

    def __contains__(self, question_id: object) -> bool:
        return question_id in self._by_id

    @property
    def categories(self) -> List[str]:
        return list(self._categories)

    @property
    def tags(self) -> List[str]:
        return sorted(self._by_tag)

    @property
    def documents(self) -> List[str]:
        return list(self._documents)

    @property
    def diagnostics(self) -> List[Diagnostic]:
        return list(self._diagnostics)

    @property
    def skipped(self) -> int:
        return self._skipped

    @property
    def fingerprint(self) -> str:
        return self._fingerprint

    def position(self, question_id: str) -> int:
        return self._position[question_id]

    def get_by_id(self, question_id: str) -> Question:
        try:
            return self._by_id[question_id]
        except KeyError:
            raise NotFoundError(f"Unknown question id: {question_id}") from None

    def resolve_category(self, category: str) -> str:
        try:
            return self._category_lookup[category.strip().lower()]
        except KeyError:
            raise NotFoundError(f"Unknown category: {category}") from None

    def category_ids(self, category: str) -> FrozenSet[str]:
        return self._by_category[self.resolve_category(category)]

    def tag_ids(self, tag: str) -> FrozenSet[str]:
        try:
            return self._by_tag[tag.strip().lower()]
        except KeyError:
            raise NotFoundError(f"Unknown tag: {tag}") from None

    def by_category(self, category: str) -> FrozenSet[Question]:
        return frozenset(self._by_id[qid] for qid in self.category_ids(category))

    def by_tag(self, tag: str) -> FrozenSet[Question]:
        return frozenset(self._by_id[qid] for qid in self.tag_ids(tag))

    def ordered(self, question_ids: Iterable[str]) -> List[str]:
        """Sort ids by corpus order (document order, then position in the document)."""
        return sorted(question_ids, key=self._position.__getitem__)

    # endregion

    # region Search
    def _candidates(self, filters: SearchFilters) -> Optional[FrozenSet[str]]:
        candidates: Optional[FrozenSet[str]] = None
        try:
            if filters.category:
                candidates = self.category_ids(filters.category)
            for tag in filters.tags:
                ids = self.tag_ids(tag)
                candidates = ids if candidates is None else candidates & ids
        except NotFoundError:
            return frozenset()
        return candidates

    def infer_categories(self, terms: Iterable[str]) -> FrozenSet[str]:
        """Categories whose name shares the most terms with the query."""

        wanted = set(terms)
        overlaps = {name: len(wanted & names) for name, names in self._category_terms.items()}
        best = max(overlaps.values(), default=0)
        if best == 0:
            return frozenset()
        return frozenset(name for name, overlap in overlaps.items() if overlap == best)

    def search(self, query: str, filters: Optional[SearchFilters] = None) -> List[SearchHit]:
        """Rank questions by distinct query terms matched, prompt matches counting double."""

        filters = filters or SearchFilters()
        candidates = self._candidates(filters)
        if candidates is not None and not candidates:
            return []

        terms = keywords(query)
        if not terms:
            if candidates is None:
                return []
            return [SearchHit(self._by_id[qid], 0.0) for qid in self.ordered(candidates)]

        scores: Dict[str, float] = {}
        for term in terms:
            for qid in self._tokens.get(term, ()):
                if candidates is not None and qid not in candidates:
                    continue
                weight = 2.0 if term in self._prompt_tokens[qid] else 1.0
                scores[qid] = scores.get(qid, 0.0) + weight

        if not filters.category and scores:
            inferred = self.infer_categories(terms)
            if inferred:
                for qid in scores:
                    if self._by_id[qid].category not in inferred:
                        scores[qid] -= self._category_penalty

        ranked = sorted(scores.items(), key=lambda item: (-item[1], self._position[item[0]]))
        return [SearchHit(self._by_id[qid], score) for qid, score in ranked]

    # endregion

    # region Snapshots
    def to_snapshot(self) -> dict:
        return {
            "version": SNAPSHOT_VERSION,
            "fingerprint": self._fingerprint,
            "documents": list(self._documents),
            "categories": list(self._categories),
            "skipped": self._skipped,
            "diagnostics": [d.model_dump(mode="json") for d in self._diagnostics],
            "questions": [q.model_dump(mode="json") for q in self._ordered],
        }

    def snapshot_bytes(self) -> bytes:
        """Canonical JSON encoding; identical input documents give identical bytes."""
        return json.dumps(
            self.to_snapshot(), sort_keys=True, ensure_ascii=False, separators=(",", ":")
        ).encode("utf-8")

    @classmethod
    def from_snapshot(
        cls, payload: dict, category_penalty: float = DEFAULT_CATEGORY_PENALTY
    ) -> "CorpusIndex":
        if not isinstance(payload, dict):
            raise LoadError(f"Corpus snapshot must be a JSON object, got {type(payload).__name__}")
        if payload.get("version") != SNAPSHOT_VERSION:
            raise LoadError(f"Unsupported snapshot version: {payload.get('version')!r}")
        try:
            return cls(
                [Question.model_validate(item) for item in payload["questions"]],
                categories=payload["categories"],
                documents=payload.get("documents", []),
                diagnostics=[Diagnostic.model_validate(d) for d in payload.get("diagnostics", [])],
                skipped=int(payload.get("skipped", 0)),
                fingerprint=payload.get("fingerprint", ""),
                category_penalty=category_penalty,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise LoadError(f"Corrupt corpus snapshot: {exc}") from exc

    # endregion


def document_from_path(path: Path, key: Optional[str] = None) -> SourceDocument:
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise LoadError(f"Cannot read corpus document {path}: {exc}") from exc
    title = path.stem.replace("_", " ").replace("-", " ").strip().title()
    return SourceDocument(key=key or slugify(path.stem, "document"), title=title or "General", text=text)


def read_documents(paths: Sequence[str]) -> List[SourceDocument]:
    """Read every path up front so a missing file fails the load before any parsing."""

    if not paths:
        raise LoadError("No corpus documents given")
    return [document_from_path(Path(path)) for path in paths]


def _unique_keys(documents: Sequence[SourceDocument]) -> List[SourceDocument]:
    seen: Dict[str, int] = {}
    unique: List[SourceDocument] = []
    for document in documents:
        count = seen.get(document.key, 0) + 1
        seen[document.key] = count
        if count > 1:
            document = SourceDocument(key=f"{document.key}-{count}", title=document.title, text=document.text)
        unique.append(document)
    return unique


def fingerprint_documents(documents: Sequence[SourceDocument]) -> str:
    digest = hashlib.blake2b(digest_size=16)
    for document in documents:
        digest.update(document.key.encode("utf-8"))
        digest.update(b"\x00")
        digest.update(document.text.encode("utf-8"))
        digest.update(b"\x00")
    return digest.hexdigest()


def load(
    documents: Sequence[SourceDocument],
    options: Optional[ExtractOptions] = None,
    *,
    category_penalty: float = DEFAULT_CATEGORY_PENALTY,
    cancel_event: Optional[threading.Event] = None,
) -> CorpusIndex:
    """Build an index from documents; deterministic for identical input."""

    documents = _unique_keys(documents)
    questions: List[Question] = []
    categories: List[str] = []
    diagnostics: List[Diagnostic] = []
    skipped = 0

    for document in documents:
        if cancel_event is not None and cancel_event.is_set():
            raise LoadCancelled("Corpus load cancelled")
        result = extract_document(document, options)
        questions.extend(result.questions)
        skipped += result.skipped
        diagnostics.extend(result.diagnostics)
        for category in result.categories:
            if category not in categories:
                categories.append(category)

    for diagnostic in diagnostics:
        METRICS.record_diagnostic(diagnostic.kind)

    try:
        return CorpusIndex(
            questions,
            categories=categories,
            documents=[document.key for document in documents],
            diagnostics=diagnostics,
            skipped=skipped,
            fingerprint=fingerprint_documents(documents),
            category_penalty=category_penalty,
        )
    except ValidationError as exc:
        raise LoadError(f"Extracted corpus is inconsistent: {exc}") from exc


class IndexHolder:
    """Owns the active index; swaps are atomic so readers see whole snapshots."""

    def __init__(self, index: Optional[CorpusIndex] = None) -> None:
        self._index = index
        self._lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._index is not None

    @property
    def current(self) -> CorpusIndex:
        index = self._index
        if index is None:
            raise NotFoundError("No corpus has been loaded")
        return index

    def swap(self, index: CorpusIndex) -> Optional[CorpusIndex]:
        with self._lock:
            previous, self._index = self._index, index
        logger.info("Activated corpus %s with %d questions", index.fingerprint[:12], len(index))
        return previous


__all__ = [
    "CorpusIndex",
    "IndexHolder",
    "SNAPSHOT_VERSION",
    "SearchHit",
    "document_from_path",
    "fingerprint_documents",
    "load",
    "read_documents",
]
