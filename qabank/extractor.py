"""Turns heading blocks into typed :class:`Question` records."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from .domain import RawBlock, SourceDocument
from .errors import ParseError
from .models import CodeSnippet, Diagnostic, Question
from .parser import BodySpan, MarkdownDocument, split_body
from .text import clean_heading, join_paragraphs, keywords, slugify, strip_markdown

logger = logging.getLogger(__name__)


QUESTION_HEADING_PATTERN = re.compile(
    r"^(?:(?:q|question)\s*#?\s*(?P<qnum>\d{1,4})\s*[.):\-–]?"
    r"|#(?P<hnum>\d{1,4})\s*[.):\-–]?"
    r"|(?P<num>\d{1,4})\s*[.):\-–])\s*(?P<title>.*)$",
    re.IGNORECASE,
)
LABEL_PATTERN = re.compile(
    r"^\s*(?:[-*+>]\s+)?"
    # a bold label without a colon only counts when it stands alone on its line
    r"(?:(?P<mark>\*\*|__)\s*(?P<bold>[A-Za-z][A-Za-z ]{0,30}?)\s*"
    r"(?::\s*(?P=mark)|(?P=mark)\s*:|(?P=mark)\s*$)"
    r"|(?P<plain>answer|ans|explanation)\s*:)"
    r"\s*(?P<rest>.*)$",
    re.IGNORECASE,
)

ANSWER_LABELS = frozenset({"answer", "ans", "a", "short answer"})
EXPLANATION_LABELS = frozenset({"explanation", "detailed explanation", "explained", "why", "details"})


@dataclass(frozen=True)
class ExtractOptions:
    strip_markdown: bool = True


@dataclass
class ExtractionResult:
    """Records and bookkeeping produced from one document."""

    questions: List[Question] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    skipped: int = 0


@dataclass
class _PendingQuestion:
    ordinal: int
    number: Optional[int]
    title: str
    category: str
    level: int
    line: int
    body: List[str] = field(default_factory=list)


def _unwrap(heading: str) -> str:
    text = heading.strip()
    for mark in ("**", "__"):
        if len(text) > 4 and text.startswith(mark) and text.endswith(mark):
            return text[2:-2].strip()
    return text


def match_question_heading(heading: str) -> Optional[Tuple[Optional[int], str]]:
    """Return ``(numeral, title)`` when a heading reads as a numbered question."""

    for candidate in (_unwrap(heading), strip_markdown(heading)):
        match = QUESTION_HEADING_PATTERN.match(candidate)
        if match:
            numeral = match.group("qnum") or match.group("hnum") or match.group("num")
            return (int(numeral) if numeral else None), match.group("title").strip()
    return None


def classify_label(line: str) -> Optional[Tuple[str, str]]:
    """Return ``(segment, rest_of_line)`` for a recognised answer/explanation label."""

    match = LABEL_PATTERN.match(line)
    if not match:
        return None
    name = (match.group("bold") or match.group("plain") or "").strip().lower()
    if name in ANSWER_LABELS:
        return "answer", match.group("rest")
    if name in EXPLANATION_LABELS:
        return "explanation", match.group("rest")
    return None


def partition_body(spans: Iterable[BodySpan]) -> Tuple[str, str, str, List[CodeSnippet]]:
    """Split body spans into ``(context, answer, explanation, code_snippets)``.

    Text before any label is context; it becomes the answer when the body has
    no label at all. Each label is honoured once; a repeated or unknown label is
    plain text of whichever segment is open.
    """

    segments: Dict[str, List[str]] = {"context": [], "answer": [], "explanation": []}
    snippets: List[CodeSnippet] = []
    current = "context"
    opened = set()

    for span in spans:
        if span.is_code:
            snippets.append(CodeSnippet(language=span.language or "", code=span.text))
            continue
        for line in span.text.splitlines():
            label = classify_label(line)
            if label is not None and label[0] not in opened:
                current = label[0]
                opened.add(current)
                if label[1].strip():
                    segments[current].append(label[1])
                continue
            segments[current].append(line)

    context = join_paragraphs(segments["context"])
    answer = join_paragraphs(segments["answer"])
    explanation = join_paragraphs(segments["explanation"])
    if not opened:
        context, answer = "", context
    return context, answer, explanation, snippets


def derive_tags(title: str, category: str) -> List[str]:
    return keywords(strip_markdown(title)) + [slugify(category)]


def _is_section(blocks: List[RawBlock], numbered: List[bool], index: int) -> bool:
    """A numbered heading directly followed by a deeper numbered heading is a section."""

    following = index + 1
    if following >= len(blocks) or not numbered[following]:
        return False
    return blocks[following].level > blocks[index].level


def extract_questions(
    document_key: str,
    document_title: str,
    blocks: Iterable[RawBlock],
    options: Optional[ExtractOptions] = None,
) -> ExtractionResult:
    """Group blocks under their category headings and build question records."""

    options = options or ExtractOptions()
    blocks = [block for block in blocks if block.level > 0]
    matches = [match_question_heading(block.heading) for block in blocks]
    numbered = [match is not None for match in matches]

    result = ExtractionResult()
    stack: List[Tuple[int, str]] = []
    pending: Optional[_PendingQuestion] = None
    ordinal = 0

    def finish() -> None:
        if pending is None:
            return
        try:
            question = _build_question(document_key, pending, options)
        except ParseError as exc:
            result.skipped += 1
            result.diagnostics.append(
                Diagnostic(kind="skipped-record", source=document_key, line=exc.line, message=str(exc))
            )
            logger.warning("Skipped record in %s line %s: %s", document_key, exc.line, exc)
            return
        result.questions.append(question)
        if question.category not in result.categories:
            result.categories.append(question.category)

    for index, block in enumerate(blocks):
        match = matches[index]
        if match is not None and not _is_section(blocks, numbered, index):
            finish()
            ordinal += 1
            category = next(
                (name for level, name in reversed(stack) if level <= block.level),
                document_title,
            )
            pending = _PendingQuestion(
                ordinal=ordinal,
                number=match[0],
                title=match[1],
                category=category,
                level=block.level,
                line=block.line,
                body=block.body.splitlines(),
            )
            continue

        if pending is not None and block.level > pending.level:
            pending.body.append("")
            pending.body.append(f"**{clean_heading(block.heading)}:**")
            pending.body.extend(block.body.splitlines())
            continue

        finish()
        pending = None
        while stack and stack[-1][0] >= block.level:
            stack.pop()
        name = clean_heading(block.heading)
        if match is not None:
            name = clean_heading(match[1]) or name
        if name:
            stack.append((block.level, name))

    finish()
    return result


def _build_question(document_key: str, pending: _PendingQuestion, options: ExtractOptions) -> Question:
    prompt = clean_heading(pending.title) if options.strip_markdown else pending.title.strip()
    if not prompt:
        raise ParseError(
            f"numbered heading {pending.number} has no prompt text",
            source=document_key,
            line=pending.line,
        )
    context, answer, explanation, snippets = partition_body(split_body("\n".join(pending.body)))
    return Question(
        id=f"{document_key}-{pending.ordinal}",
        document=document_key,
        number=pending.number,
        category=pending.category,
        prompt=prompt,
        context=context,
        answer=answer,
        explanation=explanation,
        code_snippets=tuple(snippets),
        tags=tuple(derive_tags(pending.title, pending.category)),
    )


def extract_document(document: SourceDocument, options: Optional[ExtractOptions] = None) -> ExtractionResult:
    """Parse and extract one source document, folding parser diagnostics in."""

    parsed = MarkdownDocument(document.text, source=document.key)
    blocks = list(parsed)
    result = extract_questions(document.key, document.title, blocks, options)
    result.diagnostics = list(parsed.diagnostics) + result.diagnostics
    logger.info(
        "Extracted %d questions (%d skipped) from %s",
        len(result.questions),
        result.skipped,
        document.key,
    )
    return result


__all__ = [
    "ExtractOptions",
    "ExtractionResult",
    "classify_label",
    "derive_tags",
    "extract_document",
    "extract_questions",
    "match_question_heading",
    "partition_body",
]
