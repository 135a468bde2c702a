"""Tokenising and markdown clean-up shared by the extractor and the index."""
from __future__ import annotations

import re
from typing import Iterable, List


TOKEN_PATTERN = re.compile(r"[a-z0-9_]+(?:[+#]+)?")
LINK_PATTERN = re.compile(r"!?\[([^\]]*)\]\([^)]*\)")
EMPHASIS_PATTERN = re.compile(r"(\*\*|\*|~~)(?=\S)(.+?)(?<=\S)\1")
INLINE_CODE_PATTERN = re.compile(r"`+([^`]*)`+")
LEADING_DECORATION_PATTERN = re.compile(r"^[^\w(`'\"]+")

STOPWORDS = frozenset(
    """
    a about above after again all also am an and any are as at be because been before
    being between both but by can could did do does doing down during each else etc
    for from further get gets had has have having he her here hers him his how i if in
    into is it its itself just let lets me more most my no nor not now of off on once
    only or other our ours out over own same she should so some such than that the their
    theirs them then there these they this those through to too under until up use used
    uses using very via was we were what when where which while who whom why will with
    would you your yours
    """.split()
)


def tokenize(text: str) -> List[str]:
    """Lowercase word tokens, underscores kept so ``select_related`` stays whole."""
    return TOKEN_PATTERN.findall(text.lower())


def keywords(text: str) -> List[str]:
    """Tokens minus stopwords, pure numbers and single characters, in first-seen order."""

    seen: List[str] = []
    for token in tokenize(text):
        bare = token.strip("_")
        if len(bare) < 2 or bare.isdigit() or token in STOPWORDS:
            continue
        if token not in seen:
            seen.append(token)
    return seen


def slugify(text: str, fallback: str = "general") -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug or fallback


def strip_markdown(text: str) -> str:
    """Drop inline markdown (links, emphasis, code ticks), keeping the words."""

    parts: List[str] = []
    last = 0
    for match in INLINE_CODE_PATTERN.finditer(text):
        parts.append(_strip_emphasis(text[last : match.start()]))
        parts.append(match.group(1))
        last = match.end()
    parts.append(_strip_emphasis(text[last:]))
    return re.sub(r"\s+", " ", "".join(parts)).strip()


def _strip_emphasis(text: str) -> str:
    cleaned = LINK_PATTERN.sub(r"\1", text)
    previous = None
    while previous != cleaned:
        previous = cleaned
        cleaned = EMPHASIS_PATTERN.sub(r"\2", cleaned)
    return cleaned


def clean_heading(text: str) -> str:
    """Heading text without emphasis wrappers or leading emoji and bullets."""

    cleaned = strip_markdown(text)
    cleaned = LEADING_DECORATION_PATTERN.sub("", cleaned)
    return cleaned.strip(" :-")


def join_paragraphs(lines: Iterable[str]) -> str:
    """Join body lines, collapsing runs of blank lines to a single break."""

    output: List[str] = []
    blank = False
    for line in lines:
        if not line.strip():
            blank = bool(output)
            continue
        if blank:
            output.append("")
            blank = False
        output.append(line.rstrip())
    return "\n".join(output)


def excerpt(text: str, length: int = 120) -> str:
    flat = re.sub(r"\s+", " ", text).strip()
    if len(flat) <= length:
        return flat
    return flat[: max(length - 1, 1)].rstrip() + "…"


__all__ = [
    "STOPWORDS",
    "clean_heading",
    "excerpt",
    "join_paragraphs",
    "keywords",
    "slugify",
    "strip_markdown",
    "tokenize",
]
