"""Markdown scanning: heading-delimited blocks with fenced code kept verbatim."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterator, List, Optional

from .domain import RawBlock
from .models import Diagnostic

logger = logging.getLogger(__name__)


FENCE_PATTERN = re.compile(r"^(?P<indent>[ \t]*)(?P<fence>`{3,}|~{3,})(?P<info>.*)$")
CLOSING_FENCE_PATTERN = re.compile(r"^[ \t]*(?P<fence>`{3,}|~{3,})[ \t]*$")
HEADING_PATTERN = re.compile(
    r"^ {0,3}(?P<hashes>#{1,6})(?P<space>[ \t]*)(?P<text>.*?)(?:[ \t]+#+)?[ \t]*$"
)
OVERLONG_HEADING_PATTERN = re.compile(r"^ {0,3}#{7,}")
RULE_PATTERN = re.compile(r"^ {0,3}(?:(?:-[ \t]*){3,}|(?:\*[ \t]*){3,}|(?:_[ \t]*){3,})$")


@dataclass(frozen=True)
class Fence:
    char: str
    length: int
    indent: str
    language: str
    line: int


@dataclass(frozen=True)
class BodySpan:
    """Either prose (``language`` is None) or the inside of one fenced block."""

    text: str
    language: Optional[str] = None

    @property
    def is_code(self) -> bool:
        return self.language is not None


def open_fence(line: str, line_number: int = 0) -> Optional[Fence]:
    match = FENCE_PATTERN.match(line)
    if not match:
        return None
    marker = match.group("fence")
    info = match.group("info").strip()
    if marker[0] == "`" and "`" in info:
        # inline code such as ```foo``` rather than a fence
        return None
    language = info.split()[0].strip("{}.").lower() if info else ""
    return Fence(
        char=marker[0],
        length=len(marker),
        indent=match.group("indent"),
        language=language,
        line=line_number,
    )


def closes_fence(line: str, fence: Fence) -> bool:
    match = CLOSING_FENCE_PATTERN.match(line)
    if not match:
        return False
    marker = match.group("fence")
    return marker[0] == fence.char and len(marker) >= fence.length


def _trim_lines(lines: List[str]) -> str:
    start, end = 0, len(lines)
    while start < end and not lines[start].strip():
        start += 1
    while end > start and not lines[end - 1].strip():
        end -= 1
    return "\n".join(line.rstrip() for line in lines[start:end])


class MarkdownDocument:
    """Lazy, restartable sequence of :class:`RawBlock` for one document.

    Every iteration re-scans ``text`` from the top and resets ``diagnostics``,
    so a document can be walked any number of times with identical results.
    """

    def __init__(self, text: str, source: str = "") -> None:
        self.text = text
        self.source = source
        self.diagnostics: List[Diagnostic] = []

    def _diagnose(self, kind: str, line: int, message: str) -> None:
        diagnostic = Diagnostic(kind=kind, source=self.source, line=line, message=message)
        self.diagnostics.append(diagnostic)
        logger.warning("%s:%s %s", self.source or "<document>", line, message)

    def __iter__(self) -> Iterator[RawBlock]:
        self.diagnostics = []
        level, heading, heading_line = 0, "", 1
        body: List[str] = []
        fence: Optional[Fence] = None

        for number, line in enumerate(self.text.splitlines(), start=1):
            if fence is not None:
                body.append(line)
                if closes_fence(line, fence):
                    fence = None
                continue

            opened = open_fence(line, number)
            if opened is not None:
                fence = opened
                body.append(line)
                continue

            if OVERLONG_HEADING_PATTERN.match(line):
                self._diagnose("malformed-heading", number, "heading deeper than six levels kept as text")
                body.append(line)
                continue

            match = HEADING_PATTERN.match(line)
            if match:
                block = self._flush(level, heading, body, heading_line)
                if block is not None:
                    yield block
                text = match.group("text").strip()
                if text and not match.group("space"):
                    self._diagnose("heading-missing-space", number, "heading has no space after '#'")
                level, heading, heading_line = len(match.group("hashes")), text, number
                body = []
                continue

            if RULE_PATTERN.match(line):
                continue
            body.append(line)

        if fence is not None:
            self._diagnose(
                "unterminated-fence",
                fence.line,
                f"code fence opened on line {fence.line} is never closed; "
                "the rest of the document is kept in that block",
            )
        block = self._flush(level, heading, body, heading_line)
        if block is not None:
            yield block

    @staticmethod
    def _flush(level: int, heading: str, body: List[str], line: int) -> Optional[RawBlock]:
        text = _trim_lines(body)
        if level == 0 and not text:
            return None
        return RawBlock(level=level, heading=heading, body=text, line=line)


def split_body(body: str) -> List[BodySpan]:
    """Partition a block body into prose spans and fenced-code spans, in order."""

    spans: List[BodySpan] = []
    prose: List[str] = []
    code: List[str] = []
    fence: Optional[Fence] = None

    for line in body.splitlines():
        if fence is not None:
            if closes_fence(line, fence):
                spans.append(BodySpan(text="\n".join(code), language=fence.language))
                fence, code = None, []
            else:
                code.append(line[len(fence.indent):] if line.startswith(fence.indent) else line)
            continue
        opened = open_fence(line)
        if opened is not None:
            if prose:
                spans.append(BodySpan(text="\n".join(prose)))
                prose = []
            fence = opened
            continue
        prose.append(line)

    if fence is not None:
        spans.append(BodySpan(text="\n".join(code), language=fence.language))
    elif prose:
        spans.append(BodySpan(text="\n".join(prose)))
    return spans


__all__ = [
    "BodySpan",
    "MarkdownDocument",
    "closes_fence",
    "open_fence",
    "split_body",
]
