from __future__ import annotations

"""Text preprocessing, content-aware sizing and recursive splitting."""

import re
from dataclasses import dataclass

from langchain_text_splitters import RecursiveCharacterTextSplitter

_SPACES_RE = re.compile(r"[ \t ]+")
_BLANK_LINES_RE = re.compile(r"\n{3,}")
_STRUCTURAL_LINE_RE = re.compile(
    r"^(?:#{1,6}\s|[-*•]\s|\d+[.)]\s|[A-Za-z][.)]\s|"
    r"(?:chapter|section|part|lesson|unit)\s+\d+|\|)",
    re.IGNORECASE,
)
_INLINE_MARKER_RE = re.compile(
    r"(?<=[^\n])[ \t]*\b((?:Chapter|Section|Part|Lesson|Unit)\s+\d+(?:\.\d+)*\s*[:.\-–])"
)

SEPARATORS: tuple[str, ...] = (
    "\n# ",
    "\n## ",
    "\n### ",
    "\n#### ",
    "\nSection ",
    "\nLesson ",
    "\nChapter ",
    "\nPart ",
    "\nUnit ",
    "\nAssets:",
    "\nLiabilities:",
    "\nEquity:",
    "\nRevenue:",
    "\nIncome:",
    "\nCurrent assets",
    "\nNon-current assets",
    "\nCurrent liabilities",
    "\nLong-term",
    "\nConsolidated",
    "\nFinancial",
    "\nBalance Sheet",
    "\nIncome Statement",
    "\n\n\n",
    "\n\n",
    ". ",
    "! ",
    "? ",
    ": ",
    "; ",
    "\n",
    " ",
    "",
)

_FINANCIAL_RE = re.compile(
    r"assets|liabilities|revenue|equity|balance sheet|income statement|financial", re.IGNORECASE
)
_EDUCATIONAL_RE = re.compile(r"section|lesson|chapter|exercise|example", re.IGNORECASE)
_TECHNICAL_RE = re.compile(r"function|class|code|algorithm|programming", re.IGNORECASE)

# (pattern, [(min average unit length, size), ...], fallback size)
_SIZE_TABLE = (
    ("financial", _FINANCIAL_RE, ((8000, 2500), (4000, 2000)), 1600),
    ("educational", _EDUCATIONAL_RE, ((5000, 2200), (2000, 1800)), 1400),
    ("technical", _TECHNICAL_RE, ((5000, 1400), (2000, 1200)), 1000),
)
_GENERAL_SIZES = (((5000, 1800), (2000, 1500)), 1200)


@dataclass(frozen=True)
class ChunkPlan:
    """Selected chunk size for a document and the content profile that chose it."""
    profile: str
    chunk_size: int
    overlap: int


@dataclass(frozen=True)
class TextSpan:
    """A chunk of text with its character offsets in the preprocessed source."""
    start: int
    end: int
    text: str


def preprocess_text(text: str) -> str:
    """Normalize whitespace while keeping paragraph, list and section boundaries."""
    normalized = text.replace("\r\n", "\n").replace("\r", "\n").replace("\f", "\n\n")
    normalized = _SPACES_RE.sub(" ", normalized)
    lines = [line.strip() for line in normalized.split("\n")]
    rebuilt: list[str] = []
    for line in lines:
        if not line:
            if rebuilt and rebuilt[-1] != "":
                rebuilt.append("")
            continue
        if rebuilt and rebuilt[-1] != "" and not _STRUCTURAL_LINE_RE.match(line) and not _STRUCTURAL_LINE_RE.match(rebuilt[-1]):
            rebuilt[-1] = f"{rebuilt[-1]} {line}"
            continue
        rebuilt.append(line)
    joined = "\n".join(rebuilt).strip()
    joined = _INLINE_MARKER_RE.sub(r"\n\n\1", joined)
    return _BLANK_LINES_RE.sub("\n\n", joined)


def plan_chunking(units: list[str], overlap: int) -> ChunkPlan:
    """Pick a chunk size from the content profile of the first units."""
    if not units:
        return ChunkPlan(profile="general", chunk_size=1200, overlap=min(overlap, 400))
    sample = " ".join(units[:3])
    average = sum(len(unit) for unit in units) / len(units)
    profile = "general"
    steps, fallback = _GENERAL_SIZES
    for name, pattern, name_steps, name_fallback in _SIZE_TABLE:
        if pattern.search(sample):
            profile = name
            steps, fallback = name_steps, name_fallback
            break
    size = fallback
    for threshold, value in steps:
        if average > threshold:
            size = value
            break
    return ChunkPlan(profile=profile, chunk_size=size, overlap=max(0, min(overlap, size // 3)))


class RecursiveSplitter:
    """Separator-preference splitting that reports character offsets.

    Separators stay attached to the piece that follows them, so every span is a
    contiguous slice of the input and consecutive spans overlap or touch.
    """

    def __init__(
        self,
        chunk_size: int,
        overlap: int,
        separators: tuple[str, ...] = SEPARATORS,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if overlap >= chunk_size:
            raise ValueError("overlap must be smaller than chunk_size")
        self.chunk_size = chunk_size
        self.overlap = max(0, overlap)
        self._splitter = RecursiveCharacterTextSplitter(
            chunk_size=chunk_size,
            chunk_overlap=self.overlap,
            separators=list(separators),
            keep_separator="start",
            add_start_index=True,
        )

    def split(self, text: str) -> list[TextSpan]:
        spans: list[TextSpan] = []
        cursor = 0
        for document in self._splitter.create_documents([text]):
            content = document.page_content
            if not content.strip():
                continue
            start = document.metadata.get("start_index", -1)
            if start < 0 or text[start : start + len(content)] != content:
                start = text.find(content, cursor)
            if start < 0:
                start = text.find(content)
            spans.append(TextSpan(start=start, end=start + len(content), text=content))
            cursor = start
        return spans
