from __future__ import annotations

"""RTF loader that strips control words and groups."""

import re

from src.loaders.base import LoadedPage, split_form_feeds
from src.loaders.text import decode_text

_DESTINATION_GROUP_RE = re.compile(
    r"\{(?:\\\*)?\\(?:fonttbl|colortbl|stylesheet|info|pict|header|footer|listtable|listoverridetable)"
    r"[^{}]*(?:\{[^{}]*\}[^{}]*)*\}",
    re.IGNORECASE,
)
_PAR_RE = re.compile(r"\\(?:par|line)\b ?")
_PAGE_RE = re.compile(r"\\page\b ?")
_TAB_RE = re.compile(r"\\tab\b ?")
_HEX_RE = re.compile(r"\\'([0-9a-fA-F]{2})")
_UNICODE_RE = re.compile(r"\\u(-?\d+)\??")
_CONTROL_WORD_RE = re.compile(r"\\[a-zA-Z]+-?\d* ?")
_ESCAPES = {"\\\\": "\x01", "\\{": "\x02", "\\}": "\x03"}
_SPACES_RE = re.compile(r"[ \t]+")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


def clean_rtf(text: str) -> str:
    """Convert RTF markup into plain text."""
    cleaned = text
    for escaped, placeholder in _ESCAPES.items():
        cleaned = cleaned.replace(escaped, placeholder)
    cleaned = _DESTINATION_GROUP_RE.sub("", cleaned)
    cleaned = _PAGE_RE.sub("\f", cleaned)
    cleaned = _PAR_RE.sub("\n", cleaned)
    cleaned = _TAB_RE.sub("\t", cleaned)
    cleaned = _HEX_RE.sub(lambda match: chr(int(match.group(1), 16)), cleaned)
    cleaned = _UNICODE_RE.sub(lambda match: chr(int(match.group(1)) % 65536), cleaned)
    cleaned = _CONTROL_WORD_RE.sub("", cleaned)
    cleaned = cleaned.replace("{", "").replace("}", "")
    for escaped, placeholder in _ESCAPES.items():
        cleaned = cleaned.replace(placeholder, escaped[1])
    cleaned = _SPACES_RE.sub(" ", cleaned)
    cleaned = "\n".join(line.strip(" \t") for line in cleaned.split("\n"))
    return _BLANK_LINES_RE.sub("\n\n", cleaned).strip()


def load_rtf_bytes(data: bytes) -> list[LoadedPage]:
    return split_form_feeds(clean_rtf(decode_text(data)))
