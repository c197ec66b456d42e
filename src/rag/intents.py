from __future__ import annotations

"""Data-driven query intent classification."""

import json
import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_INTENTS_PATH = Path(__file__).with_name("intents.json")
INTENT_TAGS = (
    "definition",
    "explanation",
    "procedure",
    "comparison",
    "troubleshooting",
    "summary",
    "financial",
    "comprehensive",
    "general",
)

_PUNCT_RE = re.compile(r"[^\w\s']+")
_SPACE_RE = re.compile(r"\s+")
_MAX_GREETING_WORDS = 4
_MAX_SMALL_TALK_WORDS = 6


class IntentConfigError(ValueError):
    """Raised when the intent table cannot be loaded."""
    pass


def normalize_query(query: str) -> str:
    """Lowercase, drop punctuation and collapse whitespace."""
    return _SPACE_RE.sub(" ", _PUNCT_RE.sub(" ", query.lower())).strip()


def _phrase_pattern(phrases: list[str]) -> re.Pattern[str] | None:
    cleaned = [normalize_query(phrase) for phrase in phrases if phrase.strip()]
    if not cleaned:
        return None
    ordered = sorted(set(cleaned), key=len, reverse=True)
    return re.compile(r"\b(?:" + "|".join(re.escape(phrase) for phrase in ordered) + r")\b")


@dataclass(frozen=True)
class IntentRule:
    """Tagged predicate; the first rule that matches wins."""
    intent: str
    pattern: re.Pattern[str]

    def matches(self, normalized: str) -> bool:
        return bool(self.pattern.search(normalized))


@dataclass(frozen=True)
class IntentTable:
    rules: tuple[IntentRule, ...]
    default_intent: str = "comprehensive"
    open_ended: re.Pattern[str] | None = None
    financial_content: re.Pattern[str] | None = None
    greetings: tuple[str, ...] = ()
    small_talk: tuple[str, ...] = ()
    min_query_chars: int = 10
    tags: tuple[str, ...] = field(default=INTENT_TAGS)

    def classify(self, query: str) -> str:
        normalized = normalize_query(query)
        for rule in self.rules:
            if rule.matches(normalized):
                return rule.intent
        return self.default_intent

    def is_greeting(self, query: str) -> bool:
        """Greetings and small talk are answered without retrieval."""
        stripped = query.strip()
        normalized = normalize_query(stripped)
        if len(stripped) < self.min_query_chars:
            return True
        words = normalized.split()
        for greeting in self.greetings:
            if normalized == greeting:
                return True
            if normalized.startswith(greeting + " ") and len(words) <= _MAX_GREETING_WORDS:
                return True
        if len(words) > _MAX_SMALL_TALK_WORDS:
            return False
        for phrase in self.small_talk:
            if normalized == phrase:
                return True
            if normalized.startswith(phrase + " ") and len(words) <= len(phrase.split()) + 2:
                return True
        return False

    def is_open_ended(self, query: str) -> bool:
        if self.open_ended is None:
            return False
        return bool(self.open_ended.search(normalize_query(query)))

    def is_financial(self, query: str) -> bool:
        return self.classify(query) == "financial"

    def has_financial_content(self, text: str) -> bool:
        if self.financial_content is None:
            return False
        return bool(self.financial_content.search(text.lower())) or "$" in text


def parse_intent_table(data: dict[str, Any]) -> IntentTable:
    if not isinstance(data, dict):
        raise IntentConfigError("Intent table must be a JSON object")
    rules: list[IntentRule] = []
    for entry in data.get("intents") or []:
        if not isinstance(entry, dict):
            raise IntentConfigError("Each intent entry must be an object")
        intent = str(entry.get("intent", "")).strip().lower()
        if not intent:
            raise IntentConfigError("Intent entry is missing its tag")
        pattern = _phrase_pattern([str(item) for item in entry.get("patterns") or []])
        if pattern is None:
            raise IntentConfigError(f"Intent {intent!r} has no patterns")
        rules.append(IntentRule(intent=intent, pattern=pattern))
    default_intent = str(data.get("default_intent") or "comprehensive").strip().lower()
    tags = tuple(dict.fromkeys([*INTENT_TAGS, *(rule.intent for rule in rules), default_intent]))
    return IntentTable(
        rules=tuple(rules),
        default_intent=default_intent,
        open_ended=_phrase_pattern([str(item) for item in data.get("open_ended_markers") or []]),
        financial_content=_phrase_pattern([str(item) for item in data.get("financial_content") or []]),
        greetings=tuple(normalize_query(str(item)) for item in data.get("greetings") or []),
        small_talk=tuple(normalize_query(str(item)) for item in data.get("small_talk") or []),
        min_query_chars=int(data.get("min_query_chars", 10)),
        tags=tags,
    )


def load_intent_table(path: str | Path | None = None) -> IntentTable:
    """Load the intent table from ``path`` or the bundled default."""
    resolved = Path(path) if path else DEFAULT_INTENTS_PATH
    try:
        data = json.loads(resolved.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise IntentConfigError(f"Unable to load intent table from {resolved}: {exc}") from exc
    table = parse_intent_table(data)
    logger.info("intent_table_loaded", extra={"path": str(resolved), "rules": len(table.rules)})
    return table


@lru_cache
def default_intent_table() -> IntentTable:
    return load_intent_table()


def classify_query(query: str, table: IntentTable | None = None) -> str:
    return (table or default_intent_table()).classify(query)


def is_greeting(query: str, table: IntentTable | None = None) -> bool:
    return (table or default_intent_table()).is_greeting(query)


def is_open_ended(query: str, table: IntentTable | None = None) -> bool:
    return (table or default_intent_table()).is_open_ended(query)
