from __future__ import annotations

import pytest

from src.rag.intents import (
    IntentConfigError,
    classify_query,
    default_intent_table,
    is_greeting,
    is_open_ended,
    load_intent_table,
    parse_intent_table,
)


@pytest.mark.parametrize(
    ("query", "intent"),
    [
        ("What is a closure?", "definition"),
        ("Give me the balance sheet figures", "financial"),
        ("Compare callbacks versus promises", "comparison"),
        ("How to configure the linter", "procedure"),
        ("Summarize the key points of chapter two", "summary"),
        ("My build failed with a strange error", "troubleshooting"),
        ("asynchronous iterators", "comprehensive"),
    ],
)
def test_classify_follows_rule_order(query: str, intent: str) -> None:
    assert classify_query(query) == intent


def test_patterns_match_whole_words_only() -> None:
    # "install" must not trigger the "all" pattern of the comprehensive rule.
    assert classify_query("Explain the install process") == "explanation"


@pytest.mark.parametrize("query", ["hi", "Hello there!", "good morning", "What can you do?", "who are you"])
def test_greetings_and_small_talk(query: str) -> None:
    assert is_greeting(query)


@pytest.mark.parametrize(
    "query",
    [
        "Hello, can you explain how closures capture variables in JavaScript?",
        "What is this concept of recursion about in detail",
        "Explain event loop phases",
    ],
)
def test_real_questions_are_not_greetings(query: str) -> None:
    assert not is_greeting(query)


def test_open_ended_markers() -> None:
    assert is_open_ended("Show me section 2")
    assert is_open_ended("explain promises")
    assert not is_open_ended("closures capture variables")


def test_custom_table_adds_its_own_intents() -> None:
    table = parse_intent_table(
        {
            "default_intent": "general",
            "intents": [{"intent": "pricing", "patterns": ["price", "cost of"]}],
        }
    )

    assert table.classify("What is the price of the course") == "pricing"
    assert table.classify("closures") == "general"
    assert "pricing" in table.tags
    assert "definition" in table.tags


def test_invalid_tables_are_rejected(tmp_path) -> None:
    with pytest.raises(IntentConfigError):
        parse_intent_table({"intents": [{"intent": "pricing", "patterns": []}]})
    with pytest.raises(IntentConfigError):
        parse_intent_table({"intents": [{"patterns": ["price"]}]})

    broken = tmp_path / "intents.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(IntentConfigError):
        load_intent_table(broken)


def test_bundled_table_loads() -> None:
    table = default_intent_table()
    assert table.default_intent == "comprehensive"
    assert table.rules[0].intent == "financial"
