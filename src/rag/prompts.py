from __future__ import annotations

"""Intent-specific prompt templates and reference-annotated context blocks."""

import re
from dataclasses import dataclass
from pathlib import PurePath

from src.rag.types import ContextChunk

RESPONSE_MODES = ("standard", "professional")
RESPONSE_DEPTHS = ("quick", "standard", "professional")

_TIMESTAMP_PREFIX_RE = re.compile(r"^\d+-\d+-")
_SPECIFIC_REF_RE = re.compile(r"\b(?:section|lesson|chapter)\s*\d+", re.IGNORECASE)

_BASE_SYSTEM = (
    "You are a helpful document-based educational assistant. "
    "When the documents contain information relevant to the question, answer comprehensively "
    "and cite every statement with its page reference in the form [Reference N - Page P]. "
    "When the documents do not contain relevant information, say so clearly and describe "
    "what the documents cover instead. Do not use outside knowledge."
)

_PROFESSIONAL_SYSTEM = (
    "Structure relevant answers with the sections Document Analysis, Key Insights and "
    "Industry Applications. Explain topic mismatches professionally."
)

_DEPTH_GUIDANCE = {
    "quick": "Keep the answer short: a direct answer in a few sentences or bullets.",
    "standard": "Give a complete answer with headings where they help.",
    "professional": "Give a thorough, well-organised answer that covers every relevant detail.",
}


@dataclass(frozen=True)
class PromptTemplate:
    """Role line and response checklist bound to one intent."""
    label: str
    role: str
    requirements: tuple[str, ...]


TEMPLATES: dict[str, PromptTemplate] = {
    "definition": PromptTemplate(
        "DEFINITION REQUEST",
        "You are an expert analyst providing clear, comprehensive definitions.",
        (
            "Primary definition: a clear, concise definition",
            "Detailed explanation with context from the documents",
            "Key characteristics: the important attributes or features",
            "Examples found in the documents",
            "Related concepts mentioned nearby",
        ),
    ),
    "explanation": PromptTemplate(
        "EXPLANATION REQUEST",
        "You are an educator who breaks complex concepts into understandable explanations.",
        (
            "Overview: a high-level explanation",
            "Step-by-step breakdown of the concept",
            "How it works",
            "Why it matters",
            "Key takeaways",
        ),
    ),
    "procedure": PromptTemplate(
        "PROCEDURE REQUEST",
        "You are a technical instructor documenting step-by-step procedures precisely.",
        (
            "Prerequisites",
            "Numbered step-by-step instructions",
            "Expected outcome of each step",
            "Common issues and their fixes",
            "How to verify completion",
        ),
    ),
    "comparison": PromptTemplate(
        "COMPARISON REQUEST",
        "You are an analyst comparing concepts and highlighting their trade-offs.",
        (
            "The items being compared",
            "Similarities",
            "Key differences",
            "Advantages and disadvantages of each",
            "When to use each option",
        ),
    ),
    "troubleshooting": PromptTemplate(
        "TROUBLESHOOTING REQUEST",
        "You are a support expert diagnosing problems systematically.",
        (
            "Problem analysis",
            "Possible causes",
            "Diagnostic steps",
            "Step-by-step solutions",
            "Prevention",
        ),
    ),
    "summary": PromptTemplate(
        "SUMMARY REQUEST",
        "You are an expert summarizer organising the most important information.",
        (
            "Executive summary in two or three sentences",
            "Key points",
            "Supporting details",
            "Conclusions",
        ),
    ),
    "financial": PromptTemplate(
        "FINANCIAL ANALYSIS REQUEST",
        "You are a financial analyst reading statements and reports.",
        (
            "Overview of the requested financial information",
            "Breakdown of every line item and calculation",
            "All figures with currency and units as written in the documents",
            "Period comparisons where the documents allow them",
            "What the numbers imply",
        ),
    ),
    "comprehensive": PromptTemplate(
        "COMPREHENSIVE INFORMATION REQUEST",
        "You are a document analyst extracting and synthesising complete information.",
        (
            "Complete overview of the topic",
            "All relevant information, organised into sections",
            "Supporting details, numbers and examples",
            "Connections between different parts of the documents",
        ),
    ),
    "general": PromptTemplate(
        "QUERY",
        "You are a document analyst answering only from the provided content.",
        (
            "Direct answer to the question",
            "Supporting evidence from the documents",
            "Related information that adds value",
            "Note anything that appears incomplete",
        ),
    ),
}


@dataclass(frozen=True)
class Prompt:
    system: str
    user: str
    intent: str
    context_chars: int
    references: int


def normalize_mode(value: str | None) -> str:
    mode = (value or "standard").strip().lower()
    return mode if mode in RESPONSE_MODES else "standard"


def normalize_depth(value: str | None) -> str:
    depth = (value or "standard").strip().lower()
    return depth if depth in RESPONSE_DEPTHS else "standard"


def system_message(mode: str, depth: str) -> str:
    parts = [_BASE_SYSTEM]
    if normalize_mode(mode) == "professional":
        parts.append(_PROFESSIONAL_SYSTEM)
    parts.append(_DEPTH_GUIDANCE[normalize_depth(depth)])
    return " ".join(parts)


def clean_source_name(metadata: dict[str, object]) -> str:
    """Display name for a chunk's document: no path, upload prefix or extension."""
    raw = str(metadata.get("source_name") or metadata.get("source") or "").strip()
    if not raw:
        return "Document"
    name = PurePath(raw.replace("\\", "/")).name
    name = _TIMESTAMP_PREFIX_RE.sub("", name)
    stem = PurePath(name).stem if "." in name else name
    return stem or "Document"


def reference_label(chunk: ContextChunk, index: int | None = None) -> str:
    ref = index if index is not None else chunk.reference_id
    page = chunk.page if chunk.page > 0 else "Unknown"
    return f"[Reference {ref} - Page {page}]"


def build_context_block(chunks: list[ContextChunk], max_chars: int) -> str:
    """Join chunks under ``[Reference N - Page P - Name]`` headers within ``max_chars``."""
    blocks: list[str] = []
    total = 0
    for idx, chunk in enumerate(chunks, start=1):
        ref = chunk.reference_id or idx
        page = chunk.page if chunk.page > 0 else "Unknown"
        header = f"[Reference {ref} - Page {page} - {clean_source_name(chunk.metadata)}]:\n"
        content = chunk.content.strip()
        snippet = header + content + "\n\n---"
        if total + len(snippet) > max_chars:
            remaining = max_chars - total
            if remaining <= len(header):
                break
            snippet = header + content[: remaining - len(header)]
        blocks.append(snippet)
        total += len(snippet)
        if total >= max_chars:
            break
    return "\n".join(blocks)


def response_strategy(query: str) -> str:
    lowered = query.lower()
    if re.search(r"\ball\b", lowered) and ("lesson" in lowered or "section" in lowered):
        return "LIST REQUEST: extract and organise every requested item as a list with descriptions."
    if _SPECIFIC_REF_RE.search(lowered):
        return "SPECIFIC CONTENT REQUEST: focus on the exact section or lesson requested and include all of its details."
    if any(word in lowered for word in ("section", "lesson", "content")):
        return "EDUCATIONAL REQUEST: give thorough explanations and the examples found in the documents."
    return "GENERAL REQUEST: answer from the relevant parts of the documents."


def build_prompt(
    query: str,
    chunks: list[ContextChunk],
    intent: str,
    mode: str = "standard",
    depth: str = "standard",
    max_chars: int = 8000,
) -> Prompt:
    template = TEMPLATES.get(intent, TEMPLATES["general"])
    context = build_context_block(chunks, max_chars)
    requirements = "\n".join(f"{idx}. {item}" for idx, item in enumerate(template.requirements, start=1))
    user = "\n".join(
        [
            template.role,
            "",
            f'**{template.label}**: "{query}"',
            "",
            "Document content with references:",
            context,
            "",
            "RESPONSE REQUIREMENTS:",
            requirements,
            "",
            "RESPONSE STRATEGY:",
            response_strategy(query),
            "",
            "Cite every piece of information with [Reference N - Page P]. "
            "Start directly with the requested information.",
        ]
    )
    return Prompt(
        system=system_message(mode, depth),
        user=user,
        intent=intent if intent in TEMPLATES else "general",
        context_chars=len(context),
        references=len(chunks),
    )
