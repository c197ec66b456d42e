from __future__ import annotations

"""Builders shared by the test modules."""

from src.rag.types import Document


class FakeClock:
    """Manually advanced wall clock for time-dependent stores."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def course_chunk(
    index: int,
    page: int,
    content: str,
    document_id: str = "doc_course",
    name: str = "course.pdf",
) -> Document:
    """Indexed chunk shaped the way the ingestion pipeline stores it."""
    return Document(
        doc_id=f"{document_id}:{index}",
        content=content,
        metadata={
            "document_id": document_id,
            "chunk_index": index,
            "page": page,
            "source": f"1700000000000-42-{name}",
            "source_name": name,
            "content_type": "general",
        },
    )


COURSE_CHUNKS = [
    (1, "Section 1: Getting started. Install the runtime, configure your editor and run the first "
        "programming exercise from the terminal before moving on."),
    (2, "Section 2: Variables. Variables hold values while constants cannot be reassigned once "
        "declared, which keeps programming mistakes visible early."),
    (4, "Section 3: Overview. This section introduces asynchronous programming with callbacks, "
        "promises and event loops that schedule work without blocking."),
    (5, "Section 4: Modules. Modules group related functions into files so that larger programs "
        "stay readable and can be imported where needed."),
    (6, "Section 5: Testing. Automated tests check behaviour after every change and document the "
        "expected results for future readers."),
]


def course_documents(document_id: str = "doc_course", name: str = "course.pdf") -> list[Document]:
    return [
        course_chunk(index, page, content, document_id=document_id, name=name)
        for index, (page, content) in enumerate(COURSE_CHUNKS)
    ]
