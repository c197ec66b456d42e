from __future__ import annotations

"""Format detection and text extraction for every supported upload type."""

from io import BytesIO

import fitz
import pytest
from docx import Document as DocxDocument

from src.errors import ContentError, ValidationError
from src.loaders.base import split_form_feeds
from src.loaders.registry import detect_file_type, load_document, load_path
from src.loaders.rtf import clean_rtf


@pytest.mark.parametrize(
    ("filename", "content_type", "expected"),
    [
        ("Course.PDF", "application/pdf", ".pdf"),
        ("notes.md", "text/plain", ".md"),
        ("grades.csv", "application/vnd.ms-excel", ".csv"),
        ("letter.docx", "application/octet-stream", ".docx"),
        ("memo.rtf", None, ".rtf"),
    ],
)
def test_detect_file_type(filename: str, content_type: str | None, expected: str) -> None:
    assert detect_file_type(filename, content_type) == expected


def test_unsupported_or_mismatched_types_are_rejected() -> None:
    with pytest.raises(ValidationError, match="Supported types"):
        detect_file_type("budget.xlsx")
    with pytest.raises(ValidationError):
        detect_file_type("README")
    with pytest.raises(ValidationError, match="does not match"):
        detect_file_type("course.pdf", "image/png")


def test_text_form_feeds_become_pages() -> None:
    pages = load_document("First page.\fSecond page.\f\fFourth page.".encode("utf-8"), "notes.txt")

    assert [(page.page, page.text) for page in pages] == [
        (1, "First page."),
        (2, "Second page."),
        (4, "Fourth page."),
    ]
    assert all(page.paged for page in pages)


def test_text_without_form_feeds_is_one_unpaged_unit() -> None:
    units = split_form_feeds("line one\r\nline two")
    assert len(units) == 1
    assert units[0].text == "line one\nline two"
    assert units[0].paged is False


def test_empty_or_blank_documents_are_content_errors() -> None:
    with pytest.raises(ContentError, match="empty"):
        load_document(b"", "notes.txt")
    with pytest.raises(ContentError, match="No extractable text"):
        load_document(b"   \n\t  ", "notes.txt")


def test_csv_rows_become_labelled_lines() -> None:
    data = b"name,role\nAda,engineer\nGrace,admiral\n"

    pages = load_document(data, "team.csv")

    assert pages[0].text.splitlines() == [
        "CSV Data:",
        "name: Ada. role: engineer.",
        "name: Grace. role: admiral.",
    ]


def test_rtf_markup_is_stripped() -> None:
    rtf = (
        r"{\rtf1\ansi{\fonttbl{\f0 Arial;}}\f0\fs24 Closures capture variables.\par "
        r"Caf\'e9 menu\page Second page text.\par}"
    )

    pages = load_document(rtf.encode("ascii"), "memo.rtf")

    assert [page.text for page in pages] == ["Closures capture variables.\nCafé menu", "Second page text."]
    assert [page.page for page in pages] == [1, 2]
    assert "Arial" not in clean_rtf(rtf)


def test_docx_paragraphs_and_tables() -> None:
    document = DocxDocument()
    document.add_paragraph("Section 1: Closures capture variables from the enclosing scope.")
    table = document.add_table(rows=1, cols=2)
    table.rows[0].cells[0].text = "Term"
    table.rows[0].cells[1].text = "Closure"
    buffer = BytesIO()
    document.save(buffer)

    pages = load_document(buffer.getvalue(), "lesson.docx")

    assert len(pages) == 1
    assert pages[0].text.startswith("Section 1: Closures capture variables")
    assert "Term | Closure" in pages[0].text


def test_unreadable_legacy_doc_is_a_content_error() -> None:
    with pytest.raises(ContentError, match="legacy .doc"):
        load_document(b"\x00\x01\x02\x03", "old.doc")


def test_pdf_pages_keep_their_numbers() -> None:
    pdf = fitz.open()
    for text in ("Section 1: Getting started.", "Section 2: Variables."):
        page = pdf.new_page()
        page.insert_text((72, 72), text)
    data = pdf.tobytes()
    pdf.close()

    pages = load_document(data, "course.pdf")

    assert [page.page for page in pages] == [1, 2]
    assert pages[1].text == "Section 2: Variables."
    assert all(page.paged for page in pages)


def test_corrupt_pdf_is_a_content_error() -> None:
    with pytest.raises(ContentError):
        load_document(b"%PDF-1.4 not really a pdf", "broken.pdf")


def test_load_path_reads_stored_uploads(tmp_path) -> None:
    stored = tmp_path / "1700000000000-42-notes.txt"
    stored.write_text("Stored upload text.", encoding="utf-8")

    pages = load_path(stored, "notes.txt")

    assert pages[0].text == "Stored upload text."
    with pytest.raises(ContentError, match="Unable to read"):
        load_path(tmp_path / "missing.txt")
