from __future__ import annotations

import io

import pytest
from docx import Document

from brain_rag.extractors import (
    ExtractionError,
    MarkdownExtractor,
    PdfExtractor,
    PlainTextExtractor,
    UnsupportedFormatError,
    WordExtractor,
    extract_text,
    extractor_for,
)
from brain_rag.storage import sample_pdf


def _build_docx() -> bytes:
    document = Document()
    document.add_paragraph("Quarterly planning notes")
    table = document.add_table(rows=2, cols=2)
    table.cell(0, 0).text = "Owner"
    table.cell(0, 1).text = "Task"
    table.cell(1, 0).text = "Ada"
    table.cell(1, 1).text = "Ship | review"
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


@pytest.mark.parametrize(
    ("path", "expected"),
    [
        ("notes/a.txt", PlainTextExtractor),
        ("exports/rows.CSV", PlainTextExtractor),
        ("data.json", PlainTextExtractor),
        ("readme.md", MarkdownExtractor),
        ("guide.markdown", MarkdownExtractor),
        ("paper.pdf", PdfExtractor),
        ("memo.docx", WordExtractor),
    ],
)
def test_extractor_for_selects_by_extension(path: str, expected: type) -> None:
    assert isinstance(extractor_for(path), expected)


def test_text_formats_are_returned_verbatim() -> None:
    body = "# Title\n\n- one\n- two\n"
    assert extract_text(body.encode("utf-8"), "knowledge/readme.md") == body
    assert extract_text(b"a,b\n1,2\n", "table.csv") == "a,b\n1,2\n"


def test_plain_text_rejects_invalid_utf8() -> None:
    with pytest.raises(ExtractionError):
        extract_text(b"\xff\xfe\xfa", "broken.txt")


def test_docx_paragraphs_and_tables() -> None:
    text = extract_text(_build_docx(), "memo.docx")
    lines = text.splitlines()
    assert lines[0] == "Quarterly planning notes"
    assert "| Owner | Task |" in lines
    assert "| Ada | Ship \\| review |" in lines


def test_docx_rejects_non_zip_bytes() -> None:
    with pytest.raises(ExtractionError):
        extract_text(b"definitely not a docx", "memo.docx")


def test_pdf_text_is_extracted_per_page() -> None:
    text = extract_text(sample_pdf(["Neural retrieval basics"]), "paper.pdf")
    assert text.startswith("## Page 1")
    assert "Neural retrieval basics" in text


def test_pdf_rejects_garbage() -> None:
    with pytest.raises(ExtractionError):
        extract_text(b"plain bytes pretending to be a pdf", "paper.pdf")


def test_legacy_doc_fails_explicitly() -> None:
    with pytest.raises(UnsupportedFormatError, match=r"\.doc"):
        extract_text(b"\xd0\xcf\x11\xe0 legacy", "old/report.doc")


def test_unknown_extension_decodes_text_or_fails() -> None:
    assert extract_text(b"key = value", "settings.ini") == "key = value"
    with pytest.raises(UnsupportedFormatError):
        extract_text(b"\x89PNG\r\n\x1a\n\x00\xff", "image.png")
