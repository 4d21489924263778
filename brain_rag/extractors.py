from __future__ import annotations

import io
import zipfile
from pathlib import PurePosixPath
from typing import Dict, List, Protocol, Tuple

from docx import Document
from docx.opc.exceptions import PackageNotFoundError
from pypdf import PdfReader
from pypdf.errors import PyPdfError

from .logging_utils import get_logger

logger = get_logger(__name__)


class ExtractionError(ValueError):
    pass


class UnsupportedFormatError(ExtractionError):
    pass


class TextExtractor(Protocol):
    extensions: Tuple[str, ...]

    def extract(self, data: bytes, path: str) -> str:
        ...


def file_extension(path: str) -> str:
    return PurePosixPath(path or "").suffix.lower().lstrip(".")


def _decode_utf8(data: bytes, path: str) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ExtractionError(f"{path} is not valid UTF-8 text") from exc


def _md_escape(value: str) -> str:
    return value.replace("|", "\\|")


class PlainTextExtractor:
    extensions = ("txt", "csv", "json")

    def extract(self, data: bytes, path: str) -> str:
        return _decode_utf8(data, path)


class MarkdownExtractor:
    extensions = ("md", "markdown")

    def extract(self, data: bytes, path: str) -> str:
        return _decode_utf8(data, path)


class PdfExtractor:
    extensions = ("pdf",)

    def extract(self, data: bytes, path: str) -> str:
        try:
            reader = PdfReader(io.BytesIO(data))
            pages: List[str] = []
            for index, page in enumerate(reader.pages, start=1):
                text = (page.extract_text() or "").strip()
                if not text:
                    continue
                pages.append(f"## Page {index}\n\n{text}")
        except PyPdfError as exc:
            raise ExtractionError(f"could not read PDF {path}: {exc}") from exc
        if not pages:
            logger.warning("extract.pdf_no_text path=%s pages=%s", path, len(reader.pages))
        return "\n\n".join(pages).strip()


class WordExtractor:
    """Paragraph text followed by each table rendered as a markdown table."""

    extensions = ("docx",)

    def extract(self, data: bytes, path: str) -> str:
        try:
            document = Document(io.BytesIO(data))
        except (PackageNotFoundError, zipfile.BadZipFile, KeyError) as exc:
            raise ExtractionError(f"could not read DOCX {path}: {exc}") from exc

        lines: List[str] = []
        for paragraph in document.paragraphs:
            text = paragraph.text.strip()
            if text:
                lines.append(text)

        for table in document.tables:
            rows = [
                [cell.text.strip().replace("\n", " ") for cell in row.cells]
                for row in table.rows
            ]
            if not rows:
                continue
            header = rows[0]
            lines.append("")
            lines.append("| " + " | ".join(_md_escape(cell) for cell in header) + " |")
            lines.append("| " + " | ".join("---" for _ in header) + " |")
            for row in rows[1:]:
                padded = row + [""] * max(0, len(header) - len(row))
                lines.append(
                    "| " + " | ".join(_md_escape(cell) for cell in padded[: len(header)]) + " |"
                )

        return "\n".join(lines).strip()


class LegacyWordExtractor:
    extensions = ("doc",)

    def extract(self, data: bytes, path: str) -> str:
        raise UnsupportedFormatError(
            f"legacy .doc files are not supported ({path}); convert to .docx"
        )


class FallbackTextExtractor:
    extensions: Tuple[str, ...] = ()

    def extract(self, data: bytes, path: str) -> str:
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise UnsupportedFormatError(
                f"unsupported file type for {path}: content is not UTF-8 text"
            ) from exc


EXTRACTORS: Tuple[TextExtractor, ...] = (
    PlainTextExtractor(),
    MarkdownExtractor(),
    PdfExtractor(),
    WordExtractor(),
    LegacyWordExtractor(),
)
_BY_EXTENSION: Dict[str, TextExtractor] = {
    extension: extractor for extractor in EXTRACTORS for extension in extractor.extensions
}
_FALLBACK = FallbackTextExtractor()


def extractor_for(path: str) -> TextExtractor:
    return _BY_EXTENSION.get(file_extension(path), _FALLBACK)


def extract_text(data: bytes, path: str) -> str:
    extractor = extractor_for(path)
    text = extractor.extract(data, path)
    logger.debug(
        "extract.done path=%s extractor=%s chars=%s",
        path,
        type(extractor).__name__,
        len(text),
    )
    return text
