from __future__ import annotations

import io
from typing import List, Protocol
from urllib.parse import quote

import httpx
from docx import Document
from fpdf import FPDF, XPos, YPos

from .extractors import file_extension
from .logging_utils import get_logger

logger = get_logger(__name__)


class StorageError(RuntimeError):
    pass


class ObjectStorage(Protocol):
    def download(self, storage_path: str) -> bytes:
        ...


def object_key(storage_path: str, bucket: str) -> str:
    """Path inside the bucket; uploads sometimes carry the bucket as prefix."""
    key = storage_path.strip().lstrip("/")
    prefix = f"{bucket}/"
    if key.startswith(prefix):
        key = key[len(prefix):]
    if not key:
        raise StorageError("storage path is empty")
    return key


class SupabaseStorage:
    def __init__(
        self,
        base_url: str,
        service_key: str,
        bucket: str,
        *,
        signed_url_ttl_s: int = 60,
        timeout_s: float = 60.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.bucket = bucket
        self.signed_url_ttl_s = signed_url_ttl_s
        self.timeout_s = timeout_s

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.service_key}",
            "apikey": self.service_key,
        }

    def create_signed_url(self, client: httpx.Client, storage_path: str) -> str:
        key = object_key(storage_path, self.bucket)
        url = f"{self.base_url}/storage/v1/object/sign/{self.bucket}/{quote(key)}"
        response = client.post(
            url, json={"expiresIn": self.signed_url_ttl_s}, headers=self._headers()
        )
        if response.status_code != 200:
            raise StorageError(
                f"failed to sign {key}: storage returned {response.status_code}: "
                f"{response.text.strip()[:400]}"
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise StorageError(f"failed to sign {key}: response is not JSON") from exc
        if not isinstance(body, dict):
            body = {}
        signed = body.get("signedURL") or body.get("signedUrl")
        if not signed:
            raise StorageError(f"failed to sign {key}: response missing signedURL")
        if signed.startswith("http://") or signed.startswith("https://"):
            return signed
        return f"{self.base_url}/storage/v1{signed}"

    def download(self, storage_path: str) -> bytes:
        try:
            with httpx.Client(timeout=httpx.Timeout(self.timeout_s)) as client:
                signed_url = self.create_signed_url(client, storage_path)
                response = client.get(signed_url)
        except httpx.HTTPError as exc:
            raise StorageError(f"storage HTTP request failed: {exc}") from exc

        if response.status_code != 200:
            raise StorageError(
                f"failed to download {storage_path}: storage returned {response.status_code}"
            )
        logger.info(
            "storage.downloaded path=%s bytes=%s", storage_path, len(response.content)
        )
        return response.content


def sample_pdf(paragraphs: List[str]) -> bytes:
    """One-page PDF with each paragraph set in Helvetica, readable by pypdf."""
    pdf = FPDF()
    pdf.add_page()
    pdf.set_font("Helvetica", "", 12)
    for paragraph in paragraphs:
        pdf.multi_cell(0, 8, paragraph, new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        pdf.ln(2)
    return bytes(pdf.output())


def sample_docx(paragraphs: List[str]) -> bytes:
    document = Document()
    for paragraph in paragraphs:
        document.add_paragraph(paragraph)
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


class MockObjectStorage:
    """Canned file bodies keyed on the extension of the requested path."""

    def download(self, storage_path: str) -> bytes:
        extension = file_extension(storage_path)
        logger.info("storage.mock_download path=%s extension=%s", storage_path, extension)
        if extension == "txt":
            return (
                f"Mock text content from {storage_path}. "
                "This would normally be the actual file content."
            ).encode("utf-8")
        if extension in {"md", "markdown"}:
            return (
                f"# Mock Markdown\n\nThis is mock markdown content from {storage_path}.\n\n"
                "- List item 1\n- List item 2"
            ).encode("utf-8")
        if extension == "pdf":
            return sample_pdf(
                [
                    f"Mock PDF content extracted from {storage_path}.",
                    "This represents extracted text from a PDF document.",
                ]
            )
        if extension == "docx":
            return sample_docx(
                [
                    f"Mock Word content from {storage_path}.",
                    "This represents extracted text from a Word document.",
                ]
            )
        return f"Mock content from {storage_path} ({extension} file)".encode("utf-8")


class FallbackObjectStorage:
    def __init__(self, primary: ObjectStorage, fallback: ObjectStorage) -> None:
        self.primary = primary
        self.fallback = fallback

    def download(self, storage_path: str) -> bytes:
        try:
            return self.primary.download(storage_path)
        except StorageError as exc:
            logger.warning("storage.fallback path=%s error=%s", storage_path, exc)
            return self.fallback.download(storage_path)
