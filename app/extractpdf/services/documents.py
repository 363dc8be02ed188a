"""
Document loading: stored bytes to an ordered list of DocumentPage.

Each supported file type has one document source. A source turns raw bytes
into pages plus human-readable warnings; the loader picks the source for
the project's file type and enforces that at least one page comes back.

Failure policy:
- missing bytes, unsupported type, unreadable document: DocumentLoadError
  (non-retryable)
- unreadable PDF text layer: warning, pages continue image-only
"""

import io
import logging
from pathlib import PurePosixPath
from typing import Protocol

from PIL import Image, UnidentifiedImageError

from ..models import DocumentPage, FileType, PageImage, ProjectFileRecord
from .exceptions import DocumentLoadError
from .pdf_service import PDFConversionError, PDFService, PDFTextExtractionError
from .storage import FileStorage

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_MIME = "image/png"

MIME_BY_EXTENSION: dict[str, str] = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".bmp": "image/bmp",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".webp": "image/webp",
    ".heic": "image/heic",
    ".heif": "image/heif",
}


class DocumentLoadResult:
    """Pages produced from one document, plus load warnings."""

    def __init__(self, pages: list[DocumentPage] | None = None, warnings: list[str] | None = None):
        self.pages: list[DocumentPage] = pages or []
        self.warnings: list[str] = warnings or []


class DocumentSource(Protocol):
    """Produces an ordered page sequence from raw bytes."""

    def load(self, data: bytes, file: ProjectFileRecord) -> DocumentLoadResult:
        ...


def truncate_for_prompt(text: str, limit: int) -> tuple[str, bool]:
    """
    Cap ``text`` at ``limit`` characters.

    Truncated text ends with an explicit marker naming how many characters
    were dropped.
    """
    if len(text) <= limit:
        return text, False
    dropped = len(text) - limit
    return f"{text[:limit]}\n...[truncated {dropped} characters]", True


def sniff_image_mime(data: bytes) -> str | None:
    """Detect the image MIME type from its signature bytes using Pillow."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            image_format = image.format
    except (UnidentifiedImageError, OSError, ValueError):
        return None
    if not image_format:
        return None
    return Image.MIME.get(image_format.upper())


def detect_image_mime(
    data: bytes,
    declared_type: str | None,
    filename: str | None,
) -> tuple[str, list[str]]:
    """
    Resolve the MIME type of an uploaded image.

    Order: signature bytes, declared content type, file extension, then
    ``image/png``. Every fallback step adds a warning.

    Returns:
        Tuple of (mime_type, warnings).
    """
    warnings: list[str] = []

    sniffed = sniff_image_mime(data)
    if sniffed:
        return sniffed, warnings

    warnings.append("Could not detect the image type from the file contents.")
    declared = (declared_type or "").split(";")[0].strip().lower()
    if declared.startswith("image/"):
        warnings.append(f"Using the declared content type {declared}.")
        return declared, warnings

    extension = PurePosixPath((filename or "").replace("\\", "/")).suffix.lower()
    by_extension = MIME_BY_EXTENSION.get(extension)
    if by_extension:
        warnings.append(f"Using {by_extension} based on the file extension {extension}.")
        return by_extension, warnings

    warnings.append(f"Falling back to the default image type {DEFAULT_IMAGE_MIME}.")
    return DEFAULT_IMAGE_MIME, warnings


class PdfDocumentSource:
    """
    Splits a PDF into pages.

    Text comes from the PDF text layer and every page is also rendered to an
    image so scanned pages remain usable.
    """

    def __init__(self, pdf_service: PDFService, max_pages: int = 40, max_page_chars: int = 8000):
        self.pdf_service = pdf_service
        self.max_pages = max_pages
        self.max_page_chars = max_page_chars

    def load(self, data: bytes, file: ProjectFileRecord) -> DocumentLoadResult:
        result = DocumentLoadResult()

        try:
            total_pages = self.pdf_service.get_page_count(data)
        except PDFConversionError as e:
            raise DocumentLoadError(f"Failed to open PDF: {e}") from e

        if total_pages < 1:
            raise DocumentLoadError("No document pages were available for processing")

        limit = min(total_pages, self.max_pages)

        try:
            images = self.pdf_service.convert_pdf_to_images(data, first_page=1, last_page=limit)
        except PDFConversionError as e:
            raise DocumentLoadError(f"Failed to render PDF pages: {e}") from e

        texts: list[str] | None
        try:
            texts = self.pdf_service.extract_page_texts(data, max_pages=limit)
        except PDFTextExtractionError as e:
            texts = None
            result.warnings.append(
                f"Text extraction failed; pages were processed from images only. ({e})"
            )

        mime_type = self.pdf_service.mime_type
        for index, image in enumerate(images[:limit]):
            page_number = index + 1
            metadata: dict = {"original_name": file.original_name}
            text_content: str | None = None

            if texts is not None:
                raw = texts[index] if index < len(texts) else ""
                trimmed = raw.strip()
                if not trimmed:
                    metadata["note"] = "No extractable text returned by the PDF parser for this page."
                    result.warnings.append(f"Page {page_number} did not include extractable text.")
                else:
                    text_content, truncated = truncate_for_prompt(trimmed, self.max_page_chars)
                    if truncated:
                        result.warnings.append(
                            f"Page {page_number} text was truncated to {self.max_page_chars} "
                            "characters for processing."
                        )

            result.pages.append(
                DocumentPage(
                    page_number=page_number,
                    text_content=text_content,
                    images=[PageImage(data=self.pdf_service.image_to_bytes(image), mime_type=mime_type)],
                    metadata=metadata,
                )
            )

        if total_pages > limit:
            result.warnings.append(
                f"Only the first {limit} pages were processed due to safety limits. "
                "Remaining pages were skipped."
            )

        logger.info(
            "Loaded %d of %d PDF page(s) for %s",
            len(result.pages),
            total_pages,
            file.original_name,
        )
        return result


class ImageDocumentSource:
    """A single image is a single page."""

    def load(self, data: bytes, file: ProjectFileRecord) -> DocumentLoadResult:
        if not data:
            raise DocumentLoadError("Stored image file is empty")

        mime_type, warnings = detect_image_mime(data, file.content_type, file.original_name)
        page = DocumentPage(
            page_number=1,
            text_content=None,
            images=[PageImage(data=data, mime_type=mime_type)],
            metadata={"original_name": file.original_name, "mime_type": mime_type},
        )
        return DocumentLoadResult(pages=[page], warnings=warnings)


class DocumentLoader:
    """Reads stored bytes and dispatches to the source for the file type."""

    def __init__(self, storage: FileStorage, sources: dict[FileType, DocumentSource]):
        self.storage = storage
        self.sources = sources

    @classmethod
    def from_settings(cls, storage: FileStorage, settings, pdf_service: PDFService | None = None) -> "DocumentLoader":
        pdf_service = pdf_service or PDFService(dpi=settings.pdf_render_dpi)
        return cls(
            storage,
            {
                FileType.PDF: PdfDocumentSource(
                    pdf_service,
                    max_pages=settings.max_pages_per_run,
                    max_page_chars=settings.max_page_chars,
                ),
                FileType.IMAGE: ImageDocumentSource(),
            },
        )

    def load(self, file: ProjectFileRecord, file_type: FileType | str) -> DocumentLoadResult:
        """
        Load ``file`` as an ordered list of pages.

        Raises:
            DocumentLoadError: Missing bytes, unsupported type, unreadable
                document, or zero pages.
        """
        data = self.storage.read_bytes(file.storage_path)
        if data is None:
            raise DocumentLoadError("Stored file is no longer available")

        try:
            source = self.sources[FileType(file_type)]
        except (ValueError, KeyError):
            raise DocumentLoadError(f"Unsupported file type: {file_type}") from None

        result = source.load(data, file)
        if not result.pages:
            raise DocumentLoadError("No document pages were available for processing")
        return result
