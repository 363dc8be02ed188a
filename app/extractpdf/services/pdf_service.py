"""
PDF page rendering and text-layer reading.

Rendering goes through pdf2image (poppler); the text layer is read with
PyMuPDF. A PDF whose text layer is broken can still be rendered, so the two
operations fail independently.
"""

import io
import logging

from PIL import Image

logger = logging.getLogger(__name__)

POPPLER_MISSING_MESSAGE = (
    "Poppler is required to render PDF pages. Install poppler-utils "
    "(apt-get install poppler-utils, or brew install poppler on macOS)."
)


class PDFConversionError(Exception):
    """Raised when a PDF cannot be opened or rendered."""

    pass


class PDFTextExtractionError(Exception):
    """Raised when the text layer of a PDF cannot be read."""

    pass


def ensure_pdf_header(pdf_bytes: bytes) -> None:
    """Reject empty input and content that does not carry the %PDF signature."""
    if not pdf_bytes:
        raise PDFConversionError("Empty PDF file provided")
    if pdf_bytes[:4] != b"%PDF":
        raise PDFConversionError("Invalid PDF file: does not start with PDF header")


class PDFService:
    """
    Renders PDF pages for the vision model and reads their text.

    Args:
        dpi: Render resolution. Rendered bytes count against the token
            safety limit, so the default stays low.
        image_format: Encoding of rendered pages (JPEG or PNG).
        quality: Quality for lossy encodings (1-100).
    """

    def __init__(self, dpi: int = 100, image_format: str = "JPEG", quality: int = 80):
        self.dpi = dpi
        self.image_format = image_format
        self.quality = quality

    @property
    def mime_type(self) -> str:
        Image.preinit()
        return Image.MIME.get(self.image_format.upper(), "image/png")

    def get_page_count(self, pdf_bytes: bytes) -> int:
        """
        Number of pages according to poppler's pdfinfo.

        Raises:
            PDFConversionError: Bad header, missing poppler or unreadable file.
        """
        from pdf2image import pdfinfo_from_bytes
        from pdf2image.exceptions import PDFInfoNotInstalledError

        ensure_pdf_header(pdf_bytes)
        try:
            return int(pdfinfo_from_bytes(pdf_bytes).get("Pages", 0))
        except PDFInfoNotInstalledError as e:
            raise PDFConversionError(POPPLER_MISSING_MESSAGE) from e
        except Exception as e:
            logger.warning("pdfinfo could not read the document: %s", e)
            raise PDFConversionError(f"Could not get page count: {e}") from e

    def convert_pdf_to_images(
        self,
        pdf_bytes: bytes,
        first_page: int | None = None,
        last_page: int | None = None,
    ) -> list[Image.Image]:
        """
        Render a page range (1-indexed, inclusive) to PIL images.

        Raises:
            PDFConversionError: The document could not be rendered.
        """
        from pdf2image import convert_from_bytes
        from pdf2image.exceptions import (
            PDFInfoNotInstalledError,
            PDFPageCountError,
            PDFSyntaxError,
        )

        ensure_pdf_header(pdf_bytes)
        logger.info("Rendering PDF pages %s-%s at %d dpi", first_page or 1, last_page or "end", self.dpi)

        try:
            images = convert_from_bytes(
                pdf_bytes,
                dpi=self.dpi,
                first_page=first_page,
                last_page=last_page,
                thread_count=2,
            )
        except PDFInfoNotInstalledError as e:
            raise PDFConversionError(POPPLER_MISSING_MESSAGE) from e
        except PDFPageCountError as e:
            raise PDFConversionError(f"Could not determine PDF page count: {e}") from e
        except PDFSyntaxError as e:
            raise PDFConversionError(f"Invalid or corrupted PDF file: {e}") from e
        except Exception as e:
            logger.exception("PDF rendering failed")
            raise PDFConversionError(f"PDF conversion failed: {e}") from e

        logger.info("Rendered %d page image(s)", len(images))
        return images

    def extract_page_texts(self, pdf_bytes: bytes, max_pages: int | None = None) -> list[str]:
        """
        Text layer of each page in order; empty strings for pages without one.

        Raises:
            PDFTextExtractionError: The document could not be opened or read.
        """
        import fitz  # PyMuPDF

        try:
            with fitz.open(stream=pdf_bytes, filetype="pdf") as document:
                count = document.page_count if max_pages is None else min(document.page_count, max_pages)
                return [document.load_page(index).get_text("text") for index in range(count)]
        except Exception as e:
            logger.warning("Could not extract PDF text: %s", e)
            raise PDFTextExtractionError(f"Failed to extract text from PDF: {e}") from e

    def image_to_bytes(
        self, image: Image.Image, format: str | None = None, quality: int | None = None
    ) -> bytes:
        """Encode a rendered page; format and quality default to the service settings."""
        encoding = (format or self.image_format).upper()
        options: dict = {"format": encoding}
        if encoding in ("JPEG", "JPG", "WEBP"):
            options["quality"] = quality or self.quality
            if image.mode not in ("RGB", "L"):
                image = image.convert("RGB")

        buffer = io.BytesIO()
        image.save(buffer, **options)
        return buffer.getvalue()


_pdf_service: PDFService | None = None


def get_pdf_service() -> PDFService:
    """Shared PDFService configured from settings."""
    global _pdf_service
    if _pdf_service is None:
        from ..config import get_settings

        _pdf_service = PDFService(dpi=get_settings().pdf_render_dpi)
    return _pdf_service
