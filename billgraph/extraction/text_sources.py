"""Text sources: turn raw blobs (native text, scanned PDFs) into extraction input.

Docling is imported lazily, only when a PDF actually needs converting, to
keep heavy optional dependencies out of test collection.
"""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Dict, Optional, Protocol

from loguru import logger

from billgraph.errors import ExtractionUnavailable
from billgraph.utils.config import PDFTextConfig

PDF_MIME_TYPE = "application/pdf"


class TextSource(Protocol):
    """Capability: blob -> text. Failures surface as ``ExtractionUnavailable``."""

    def extract_text(self, content: bytes, *, filename: str, mime_type: str) -> str: ...


class PlainTextSource:
    """Decode native-text blobs; undecodable bytes are replaced, never fatal."""

    def extract_text(self, content: bytes, *, filename: str, mime_type: str) -> str:
        return content.decode("utf-8", errors="replace")


class DoclingTextSource:
    """Convert PDFs (including scanned ones, via OCR) to plain text with Docling."""

    def __init__(self, config: Optional[PDFTextConfig] = None) -> None:
        self.config = config or PDFTextConfig()
        self.converter = None

        logger.info(
            f"Initialized DoclingTextSource (lazy Docling). OCR={'enabled' if self.config.ocr_enabled else 'disabled'}"
        )

    def extract_text(self, content: bytes, *, filename: str, mime_type: str) -> str:
        suffix = Path(filename).suffix or ".pdf"
        try:
            self._ensure_converter()
            with tempfile.TemporaryDirectory() as tmp_dir:
                pdf_path = Path(tmp_dir) / f"document{suffix}"
                pdf_path.write_bytes(content)
                result = self.converter.convert(str(pdf_path))
                text = result.document.export_to_text()
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error converting {filename}: {exc}")
            raise ExtractionUnavailable(f"PDF conversion failed for {filename}: {exc}") from exc

        logger.debug(f"Converted {filename}: {len(text)} characters")
        return text

    def _ensure_converter(self) -> None:
        if self.converter is not None:
            return

        from docling.datamodel.base_models import InputFormat
        from docling.datamodel.pipeline_options import PdfPipelineOptions
        from docling.document_converter import DocumentConverter, PdfFormatOption

        pipeline_options = PdfPipelineOptions()
        pipeline_options.do_ocr = self.config.ocr_enabled
        pipeline_options.do_table_structure = self.config.extract_tables

        self.converter = DocumentConverter(
            format_options={InputFormat.PDF: PdfFormatOption(pipeline_options=pipeline_options)}
        )


class CompositeTextSource:
    """Route by MIME type; anything unrouted falls back to plain text decoding."""

    def __init__(
        self,
        routes: Optional[Dict[str, TextSource]] = None,
        fallback: Optional[TextSource] = None,
    ) -> None:
        self.routes: Dict[str, TextSource] = dict(routes or {})
        self.fallback: TextSource = fallback or PlainTextSource()

    @classmethod
    def default(cls, pdf_config: Optional[PDFTextConfig] = None) -> "CompositeTextSource":
        return cls(routes={PDF_MIME_TYPE: DoclingTextSource(pdf_config)})

    def extract_text(self, content: bytes, *, filename: str, mime_type: str) -> str:
        source = self.routes.get((mime_type or "").lower(), self.fallback)
        return source.extract_text(content, filename=filename, mime_type=mime_type)
