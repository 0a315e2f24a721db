# ============================================================================
# src/bloodgas_ingestion/extractors/text_extractor.py
# ============================================================================
"""
Free text extraction from blood-gas report photos and scans.

Routing:
1. Images (PNG, JPEG, TIFF, BMP, WEBP, GIF): Tesseract OCR on an enhanced copy
2. PDFs: pypdfium2 embedded text; pages without a text layer are rendered
   and OCR'd

Container type is decided from magic bytes first, then extension and the
declared content type. Recoverable failures come back as
``ExtractionResult(success=False)``; only an unsupported container raises.
"""

import io
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

import numpy as np
import pypdfium2
import pytesseract
from PIL import Image, ImageEnhance, ImageFilter, UnidentifiedImageError

from ..core.enums import DocumentKind, ExtractionMethod
from ..utils.exceptions import UnsupportedDocumentError
from ..utils.logging import get_logger, log_performance
from .text_cleanup import clean_blood_gas_text

IMAGE_EXTENSIONS = {'.png', '.jpg', '.jpeg', '.tiff', '.tif', '.bmp', '.webp', '.gif'}
PDF_EXTENSIONS = {'.pdf'}

StageCallback = Callable[[str, float], None]

DocumentSource = Union[str, Path, bytes]

logger = get_logger(__name__)


@dataclass
class ExtractionResult:
    """Outcome of one free extraction attempt."""
    success: bool
    text: str = ""
    confidence: float = 0.0
    error_message: Optional[str] = None
    method: ExtractionMethod = ExtractionMethod.FREE_OCR
    engine: str = "unknown"
    page_count: int = 0
    processing_time_ms: float = 0.0
    warnings: List[str] = field(default_factory=list)


class TextExtractor:
    """
    Local OCR / embedded-text extraction.

    Tesseract runs synchronously; call ``extract`` through
    ``loop.run_in_executor`` from async code.
    """

    # Below this many characters a PDF page is treated as scanned
    MIN_CHARS_PER_PAGE = 50
    RENDER_DPI = 300

    def __init__(self, tesseract_config: str = "--psm 6", clean_text: bool = True):
        self.tesseract_config = tesseract_config
        self.clean_text = clean_text
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def extract(
        self,
        source: DocumentSource,
        document_kind: DocumentKind = DocumentKind.ARTERIAL,
        content_type: Optional[str] = None,
        on_stage: Optional[StageCallback] = None,
    ) -> ExtractionResult:
        """
        Extract text from an image or PDF.

        Args:
            source: File path or raw bytes
            document_kind: Only used for log labeling
            content_type: Declared MIME type, if known
            on_stage: Receives (stage, fraction) as work advances

        Returns:
            ExtractionResult

        Raises:
            UnsupportedDocumentError: neither an image nor a PDF
        """
        start = time.perf_counter()
        report = on_stage or (lambda stage, fraction: None)

        report("preparing", 0.1)
        data, name = self._read_source(source)
        kind = self._detect_container(data, name, content_type)
        self.logger.info(f"Extracting {document_kind.label} text from {name or 'upload'} ({kind})")

        report("processing", 0.3)
        try:
            if kind == "image":
                result = self._extract_from_image(data)
            else:
                result = self._extract_from_pdf(data)
        except (OSError, UnidentifiedImageError, pypdfium2.PdfiumError,
                pytesseract.TesseractError, pytesseract.TesseractNotFoundError, ValueError) as e:
            self.logger.warning(f"Free extraction failed: {e}")
            result = ExtractionResult(success=False, error_message=str(e))

        report("validating", 0.8)
        if result.success and self.clean_text:
            result.text = clean_blood_gas_text(result.text)
        if result.success and not result.text.strip():
            result.success = False
            result.error_message = result.error_message or "No text found in document"

        result.processing_time_ms = (time.perf_counter() - start) * 1000
        report("complete", 1.0)

        self.logger.info(
            f"Free extraction {'succeeded' if result.success else 'failed'}: "
            f"{len(result.text)} chars, {result.confidence:.2f} confidence, "
            f"{result.processing_time_ms:.0f}ms ({result.engine})"
        )
        return result

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def _read_source(self, source: DocumentSource) -> Tuple[bytes, Optional[str]]:
        if isinstance(source, (bytes, bytearray)):
            return bytes(source), None
        path = Path(source)
        return path.read_bytes(), path.name

    def _detect_container(self, data: bytes, name: Optional[str], content_type: Optional[str]) -> str:
        header = data[:16]

        if header.startswith(b'%PDF'):
            return "pdf"
        # PNG, JPEG, GIF, TIFF (LE/BE), BMP, WEBP
        if (header.startswith(b'\x89PNG')
                or header.startswith(b'\xff\xd8\xff')
                or header.startswith((b'GIF87a', b'GIF89a'))
                or header.startswith((b'II*\x00', b'MM\x00*'))
                or header.startswith(b'BM')
                or (header.startswith(b'RIFF') and header[8:12] == b'WEBP')):
            return "image"

        suffix = Path(name).suffix.lower() if name else ""
        if suffix in PDF_EXTENSIONS or content_type == "application/pdf":
            return "pdf"
        if suffix in IMAGE_EXTENSIONS or (content_type or "").startswith("image/"):
            return "image"

        raise UnsupportedDocumentError(
            f"Unsupported document type: {name or content_type or 'unknown'}"
        )

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def _extract_from_image(self, data: bytes) -> ExtractionResult:
        with Image.open(io.BytesIO(data)) as image:
            image.load()
            text, confidence = self._ocr_with_tesseract(self.enhance_image(image))

        return ExtractionResult(
            success=bool(text.strip()),
            text=text,
            confidence=confidence,
            engine="tesseract",
            page_count=1,
            error_message=None if text.strip() else "OCR produced no text",
        )

    def enhance_image(self, image: Image.Image) -> Image.Image:
        """
        Grayscale, boost contrast, sharpen, and lift the light background
        to white so thin digits survive thresholding.
        """
        if image.mode not in ('RGB', 'L'):
            image = image.convert('RGB')
        gray = image.convert('L') if image.mode == 'RGB' else image

        enhanced = ImageEnhance.Contrast(gray).enhance(1.5)
        enhanced = enhanced.filter(ImageFilter.SHARPEN)

        pixels = np.array(enhanced)
        pixels = np.where(pixels > 180, 255, pixels)
        return Image.fromarray(pixels.astype(np.uint8))

    @log_performance(logger, "Tesseract OCR")
    def _ocr_with_tesseract(self, image: Image.Image) -> Tuple[str, float]:
        """
        OCR one image, keeping Tesseract's line breaks.

        Returns:
            (text, confidence in 0-1)
        """
        data = pytesseract.image_to_data(
            image,
            config=self.tesseract_config,
            output_type=pytesseract.Output.DICT,
        )

        lines = {}
        confidences = []
        for i, conf in enumerate(data['conf']):
            conf = float(conf)
            word = data['text'][i].strip()
            if conf <= 0 or not word:
                continue
            key = (data['block_num'][i], data['par_num'][i], data['line_num'][i])
            lines.setdefault(key, []).append(word)
            confidences.append(conf / 100.0)

        text = "\n".join(" ".join(words) for _, words in sorted(lines.items()))
        confidence = sum(confidences) / len(confidences) if confidences else 0.0
        return text, confidence

    # ------------------------------------------------------------------
    # PDFs
    # ------------------------------------------------------------------

    def _extract_from_pdf(self, data: bytes) -> ExtractionResult:
        pdf = pypdfium2.PdfDocument(data)
        try:
            page_count = len(pdf)
            texts = []
            confidences = []
            warnings = []
            used_ocr = False

            for page_num in range(page_count):
                page = pdf[page_num]
                textpage = page.get_textpage()
                page_text = textpage.get_text_range()
                textpage.close()

                if len(page_text.strip()) >= self.MIN_CHARS_PER_PAGE:
                    texts.append(page_text)
                    confidences.append(0.95)
                else:
                    # Scanned page: render and OCR
                    bitmap = page.render(scale=self.RENDER_DPI / 72.0)
                    image = bitmap.to_pil()
                    ocr_text, ocr_conf = self._ocr_with_tesseract(self.enhance_image(image))
                    used_ocr = True
                    if ocr_text.strip():
                        texts.append(ocr_text)
                        confidences.append(ocr_conf)
                    else:
                        warnings.append(f"Page {page_num + 1}: no text found")
                page.close()
        finally:
            pdf.close()

        text = "\n\n".join(texts)
        return ExtractionResult(
            success=bool(text.strip()),
            text=text,
            confidence=sum(confidences) / len(confidences) if confidences else 0.0,
            engine="pypdfium2+tesseract" if used_ocr else "pypdfium2",
            page_count=page_count,
            warnings=warnings,
            error_message=None if text.strip() else "PDF contains no extractable text",
        )
