"""OCR Engine Adapter facade over the isolated worker.

Validates requests locally (language, file), forwards recognition to the
worker, and classifies every failure into an ErrorAnalysis before it
leaves this module.

Classification order: structured worker codes and exception types first,
then a substring heuristic on the message. The heuristic only exists for
failures that carry no structured information (mostly Tesseract's own
error text) and is not a stable contract.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime

from PIL import UnidentifiedImageError

from shunyaku.errors import (
    KIND_FILE_NOT_FOUND,
    KIND_FILE_TOO_LARGE,
    KIND_MEMORY_ERROR,
    KIND_TIMEOUT,
    KIND_UNKNOWN,
    KIND_UNSUPPORTED_FORMAT,
    KIND_UNSUPPORTED_LANGUAGE,
    KIND_WORKER_CRASHED,
    SEVERITY_ERROR,
    SEVERITY_INFO,
    SEVERITY_WARNING,
    ErrorAnalysis,
    OCRError,
    ShunyakuError,
    elapsed_ms,
)
from shunyaku.image_preprocessor import ImagePreprocessor, PreprocessedImage, PreprocessOptions
from shunyaku.language_data import LanguageDataManager
from shunyaku.ocr_worker import OcrWorker

logger = logging.getLogger(__name__)

SUPPORTED_LANGUAGES = ("eng", "jpn", "eng+jpn")
DEFAULT_LANGUAGE = "eng+jpn"
MINIMUM_CONFIDENCE = 60

MAX_OCR_FILE_BYTES = 10 * 1024 * 1024
OCR_FORMATS = (".png", ".jpg", ".jpeg", ".bmp", ".tiff")

# (severity, retryable, user message, alternatives)
_OCR_TAXONOMY: dict[str, tuple[str, bool, str, list[str]]] = {
    KIND_FILE_NOT_FOUND: (
        SEVERITY_ERROR, False,
        "The screenshot file could not be found.",
        ["Capture the screenshot again"],
    ),
    KIND_UNSUPPORTED_FORMAT: (
        SEVERITY_ERROR, False,
        "The image format is not supported.",
        ["Convert the image to PNG, JPEG or BMP", "Capture the screenshot again"],
    ),
    KIND_FILE_TOO_LARGE: (
        SEVERITY_WARNING, False,
        "The image is too large to recognize.",
        ["Capture a smaller region"],
    ),
    KIND_MEMORY_ERROR: (
        SEVERITY_ERROR, False,
        "Text recognition ran out of memory.",
        ["Close other applications and try again", "Capture a smaller region"],
    ),
    KIND_TIMEOUT: (
        SEVERITY_WARNING, True,
        "Text recognition took too long.",
        ["Capture a smaller region", "Try again"],
    ),
    KIND_UNSUPPORTED_LANGUAGE: (
        SEVERITY_INFO, False,
        "The selected recognition language is not supported.",
        [f"Choose one of: {', '.join(SUPPORTED_LANGUAGES)}"],
    ),
    KIND_WORKER_CRASHED: (
        SEVERITY_WARNING, True,
        "The text recognition engine stopped unexpectedly.",
        ["Try again"],
    ),
    KIND_UNKNOWN: (
        SEVERITY_ERROR, True,
        "Text recognition failed.",
        ["Try again", "Enter the text manually"],
    ),
}

# Fallback only: lowercase substrings seen in unstructured error text.
_MESSAGE_HINTS: list[tuple[tuple[str, ...], str]] = [
    (("enoent", "no such file", "not found"), KIND_FILE_NOT_FOUND),
    (("unsupported format", "cannot identify image", "invalid image"), KIND_UNSUPPORTED_FORMAT),
    (("too large",), KIND_FILE_TOO_LARGE),
    (("out of memory", "cannot allocate", "memoryerror"), KIND_MEMORY_ERROR),
    (("timeout", "timed out"), KIND_TIMEOUT),
]


@dataclass
class OCRResult:
    text: str
    confidence: float
    words: list[dict] = field(default_factory=list)
    blocks: list[dict] = field(default_factory=list)
    language: str = DEFAULT_LANGUAGE
    processing_time_ms: int = 0
    low_confidence: bool = False
    preprocessed: PreprocessedImage | None = field(default=None, repr=False)

    @classmethod
    def from_worker(cls, payload: dict, language: str) -> OCRResult:
        return cls(
            text=payload.get("text", ""),
            confidence=min(100.0, max(0.0, float(payload.get("confidence", 0.0)))),
            words=list(payload.get("words", [])),
            blocks=list(payload.get("blocks", [])),
            language=payload.get("language", language),
            processing_time_ms=int(payload.get("processing_time_ms", 0)),
        )


@dataclass
class ConfidenceAnalysis:
    overall: float
    rating: str
    word_stats: dict
    block_stats: dict
    recommendations: list[str] = field(default_factory=list)


@dataclass
class BatchItem:
    path: str
    result: OCRResult | None = None
    error: ErrorAnalysis | None = None


def confidence_rating(confidence: float) -> str:
    if confidence >= 90:
        return "excellent"
    if confidence >= 80:
        return "good"
    if confidence >= 70:
        return "fair"
    if confidence >= 60:
        return "poor"
    return "very-poor"


def analyze_ocr_error(error: BaseException, started_at: float | None = None) -> ErrorAnalysis:
    """Classify an OCR or preprocessing failure."""
    kind = _structured_kind(error) or _kind_from_message(str(error))
    severity, retryable, message, alternatives = _OCR_TAXONOMY[kind]
    cause = getattr(error, "cause", None) or error
    return ErrorAnalysis(
        kind=kind,
        severity=severity,
        retryable=retryable,
        user_message=message,
        alternatives=list(alternatives),
        processing_time_ms=elapsed_ms(started_at),
        cause=str(cause),
    )


def _structured_kind(error: BaseException) -> str | None:
    code = getattr(error, "code", None)
    if code in _OCR_TAXONOMY:
        return code
    if isinstance(error, ShunyakuError) and error.kind in _OCR_TAXONOMY and error.kind != KIND_UNKNOWN:
        return error.kind
    if isinstance(error, FileNotFoundError):
        return KIND_FILE_NOT_FOUND
    if isinstance(error, UnidentifiedImageError):
        return KIND_UNSUPPORTED_FORMAT
    if isinstance(error, MemoryError):
        return KIND_MEMORY_ERROR
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return KIND_TIMEOUT
    return None


def _kind_from_message(message: str) -> str:
    lowered = message.lower()
    for needles, kind in _MESSAGE_HINTS:
        if any(n in lowered for n in needles):
            return kind
    return KIND_UNKNOWN


class OCRService:
    def __init__(
        self,
        tessdata_path: str,
        worker: OcrWorker | None = None,
        preprocessor: ImagePreprocessor | None = None,
        language_data: LanguageDataManager | None = None,
        minimum_confidence: float = MINIMUM_CONFIDENCE,
        default_language: str = DEFAULT_LANGUAGE,
    ) -> None:
        self.tessdata_path = tessdata_path
        self.minimum_confidence = minimum_confidence
        self.default_language = default_language
        self._worker = worker or OcrWorker()
        self._preprocessor = preprocessor or ImagePreprocessor()
        self._language_data = language_data or LanguageDataManager(tessdata_path)

    @property
    def is_initialized(self) -> bool:
        return self._worker.is_initialized

    async def initialize(self) -> None:
        self._language_data.initialize()
        try:
            await self._worker.initialize(self.tessdata_path)
        except OCRError as e:
            raise self._classified(e, None) from e

    # ------------------------------------------------------------------
    # Languages
    # ------------------------------------------------------------------

    def get_supported_languages(self) -> list[str]:
        return list(SUPPORTED_LANGUAGES)

    def get_available_languages(self) -> list[str]:
        """Languages whose traineddata is present under the tessdata path."""
        return self._language_data.get_installed_languages()

    def validate_language(self, language: str) -> None:
        if language not in SUPPORTED_LANGUAGES:
            analysis = analyze_ocr_error(
                OCRError(f"Unsupported language: {language}", code=KIND_UNSUPPORTED_LANGUAGE),
            )
            raise OCRError(
                f"Unsupported language: {language}",
                code=KIND_UNSUPPORTED_LANGUAGE, analysis=analysis,
            )

    async def ensure_language_available(self, language: str) -> list[str]:
        self.validate_language(language)
        return await asyncio.to_thread(
            self._language_data.ensure_language_data, language.split("+"),
        )

    # ------------------------------------------------------------------
    # Recognition
    # ------------------------------------------------------------------

    async def recognize(self, image_path: str, language: str | None = None) -> OCRResult:
        """One recognition through the worker. Failures are raised classified."""
        language = language or self.default_language
        self.validate_language(language)

        t0 = time.monotonic()
        try:
            payload = await self._worker.recognize(image_path, language)
        except (OCRError, OSError) as e:
            raise self._classified(e, t0) from e

        result = OCRResult.from_worker(payload, language)
        logger.info(
            "OCR %s: %d chars, confidence %.1f (%dms)",
            os.path.basename(image_path), len(result.text), result.confidence,
            result.processing_time_ms,
        )
        return result

    async def extract_text(self, image_path: str, language: str | None = None) -> OCRResult:
        """Recognize an image file as-is, after validating it."""
        t0 = time.monotonic()
        try:
            self._validate_image_file(image_path)
        except OCRError as e:
            raise self._classified(e, t0) from e
        return await self.recognize(image_path, language)

    async def perform_ocr(
        self,
        source,
        language: str | None = None,
        preprocess_options: PreprocessOptions | None = None,
        minimum_confidence: float | None = None,
        keep_processed: bool = False,
    ) -> OCRResult:
        """Preprocess, recognize, and flag results below the confidence gate.

        A low-confidence result is returned, not raised; callers decide
        whether it is worth translating.
        """
        threshold = self.minimum_confidence if minimum_confidence is None else minimum_confidence
        t0 = time.monotonic()
        try:
            processed = await asyncio.to_thread(
                self._preprocessor.process_for_ocr, source, preprocess_options,
            )
        except ShunyakuError as e:
            raise self._classified(e, t0) from e

        try:
            result = await self.recognize(processed.output_path, language)
        finally:
            if not keep_processed:
                self._preprocessor.cleanup_temp_file(processed.output_path)

        result.preprocessed = processed
        result.low_confidence = result.confidence < threshold
        if result.low_confidence:
            logger.info("OCR confidence %.1f below minimum %s", result.confidence, threshold)
        return result

    async def extract_text_batch(self, image_paths: list[str], language: str | None = None) -> list[BatchItem]:
        """Recognize images one after another; failures are collected, not raised."""
        items = []
        for path in image_paths:
            try:
                items.append(BatchItem(path=path, result=await self.extract_text(path, language)))
            except OCRError as e:
                logger.warning("Batch OCR failed for %s: %s", path, e)
                items.append(BatchItem(path=path, error=e.analysis or analyze_ocr_error(e)))
        return items

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze_ocr_error(self, error: BaseException, started_at: float | None = None) -> ErrorAnalysis:
        return analyze_ocr_error(error, started_at)

    def analyze_confidence(self, result: OCRResult) -> ConfidenceAnalysis:
        word_confs = [float(w.get("confidence", 0.0)) for w in result.words]
        block_confs = [float(b.get("confidence", 0.0)) for b in result.blocks]
        low_words = [c for c in word_confs if c < self.minimum_confidence]

        word_stats = {
            "count": len(word_confs),
            "average": sum(word_confs) / len(word_confs) if word_confs else 0.0,
            "min": min(word_confs, default=0.0),
            "max": max(word_confs, default=0.0),
            "low_confidence_count": len(low_words),
        }
        block_stats = {
            "count": len(block_confs),
            "average": sum(block_confs) / len(block_confs) if block_confs else 0.0,
        }

        recommendations = []
        if not result.text.strip():
            recommendations.append("No text was recognized, check that the region contains text")
        elif result.confidence < self.minimum_confidence:
            recommendations.append("Confidence is low, consider capturing a larger or clearer region")
        if word_confs and len(low_words) / len(word_confs) > 0.3:
            recommendations.append("Many words have low confidence, consider enabling sharpening")
        if result.language == "eng+jpn" and result.text and result.text.isascii():
            recommendations.append("Only Latin text was found, the eng language may be faster")

        return ConfidenceAnalysis(
            overall=result.confidence,
            rating=confidence_rating(result.confidence),
            word_stats=word_stats,
            block_stats=block_stats,
            recommendations=recommendations,
        )

    async def perform_health_check(self) -> dict:
        components = {}

        components["initialization"] = {
            "status": "healthy" if self._worker.is_initialized else "warning",
            "initialized": self._worker.is_initialized,
        }

        installed = self.get_available_languages()
        base_languages = [lang for lang in SUPPORTED_LANGUAGES if "+" not in lang]
        missing = [lang for lang in base_languages if lang not in installed]
        if not missing:
            lang_status = "healthy"
        elif len(missing) < len(base_languages):
            lang_status = "warning"
        else:
            lang_status = "failed"
        components["language_data"] = {
            "status": lang_status, "installed": installed, "missing": missing,
        }

        alive = await self._worker.ping()
        if alive:
            worker_status = "healthy"
        elif not self._worker.is_initialized:
            worker_status = "warning"
        else:
            worker_status = "failed"
        components["worker"] = {"status": worker_status, "alive": alive}

        statuses = {c["status"] for c in components.values()}
        if "failed" in statuses:
            overall = "failed"
        elif "warning" in statuses:
            overall = "warning"
        else:
            overall = "healthy"
        return {
            "overall": overall,
            "components": components,
            "timestamp": datetime.now().isoformat(),
        }

    async def shutdown(self) -> None:
        await self._worker.terminate()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _validate_image_file(self, path: str) -> None:
        if not os.path.isfile(path):
            raise OCRError(f"Image file not found: {path}", code=KIND_FILE_NOT_FOUND)
        size = os.path.getsize(path)
        if size > MAX_OCR_FILE_BYTES:
            raise OCRError(
                f"File too large: {size} bytes (max: {MAX_OCR_FILE_BYTES})", code=KIND_FILE_TOO_LARGE,
            )
        ext = os.path.splitext(path)[1].lower()
        if ext not in OCR_FORMATS:
            raise OCRError(f"Unsupported format: {ext}", code=KIND_UNSUPPORTED_FORMAT)

    @staticmethod
    def _classified(error: BaseException, started_at: float | None) -> OCRError:
        analysis = analyze_ocr_error(error, started_at)
        logger.warning("OCR failed (%s): %s", analysis.kind, error)
        return OCRError(
            str(error), code=analysis.kind, kind=analysis.kind,
            cause=getattr(error, "cause", None) or error, analysis=analysis,
        )
