"""OCR adapter facade: validation, classification, gating, batch, health."""

import os
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import create_text_image
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
    OCRError,
    PreprocessError,
)
from shunyaku.image_preprocessor import ImagePreprocessor
from shunyaku.language_data import LanguageDataManager
from shunyaku.ocr_service import OCRResult, OCRService, analyze_ocr_error, confidence_rating


def _payload(text="Hello World", confidence=85.0, **extra):
    payload = {"text": text, "confidence": confidence, "words": [], "blocks": [],
               "language": "eng", "processing_time_ms": 12}
    payload.update(extra)
    return payload


@pytest.fixture
def worker():
    w = MagicMock()
    w.is_initialized = True
    w.recognize = AsyncMock(return_value=_payload())
    w.initialize = AsyncMock()
    w.ping = AsyncMock(return_value=True)
    w.terminate = AsyncMock()
    return w


@pytest.fixture
def service(tmp_path, worker) -> OCRService:
    tessdata = str(tmp_path / "tessdata")
    return OCRService(
        tessdata,
        worker=worker,
        preprocessor=ImagePreprocessor(temp_dir=str(tmp_path / "processed")),
        language_data=LanguageDataManager(tessdata, session=MagicMock()),
        minimum_confidence=60,
    )


async def test_recognize(service, worker, image_path):
    result = await service.recognize(image_path, "eng")

    worker.recognize.assert_awaited_once_with(image_path, "eng")
    assert result.text == "Hello World"
    assert result.confidence == 85.0
    assert result.processing_time_ms == 12


async def test_recognize_clamps_confidence(service, worker, image_path):
    worker.recognize.return_value = _payload(confidence=-7)
    result = await service.recognize(image_path, "eng")
    assert result.confidence == 0.0


async def test_unsupported_language_never_reaches_worker(service, worker, image_path):
    with pytest.raises(OCRError) as exc_info:
        await service.recognize(image_path, "fra")
    assert exc_info.value.kind == KIND_UNSUPPORTED_LANGUAGE
    assert exc_info.value.analysis.retryable is False
    worker.recognize.assert_not_awaited()


async def test_worker_error_is_classified(service, worker, image_path):
    worker.recognize.side_effect = OCRError("worker died", code=KIND_WORKER_CRASHED)
    with pytest.raises(OCRError) as exc_info:
        await service.recognize(image_path, "eng")
    assert exc_info.value.kind == KIND_WORKER_CRASHED
    assert exc_info.value.analysis.retryable is True


def test_supported_languages(service):
    assert service.get_supported_languages() == ["eng", "jpn", "eng+jpn"]


@pytest.mark.parametrize(
    ("error", "kind"),
    [
        (OCRError("ENOENT: no such file or directory"), KIND_FILE_NOT_FOUND),
        (OCRError("Unsupported format: .gif"), KIND_UNSUPPORTED_FORMAT),
        (OCRError("File too large: 20000000 bytes"), KIND_FILE_TOO_LARGE),
        (OCRError("Out of memory"), KIND_MEMORY_ERROR),
        (OCRError("Processing timeout"), KIND_TIMEOUT),
        (OCRError("something strange"), KIND_UNKNOWN),
        (FileNotFoundError("gone"), KIND_FILE_NOT_FOUND),
        (MemoryError(), KIND_MEMORY_ERROR),
        (TimeoutError(), KIND_TIMEOUT),
        (PreprocessError("bad", kind=KIND_UNSUPPORTED_FORMAT), KIND_UNSUPPORTED_FORMAT),
    ],
)
def test_error_classification(error, kind):
    analysis = analyze_ocr_error(error)
    assert analysis.kind == kind
    assert analysis.user_message
    assert analysis.alternatives
    assert analysis.processing_time_ms >= 0


def test_structured_code_beats_message():
    # Message says timeout, code says file_not_found: the code wins.
    analysis = analyze_ocr_error(OCRError("timeout while reading", code=KIND_FILE_NOT_FOUND))
    assert analysis.kind == KIND_FILE_NOT_FOUND


def test_taxonomy_retryability():
    assert analyze_ocr_error(OCRError("x", code=KIND_FILE_NOT_FOUND)).severity == SEVERITY_ERROR
    assert not analyze_ocr_error(OCRError("x", code=KIND_FILE_NOT_FOUND)).retryable
    assert not analyze_ocr_error(OCRError("x", code=KIND_UNSUPPORTED_FORMAT)).retryable
    assert not analyze_ocr_error(OCRError("x", code=KIND_FILE_TOO_LARGE)).retryable
    assert not analyze_ocr_error(OCRError("x", code=KIND_MEMORY_ERROR)).retryable
    assert analyze_ocr_error(OCRError("x", code=KIND_TIMEOUT)).retryable
    assert analyze_ocr_error(OCRError("x")).retryable


async def test_perform_ocr_flags_low_confidence(service, worker, image_path, tmp_path):
    worker.recognize.return_value = _payload(confidence=45)

    result = await service.perform_ocr(image_path, "eng", minimum_confidence=50)

    assert result.low_confidence
    assert result.confidence == 45
    assert result.preprocessed.operations_applied == ["upscale", "greyscale", "normalize"]
    # Preprocessed image is removed once recognized.
    assert not os.path.exists(result.preprocessed.output_path)


async def test_perform_ocr_above_threshold(service, image_path):
    result = await service.perform_ocr(image_path, "eng")
    assert not result.low_confidence


async def test_perform_ocr_preprocess_failure(service, worker, tmp_path):
    with pytest.raises(OCRError) as exc_info:
        await service.perform_ocr(str(tmp_path / "missing.png"))
    assert exc_info.value.kind == KIND_FILE_NOT_FOUND
    worker.recognize.assert_not_awaited()


async def test_extract_text_validates_file(service, worker, tmp_path):
    path = tmp_path / "shot.webp"
    path.write_bytes(b"RIFF0000WEBP")
    with pytest.raises(OCRError) as exc_info:
        await service.extract_text(str(path))
    assert exc_info.value.kind == KIND_UNSUPPORTED_FORMAT
    worker.recognize.assert_not_awaited()


async def test_extract_text_batch_is_sequential(service, worker, tmp_path):
    paths = []
    for name in ("a.png", "b.png"):
        create_text_image().save(tmp_path / name)
        paths.append(str(tmp_path / name))
    paths.insert(1, str(tmp_path / "missing.png"))

    in_flight = []
    max_in_flight = []

    async def recognize(path, language):
        in_flight.append(path)
        max_in_flight.append(len(in_flight))
        in_flight.remove(path)
        return _payload()

    worker.recognize.side_effect = recognize

    items = await service.extract_text_batch(paths, "eng")

    assert [i.path for i in items] == paths
    assert items[0].result.text == "Hello World"
    assert items[1].result is None
    assert items[1].error.kind == KIND_FILE_NOT_FOUND
    assert items[2].result is not None
    assert max(max_in_flight) == 1
    assert [c.args[0] for c in worker.recognize.await_args_list] == [paths[0], paths[2]]


def test_confidence_ratings():
    assert confidence_rating(95) == "excellent"
    assert confidence_rating(85) == "good"
    assert confidence_rating(75) == "fair"
    assert confidence_rating(65) == "poor"
    assert confidence_rating(30) == "very-poor"


def test_analyze_confidence(service):
    result = OCRResult(
        text="Hello World",
        confidence=55.0,
        words=[{"text": "Hello", "confidence": 90.0}, {"text": "World", "confidence": 20.0}],
        blocks=[{"text": "Hello World", "confidence": 55.0}],
        language="eng",
    )
    analysis = service.analyze_confidence(result)

    assert analysis.rating == "very-poor"
    assert analysis.word_stats["count"] == 2
    assert analysis.word_stats["low_confidence_count"] == 1
    assert analysis.word_stats["min"] == 20.0
    assert analysis.block_stats["average"] == 55.0
    assert analysis.recommendations


async def test_health_check(service, worker, tmp_path):
    tessdata = tmp_path / "tessdata"
    tessdata.mkdir()
    (tessdata / "eng.traineddata").write_bytes(b"x")

    report = await service.perform_health_check()

    assert report["overall"] == "warning"
    assert report["components"]["initialization"]["status"] == "healthy"
    assert report["components"]["language_data"]["missing"] == ["jpn"]
    assert report["components"]["worker"]["alive"] is True
    assert "timestamp" in report


async def test_health_check_dead_worker(service, worker, tmp_path):
    worker.ping.return_value = False
    report = await service.perform_health_check()
    assert report["overall"] == "failed"
    assert report["components"]["worker"]["status"] == "failed"


async def test_shutdown_terminates_worker(service, worker):
    await service.shutdown()
    worker.terminate.assert_awaited_once()
