"""OCR worker process: lifecycle, timeouts, crash isolation, result building.

The process tests spawn a real worker running ``fake_engines.FakeEngine``.
"""

import asyncio

import pytest

from shunyaku.errors import (
    KIND_FILE_NOT_FOUND,
    KIND_TIMEOUT,
    KIND_WORKER_CRASHED,
    OCRError,
)
from shunyaku.ocr_worker import OcrWorker, TesseractEngine, build_ocr_result

FAKE_ENGINE = "fake_engines.FakeEngine"

# Spawning an interpreter can be slow on CI; only the timeout tests use short windows.
BOOT_TIMEOUT = 30.0


def _tesseract_data(words):
    """Build an ``image_to_data`` dict from (text, conf, block, line, left) tuples."""
    data = {k: [] for k in ("text", "conf", "left", "top", "width", "height",
                            "block_num", "par_num", "line_num")}
    for text, conf, block, line, left in words:
        data["text"].append(text)
        data["conf"].append(conf)
        data["left"].append(left)
        data["top"].append(10 * line)
        data["width"].append(40)
        data["height"].append(12)
        data["block_num"].append(block)
        data["par_num"].append(1)
        data["line_num"].append(line)
    return data


# ---------------------------------------------------------------------------
# Result building
# ---------------------------------------------------------------------------

def test_build_result_joins_lines_and_averages_confidence():
    data = _tesseract_data([
        ("", -1, 1, 1, 0),
        ("Hello", 90, 1, 1, 0),
        ("World", 80, 1, 1, 50),
        ("Again", 70, 2, 1, 0),
    ])
    result = build_ocr_result(data, "eng")

    assert result["text"] == "Hello World\nAgain"
    assert result["confidence"] == pytest.approx(80.0)
    assert [w["text"] for w in result["words"]] == ["Hello", "World", "Again"]
    assert len(result["blocks"]) == 2
    assert result["blocks"][0]["text"] == "Hello World"
    assert result["blocks"][0]["bbox"] == {"x0": 0, "y0": 10, "x1": 90, "y1": 22}
    assert result["language"] == "eng"


def test_build_result_without_text_has_zero_confidence():
    data = _tesseract_data([("", -1, 1, 1, 0), ("   ", 95, 1, 1, 0)])
    result = build_ocr_result(data, "jpn")
    assert result["text"] == ""
    assert result["confidence"] == 0.0
    assert result["words"] == []


def test_build_result_confidence_is_clamped():
    data = _tesseract_data([("odd", "130.5", 1, 1, 0)])
    result = build_ocr_result(data, "eng")
    assert 0 <= result["confidence"] <= 100


def test_tessdata_dir_only_when_all_languages_present(tmp_path):
    (tmp_path / "eng.traineddata").write_bytes(b"x")
    engine = TesseractEngine()
    engine._tessdata_path = str(tmp_path)

    assert "--tessdata-dir" in engine._config("eng")
    assert "--tessdata-dir" not in engine._config("eng+jpn")
    assert "--psm 6" in engine._config("jpn")


# ---------------------------------------------------------------------------
# Worker process
# ---------------------------------------------------------------------------

async def test_terminate_without_initialize_is_safe():
    worker = OcrWorker(engine=FAKE_ENGINE)
    await worker.terminate()
    assert not worker.is_alive


async def test_initialize_is_idempotent(tmp_path):
    worker = OcrWorker(engine=FAKE_ENGINE, init_timeout=BOOT_TIMEOUT)
    try:
        await worker.initialize(str(tmp_path))
        pid = worker._process.pid
        await worker.initialize(str(tmp_path))
        assert worker._process.pid == pid
        assert worker.is_initialized
        assert await worker.ping()
    finally:
        await worker.terminate()
    assert not worker.is_alive
    assert not worker.is_initialized


async def test_recognize_initializes_lazily_and_clamps(tmp_path):
    worker = OcrWorker(engine=FAKE_ENGINE, init_timeout=BOOT_TIMEOUT)
    try:
        result = await worker.recognize(str(tmp_path / "overconfident.png"), "eng")
        assert worker.is_initialized
        assert result["text"] == "Hello World"
        assert 0 <= result["confidence"] <= 100
        assert result["processing_time_ms"] >= 0
    finally:
        await worker.terminate()


async def test_structured_error_code(tmp_path):
    worker = OcrWorker(engine=FAKE_ENGINE, init_timeout=BOOT_TIMEOUT)
    try:
        with pytest.raises(OCRError) as exc_info:
            await worker.recognize(str(tmp_path / "missing.png"), "eng")
        assert exc_info.value.code == KIND_FILE_NOT_FOUND

        with pytest.raises(OCRError) as exc_info:
            await worker.recognize(str(tmp_path / "boom.png"), "eng")
        assert exc_info.value.code is None
        assert "engine exploded" in str(exc_info.value)

        # The worker survives engine errors.
        assert await worker.ping()
    finally:
        await worker.terminate()


async def test_initialize_timeout():
    worker = OcrWorker(engine="fake_engines.SlowInitEngine", init_timeout=0.5)
    with pytest.raises(OCRError) as exc_info:
        await worker.initialize(None)
    assert exc_info.value.code == KIND_TIMEOUT
    assert not worker.is_alive
    await worker.terminate()


async def test_recognize_timeout_replaces_worker(tmp_path):
    worker = OcrWorker(engine=FAKE_ENGINE, init_timeout=BOOT_TIMEOUT, recognize_timeout=1.0)
    try:
        await worker.initialize(None)
        with pytest.raises(OCRError) as exc_info:
            await worker.recognize(str(tmp_path / "slow.png"), "eng")
        assert exc_info.value.code == KIND_TIMEOUT
        assert not worker.is_alive

        result = await worker.recognize(str(tmp_path / "fine.png"), "eng")
        assert result["text"] == "Hello World"
    finally:
        await worker.terminate()


async def test_crash_fails_pending_request(tmp_path):
    worker = OcrWorker(engine=FAKE_ENGINE, init_timeout=BOOT_TIMEOUT)
    try:
        await worker.initialize(None)
        with pytest.raises(OCRError) as exc_info:
            await worker.recognize(str(tmp_path / "crash.png"), "eng")
        assert exc_info.value.code == KIND_WORKER_CRASHED
        assert not worker.is_initialized

        # Next call brings up a fresh worker.
        result = await worker.recognize(str(tmp_path / "fine.png"), "eng")
        assert result["text"] == "Hello World"
    finally:
        await worker.terminate()


async def test_recognition_queued_behind_timeout_gets_fresh_worker(tmp_path):
    worker = OcrWorker(engine=FAKE_ENGINE, init_timeout=BOOT_TIMEOUT, recognize_timeout=1.0)
    try:
        await worker.initialize(None)
        slow = asyncio.create_task(worker.recognize(str(tmp_path / "slow.png"), "eng"))
        await asyncio.sleep(0.05)
        fine = asyncio.create_task(worker.recognize(str(tmp_path / "fine.png"), "eng"))

        slow_result, fine_result = await asyncio.gather(slow, fine, return_exceptions=True)

        assert isinstance(slow_result, OCRError)
        assert slow_result.code == KIND_TIMEOUT
        assert fine_result["text"] == "Hello World"
        assert worker.is_alive
    finally:
        await worker.terminate()


async def test_request_without_process_is_typed_error():
    worker = OcrWorker(engine=FAKE_ENGINE)
    with pytest.raises(OCRError) as exc_info:
        await worker._request("ping", {}, 1.0)
    assert exc_info.value.code == KIND_WORKER_CRASHED
