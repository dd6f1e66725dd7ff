"""OCR worker process and the parent-side request/response channel.

The OCR engine runs in a separate process (spawn context) so a crash or
a runaway recognition cannot take the caller down with it. The parent
talks to it over two multiprocessing queues:

- requests:  ``{"id", "command", ...}`` with commands initialize,
  recognize and ping; ``None`` asks the worker to exit
- responses: ``{"id", "ok", "result" | "error": {"code", "message"}}``

Every request carries a correlation id and its own timeout. A reader
thread in the parent resolves the matching future; responses whose
caller already gave up are dropped.

The engine is loaded inside the worker from a dotted path, so tests can
swap Tesseract for a fake without touching this module.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import importlib
import logging
import multiprocessing as mp
import os
import queue
import shlex
import threading
import time
import uuid
from collections import OrderedDict

import pytesseract
from PIL import Image, UnidentifiedImageError

from shunyaku.errors import (
    KIND_FILE_NOT_FOUND,
    KIND_MEMORY_ERROR,
    KIND_TIMEOUT,
    KIND_UNSUPPORTED_FORMAT,
    KIND_WORKER_CRASHED,
    OCRError,
)

logger = logging.getLogger(__name__)

DEFAULT_ENGINE = "shunyaku.ocr_worker.TesseractEngine"

# PSM 6: single uniform block of text. OEM 1: LSTM only.
_TESSERACT_CONFIG = "--psm 6 --oem 1 -c preserve_interword_spaces=1"

# Reader thread poll interval while waiting for responses.
_POLL_SECONDS = 0.2


# ---------------------------------------------------------------------------
# Engine (runs inside the worker process)
# ---------------------------------------------------------------------------

class TesseractEngine:
    def __init__(self) -> None:
        self._tessdata_path: str | None = None

    def initialize(self, tessdata_path: str | None) -> None:
        if tessdata_path:
            os.makedirs(tessdata_path, exist_ok=True)
        self._tessdata_path = tessdata_path
        # Raises TesseractNotFoundError when the binary is missing.
        version = pytesseract.get_tesseract_version()
        logger.info("Tesseract %s ready (tessdata=%s)", version, tessdata_path)

    def recognize(self, image_path: str, language: str) -> dict:
        if not os.path.exists(image_path):
            raise FileNotFoundError(f"Image file not found: {image_path}")
        with Image.open(image_path) as img:
            img.load()
            data = pytesseract.image_to_data(
                img,
                lang=language,
                config=self._config(language),
                output_type=pytesseract.Output.DICT,
            )
        return build_ocr_result(data, language)

    def _config(self, language: str) -> str:
        config = _TESSERACT_CONFIG
        # Only point at our tessdata dir when it holds every requested language;
        # otherwise let Tesseract use its system data.
        if self._tessdata_path and all(
            os.path.isfile(os.path.join(self._tessdata_path, f"{lang}.traineddata"))
            for lang in language.split("+")
        ):
            config += f" --tessdata-dir {shlex.quote(self._tessdata_path)}"
        return config


def _clamp_confidence(value: float) -> float:
    return float(min(100.0, max(0.0, value)))


def build_ocr_result(data: dict, language: str) -> dict:
    """Turn pytesseract ``image_to_data`` output into an OCR result dict.

    Confidence is the mean word confidence, clamped to [0, 100]. An image
    with no recognizable words yields empty text and confidence 0.
    """
    words = []
    lines: OrderedDict[tuple, list[str]] = OrderedDict()
    blocks: OrderedDict[int, dict] = OrderedDict()

    for i, raw_text in enumerate(data.get("text", [])):
        text = (raw_text or "").strip()
        try:
            conf = float(data["conf"][i])
        except (TypeError, ValueError):
            conf = -1.0
        if not text or conf < 0:
            continue

        x0, y0 = int(data["left"][i]), int(data["top"][i])
        x1, y1 = x0 + int(data["width"][i]), y0 + int(data["height"][i])
        conf = _clamp_confidence(conf)
        words.append({
            "text": text,
            "confidence": conf,
            "bbox": {"x0": x0, "y0": y0, "x1": x1, "y1": y1},
        })

        block_num = int(data["block_num"][i])
        line_key = (block_num, int(data["par_num"][i]), int(data["line_num"][i]))
        lines.setdefault(line_key, []).append(text)

        block = blocks.setdefault(block_num, {
            "confs": [], "bbox": {"x0": x0, "y0": y0, "x1": x1, "y1": y1},
        })
        block["confs"].append(conf)
        bb = block["bbox"]
        bb["x0"], bb["y0"] = min(bb["x0"], x0), min(bb["y0"], y0)
        bb["x1"], bb["y1"] = max(bb["x1"], x1), max(bb["y1"], y1)

    block_lines: OrderedDict[int, list[str]] = OrderedDict()
    for (block_num, _, _), line_words in lines.items():
        block_lines.setdefault(block_num, []).append(" ".join(line_words))

    block_results = [
        {
            "text": "\n".join(block_lines.get(num, [])),
            "confidence": _clamp_confidence(sum(b["confs"]) / len(b["confs"])),
            "bbox": b["bbox"],
        }
        for num, b in blocks.items()
    ]

    confidence = (
        _clamp_confidence(sum(w["confidence"] for w in words) / len(words)) if words else 0.0
    )
    return {
        "text": "\n".join(" ".join(ws) for ws in lines.values()).strip(),
        "confidence": confidence,
        "words": words,
        "blocks": block_results,
        "language": language,
    }


def _error_code(exc: BaseException) -> str | None:
    """Structured code for exceptions we can identify by type."""
    if isinstance(exc, FileNotFoundError):
        return KIND_FILE_NOT_FOUND
    if isinstance(exc, UnidentifiedImageError):
        return KIND_UNSUPPORTED_FORMAT
    if isinstance(exc, MemoryError):
        return KIND_MEMORY_ERROR
    return None


def _load_engine(dotted: str):
    module_path, cls_name = dotted.rsplit(".", 1)
    module = importlib.import_module(module_path)
    return getattr(module, cls_name)()


def _worker_main(engine_path: str, requests_q, responses_q) -> None:
    """Worker process loop. Exits on a ``None`` request."""
    engine = None
    while True:
        message = requests_q.get()
        if message is None:
            break

        req_id = message.get("id")
        command = message.get("command")
        try:
            if command == "initialize":
                if engine is None:
                    candidate = _load_engine(engine_path)
                    candidate.initialize(message.get("tessdata_path"))
                    engine = candidate
                result = {"pid": os.getpid()}
            elif command == "recognize":
                if engine is None:
                    raise RuntimeError("OCR engine not initialized")
                t0 = time.monotonic()
                result = engine.recognize(message["image_path"], message["language"])
                result["confidence"] = _clamp_confidence(result.get("confidence", 0.0))
                result["processing_time_ms"] = int((time.monotonic() - t0) * 1000)
            elif command == "ping":
                result = {"pid": os.getpid(), "initialized": engine is not None}
            else:
                raise ValueError(f"Unknown command: {command}")
            responses_q.put({"id": req_id, "ok": True, "result": result})
        except Exception as e:
            logger.debug("Worker command %s failed: %s", command, e)
            responses_q.put({
                "id": req_id,
                "ok": False,
                "error": {"code": _error_code(e), "message": str(e) or type(e).__name__},
            })

    if engine is not None and hasattr(engine, "close"):
        engine.close()


# ---------------------------------------------------------------------------
# Parent side
# ---------------------------------------------------------------------------

class OcrWorker:
    """Owns one worker process; lazily started, reused until terminate().

    Recognitions are serialized: at most one is in flight per worker.
    """

    def __init__(
        self,
        engine: str = DEFAULT_ENGINE,
        init_timeout: float = 5.0,
        recognize_timeout: float = 30.0,
        start_method: str = "spawn",
    ) -> None:
        self._engine = engine
        self._init_timeout = init_timeout
        self._recognize_timeout = recognize_timeout
        self._ctx = mp.get_context(start_method)

        self._process = None
        self._requests = None
        self._responses = None
        self._reader: threading.Thread | None = None
        self._stopping = threading.Event()
        self._pending: dict[str, concurrent.futures.Future] = {}
        self._pending_lock = threading.Lock()

        self._initialized = False
        self._tessdata_path: str | None = None
        self._init_lock = asyncio.Lock()
        self._recognize_lock = asyncio.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.is_alive()

    async def initialize(self, tessdata_path: str | None = None) -> None:
        async with self._init_lock:
            if self._initialized and self.is_alive:
                return
            if self._process is not None:
                await self._stop_process(graceful=False)

            self._start_process()
            try:
                await self._request(
                    "initialize", {"tessdata_path": tessdata_path}, self._init_timeout,
                )
            except OCRError:
                await self._stop_process(graceful=False)
                raise
            self._tessdata_path = tessdata_path
            self._initialized = True
            logger.info("OCR worker initialized (pid=%s)", self._process.pid)

    async def recognize(self, image_path: str, language: str) -> dict:
        async with self._recognize_lock:
            # A previous holder may have stopped the worker after a timeout.
            if not self._initialized or not self.is_alive:
                await self.initialize(self._tessdata_path)
            try:
                return await self._request(
                    "recognize",
                    {"image_path": image_path, "language": language},
                    self._recognize_timeout,
                )
            except OCRError as e:
                if e.code == KIND_TIMEOUT:
                    # The worker may still be busy; replace it on the next call.
                    logger.warning("OCR recognition timed out, restarting worker")
                    await self._stop_process(graceful=False)
                raise

    async def ping(self, timeout: float = 2.0) -> bool:
        if not self.is_alive:
            return False
        try:
            await self._request("ping", {}, timeout)
        except OCRError:
            return False
        return True

    async def terminate(self) -> None:
        """Release the worker. Safe to call when never initialized."""
        await self._stop_process(graceful=True)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _start_process(self) -> None:
        self._stopping.clear()
        self._requests = self._ctx.Queue()
        self._responses = self._ctx.Queue()
        self._process = self._ctx.Process(
            target=_worker_main,
            args=(self._engine, self._requests, self._responses),
            name="shunyaku-ocr-worker",
            daemon=True,
        )
        self._process.start()
        self._reader = threading.Thread(
            target=self._read_responses,
            args=(self._process, self._responses),
            name="shunyaku-ocr-reader",
            daemon=True,
        )
        self._reader.start()

    async def _stop_process(self, graceful: bool) -> None:
        process = self._process
        if process is None:
            return
        self._stopping.set()
        self._initialized = False

        if graceful and process.is_alive():
            try:
                self._requests.put(None)
            except (OSError, ValueError):
                pass
            await asyncio.to_thread(process.join, 2.0)
        if process.is_alive():
            process.terminate()
            await asyncio.to_thread(process.join, 2.0)

        if self._reader is not None:
            await asyncio.to_thread(self._reader.join, 1.0)
        self._fail_pending(OCRError("OCR worker was terminated", code=KIND_WORKER_CRASHED))

        for q in (self._requests, self._responses):
            q.close()
            q.cancel_join_thread()
        self._process = None
        self._requests = None
        self._responses = None
        self._reader = None
        logger.info("OCR worker terminated")

    async def _request(self, command: str, payload: dict, timeout: float) -> dict:
        if self._requests is None:
            raise OCRError("OCR worker is not running", code=KIND_WORKER_CRASHED)
        req_id = uuid.uuid4().hex
        future: concurrent.futures.Future = concurrent.futures.Future()
        with self._pending_lock:
            self._pending[req_id] = future

        try:
            self._requests.put({"id": req_id, "command": command, **payload})
            response = await asyncio.wait_for(asyncio.wrap_future(future), timeout)
        except asyncio.TimeoutError as e:
            raise OCRError(
                f"OCR worker {command} timeout after {timeout:g}s",
                code=KIND_TIMEOUT, kind=KIND_TIMEOUT, cause=e,
            ) from e
        finally:
            with self._pending_lock:
                self._pending.pop(req_id, None)

        if not response["ok"]:
            error = response.get("error") or {}
            raise OCRError(error.get("message", "OCR worker error"), code=error.get("code"))
        return response["result"]

    def _read_responses(self, process, responses) -> None:
        while True:
            try:
                message = responses.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                if self._stopping.is_set():
                    return
                if not process.is_alive():
                    self._initialized = False
                    logger.error("OCR worker exited unexpectedly (exit code %s)", process.exitcode)
                    self._fail_pending(OCRError(
                        f"OCR worker exited unexpectedly (exit code {process.exitcode})",
                        code=KIND_WORKER_CRASHED,
                    ))
                    return
                continue
            except (EOFError, OSError, ValueError):
                return

            with self._pending_lock:
                future = self._pending.pop(message.get("id"), None)
            if future is None:
                logger.debug("Dropping late OCR response %s", message.get("id"))
                continue
            try:
                future.set_result(message)
            except concurrent.futures.InvalidStateError:
                logger.debug("OCR caller already gave up on %s", message.get("id"))

    def _fail_pending(self, error: OCRError) -> None:
        with self._pending_lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for future in pending:
            try:
                future.set_exception(error)
            except concurrent.futures.InvalidStateError:
                pass
