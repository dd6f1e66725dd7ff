"""Capture Resource Manager: screen enumeration, capture, and temp-file lifetime.

Every screenshot is written to a uniquely named PNG under the cache
directory and recorded in a tracked set. A tracked path stays tracked
until it has actually been removed from disk; deletion is idempotent and
never raises, so cleanup can run on any exit path.

Screen access goes through a small backend protocol. The default backend
reads monitors through mss; tests inject a fake.
"""

from __future__ import annotations

import asyncio
import io
import logging
import os
import secrets
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from mss import mss
from mss.tools import to_png
from PIL import Image

from shunyaku.errors import (
    KIND_CAPTURE,
    KIND_ENUMERATION,
    KIND_FILE_SYSTEM,
    KIND_NOT_IMPLEMENTED,
    KIND_SOURCE_NOT_FOUND,
    SEVERITY_ERROR,
    SEVERITY_WARNING,
    CaptureError,
    ErrorAnalysis,
    elapsed_ms,
)

logger = logging.getLogger(__name__)

THUMBNAIL_SIZE = (200, 150)


@dataclass
class CaptureSource:
    id: str
    name: str
    thumbnail: bytes | None = None  # PNG


@dataclass
class CaptureArtifact:
    source_id: str
    display_name: str
    file_path: str
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class CaptureFailure:
    source_id: str
    error: CaptureError


@dataclass
class CaptureAllResult:
    succeeded: list[CaptureArtifact] = field(default_factory=list)
    failed: list[CaptureFailure] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Screen backends
# ---------------------------------------------------------------------------

class ScreenBackend(Protocol):
    """Host screen-capture API."""

    def enumerate_sources(self, with_thumbnails: bool = True) -> list[CaptureSource]:
        ...

    def capture_bitmap(self, source_id: str, high_resolution: bool = False) -> bytes:
        """Return PNG-encoded pixels of one source."""
        ...


class MssScreenBackend:
    """Monitors as reported by mss. Index 0 (the virtual desktop) is skipped."""

    # Standard captures are bounded to this size; high-resolution ones are native.
    STANDARD_MAX_SIZE = (1920, 1080)

    def enumerate_sources(self, with_thumbnails: bool = True) -> list[CaptureSource]:
        sources = []
        with mss() as sct:
            for index, monitor in enumerate(sct.monitors[1:], start=1):
                thumb = None
                if with_thumbnails:
                    shot = sct.grab(monitor)
                    img = Image.frombytes("RGB", shot.size, shot.rgb)
                    img.thumbnail(THUMBNAIL_SIZE)
                    buf = io.BytesIO()
                    img.save(buf, format="PNG")
                    thumb = buf.getvalue()
                sources.append(CaptureSource(
                    id=f"screen:{index}",
                    name=f"Screen {index} ({monitor['width']}x{monitor['height']})",
                    thumbnail=thumb,
                ))
        return sources

    def capture_bitmap(self, source_id: str, high_resolution: bool = False) -> bytes:
        index = int(source_id.split(":", 1)[1])
        with mss() as sct:
            shot = sct.grab(sct.monitors[index])
        if high_resolution:
            return to_png(shot.rgb, shot.size)

        img = Image.frombytes("RGB", shot.size, shot.rgb)
        img.thumbnail(self.STANDARD_MAX_SIZE, Image.Resampling.LANCZOS)
        buf = io.BytesIO()
        img.save(buf, format="PNG")
        return buf.getvalue()


# ---------------------------------------------------------------------------
# Capture Resource Manager
# ---------------------------------------------------------------------------

class CaptureService:
    def __init__(self, cache_dir: str, backend: ScreenBackend | None = None) -> None:
        self._cache_dir = cache_dir
        self._backend = backend or MssScreenBackend()
        self._tracked: set[str] = set()
        self._lock = threading.Lock()

    @property
    def cache_dir(self) -> str:
        return self._cache_dir

    @property
    def tracked_files(self) -> set[str]:
        with self._lock:
            return set(self._tracked)

    def is_tracked(self, path: str) -> bool:
        with self._lock:
            return path in self._tracked

    # ------------------------------------------------------------------
    # Enumeration
    # ------------------------------------------------------------------

    async def list_sources(self, with_thumbnails: bool = True) -> list[CaptureSource]:
        try:
            return await asyncio.to_thread(self._backend.enumerate_sources, with_thumbnails)
        except Exception as e:
            logger.error("Failed to enumerate screen sources: %s", e)
            raise CaptureError(
                "Could not list the available screens", kind=KIND_ENUMERATION, cause=e,
            ) from e

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    async def capture_source(self, source_id: str | None = None) -> CaptureArtifact:
        """Capture one source; the first enumerated source when no id is given."""
        source = await self._resolve_source(source_id)
        return await self._capture(source, high_resolution=False)

    async def capture_high_resolution(self, source_id: str) -> CaptureArtifact:
        source = await self._resolve_source(source_id)
        return await self._capture(source, high_resolution=True)

    async def capture_all(self) -> CaptureAllResult:
        """Capture every source concurrently, collecting per-source failures."""
        sources = await self.list_sources(with_thumbnails=False)
        outcomes = await asyncio.gather(
            *(self._capture(s, high_resolution=False) for s in sources),
            return_exceptions=True,
        )

        result = CaptureAllResult()
        for source, outcome in zip(sources, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                err = outcome if isinstance(outcome, CaptureError) else CaptureError(
                    f"Capture of {source.name} failed", kind=KIND_CAPTURE, cause=outcome,
                )
                logger.warning("Capture of %s failed: %s", source.name, outcome)
                result.failed.append(CaptureFailure(source_id=source.id, error=err))
            else:
                result.succeeded.append(outcome)

        logger.info(
            "Captured %d of %d screens", len(result.succeeded), len(sources),
        )
        return result

    async def capture_region(self, bounds: tuple[int, int, int, int]) -> CaptureArtifact:
        raise CaptureError(
            "Region capture is not supported", kind=KIND_NOT_IMPLEMENTED,
        )

    async def _resolve_source(self, source_id: str | None) -> CaptureSource:
        sources = await self.list_sources(with_thumbnails=False)
        if not sources:
            raise CaptureError("No capturable screen was found", kind=KIND_SOURCE_NOT_FOUND)
        if source_id is None:
            return sources[0]
        for source in sources:
            if source.id == source_id:
                return source
        raise CaptureError(
            f"Screen {source_id!r} was not found", kind=KIND_SOURCE_NOT_FOUND,
        )

    async def _capture(self, source: CaptureSource, high_resolution: bool) -> CaptureArtifact:
        try:
            png = await asyncio.to_thread(
                self._backend.capture_bitmap, source.id, high_resolution,
            )
        except Exception as e:
            logger.error("Failed to capture %s: %s", source.id, e)
            raise CaptureError(
                f"Could not take a screenshot of {source.name}", kind=KIND_CAPTURE, cause=e,
            ) from e

        prefix = "screenshot_hires" if high_resolution else "screenshot"
        try:
            path = await asyncio.to_thread(self._write_temp_file, prefix, png)
        except OSError as e:
            raise CaptureError(
                "Could not save the screenshot", kind=KIND_FILE_SYSTEM, cause=e,
            ) from e

        logger.info("Screenshot captured: %s", path)
        return CaptureArtifact(
            source_id=source.id, display_name=source.name, file_path=path,
        )

    def _write_temp_file(self, prefix: str, data: bytes) -> str:
        os.makedirs(self._cache_dir, exist_ok=True)
        filename = f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(3)}.png"
        path = os.path.join(self._cache_dir, filename)
        with open(path, "xb") as f:
            try:
                f.write(data)
            except OSError:
                f.close()
                self._remove_partial(path)
                raise
        with self._lock:
            self._tracked.add(path)
        return path

    @staticmethod
    def _remove_partial(path: str) -> None:
        try:
            os.remove(path)
        except OSError as e:
            logger.warning("Failed to remove partial screenshot %s: %s", path, e)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def delete_temp_file(self, path: str) -> None:
        """Remove a tracked file. Never raises."""
        with self._lock:
            if path not in self._tracked:
                return
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to delete temp file %s: %s", path, e)
            return
        with self._lock:
            self._tracked.discard(path)
        logger.debug("Temp file deleted: %s", path)

    def cleanup_all(self) -> None:
        for path in self.tracked_files:
            self.delete_temp_file(path)
        logger.debug("Temp files cleaned up (%d left)", len(self.tracked_files))

    def shutdown(self) -> None:
        self.cleanup_all()


def analyze_capture_error(error: BaseException, started_at: float | None = None) -> ErrorAnalysis:
    kind = getattr(error, "kind", KIND_CAPTURE)
    cause = error.cause if isinstance(error, CaptureError) and error.cause else error

    if kind == KIND_ENUMERATION:
        return ErrorAnalysis(
            kind=kind, severity=SEVERITY_ERROR, retryable=False,
            user_message="Screen sources could not be listed. Screen recording permission may be missing.",
            alternatives=[
                "Grant screen recording permission and try again",
                "Enter the text manually",
            ],
            processing_time_ms=elapsed_ms(started_at), cause=str(cause),
        )
    if kind == KIND_SOURCE_NOT_FOUND:
        return ErrorAnalysis(
            kind=kind, severity=SEVERITY_WARNING, retryable=False,
            user_message="The selected screen is no longer available.",
            alternatives=["Choose another screen", "Reconnect the display and try again"],
            processing_time_ms=elapsed_ms(started_at), cause=str(cause),
        )
    if kind == KIND_NOT_IMPLEMENTED:
        return ErrorAnalysis(
            kind=kind, severity=SEVERITY_ERROR, retryable=False,
            user_message="Region capture is not available.",
            alternatives=["Capture the full screen instead"],
            processing_time_ms=elapsed_ms(started_at), cause=str(cause),
        )
    if kind == KIND_FILE_SYSTEM:
        return ErrorAnalysis(
            kind=kind, severity=SEVERITY_ERROR, retryable=True,
            user_message="The screenshot could not be saved to the cache directory.",
            alternatives=["Free some disk space", "Check permissions of the cache directory"],
            processing_time_ms=elapsed_ms(started_at), cause=str(cause),
        )
    return ErrorAnalysis(
        kind=KIND_CAPTURE, severity=SEVERITY_WARNING, retryable=True,
        user_message="Taking the screenshot failed.",
        alternatives=["Try capturing again", "Enter the text manually"],
        processing_time_ms=elapsed_ms(started_at), cause=str(cause),
    )
