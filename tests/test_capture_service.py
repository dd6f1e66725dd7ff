"""Capture Resource Manager: capture, tracking, and idempotent cleanup."""

import errno
import os
import re

import pytest
from PIL import Image

from conftest import FakeScreenBackend
from shunyaku.capture_service import CaptureService, analyze_capture_error
from shunyaku.errors import (
    KIND_CAPTURE,
    KIND_ENUMERATION,
    KIND_FILE_SYSTEM,
    KIND_NOT_IMPLEMENTED,
    KIND_SOURCE_NOT_FOUND,
    SEVERITY_ERROR,
    CaptureError,
)


async def test_capture_source_writes_tracked_png(capture_service, tmp_path):
    artifact = await capture_service.capture_source("screen:2")

    assert artifact.source_id == "screen:2"
    assert artifact.display_name == "Screen 2"
    assert os.path.dirname(artifact.file_path) == str(tmp_path / "cache")
    assert re.fullmatch(r"screenshot_\d+_[0-9a-f]{6}\.png", os.path.basename(artifact.file_path))
    assert capture_service.is_tracked(artifact.file_path)
    with Image.open(artifact.file_path) as img:
        assert img.format == "PNG"


async def test_capture_without_id_uses_first_source(capture_service, backend):
    artifact = await capture_service.capture_source()
    assert artifact.source_id == "screen:1"
    assert backend.capture_calls == [("screen:1", False)]


async def test_unique_file_names(capture_service):
    first = await capture_service.capture_source()
    second = await capture_service.capture_source()
    assert first.file_path != second.file_path
    assert len(capture_service.tracked_files) == 2


async def test_unknown_source_is_not_found(capture_service, backend):
    with pytest.raises(CaptureError) as exc_info:
        await capture_service.capture_source("screen:9")
    assert exc_info.value.kind == KIND_SOURCE_NOT_FOUND
    assert backend.capture_calls == []


async def test_capture_high_resolution_prefix(capture_service, backend):
    artifact = await capture_service.capture_high_resolution("screen:1")
    assert os.path.basename(artifact.file_path).startswith("screenshot_hires_")
    assert backend.capture_calls == [("screen:1", True)]


async def test_capture_all_aggregates_partial_failure(tmp_path):
    backend = FakeScreenBackend(count=3, failing=("screen:2",))
    service = CaptureService(str(tmp_path / "cache"), backend=backend)

    result = await service.capture_all()

    assert len(result.succeeded) == 2
    assert len(result.failed) == 1
    assert result.failed[0].source_id == "screen:2"
    assert result.failed[0].error.kind == KIND_CAPTURE
    assert "went away" in str(result.failed[0].error.cause)
    assert {a.source_id for a in result.succeeded} == {"screen:1", "screen:3"}


async def test_capture_failure_keeps_cause(tmp_path):
    backend = FakeScreenBackend(count=1, failing=("screen:1",))
    service = CaptureService(str(tmp_path / "cache"), backend=backend)
    with pytest.raises(CaptureError) as exc_info:
        await service.capture_source()
    assert exc_info.value.kind == KIND_CAPTURE
    assert isinstance(exc_info.value.cause, RuntimeError)
    assert service.tracked_files == set()


async def test_enumeration_denied(capture_service, backend):
    backend.enumerate_error = PermissionError("screen recording not allowed")
    with pytest.raises(CaptureError) as exc_info:
        await capture_service.list_sources()
    assert exc_info.value.kind == KIND_ENUMERATION
    assert isinstance(exc_info.value.cause, PermissionError)


async def test_capture_region_not_implemented(capture_service):
    with pytest.raises(CaptureError) as exc_info:
        await capture_service.capture_region((0, 0, 100, 100))
    assert exc_info.value.kind == KIND_NOT_IMPLEMENTED


async def test_delete_temp_file_is_idempotent(capture_service):
    artifact = await capture_service.capture_source()

    capture_service.delete_temp_file(artifact.file_path)
    capture_service.delete_temp_file(artifact.file_path)

    assert not os.path.exists(artifact.file_path)
    assert not capture_service.is_tracked(artifact.file_path)


async def test_delete_file_already_gone(capture_service):
    artifact = await capture_service.capture_source()
    os.remove(artifact.file_path)

    capture_service.delete_temp_file(artifact.file_path)
    assert not capture_service.is_tracked(artifact.file_path)


def test_delete_ignores_untracked_paths(capture_service, tmp_path):
    other = tmp_path / "keep.png"
    other.write_bytes(b"not ours")

    capture_service.delete_temp_file(str(other))
    assert other.exists()


async def test_cleanup_all(capture_service):
    paths = [(await capture_service.capture_source()).file_path for _ in range(3)]

    capture_service.cleanup_all()

    assert capture_service.tracked_files == set()
    assert not any(os.path.exists(p) for p in paths)


def test_analyze_capture_errors():
    analysis = analyze_capture_error(CaptureError("denied", kind=KIND_ENUMERATION))
    assert analysis.kind == KIND_ENUMERATION
    assert analysis.severity == SEVERITY_ERROR
    assert not analysis.retryable
    assert analysis.alternatives

    assert analyze_capture_error(CaptureError("gone", kind=KIND_SOURCE_NOT_FOUND)).retryable is False
    assert analyze_capture_error(CaptureError("disk", kind=KIND_FILE_SYSTEM)).retryable is True
    assert analyze_capture_error(RuntimeError("glitch")).kind == KIND_CAPTURE


class _DiskFullFile:
    def __init__(self, path, mode):
        self._file = open(path, mode)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self._file.close()

    def close(self):
        self._file.close()

    def write(self, data):
        raise OSError(errno.ENOSPC, "No space left on device")


async def test_failed_write_leaves_no_partial_file(capture_service, tmp_path, monkeypatch):
    monkeypatch.setattr("shunyaku.capture_service.open", _DiskFullFile, raising=False)

    with pytest.raises(CaptureError) as exc_info:
        await capture_service.capture_source()

    assert exc_info.value.kind == KIND_FILE_SYSTEM
    assert capture_service.tracked_files == set()
    assert os.listdir(tmp_path / "cache") == []
