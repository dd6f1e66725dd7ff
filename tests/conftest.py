"""Shared fixtures: synthetic screenshots and a fake screen backend."""

from __future__ import annotations

import io

import pytest
from PIL import Image, ImageDraw

from shunyaku.capture_service import CaptureService, CaptureSource


def create_text_image(text: str = "Hello World", size=(320, 120), mode: str = "RGB") -> Image.Image:
    """Black text on white, like a plain dialog captured from the screen."""
    img = Image.new("RGB", size, color=(255, 255, 255))
    draw = ImageDraw.Draw(img)
    draw.text((20, size[1] // 3), text, fill=(0, 0, 0))
    return img.convert(mode) if mode != "RGB" else img


def png_bytes(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


class FakeScreenBackend:
    """Screens ``screen:1``..``screen:N``; ids in ``failing`` raise on capture."""

    def __init__(self, count: int = 2, failing: tuple[str, ...] = ()) -> None:
        self.sources = [
            CaptureSource(id=f"screen:{i}", name=f"Screen {i}") for i in range(1, count + 1)
        ]
        self.failing = set(failing)
        self.capture_calls: list[tuple[str, bool]] = []
        self.enumerate_error: Exception | None = None

    def enumerate_sources(self, with_thumbnails: bool = True) -> list[CaptureSource]:
        if self.enumerate_error:
            raise self.enumerate_error
        return list(self.sources)

    def capture_bitmap(self, source_id: str, high_resolution: bool = False) -> bytes:
        self.capture_calls.append((source_id, high_resolution))
        if source_id in self.failing:
            raise RuntimeError(f"display {source_id} went away")
        return png_bytes(create_text_image())


@pytest.fixture
def backend() -> FakeScreenBackend:
    return FakeScreenBackend()


@pytest.fixture
def capture_service(tmp_path, backend) -> CaptureService:
    return CaptureService(str(tmp_path / "cache"), backend=backend)


@pytest.fixture
def image_path(tmp_path) -> str:
    path = tmp_path / "screenshot.png"
    create_text_image().save(path)
    return str(path)
