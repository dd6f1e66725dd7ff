"""Image preprocessing for OCR.

Chain, always in this order (each step can be switched off):

1. Resize by ``scale_factor`` with LANCZOS, aspect ratio preserved and
   both sides capped at ``max_dimension``
2. Greyscale
3. Normalize (contrast stretch, 1st..99th percentile)
4. Sharpen (unsharp mask), optional
5. Denoise (median filter), optional
6. Threshold (binarization; Otsu when no fixed level), optional

The source image is never modified. Results go to a uniquely named PNG
in the preprocessor's own temp directory, or to an in-memory buffer.
"""

from __future__ import annotations

import io
import logging
import math
import os
import secrets
import tempfile
import time
from dataclasses import dataclass, field, replace
from typing import Any, Mapping

import cv2
import numpy as np
from PIL import Image, ImageFilter, ImageOps, UnidentifiedImageError

from shunyaku.errors import (
    KIND_FILE_NOT_FOUND,
    KIND_FILE_TOO_LARGE,
    KIND_MEMORY_ERROR,
    KIND_UNKNOWN,
    KIND_UNSUPPORTED_FORMAT,
    PreprocessError,
)

logger = logging.getLogger(__name__)


SUPPORTED_FORMATS = (".png", ".jpg", ".jpeg", ".bmp", ".tiff", ".webp")
MAX_INPUT_BYTES = 50 * 1024 * 1024

# analyze_image() size heuristics
SMALL_MAX_WIDTH = 300
SMALL_MAX_HEIGHT = 100
LARGE_MIN_SIDE = 1500
HUGE_TOTAL_PIXELS = 40_000_000
# Above this many pixels the default scale factor is dropped to 1.0.
LARGE_TOTAL_PIXELS = 4_000_000

# Noise/blur estimation runs on a copy no larger than this.
_ANALYSIS_MAX_SIDE = 1024
# Immerkaer noise sigma above which an image counts as noisy.
NOISE_SIGMA_THRESHOLD = 8.0
# Laplacian variance below which an image counts as blurry.
BLUR_VARIANCE_THRESHOLD = 50.0

OP_UPSCALE = "upscale"
OP_GREYSCALE = "greyscale"
OP_NORMALIZE = "normalize"
OP_SHARPEN = "sharpen"
OP_DENOISE = "denoise"
OP_THRESHOLD = "threshold"


@dataclass
class PreprocessOptions:
    scale_factor: float = 2.0
    max_dimension: int = 4000
    enable_resize: bool = True
    enable_greyscale: bool = True
    enable_normalize: bool = True
    enable_sharpening: bool = False
    sharpening: float = 1.0
    enable_denoising: bool = False
    denoising_radius: int = 1
    enable_thresholding: bool = False
    threshold: int | None = 128  # None = Otsu


PRESETS: dict[str, dict[str, Any]] = {
    "standard": {"enable_sharpening": True},
    "high_quality": {"enable_sharpening": True, "enable_denoising": True},
    "light": {"enable_greyscale": False, "enable_normalize": False},
}


@dataclass
class ImageSize:
    width: int
    height: int


@dataclass
class PreprocessedImage:
    source_path: str
    output_path: str | None
    original_size: ImageSize
    processed_size: ImageSize
    operations_applied: list[str] = field(default_factory=list)
    buffer: bytes | None = None


@dataclass
class ImageInfo:
    width: int
    height: int
    channels: int
    format: str
    aspect_ratio: float
    total_pixels: int
    recommendations: list[str] = field(default_factory=list)
    noise: bool = False
    quality: str = "normal"


class ImagePreprocessor:
    def __init__(
        self,
        options: PreprocessOptions | None = None,
        temp_dir: str | None = None,
    ) -> None:
        self.options = options or PreprocessOptions()
        self.temp_dir = temp_dir or os.path.join(tempfile.gettempdir(), "shunyaku-ocr-temp")
        self._outputs: set[str] = set()

    def options_for_preset(self, name: str) -> PreprocessOptions:
        if name not in PRESETS:
            raise ValueError(f"Unknown preprocessing preset: {name}")
        return replace(self.options, **PRESETS[name])

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process_for_ocr(
        self,
        source,
        options: PreprocessOptions | None = None,
        output_path: str | None = None,
    ) -> PreprocessedImage:
        """Run the chain on a CaptureArtifact (or plain path) and write a PNG."""
        input_path = getattr(source, "file_path", source)
        opts = options or self.options
        self._validate_input_file(input_path)

        if output_path is None:
            output_path = self._generate_output_path(input_path)
        os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)

        t0 = time.monotonic()
        try:
            with Image.open(input_path) as src:
                src.load()
                original = ImageSize(*src.size)
                target = self._calculate_target_size(original, opts.scale_factor, opts.max_dimension)
                img, operations = self._apply_processing_chain(src, target, opts)
            img.save(output_path, format="PNG")
        except MemoryError as e:
            raise PreprocessError(
                f"Out of memory while preprocessing {input_path}", kind=KIND_MEMORY_ERROR, cause=e,
            ) from e
        except OSError as e:
            raise PreprocessError(
                f"Image preprocessing failed: {e}", kind=KIND_UNKNOWN, cause=e,
            ) from e

        if self._owns(output_path):
            self._outputs.add(output_path)
        processed = ImageSize(*img.size)
        logger.info(
            "Preprocessed %s -> %s: %dx%d -> %dx%d %s (%dms)",
            os.path.basename(input_path), os.path.basename(output_path),
            original.width, original.height, processed.width, processed.height,
            operations, int((time.monotonic() - t0) * 1000),
        )
        return PreprocessedImage(
            source_path=input_path,
            output_path=output_path,
            original_size=original,
            processed_size=processed,
            operations_applied=operations,
        )

    def process_to_buffer(self, source, options: PreprocessOptions | None = None) -> PreprocessedImage:
        input_path = getattr(source, "file_path", source)
        opts = options or self.options
        self._validate_input_file(input_path)

        try:
            with Image.open(input_path) as src:
                src.load()
                original = ImageSize(*src.size)
                target = self._calculate_target_size(original, opts.scale_factor, opts.max_dimension)
                img, operations = self._apply_processing_chain(src, target, opts)
            buf = io.BytesIO()
            img.save(buf, format="PNG")
        except MemoryError as e:
            raise PreprocessError(
                f"Out of memory while preprocessing {input_path}", kind=KIND_MEMORY_ERROR, cause=e,
            ) from e
        except OSError as e:
            raise PreprocessError(
                f"Image preprocessing failed: {e}", kind=KIND_UNKNOWN, cause=e,
            ) from e

        return PreprocessedImage(
            source_path=input_path,
            output_path=None,
            original_size=original,
            processed_size=ImageSize(*img.size),
            operations_applied=operations,
            buffer=buf.getvalue(),
        )

    def _calculate_target_size(
        self,
        original: ImageSize,
        scale_factor: float,
        max_dimension: int | None = None,
    ) -> ImageSize:
        """Scale, then shrink uniformly so neither side exceeds max_dimension."""
        limit = max_dimension or self.options.max_dimension
        width = original.width * scale_factor
        height = original.height * scale_factor

        longest = max(width, height)
        if longest > limit:
            ratio = limit / longest
            width *= ratio
            height *= ratio

        return ImageSize(
            width=min(limit, max(1, round(width))),
            height=min(limit, max(1, round(height))),
        )

    def _apply_processing_chain(
        self,
        img: Image.Image,
        target: ImageSize,
        options: PreprocessOptions,
    ) -> tuple[Image.Image, list[str]]:
        operations: list[str] = []

        if img.mode not in ("L", "RGB"):
            img = img.convert("RGB")

        if options.enable_resize and (target.width, target.height) != img.size:
            img = img.resize((target.width, target.height), Image.Resampling.LANCZOS)
            operations.append(OP_UPSCALE)

        if options.enable_greyscale:
            img = ImageOps.grayscale(img)
            operations.append(OP_GREYSCALE)

        if options.enable_normalize:
            img = ImageOps.autocontrast(img, cutoff=1)
            operations.append(OP_NORMALIZE)

        if options.enable_sharpening:
            img = img.filter(ImageFilter.UnsharpMask(radius=options.sharpening, percent=150, threshold=3))
            operations.append(OP_SHARPEN)

        if options.enable_denoising:
            size = 2 * max(1, int(options.denoising_radius)) + 1
            img = img.filter(ImageFilter.MedianFilter(size=size))
            operations.append(OP_DENOISE)

        if options.enable_thresholding:
            img = _binarize(img, options.threshold)
            operations.append(OP_THRESHOLD)

        return img, operations

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze_image(self, path: str) -> ImageInfo:
        try:
            with Image.open(path) as img:
                width, height = img.size
                channels = len(img.getbands())
                mode = img.mode
                fmt = (img.format or "").lower()
                sample = img.convert("L")
                sample.thumbnail((_ANALYSIS_MAX_SIDE, _ANALYSIS_MAX_SIDE))
        except FileNotFoundError as e:
            raise PreprocessError(f"Image not found: {path}", kind=KIND_FILE_NOT_FOUND, cause=e) from e
        except UnidentifiedImageError as e:
            raise PreprocessError(
                f"Cannot read image metadata: {path}", kind=KIND_UNSUPPORTED_FORMAT, cause=e,
            ) from e

        gray = np.asarray(sample, dtype=np.uint8)
        noise_sigma = _estimate_noise(gray)
        sharpness = float(cv2.Laplacian(gray, cv2.CV_64F).var()) if gray.size else 0.0
        noisy = noise_sigma > NOISE_SIGMA_THRESHOLD
        blurry = sharpness < BLUR_VARIANCE_THRESHOLD

        total = width * height
        recommendations = []
        if width < SMALL_MAX_WIDTH or height < SMALL_MAX_HEIGHT:
            recommendations.append("Image is quite small, consider using higher scale factor")
        if max(width, height) > LARGE_MIN_SIDE:
            recommendations.append("Image is large, consider using lower scale factor")
        if mode in ("L", "LA", "I;16", "1"):
            recommendations.append("Image is already greyscale")
        if total > HUGE_TOTAL_PIXELS:
            recommendations.append("Image is very large, consider reducing scale factor")
        if noisy:
            recommendations.append("Image looks noisy, consider enabling denoising")
        if blurry:
            recommendations.append("Image looks blurry, consider enabling sharpening")

        logger.debug(
            "Analyzed %s: %dx%d ch=%d noise=%.1f sharpness=%.1f",
            path, width, height, channels, noise_sigma, sharpness,
        )
        return ImageInfo(
            width=width,
            height=height,
            channels=channels,
            format=fmt,
            aspect_ratio=width / height if height else 0.0,
            total_pixels=total,
            recommendations=recommendations,
            noise=noisy,
            quality="low" if (noisy or blurry) else "normal",
        )

    def get_optimal_settings(self, image_info: ImageInfo | Mapping[str, Any]) -> PreprocessOptions:
        """Derive options from analyze_image() output (or an equivalent dict)."""
        info = image_info if isinstance(image_info, Mapping) else vars(image_info)
        width = int(info.get("width", 0))
        height = int(info.get("height", 0))
        default_scale = self.options.scale_factor
        settings = replace(self.options)

        if width < SMALL_MAX_WIDTH or height < SMALL_MAX_HEIGHT:
            settings.scale_factor = max(default_scale * 1.5, 3.0)
            settings.enable_sharpening = True
            settings.enable_denoising = True
        elif max(width, height) > LARGE_MIN_SIDE:
            settings.scale_factor = 1.0 if width * height > LARGE_TOTAL_PIXELS else min(default_scale, 2.0)
            settings.enable_denoising = False

        if info.get("noise") or info.get("quality") == "low":
            settings.enable_denoising = True
            settings.denoising_radius = max(2, settings.denoising_radius)
            settings.enable_sharpening = True

        return settings

    # ------------------------------------------------------------------
    # Temp files
    # ------------------------------------------------------------------

    def cleanup_temp_file(self, path: str | None) -> None:
        """Delete one output file; paths outside the temp directory are ignored."""
        if not path:
            return
        if not self._owns(path):
            return
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to clean up temp file %s: %s", path, e)
            return
        self._outputs.discard(path)

    def cleanup_all_temp_files(self) -> None:
        """Delete every output this preprocessor wrote and has not cleaned up yet."""
        for path in sorted(self._outputs):
            self.cleanup_temp_file(path)

    def _owns(self, path: str) -> bool:
        temp_root = os.path.abspath(self.temp_dir)
        return os.path.commonpath([temp_root, os.path.abspath(path)]) == temp_root

    def _validate_input_file(self, path: str) -> None:
        if not os.path.exists(path):
            raise PreprocessError(f"Image file not found: {path}", kind=KIND_FILE_NOT_FOUND)
        if not os.path.isfile(path):
            raise PreprocessError(f"Not a file: {path}", kind=KIND_FILE_NOT_FOUND)

        size = os.path.getsize(path)
        if size > MAX_INPUT_BYTES:
            raise PreprocessError(
                f"File too large: {size} bytes (max: {MAX_INPUT_BYTES})", kind=KIND_FILE_TOO_LARGE,
            )

        ext = os.path.splitext(path)[1].lower()
        if ext not in SUPPORTED_FORMATS:
            raise PreprocessError(f"Unsupported format: {ext}", kind=KIND_UNSUPPORTED_FORMAT)

        try:
            with Image.open(path) as img:
                img.verify()
        except (UnidentifiedImageError, SyntaxError, OSError) as e:
            raise PreprocessError(
                f"Invalid image file: {path}", kind=KIND_UNSUPPORTED_FORMAT, cause=e,
            ) from e

    def _generate_output_path(self, input_path: str) -> str:
        stem = os.path.splitext(os.path.basename(input_path))[0]
        name = f"{stem}_processed_{int(time.time() * 1000)}_{secrets.token_hex(3)}.png"
        return os.path.join(self.temp_dir, name)


def _binarize(img: Image.Image, level: int | None) -> Image.Image:
    gray = img if img.mode == "L" else img.convert("L")
    if level is None:
        arr = np.asarray(gray, dtype=np.uint8)
        _, binary = cv2.threshold(arr, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
        return Image.fromarray(binary)
    return gray.point(lambda p: 255 if p >= level else 0)


def _estimate_noise(gray: np.ndarray) -> float:
    """Immerkaer's fast noise sigma estimate on a greyscale array."""
    h, w = gray.shape[:2]
    if h < 3 or w < 3:
        return 0.0
    kernel = np.array([[1, -2, 1], [-2, 4, -2], [1, -2, 1]], dtype=np.float64)
    conv = cv2.filter2D(gray.astype(np.float64), -1, kernel)[1:-1, 1:-1]
    return float(np.sum(np.abs(conv)) * math.sqrt(math.pi / 2) / (6 * (w - 2) * (h - 2)))
