from __future__ import annotations

import os
from dataclasses import dataclass

from PyQt6.QtCore import QSettings

from shunyaku.image_preprocessor import PreprocessOptions


def _default_cache_dir() -> str:
    return os.path.join(os.path.expanduser("~"), ".cache", "Shunyaku")


def _default_tessdata_path() -> str:
    return os.path.join(os.path.expanduser("~"), ".local", "share", "Shunyaku", "tessdata")


def _to_bool(value) -> bool:
    return str(value).lower() in ("true", "1", "yes")


@dataclass
class AppSettings:
    confidence_threshold: int = 60
    ocr_language: str = "eng+jpn"
    target_language: str = "ja"
    source_language: str = ""  # empty = auto-detect
    max_retries: int = 3
    retry_delay: float = 1.0  # seconds, doubled per retry
    max_retry_delay: float = 30.0
    request_timeout: float = 30.0

    # Preprocessing
    scale_factor: float = 2.0
    max_dimension: int = 4000
    enable_sharpening: bool = False
    sharpening: float = 1.0
    enable_denoising: bool = False
    denoising_radius: int = 1
    enable_thresholding: bool = False
    threshold: int = 128

    # OCR worker
    ocr_init_timeout: float = 5.0
    ocr_recognize_timeout: float = 30.0

    cache_dir: str = ""
    tessdata_path: str = ""

    def __post_init__(self) -> None:
        if not self.cache_dir:
            self.cache_dir = _default_cache_dir()
        if not self.tessdata_path:
            self.tessdata_path = _default_tessdata_path()
        self.confidence_threshold = min(100, max(0, int(self.confidence_threshold)))
        self.max_retries = max(0, int(self.max_retries))
        if self.scale_factor <= 0:
            self.scale_factor = 2.0

    @property
    def deepl_api_key(self) -> str:
        """API key comes from the environment; the core never persists it."""
        return os.environ.get("DEEPL_AUTH_KEY", "")

    def preprocess_options(self) -> PreprocessOptions:
        return PreprocessOptions(
            scale_factor=self.scale_factor,
            max_dimension=self.max_dimension,
            enable_sharpening=self.enable_sharpening,
            sharpening=self.sharpening,
            enable_denoising=self.enable_denoising,
            denoising_radius=self.denoising_radius,
            enable_thresholding=self.enable_thresholding,
            threshold=self.threshold,
        )

    def save(self, store: QSettings | None = None) -> None:
        s = store or QSettings("Shunyaku", "Shunyaku")
        s.setValue("confidence_threshold", self.confidence_threshold)
        s.setValue("ocr_language", self.ocr_language)
        s.setValue("target_language", self.target_language)
        s.setValue("source_language", self.source_language)
        s.setValue("retry/max_retries", self.max_retries)
        s.setValue("retry/retry_delay", self.retry_delay)
        s.setValue("retry/max_retry_delay", self.max_retry_delay)
        s.setValue("retry/request_timeout", self.request_timeout)

        s.setValue("preprocess/scale_factor", self.scale_factor)
        s.setValue("preprocess/max_dimension", self.max_dimension)
        s.setValue("preprocess/enable_sharpening", self.enable_sharpening)
        s.setValue("preprocess/sharpening", self.sharpening)
        s.setValue("preprocess/enable_denoising", self.enable_denoising)
        s.setValue("preprocess/denoising_radius", self.denoising_radius)
        s.setValue("preprocess/enable_thresholding", self.enable_thresholding)
        s.setValue("preprocess/threshold", self.threshold)

        s.setValue("ocr/init_timeout", self.ocr_init_timeout)
        s.setValue("ocr/recognize_timeout", self.ocr_recognize_timeout)
        s.setValue("paths/cache_dir", self.cache_dir)
        s.setValue("paths/tessdata", self.tessdata_path)
        s.sync()

    @classmethod
    def load(cls, store: QSettings | None = None) -> AppSettings:
        s = store or QSettings("Shunyaku", "Shunyaku")
        d = cls()
        return cls(
            confidence_threshold=int(s.value("confidence_threshold", d.confidence_threshold)),
            ocr_language=str(s.value("ocr_language", d.ocr_language)),
            target_language=str(s.value("target_language", d.target_language)),
            source_language=str(s.value("source_language", d.source_language) or ""),
            max_retries=int(s.value("retry/max_retries", d.max_retries)),
            retry_delay=float(s.value("retry/retry_delay", d.retry_delay)),
            max_retry_delay=float(s.value("retry/max_retry_delay", d.max_retry_delay)),
            request_timeout=float(s.value("retry/request_timeout", d.request_timeout)),
            scale_factor=float(s.value("preprocess/scale_factor", d.scale_factor)),
            max_dimension=int(s.value("preprocess/max_dimension", d.max_dimension)),
            enable_sharpening=_to_bool(s.value("preprocess/enable_sharpening", d.enable_sharpening)),
            sharpening=float(s.value("preprocess/sharpening", d.sharpening)),
            enable_denoising=_to_bool(s.value("preprocess/enable_denoising", d.enable_denoising)),
            denoising_radius=int(s.value("preprocess/denoising_radius", d.denoising_radius)),
            enable_thresholding=_to_bool(s.value("preprocess/enable_thresholding", d.enable_thresholding)),
            threshold=int(s.value("preprocess/threshold", d.threshold)),
            ocr_init_timeout=float(s.value("ocr/init_timeout", d.ocr_init_timeout)),
            ocr_recognize_timeout=float(s.value("ocr/recognize_timeout", d.ocr_recognize_timeout)),
            cache_dir=str(s.value("paths/cache_dir", d.cache_dir)),
            tessdata_path=str(s.value("paths/tessdata", d.tessdata_path)),
        )
