"""AppSettings persistence through QSettings (INI file in tmp_path)."""

import pytest
from PyQt6.QtCore import QSettings

from shunyaku.settings import AppSettings


@pytest.fixture
def store(tmp_path):
    return QSettings(str(tmp_path / "shunyaku.ini"), QSettings.Format.IniFormat)


def test_defaults():
    s = AppSettings(cache_dir="/tmp/c", tessdata_path="/tmp/t")
    assert s.confidence_threshold == 60
    assert s.ocr_language == "eng+jpn"
    assert s.max_retries == 3
    assert s.scale_factor == 2.0
    assert s.cache_dir == "/tmp/c"


def test_default_paths_are_filled():
    s = AppSettings()
    assert s.cache_dir.endswith("Shunyaku")
    assert s.tessdata_path.endswith("tessdata")


def test_values_are_clamped():
    s = AppSettings(confidence_threshold=150, max_retries=-2, scale_factor=0)
    assert s.confidence_threshold == 100
    assert s.max_retries == 0
    assert s.scale_factor == 2.0


def test_save_and_load(store):
    original = AppSettings(
        confidence_threshold=75,
        ocr_language="jpn",
        target_language="en-us",
        max_retries=5,
        retry_delay=0.5,
        enable_sharpening=True,
        denoising_radius=3,
        cache_dir="/tmp/cache",
        tessdata_path="/tmp/tessdata",
    )
    original.save(store)

    loaded = AppSettings.load(store)

    assert loaded.confidence_threshold == 75
    assert loaded.ocr_language == "jpn"
    assert loaded.target_language == "en-us"
    assert loaded.max_retries == 5
    assert loaded.retry_delay == 0.5
    assert loaded.enable_sharpening is True
    assert loaded.enable_denoising is False
    assert loaded.denoising_radius == 3
    assert loaded.cache_dir == "/tmp/cache"


def test_load_from_empty_store(store):
    loaded = AppSettings.load(store)
    assert loaded.confidence_threshold == 60
    assert loaded.target_language == "ja"


def test_api_key_comes_from_environment(monkeypatch):
    monkeypatch.setenv("DEEPL_AUTH_KEY", "abc:fx")
    assert AppSettings().deepl_api_key == "abc:fx"


def test_preprocess_options():
    opts = AppSettings(scale_factor=3.0, enable_thresholding=True, threshold=100).preprocess_options()
    assert opts.scale_factor == 3.0
    assert opts.enable_thresholding
    assert opts.threshold == 100
