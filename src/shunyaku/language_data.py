from __future__ import annotations

import logging
import os

import requests

logger = logging.getLogger(__name__)


LANGUAGE_DATA_URLS = {
    "eng": "https://github.com/tesseract-ocr/tessdata_fast/raw/main/eng.traineddata",
    "jpn": "https://github.com/tesseract-ocr/tessdata_fast/raw/main/jpn.traineddata",
}

# A real traineddata file is several hundred KB at least.
_MIN_TRAINEDDATA_BYTES = 1024


class LanguageDataError(Exception):
    pass


class LanguageDataManager:
    """Keeps ``<lang>.traineddata`` files for the supported languages on disk."""

    def __init__(
        self,
        tessdata_path: str,
        session: requests.Session | None = None,
        timeout: float = 60.0,
    ) -> None:
        self.tessdata_path = tessdata_path
        self.supported_languages = list(LANGUAGE_DATA_URLS)
        self._session = session or requests.Session()
        self._timeout = timeout

    def initialize(self) -> None:
        os.makedirs(self.tessdata_path, exist_ok=True)
        logger.info("Tessdata directory: %s", self.tessdata_path)

    def language_file(self, language: str) -> str:
        return os.path.join(self.tessdata_path, f"{language}.traineddata")

    def is_installed(self, language: str) -> bool:
        return os.path.isfile(self.language_file(language))

    def get_installed_languages(self) -> list[str]:
        return [lang for lang in self.supported_languages if self.is_installed(lang)]

    def ensure_language_data(self, languages: list[str] | None = None) -> list[str]:
        """Download whatever is missing. Returns the languages downloaded."""
        missing = []
        for lang in languages or self.supported_languages:
            if lang not in self.supported_languages:
                logger.warning("Unsupported language: %s", lang)
                continue
            if not self.is_installed(lang):
                missing.append(lang)

        for lang in missing:
            self._download_single_language(lang)
        return missing

    def _download_single_language(self, language: str) -> None:
        url = LANGUAGE_DATA_URLS[language]
        output_path = self.language_file(language)
        temp_path = output_path + ".tmp"
        os.makedirs(self.tessdata_path, exist_ok=True)

        logger.info("Downloading %s language data from %s", language, url)
        try:
            with self._session.get(url, stream=True, timeout=self._timeout) as response:
                response.raise_for_status()
                with open(temp_path, "wb") as f:
                    for chunk in response.iter_content(chunk_size=64 * 1024):
                        if chunk:
                            f.write(chunk)

            size = os.path.getsize(temp_path)
            if size < _MIN_TRAINEDDATA_BYTES:
                raise LanguageDataError(f"Downloaded file is too small ({size} bytes)")
            os.replace(temp_path, output_path)
        except (requests.RequestException, OSError, LanguageDataError) as e:
            try:
                os.remove(temp_path)
            except OSError:
                pass
            raise LanguageDataError(f"Failed to download {language} language data: {e}") from e

        logger.info("Downloaded %s language data: %d bytes", language, os.path.getsize(output_path))
