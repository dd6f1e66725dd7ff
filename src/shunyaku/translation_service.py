"""DeepL translation client with bounded retry and error classification.

Calls are synchronous (requests); the pipeline runs them off the event
loop. Only errors classified retryable are retried, with exponential
backoff capped at ``max_retry_delay``. The HTTP status is the primary
signal; exception types and message text are consulted only when there
is no status.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import asdict, dataclass

import requests

from shunyaku.errors import (
    KIND_AUTH,
    KIND_NETWORK,
    KIND_QUOTA_EXCEEDED,
    KIND_RATE_LIMIT,
    KIND_SERVICE_UNAVAILABLE,
    KIND_UNKNOWN,
    KIND_VALIDATION,
    SEVERITY_ERROR,
    SEVERITY_INFO,
    SEVERITY_WARNING,
    ErrorAnalysis,
    TranslationError,
    elapsed_ms,
)

logger = logging.getLogger(__name__)

FREE_API_URL = "https://api-free.deepl.com/v2"
PRO_API_URL = "https://api.deepl.com/v2"

MAX_TEXT_LENGTH = 5000

SUPPORTED_TARGET_LANGUAGES = (
    "bg", "cs", "da", "de", "el", "en", "en-gb", "en-us", "es", "et", "fi", "fr",
    "hu", "id", "it", "ja", "ko", "lt", "lv", "nb", "nl", "pl", "pt", "pt-br",
    "pt-pt", "ro", "ru", "sk", "sl", "sv", "tr", "uk", "zh",
)

FORMALITY_VALUES = ("default", "more", "less", "prefer_more", "prefer_less")
TAG_HANDLING_VALUES = ("xml", "html")

# (severity, retryable, user message, alternatives)
_TRANSLATION_TAXONOMY: dict[str, tuple[str, bool, str, list[str]]] = {
    KIND_RATE_LIMIT: (
        SEVERITY_WARNING, True,
        "Too many translation requests were sent in a short time.",
        ["Wait a moment and try again"],
    ),
    KIND_QUOTA_EXCEEDED: (
        SEVERITY_ERROR, False,
        "The translation quota for this billing period has been used up.",
        ["Check your DeepL usage", "Upgrade your DeepL plan"],
    ),
    KIND_AUTH: (
        SEVERITY_WARNING, False,
        "The DeepL API key is missing or invalid.",
        ["Open the configuration and check the API key"],
    ),
    KIND_NETWORK: (
        SEVERITY_WARNING, True,
        "The translation service could not be reached.",
        ["Check your internet connection", "Try again"],
    ),
    KIND_SERVICE_UNAVAILABLE: (
        SEVERITY_WARNING, True,
        "The translation service is temporarily unavailable.",
        ["Try again in a few minutes"],
    ),
    KIND_VALIDATION: (
        SEVERITY_INFO, False,
        "The text could not be sent for translation.",
        ["Check the recognized text", "Check the target language"],
    ),
    KIND_UNKNOWN: (
        SEVERITY_ERROR, False,
        "Translation failed.",
        ["Try again", "Copy the original text instead"],
    ),
}

# Fallback only: lowercase substrings of connection-level failures.
_NETWORK_HINTS = (
    "network", "timeout", "timed out", "econnreset", "econnrefused", "enotfound",
    "connection", "name resolution",
)


def kind_for_status(status: int) -> str:
    if status == 429:
        return KIND_RATE_LIMIT
    if status == 456:
        return KIND_QUOTA_EXCEEDED
    if status in (401, 403):
        return KIND_AUTH
    if status in (400, 413, 414):
        return KIND_VALIDATION
    if status in (500, 502, 503, 504):
        return KIND_SERVICE_UNAVAILABLE
    return KIND_UNKNOWN


def analyze_translation_error(error: BaseException, started_at: float | None = None) -> ErrorAnalysis:
    status = getattr(error, "status_code", None)
    if status is not None:
        kind = kind_for_status(int(status))
    elif isinstance(error, TranslationError) and error.kind != KIND_UNKNOWN:
        kind = error.kind
    elif isinstance(error, (requests.Timeout, requests.ConnectionError, TimeoutError, ConnectionError)):
        kind = KIND_NETWORK
    elif any(hint in str(error).lower() for hint in _NETWORK_HINTS):
        kind = KIND_NETWORK
    else:
        kind = KIND_UNKNOWN

    severity, retryable, message, alternatives = _TRANSLATION_TAXONOMY[kind]
    cause = getattr(error, "cause", None) or error
    return ErrorAnalysis(
        kind=kind,
        severity=severity,
        retryable=retryable,
        user_message=message,
        alternatives=list(alternatives),
        processing_time_ms=elapsed_ms(started_at),
        cause=str(cause),
    )


@dataclass
class TranslationResult:
    original_text: str
    translated_text: str
    source_language: str
    target_language: str
    usage_characters: int
    duration_ms: int
    attempts: int = 1


@dataclass
class UsageInfo:
    character_count: int
    character_limit: int

    @property
    def remaining(self) -> int:
        return max(0, self.character_limit - self.character_count)

    @property
    def usage_percent(self) -> float:
        if not self.character_limit:
            return 0.0
        return round(self.character_count / self.character_limit * 100, 2)


@dataclass
class TranslationStats:
    requests: int = 0
    successes: int = 0
    errors: int = 0
    characters: int = 0


class TranslationService:
    def __init__(
        self,
        api_key: str | None = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        max_retry_delay: float = 30.0,
        timeout: float = 30.0,
        session: requests.Session | None = None,
        sleep=time.sleep,
    ) -> None:
        self.api_key = api_key if api_key is not None else os.environ.get("DEEPL_AUTH_KEY", "")
        self.max_retries = max(0, max_retries)
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self.timeout = timeout
        self._session = session or requests.Session()
        self._sleep = sleep
        self._stats = TranslationStats()

    @property
    def base_url(self) -> str:
        # Free-plan keys end in ":fx".
        return FREE_API_URL if self.api_key.endswith(":fx") else PRO_API_URL

    @property
    def stats(self) -> TranslationStats:
        return TranslationStats(**asdict(self._stats))

    def reset_stats(self) -> None:
        self._stats = TranslationStats()

    # ------------------------------------------------------------------
    # Translation
    # ------------------------------------------------------------------

    def translate(
        self,
        text: str,
        target_language: str,
        source_language: str | None = None,
        formality: str | None = None,
        preserve_formatting: bool | None = None,
        tag_handling: str | None = None,
    ) -> TranslationResult:
        t0 = time.monotonic()
        self._stats.requests += 1
        try:
            self._validate(text, target_language, formality, tag_handling)
        except TranslationError as e:
            self._stats.errors += 1
            raise self._classified(e, t0, attempts=0) from None

        payload: dict = {
            "text": [text],
            "target_lang": target_language.upper(),
            "show_billed_characters": True,
        }
        if source_language:
            payload["source_lang"] = source_language.split("-")[0].upper()
        if formality:
            payload["formality"] = formality
        if preserve_formatting is not None:
            payload["preserve_formatting"] = preserve_formatting
        if tag_handling:
            payload["tag_handling"] = tag_handling

        attempt = 0
        while True:
            attempt += 1
            try:
                data = self._request("POST", "/translate", json=payload)
                break
            except TranslationError as e:
                analysis = analyze_translation_error(e, t0)
                if not analysis.retryable or attempt > self.max_retries:
                    self._stats.errors += 1
                    logger.error(
                        "Translation failed after %d attempt(s) (%s): %s", attempt, analysis.kind, e,
                    )
                    raise self._classified(e, t0, attempts=attempt) from e
                delay = self._backoff_delay(attempt, e)
                logger.warning(
                    "Translation attempt %d failed (%s), retrying in %.1fs",
                    attempt, analysis.kind, delay,
                )
                self._sleep(delay)

        translation = (data.get("translations") or [{}])[0]
        if "text" not in translation:
            self._stats.errors += 1
            raise self._classified(
                TranslationError("Malformed response from translation API"), t0, attempts=attempt,
            )

        billed = int(translation.get("billed_characters", len(text)))
        self._stats.successes += 1
        self._stats.characters += billed
        duration = elapsed_ms(t0)
        source = (translation.get("detected_source_language") or source_language or "").lower()
        logger.info(
            "Translated %d chars %s -> %s in %dms", len(text), source or "?", target_language, duration,
        )
        return TranslationResult(
            original_text=text,
            translated_text=translation["text"],
            source_language=source,
            target_language=target_language.lower(),
            usage_characters=billed,
            duration_ms=duration,
            attempts=attempt,
        )

    # ------------------------------------------------------------------
    # Informational
    # ------------------------------------------------------------------

    def get_usage(self) -> UsageInfo:
        data = self._request("GET", "/usage")
        return UsageInfo(
            character_count=int(data.get("character_count", 0)),
            character_limit=int(data.get("character_limit", 0)),
        )

    def get_supported_languages(self) -> dict[str, list[dict]]:
        return {
            kind: self._request("GET", "/languages", params={"type": kind})
            for kind in ("source", "target")
        }

    def health_check(self) -> dict:
        if not self.api_key:
            return {"status": "not_configured", "error": "No API key configured"}
        try:
            usage = self.get_usage()
        except TranslationError as e:
            analysis = analyze_translation_error(e)
            return {"status": "unhealthy", "error": analysis.user_message, "kind": analysis.kind}
        return {
            "status": "healthy",
            "usage": {
                "character_count": usage.character_count,
                "character_limit": usage.character_limit,
                "usage_percent": usage.usage_percent,
            },
            "stats": asdict(self._stats),
        }

    def test_connection(self, api_key: str) -> dict:
        """Check a candidate key without touching this client's key or stats."""
        probe = TranslationService(api_key=api_key, timeout=self.timeout, session=self._session)
        try:
            usage = probe.get_usage()
        except TranslationError as e:
            analysis = analyze_translation_error(e)
            return {"success": False, "error": analysis.user_message, "kind": analysis.kind}
        return {"success": True, "usage_percent": usage.usage_percent}

    def analyze_translation_error(self, error: BaseException, started_at: float | None = None) -> ErrorAnalysis:
        return analyze_translation_error(error, started_at)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _validate(
        self,
        text: str,
        target_language: str,
        formality: str | None,
        tag_handling: str | None,
    ) -> None:
        if not self.api_key:
            raise TranslationError("DeepL API key is not configured", kind=KIND_AUTH)
        if not isinstance(text, str) or not text.strip():
            raise TranslationError("Text to translate is empty", kind=KIND_VALIDATION)
        if len(text) > MAX_TEXT_LENGTH:
            raise TranslationError(
                f"Text is too long: {len(text)} characters (max: {MAX_TEXT_LENGTH})",
                kind=KIND_VALIDATION,
            )
        if not target_language or target_language.lower() not in SUPPORTED_TARGET_LANGUAGES:
            raise TranslationError(f"Unsupported target language: {target_language}", kind=KIND_VALIDATION)
        if formality and formality not in FORMALITY_VALUES:
            raise TranslationError(f"Invalid formality: {formality}", kind=KIND_VALIDATION)
        if tag_handling and tag_handling not in TAG_HANDLING_VALUES:
            raise TranslationError(f"Invalid tag handling: {tag_handling}", kind=KIND_VALIDATION)

    def _request(self, method: str, path: str, **kwargs):
        if not self.api_key:
            raise TranslationError("DeepL API key is not configured", kind=KIND_AUTH)
        url = self.base_url + path
        headers = {"Authorization": f"DeepL-Auth-Key {self.api_key}"}
        try:
            response = self._session.request(
                method, url, headers=headers, timeout=self.timeout, **kwargs,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TranslationError(f"Network error: {e}", kind=KIND_NETWORK, cause=e) from e
        except requests.RequestException as e:
            raise TranslationError(f"Request failed: {e}", cause=e) from e

        if response.status_code != 200:
            raise TranslationError(
                f"DeepL API error {response.status_code}: {_error_detail(response)}",
                status_code=response.status_code,
                kind=kind_for_status(response.status_code),
                retry_after=_retry_after_seconds(response),
            )
        try:
            return response.json()
        except ValueError as e:
            raise TranslationError("Malformed response from translation API", cause=e) from e

    def _backoff_delay(self, attempt: int, error: TranslationError) -> float:
        delay = self.retry_delay * (2 ** (attempt - 1))
        if error.retry_after:
            delay = max(delay, error.retry_after)
        return min(delay, self.max_retry_delay)

    @staticmethod
    def _classified(error: TranslationError, started_at: float, attempts: int) -> TranslationError:
        analysis = analyze_translation_error(error, started_at)
        return TranslationError(
            str(error),
            status_code=error.status_code,
            attempts=attempts,
            kind=analysis.kind,
            cause=error.cause or error,
            analysis=analysis,
        )


def _error_detail(response) -> str:
    try:
        body = response.json()
    except ValueError:
        return (response.text or "").strip()[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body)
    return str(body)


def _retry_after_seconds(response) -> float | None:
    value = response.headers.get("Retry-After") if response.headers else None
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None
