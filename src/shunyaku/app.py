from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from shunyaku.capture_service import CaptureService
from shunyaku.debug_service import DebugService, is_debug_enabled
from shunyaku.errors import ShunyakuError
from shunyaku.image_preprocessor import ImagePreprocessor
from shunyaku.language_data import LanguageDataManager
from shunyaku.ocr_service import SUPPORTED_LANGUAGES, OCRService
from shunyaku.ocr_worker import OcrWorker
from shunyaku.pipeline import PipelineOrchestrator, WorkflowState
from shunyaku.settings import AppSettings
from shunyaku.translation_service import TranslationService

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 2


class App:
    """Wires the services together from settings; one instance per process."""

    def __init__(self, settings: AppSettings) -> None:
        self._settings = settings

        self._debug: DebugService | None = None
        if is_debug_enabled():
            self._debug = DebugService()
            logger.info("Debug session: %s", self._debug.session_dir)

        self._capture = CaptureService(settings.cache_dir)
        self._preprocessor = ImagePreprocessor(settings.preprocess_options())
        self._ocr = OCRService(
            settings.tessdata_path,
            worker=OcrWorker(
                init_timeout=settings.ocr_init_timeout,
                recognize_timeout=settings.ocr_recognize_timeout,
            ),
            preprocessor=self._preprocessor,
            language_data=LanguageDataManager(settings.tessdata_path),
            minimum_confidence=settings.confidence_threshold,
            default_language=settings.ocr_language,
        )
        self._translator = TranslationService(
            api_key=settings.deepl_api_key,
            max_retries=settings.max_retries,
            retry_delay=settings.retry_delay,
            max_retry_delay=settings.max_retry_delay,
            timeout=settings.request_timeout,
        )
        self._pipeline = PipelineOrchestrator(
            self._capture,
            self._preprocessor,
            self._ocr,
            self._translator,
            settings=settings,
            debug=self._debug,
        )

    async def list_sources(self) -> list[dict]:
        sources = await self._capture.list_sources(with_thumbnails=False)
        return [{"id": s.id, "name": s.name} for s in sources]

    async def health(self) -> dict:
        return {
            "ocr": await self._ocr.perform_health_check(),
            "translation": await asyncio.to_thread(self._translator.health_check),
        }

    async def translate_screen(self, args: argparse.Namespace) -> dict:
        result = await self._pipeline.run(
            args.source,
            language=args.lang,
            target_language=args.target,
            minimum_confidence=args.min_confidence,
        )
        self._pipeline.release(result)
        return result.to_dict()

    async def shutdown(self) -> None:
        await self._pipeline.shutdown()


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="shunyaku",
        description="Capture a screen, recognize its text and translate it.",
    )
    p.add_argument("--list-sources", action="store_true", help="List capturable screens and exit")
    p.add_argument("--source", default=None, help="Screen id to capture (default: first screen)")
    p.add_argument("--lang", choices=SUPPORTED_LANGUAGES, default=None, help="OCR language")
    p.add_argument("--target", default=None, help="Target language code, e.g. ja, en-us")
    p.add_argument("--min-confidence", type=float, default=None, help="Minimum OCR confidence (0-100)")
    p.add_argument("--health", action="store_true", help="Report OCR and translation health and exit")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return p


async def _run(app: App, args: argparse.Namespace) -> tuple[dict | list, int]:
    try:
        if args.list_sources:
            return await app.list_sources(), EXIT_OK
        if args.health:
            report = await app.health()
            ok = report["ocr"]["overall"] != "failed" and report["translation"]["status"] == "healthy"
            return report, EXIT_OK if ok else EXIT_FAILED

        result = await app.translate_screen(args)
        if result["state"] == WorkflowState.CANCELLED.value:
            return result, EXIT_CANCELLED
        if result["state"] == WorkflowState.FAILED.value:
            return result, EXIT_FAILED
        return result, EXIT_OK
    finally:
        await app.shutdown()


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    settings = AppSettings.load()
    app = App(settings)
    try:
        output, code = asyncio.run(_run(app, args))
    except ShunyakuError as e:
        analysis = e.analysis
        output = {
            "error": analysis.to_dict() if analysis else {"kind": e.kind, "message": str(e)},
        }
        code = EXIT_FAILED
    except KeyboardInterrupt:
        output, code = {"state": WorkflowState.CANCELLED.value}, EXIT_CANCELLED

    print(json.dumps(output, ensure_ascii=False, indent=2))
    sys.exit(code)


if __name__ == "__main__":
    main()
