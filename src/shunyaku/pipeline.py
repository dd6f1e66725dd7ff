"""Pipeline Orchestrator: capture -> preprocess -> recognize -> gate -> translate.

Every request is an independent run with its own WorkflowState and temp
files. A run always ends in one of three states:

- succeeded: translated, or stopped at the confidence gate
  (``processed=False`` with a reason)
- failed: the failing phase and its ErrorAnalysis are returned
- cancelled: ``cancel()`` was called; phase results are no longer awaited

Temp files created by a run are removed on every exit path. The only
exception is a failed recognition: its preprocessed image is handed back
on the result so ``retry()`` can run OCR on it again without
re-capturing. ``release()`` drops it.

Retryable failures (capture, preprocess, recognize) are retried
automatically up to ``max_retries`` with exponential backoff. Translation
is not retried here; the translation client already retries its own
transient failures.
"""

from __future__ import annotations

import asyncio
import functools
import itertools
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum

from shunyaku.capture_service import CaptureArtifact, CaptureService, analyze_capture_error
from shunyaku.debug_service import DebugService
from shunyaku.errors import (
    KIND_CANCELLED,
    KIND_FILE_NOT_FOUND,
    SEVERITY_INFO,
    ErrorAnalysis,
    PipelineCancelled,
    ShunyakuError,
    elapsed_ms,
)
from shunyaku.image_preprocessor import ImagePreprocessor, PreprocessedImage, PreprocessOptions
from shunyaku.ocr_service import OCRResult, OCRService, analyze_ocr_error
from shunyaku.settings import AppSettings
from shunyaku.translation_service import (
    TranslationResult,
    TranslationService,
    analyze_translation_error,
)

logger = logging.getLogger(__name__)

REASON_LOW_CONFIDENCE = "Low confidence"
REASON_NO_TEXT = "No text detected"


class WorkflowState(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    PREPROCESSING = "preprocessing"
    RECOGNIZING = "recognizing"
    GATING = "gating"
    TRANSLATING = "translating"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


_PHASES = (
    WorkflowState.CAPTURING,
    WorkflowState.PREPROCESSING,
    WorkflowState.RECOGNIZING,
    WorkflowState.GATING,
    WorkflowState.TRANSLATING,
)

PHASE_NAMES = {
    WorkflowState.CAPTURING: "capture",
    WorkflowState.PREPROCESSING: "preprocess",
    WorkflowState.RECOGNIZING: "recognize",
    WorkflowState.GATING: "gate",
    WorkflowState.TRANSLATING: "translate",
}
_PHASE_BY_NAME = {name: state for state, name in PHASE_NAMES.items()}


@dataclass
class RunOptions:
    source_id: str | None
    language: str
    target_language: str
    source_language: str | None
    minimum_confidence: float
    preprocess: PreprocessOptions


@dataclass
class PipelineResult:
    request_id: int
    state: WorkflowState
    options: RunOptions = field(repr=False)
    processed: bool = False
    original_text: str = ""
    translated_text: str = ""
    source_language: str = ""
    target_language: str = ""
    confidence: float = 0.0
    reason: str | None = None
    phase: str | None = None
    error: ErrorAnalysis | None = None
    attempts: int = 1
    timings: dict[str, int] = field(default_factory=dict)
    ocr: OCRResult | None = field(default=None, repr=False)
    translation: TranslationResult | None = field(default=None, repr=False)
    # Only set after a failed recognition; owned by the caller until release().
    preprocessed: PreprocessedImage | None = field(default=None, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.state is WorkflowState.SUCCEEDED

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "state": self.state.value,
            "processed": self.processed,
            "original_text": self.original_text,
            "translated_text": self.translated_text,
            "source_language": self.source_language,
            "target_language": self.target_language,
            "confidence": self.confidence,
            "reason": self.reason,
            "phase": self.phase,
            "error": self.error.to_dict() if self.error else None,
            "attempts": self.attempts,
            "timings": dict(self.timings),
        }


class _Run:
    def __init__(self, request_id: int, options: RunOptions) -> None:
        self.request_id = request_id
        self.options = options
        self.state = WorkflowState.IDLE
        self.cancel_event = asyncio.Event()
        self.artifact: CaptureArtifact | None = None
        self.preprocessed: PreprocessedImage | None = None
        self.ocr: OCRResult | None = None
        self.translation: TranslationResult | None = None
        self.attempts = 1
        self.retries = 0
        self.timings: dict[str, int] = {}
        self.debug_dir: str | None = None


class PipelineOrchestrator:
    def __init__(
        self,
        capture: CaptureService,
        preprocessor: ImagePreprocessor,
        ocr: OCRService,
        translator: TranslationService,
        settings: AppSettings | None = None,
        debug: DebugService | None = None,
        sleep=asyncio.sleep,
    ) -> None:
        self._capture = capture
        self._preprocessor = preprocessor
        self._ocr = ocr
        self._translator = translator
        self._settings = settings or AppSettings()
        self._debug = debug
        self._sleep = sleep
        self._runs: dict[int, _Run] = {}
        self._ids = itertools.count(1)

    @property
    def in_flight(self) -> list[int]:
        return list(self._runs)

    def state(self, request_id: int) -> WorkflowState | None:
        run = self._runs.get(request_id)
        return run.state if run else None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        source_id: str | None = None,
        *,
        language: str | None = None,
        target_language: str | None = None,
        source_language: str | None = None,
        minimum_confidence: float | None = None,
        preprocess_options: PreprocessOptions | None = None,
        supersede: bool = False,
    ) -> PipelineResult:
        """Run one full request. ``supersede=True`` cancels runs still in flight."""
        if supersede:
            self.cancel()

        s = self._settings
        options = RunOptions(
            source_id=source_id,
            language=language or s.ocr_language,
            target_language=target_language or s.target_language,
            source_language=source_language or s.source_language or None,
            minimum_confidence=(
                s.confidence_threshold if minimum_confidence is None else minimum_confidence
            ),
            preprocess=preprocess_options or s.preprocess_options(),
        )
        run = _Run(next(self._ids), options)
        return await self._execute(run, WorkflowState.CAPTURING)

    async def retry(self, result: PipelineResult) -> PipelineResult:
        """Re-run a failed request from its failing phase.

        A recognition failure reuses the preprocessed image held by the
        result; ``file_not_found`` (or nothing to reuse) restarts at capture.
        """
        if result.state is not WorkflowState.FAILED:
            raise ValueError(f"Only failed runs can be retried (state: {result.state.value})")

        run = _Run(next(self._ids), result.options)
        run.attempts = result.attempts + 1
        run.preprocessed, result.preprocessed = result.preprocessed, None
        run.ocr = result.ocr

        failed_phase = _PHASE_BY_NAME.get(result.phase or "", WorkflowState.CAPTURING)
        kind = result.error.kind if result.error else ""
        start = self._restart_phase(failed_phase, kind, run)
        if start is WorkflowState.CAPTURING:
            self._discard_intermediates(run)
        logger.info(
            "Retrying request %d as %d from %s", result.request_id, run.request_id, start.value,
        )
        return await self._execute(run, start)

    def cancel(self, request_id: int | None = None) -> int:
        """Cancel one run, or every in-flight run. Returns how many were signalled."""
        if request_id is None:
            targets = list(self._runs.values())
        else:
            targets = [self._runs[request_id]] if request_id in self._runs else []
        for run in targets:
            run.cancel_event.set()
        return len(targets)

    def release(self, result: PipelineResult) -> None:
        """Drop the preprocessed image a failed result still holds."""
        if result.preprocessed is not None:
            self._preprocessor.cleanup_temp_file(result.preprocessed.output_path)
            result.preprocessed = None

    async def shutdown(self) -> None:
        self.cancel()
        await self._ocr.shutdown()
        self._capture.cleanup_all()
        self._preprocessor.cleanup_all_temp_files()
        if self._debug:
            self._debug.shutdown()

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def _execute(self, run: _Run, start: WorkflowState) -> PipelineResult:
        self._runs[run.request_id] = run
        if self._debug:
            run.debug_dir = self._debug.start_run()
        keep_preprocessed = False

        try:
            index = _PHASES.index(start)
            while index < len(_PHASES):
                phase = _PHASES[index]
                self._enter(run, phase)
                t0 = time.monotonic()
                try:
                    stopped = await self._race(run, self._run_phase(run, phase))
                except PipelineCancelled:
                    raise
                except Exception as e:
                    analysis = self._classify(phase, e, t0)
                    if self._should_retry(run, phase, analysis):
                        restart = self._restart_phase(phase, analysis.kind, run)
                        run.retries += 1
                        run.attempts += 1
                        delay = self._retry_delay(run.retries)
                        logger.warning(
                            "Request %d: %s failed (%s), retry %d/%d from %s in %.1fs",
                            run.request_id, PHASE_NAMES[phase], analysis.kind, run.retries,
                            self._settings.max_retries, restart.value, delay,
                        )
                        if restart is WorkflowState.CAPTURING:
                            self._discard_intermediates(run)
                        await self._race(run, self._sleep(delay))
                        index = _PHASES.index(restart)
                        continue
                    keep_preprocessed = (
                        phase is WorkflowState.RECOGNIZING and analysis.kind != KIND_FILE_NOT_FOUND
                    )
                    return self._failed(run, analysis, keep_preprocessed)
                finally:
                    name = PHASE_NAMES[phase]
                    run.timings[name] = run.timings.get(name, 0) + elapsed_ms(t0)

                if stopped is not None:
                    return stopped
                index += 1
            return self._succeeded(run)
        except PipelineCancelled:
            return self._cancelled(run)
        finally:
            self._cleanup(run, keep_preprocessed)
            self._runs.pop(run.request_id, None)

    async def _run_phase(self, run: _Run, phase: WorkflowState) -> PipelineResult | None:
        opts = run.options
        if phase is WorkflowState.CAPTURING:
            run.artifact = await self._capture.capture_source(opts.source_id)
            self._debug_image(run, "raw.png", run.artifact.file_path)
        elif phase is WorkflowState.PREPROCESSING:
            run.preprocessed = await asyncio.to_thread(
                self._preprocessor.process_for_ocr, run.artifact, opts.preprocess,
            )
            self._debug_image(run, "processed.png", run.preprocessed.output_path)
        elif phase is WorkflowState.RECOGNIZING:
            run.ocr = await self._ocr.recognize(run.preprocessed.output_path, opts.language)
        elif phase is WorkflowState.GATING:
            return self._gate(run)
        elif phase is WorkflowState.TRANSLATING:
            run.translation = await asyncio.to_thread(
                self._translator.translate,
                run.ocr.text, opts.target_language, opts.source_language,
            )
        return None

    async def _race(self, run: _Run, coro):
        """Await ``coro`` unless the run is cancelled first.

        On cancellation the phase is left to finish in the background; its
        late output is cleaned up when it does.
        """
        if run.cancel_event.is_set():
            coro.close()
            raise PipelineCancelled("Request cancelled")

        task = asyncio.ensure_future(coro)
        waiter = asyncio.ensure_future(run.cancel_event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done():
            return task.result()
        task.add_done_callback(functools.partial(self._reap_abandoned, run))
        raise PipelineCancelled("Request cancelled")

    def _reap_abandoned(self, run: _Run, task: asyncio.Future) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Abandoned phase of request %d failed: %s", run.request_id, task.exception())
        self._cleanup(run, keep_preprocessed=False)

    # ------------------------------------------------------------------
    # Phase helpers
    # ------------------------------------------------------------------

    def _enter(self, run: _Run, phase: WorkflowState) -> None:
        run.state = phase
        logger.info("Request %d: %s", run.request_id, phase.value)
        if self._debug:
            self._debug.log("PHASE", f"{run.request_id} {phase.value}")

    def _gate(self, run: _Run) -> PipelineResult | None:
        ocr = run.ocr
        threshold = run.options.minimum_confidence
        if ocr.confidence < threshold:
            ocr.low_confidence = True
            reason = REASON_LOW_CONFIDENCE
        elif not ocr.text.strip():
            reason = REASON_NO_TEXT
        else:
            return None

        logger.info(
            "Request %d stopped at confidence gate: %s (%.1f < %s)",
            run.request_id, reason, ocr.confidence, threshold,
        )
        self._debug_text(run, ocr.text, None)
        run.state = WorkflowState.SUCCEEDED
        return PipelineResult(
            request_id=run.request_id,
            state=WorkflowState.SUCCEEDED,
            options=run.options,
            processed=False,
            original_text=ocr.text,
            target_language=run.options.target_language,
            confidence=ocr.confidence,
            reason=reason,
            attempts=run.attempts,
            timings=dict(run.timings),
            ocr=ocr,
        )

    def _classify(self, phase: WorkflowState, error: Exception, started_at: float) -> ErrorAnalysis:
        if isinstance(error, ShunyakuError) and error.analysis is not None:
            analysis = replace(error.analysis)
        elif phase is WorkflowState.CAPTURING:
            analysis = analyze_capture_error(error, started_at)
        elif phase is WorkflowState.TRANSLATING:
            analysis = analyze_translation_error(error, started_at)
        else:
            analysis = analyze_ocr_error(error, started_at)

        if not isinstance(error, ShunyakuError):
            logger.error("Unexpected error during %s", PHASE_NAMES[phase], exc_info=error)
        analysis.phase = PHASE_NAMES[phase]
        return analysis

    def _should_retry(self, run: _Run, phase: WorkflowState, analysis: ErrorAnalysis) -> bool:
        return (
            analysis.retryable
            and phase is not WorkflowState.TRANSLATING
            and run.retries < self._settings.max_retries
        )

    def _retry_delay(self, retry: int) -> float:
        s = self._settings
        return min(s.retry_delay * (2 ** (retry - 1)), s.max_retry_delay)

    @staticmethod
    def _restart_phase(phase: WorkflowState, kind: str, run: _Run) -> WorkflowState:
        if kind == KIND_FILE_NOT_FOUND:
            return WorkflowState.CAPTURING
        if phase is WorkflowState.TRANSLATING and run.ocr is not None:
            return WorkflowState.TRANSLATING
        if phase in (WorkflowState.RECOGNIZING, WorkflowState.GATING) and run.preprocessed is not None:
            return WorkflowState.RECOGNIZING
        if phase is WorkflowState.PREPROCESSING and run.artifact is not None:
            return WorkflowState.PREPROCESSING
        return WorkflowState.CAPTURING

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _succeeded(self, run: _Run) -> PipelineResult:
        run.state = WorkflowState.SUCCEEDED
        translation = run.translation
        logger.info(
            "Request %d succeeded (%d attempt(s), %s)", run.request_id, run.attempts, run.timings,
        )
        self._debug_text(run, run.ocr.text, translation.translated_text)
        return PipelineResult(
            request_id=run.request_id,
            state=WorkflowState.SUCCEEDED,
            options=run.options,
            processed=True,
            original_text=run.ocr.text,
            translated_text=translation.translated_text,
            source_language=translation.source_language,
            target_language=translation.target_language,
            confidence=run.ocr.confidence,
            attempts=run.attempts,
            timings=dict(run.timings),
            ocr=run.ocr,
            translation=translation,
        )

    def _failed(self, run: _Run, analysis: ErrorAnalysis, keep_preprocessed: bool) -> PipelineResult:
        run.state = WorkflowState.FAILED
        logger.warning(
            "Request %d failed at %s (%s): %s",
            run.request_id, analysis.phase, analysis.kind, analysis.cause,
        )
        if self._debug:
            self._debug.log("FAILED", f"{run.request_id} {analysis.phase} {analysis.kind}")
        return PipelineResult(
            request_id=run.request_id,
            state=WorkflowState.FAILED,
            options=run.options,
            original_text=run.ocr.text if run.ocr else "",
            target_language=run.options.target_language,
            confidence=run.ocr.confidence if run.ocr else 0.0,
            phase=analysis.phase,
            error=analysis,
            attempts=run.attempts,
            timings=dict(run.timings),
            ocr=run.ocr,
            preprocessed=run.preprocessed if keep_preprocessed else None,
        )

    def _cancelled(self, run: _Run) -> PipelineResult:
        phase = PHASE_NAMES.get(run.state)
        run.state = WorkflowState.CANCELLED
        logger.info("Request %d cancelled during %s", run.request_id, phase)
        return PipelineResult(
            request_id=run.request_id,
            state=WorkflowState.CANCELLED,
            options=run.options,
            target_language=run.options.target_language,
            phase=phase,
            error=ErrorAnalysis(
                kind=KIND_CANCELLED,
                severity=SEVERITY_INFO,
                retryable=False,
                user_message="The request was cancelled.",
                phase=phase,
            ),
            attempts=run.attempts,
            timings=dict(run.timings),
        )

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def _cleanup(self, run: _Run, keep_preprocessed: bool) -> None:
        try:
            if run.artifact is not None:
                self._capture.delete_temp_file(run.artifact.file_path)
            if run.preprocessed is not None and not keep_preprocessed:
                self._preprocessor.cleanup_temp_file(run.preprocessed.output_path)
        except Exception:
            logger.warning("Cleanup of request %d failed", run.request_id, exc_info=True)

    def _discard_intermediates(self, run: _Run) -> None:
        self._cleanup(run, keep_preprocessed=False)
        run.artifact = None
        run.preprocessed = None
        run.ocr = None

    def _debug_image(self, run: _Run, name: str, path: str | None) -> None:
        if not (self._debug and run.debug_dir):
            return
        try:
            self._debug.save_image(run.debug_dir, name, path)
        except OSError as e:
            logger.warning("Failed to save debug image %s: %s", name, e)

    def _debug_text(self, run: _Run, original: str, translated: str | None) -> None:
        if not (self._debug and run.debug_dir):
            return
        try:
            self._debug.save_text(run.debug_dir, original, translated)
        except OSError as e:
            logger.warning("Failed to save debug text: %s", e)
