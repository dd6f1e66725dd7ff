"""Debug service: per-request artifact saving and pipeline logging.

When ``SHUNYAKU_DEBUG=1`` is set, DebugService creates a session directory
under ``SHUNYAKU_DEBUG_DIR`` (default ``.tests/debug/`` in the working
directory) and records every pipeline run.

Each run gets its own numbered folder::

    .tests/debug/session_YYYYMMDD_HHMMSS/
        pipeline.log
        001/
            raw.png           # captured screenshot
            processed.png     # image after preprocessing (what OCR sees)
            text.txt          # recognized text, then the translation
        002/ ...
"""

from __future__ import annotations

import os
import shutil
import threading
from datetime import datetime


def is_debug_enabled() -> bool:
    return os.environ.get("SHUNYAKU_DEBUG", "0") == "1"


def _debug_root() -> str:
    return os.environ.get("SHUNYAKU_DEBUG_DIR") or os.path.join(os.getcwd(), ".tests", "debug")


class DebugService:
    def __init__(self, root: str | None = None) -> None:
        ts = datetime.now().strftime("%Y%m%d_%H%M%S")
        self._session_dir = os.path.join(root or _debug_root(), f"session_{ts}")
        os.makedirs(self._session_dir, exist_ok=True)

        log_path = os.path.join(self._session_dir, "pipeline.log")
        self._log_file = open(log_path, "w", encoding="utf-8")  # noqa: SIM115
        self._lock = threading.Lock()
        self._run_count = 0

        self.log("SESSION", f"started at {ts}")

    @property
    def session_dir(self) -> str:
        return self._session_dir

    # ------------------------------------------------------------------
    # Pipeline logging
    # ------------------------------------------------------------------

    def log(self, tag: str, text: str) -> None:
        ts = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        with self._lock:
            if self._log_file.closed:
                return
            self._log_file.write(f"{ts}  [{tag}]  {text}\n")
            self._log_file.flush()

    # ------------------------------------------------------------------
    # Run artifacts
    # ------------------------------------------------------------------

    def start_run(self) -> str:
        with self._lock:
            self._run_count += 1
            number = self._run_count
        folder = os.path.join(self._session_dir, f"{number:03d}")
        os.makedirs(folder, exist_ok=True)
        self.log("RUN", f"{number:03d} started")
        return folder

    def save_image(self, folder: str, name: str, source_path: str | None) -> None:
        # Files are copied; the pipeline deletes its own temp files afterwards.
        if not source_path or not os.path.isfile(source_path):
            return
        shutil.copyfile(source_path, os.path.join(folder, name))

    def save_text(self, folder: str, original: str, translated: str | None = None) -> None:
        with open(os.path.join(folder, "text.txt"), "w", encoding="utf-8") as f:
            f.write(original)
            if translated is not None:
                f.write("\n---\n")
                f.write(translated)
        self.log("SAVED", os.path.basename(folder))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def shutdown(self) -> None:
        self.log("SESSION", "ended")
        with self._lock:
            self._log_file.close()
