"""Console + file logging for a deployment run.

Two append-only text files per run: the general log gets every record and the
raw output of executed commands, the error log gets ERROR records plus the
diagnostics written by the error trap.
"""

from __future__ import annotations

import datetime as _dt
import json
import os
import sys
from typing import TextIO

from .paths import log_dirs

GREEN = "\033[0;32m"
YELLOW = "\033[1;33m"
RED = "\033[0;31m"
BLUE = "\033[0;34m"
CYAN = "\033[0;36m"
CLR = "\033[0m"

LEVELS = {"TRACE": 5, "DEBUG": 10, "INFO": 20, "SUCCESS": 25, "WARN": 30, "ERROR": 40, "NONE": 100}

_PREFIX = {
    "DEBUG": (BLUE, "[DEBUG]"),
    "INFO": (GREEN, "[INFO]"),
    "SUCCESS": (GREEN, "[✓ SUCCESS]"),
    "WARN": (YELLOW, "[WARN]"),
    "ERROR": (RED, "[✗ ERROR]"),
}

RULE = "=" * 80


def _stamp() -> str:
    return _dt.datetime.now().strftime("%Y%m%d-%H%M%S")


def _resolve_dir(candidates: list[str]) -> str | None:
    for d in candidates:
        try:
            os.makedirs(d, exist_ok=True)
        except OSError:
            continue
        if os.access(d, os.W_OK):
            return d
    return None


class DeployLogger:
    def __init__(
            self,
            log_dir: str | None = None,
            *,
            stamp: str | None = None,
            level: str | None = None,
            stream: TextIO | None = None,
            color: bool | None = None,
    ):
        stamp = stamp or _stamp()
        directory = _resolve_dir([log_dir] if log_dir else log_dirs())
        self.log_path = os.path.join(directory, f"arch-deploy-{stamp}.log") if directory else None
        self.error_path = os.path.join(directory, f"arch-deploy-errors-{stamp}.log") if directory else None
        self.level = (level or os.environ.get("ARCHDEPLOY_LOG_LEVEL", "INFO")).upper()
        self.stream = stream if stream is not None else sys.stdout
        if color is None:
            color = hasattr(self.stream, "isatty") and self.stream.isatty() and "NO_COLOR" not in os.environ
        self.color = color

    def _append(self, path: str | None, text: str) -> None:
        if not path:
            return
        try:
            with open(path, "a", encoding="utf-8") as fh:
                fh.write(text)
        except OSError:
            pass

    def _console(self, line: str) -> None:
        try:
            print(line, file=self.stream, flush=True)
        except (OSError, ValueError):
            pass

    def _enabled(self, level: str) -> bool:
        return LEVELS.get(level, 100) >= LEVELS.get(self.level, LEVELS["INFO"])

    def log(self, level: str, message: str) -> None:
        level = level.upper()
        color, prefix = _PREFIX.get(level, ("", f"[{level}]"))
        ts = _dt.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        record = f"{ts} {prefix} {message}\n"
        self._append(self.log_path, record)
        if level == "ERROR":
            self._append(self.error_path, record)
        if self._enabled(level):
            shown = f"{color}{prefix}{CLR} {message}" if self.color and color else f"{prefix} {message}"
            self._console(shown)

    def debug(self, message: str) -> None:
        self.log("DEBUG", message)

    def info(self, message: str) -> None:
        self.log("INFO", message)

    def warn(self, message: str) -> None:
        self.log("WARN", message)

    def success(self, message: str) -> None:
        self.log("SUCCESS", message)

    def error(self, message: str) -> None:
        self.log("ERROR", message)

    def section(self, title: str) -> None:
        self._append(self.log_path, f"\n{RULE}\n{title}\n{RULE}\n")
        if self._enabled("INFO"):
            if self.color:
                self._console(f"\n{CYAN}{RULE}{CLR}\n{CYAN}{title}{CLR}\n{CYAN}{RULE}{CLR}")
            else:
                self._console(f"\n{RULE}\n{title}\n{RULE}")

    def trace(self, event: str, **fields) -> None:
        if LEVELS.get(self.level, 100) > LEVELS["TRACE"]:
            return
        ts = _dt.datetime.now(_dt.timezone.utc).isoformat()
        rec = {"ts": ts, "level": "TRACE", "event": event}
        rec.update(fields)
        self._append(self.log_path, json.dumps(rec, default=str) + "\n")

    def output(self, text: str) -> None:
        """Append raw command output to the general log."""

        if text:
            self._append(self.log_path, text if text.endswith("\n") else text + "\n")

    def error_detail(self, text: str) -> None:
        self._append(self.error_path, text if text.endswith("\n") else text + "\n")

    def paths(self) -> dict:
        return {"log_path": self.log_path, "error_log": self.error_path}
