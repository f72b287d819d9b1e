"""Typed key/value persistence for answers collected during a run.

The file is a flat JSON object rewritten atomically on every save, so an
interrupted run can be resumed with ``--resume-state``.
"""

from __future__ import annotations

import dataclasses
import json
import os
import tempfile
from typing import Any, Dict, Optional

from .errors import StateError
from .model import DeploymentConfig
from .paths import state_file_path

# Every persisted key and the Python type its value must have.
SCHEMA: Dict[str, type] = {
    "target_device": str,
    "boot_partition": str,
    "root_partition": str,
    "home_partition": str,
    "root_size_gb": int,
    "home_size_gb": int,
    "available_gb": int,
    "hostname": str,
    "username": str,
    "btrfs_root_vol": str,
    "btrfs_home_vol": str,
    "btrfs_snapshots_vol": str,
    "luks_root_name": str,
    "luks_home_name": str,
    "add_log_subvolume": bool,
    "enable_nvidia": bool,
    "snapshot_retention": int,
    "timezone": str,
    "user_shell": str,
    "kernel": str,
    "last_phase": str,
}


def _type_ok(expected: type, value: Any) -> bool:
    # bool is an int subclass; keep the two apart.
    if expected is int:
        return isinstance(value, int) and not isinstance(value, bool)
    return isinstance(value, expected)


class StateStore:
    def __init__(self, path: Optional[str] = None, logger=None, *, persist: bool = True):
        self.path = path or state_file_path()
        self.logger = logger
        self.persist = persist
        self._values: Dict[str, Any] = {}

    def _warn(self, message: str) -> None:
        if self.logger is not None:
            self.logger.warn(message)

    def _check(self, key: str, value: Any) -> None:
        if key not in SCHEMA:
            raise StateError(f"unknown state key: {key}")
        expected = SCHEMA[key]
        if not _type_ok(expected, value):
            raise StateError(
                f"state key {key} expects {expected.__name__}, got {type(value).__name__}"
            )

    def save_state(self, key: str, value: Any) -> None:
        self._check(key, value)
        self._values[key] = value
        if self.persist:
            self._write()

    def update(self, values: Dict[str, Any]) -> None:
        for key, value in values.items():
            self._check(key, value)
        self._values.update(values)
        if self.persist:
            self._write()

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def values(self) -> Dict[str, Any]:
        return dict(self._values)

    def _write(self) -> None:
        directory = os.path.dirname(self.path) or "."
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".arch-deploy-state-", dir=directory)
        except OSError as exc:
            raise StateError(f"cannot create state file in {directory}: {exc}") from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self._values, fh, indent=2, sort_keys=True)
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp, 0o600)
            os.replace(tmp, self.path)
        except OSError as exc:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise StateError(f"failed to write state file {self.path}: {exc}") from exc

    def load_state(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return dict(self._values)
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                payload = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            raise StateError(f"cannot read state file {self.path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise StateError(f"state file {self.path} must hold a JSON object")

        loaded: Dict[str, Any] = {}
        for key, value in payload.items():
            if key not in SCHEMA:
                self._warn(f"Ignoring unknown state key '{key}' in {self.path}")
                continue
            if value is None:
                continue
            if not _type_ok(SCHEMA[key], value):
                raise StateError(
                    f"state key {key} expects {SCHEMA[key].__name__}, got {type(value).__name__}"
                )
            loaded[key] = value
        self._values.update(loaded)
        return dict(self._values)

    def apply_to(self, config: DeploymentConfig) -> DeploymentConfig:
        names = {f.name for f in dataclasses.fields(config)}
        changes = {k: v for k, v in self._values.items() if k in names}
        return dataclasses.replace(config, **changes)
