from __future__ import annotations

import os
import tempfile
from pathlib import Path

_DEFAULT_LOG_DIR = "/var/log"
_FALLBACK_LOG_DIR = "/tmp/archdeploy-logs"
_DEFAULT_MOUNT_ROOT = "/mnt/root"


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def log_dirs() -> list[str]:
    """Return candidate log directories in order of preference.

    ``ARCHDEPLOY_LOG_DIR`` wins when set.  Otherwise the system log directory
    is tried first and a temp directory is used when ``/var/log`` is not
    writable (running unprivileged for a dry run, for example).
    """

    override = os.environ.get("ARCHDEPLOY_LOG_DIR")
    if override:
        return [_expand(override)]
    return [_DEFAULT_LOG_DIR, _FALLBACK_LOG_DIR]


def state_dir() -> str:
    override = os.environ.get("ARCHDEPLOY_STATE_DIR")
    if override:
        return _expand(override)
    return tempfile.gettempdir()


def state_file_path(pid: int | None = None) -> str:
    pid = os.getpid() if pid is None else pid
    return os.path.join(state_dir(), f"arch-deploy-state-{pid}.json")


def mount_root() -> str:
    override = os.environ.get("ARCHDEPLOY_MOUNT_ROOT")
    if override:
        return _expand(override)
    return _DEFAULT_MOUNT_ROOT


def target_path(mnt: str, path: str) -> str:
    """Map an absolute path inside the installed system onto the mount root."""

    return os.path.join(mnt, path.lstrip("/"))
