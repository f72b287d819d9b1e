"""Input validation for operator-supplied values.

Everything here is a pure predicate or a small calculation; the only I/O is
reading the mount table and stat'ing a device node.
"""

from __future__ import annotations

import os
import re
import stat
from dataclasses import dataclass

from .errors import InsufficientSpaceError, ValidationError
from .model import EFI_GB, MIN_HOME_GB, MIN_ROOT_GB

GIB = 1024 ** 3
MIN_TOTAL_GB = EFI_GB + MIN_ROOT_GB + MIN_HOME_GB

_HOSTNAME_RE = re.compile(r"^[A-Za-z0-9-]+$", re.ASCII)
_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$", re.ASCII)
_TZ_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_+-]+$", re.ASCII)


@dataclass(frozen=True)
class DiskSpace:
    size_bytes: int
    available_gb: int


def validate_hostname(value: str) -> bool:
    return bool(value) and _HOSTNAME_RE.fullmatch(value) is not None


def validate_username(value: str) -> bool:
    return bool(value) and _NAME_RE.fullmatch(value) is not None


def validate_volume_name(value: str) -> bool:
    return bool(value) and _NAME_RE.fullmatch(value) is not None


def validate_timezone(value: str) -> bool:
    if value == "UTC":
        return True
    parts = (value or "").split("/")
    if len(parts) < 2:
        return False
    return all(p and _TZ_SEGMENT_RE.fullmatch(p) and p not in (".", "..") for p in parts)


def _read_mounts() -> str:
    try:
        with open("/proc/mounts", "r", encoding="utf-8") as fh:
            return fh.read()
    except OSError:
        return ""


def mounted_sources(mounts_text: str) -> set[str]:
    sources = set()
    for line in mounts_text.splitlines():
        fields = line.split()
        if fields:
            sources.add(fields[0])
    return sources


def is_mounted(path: str, mounts_text: str | None = None) -> bool:
    """True when ``path`` or one of its partitions is a mount source."""

    text = _read_mounts() if mounts_text is None else mounts_text
    for src in mounted_sources(text):
        if src == path:
            return True
        tail = src[len(path):]
        if src.startswith(path) and re.fullmatch(r"p?\d+", tail):
            return True
    return False


def validate_block_device(path: str, mounts_text: str | None = None) -> bool:
    try:
        if not stat.S_ISBLK(os.stat(path).st_mode):
            return False
    except OSError:
        return False
    return not is_mounted(path, mounts_text)


def check_disk_space(size_bytes: int) -> DiskSpace:
    available = int(size_bytes) // GIB
    if available < MIN_TOTAL_GB:
        raise InsufficientSpaceError(
            f"Insufficient disk space: need at least {MIN_TOTAL_GB}GB "
            f"({EFI_GB}GB EFI + {MIN_ROOT_GB}GB root + {MIN_HOME_GB}GB home), "
            f"only {available}GB available",
            available_gb=available,
            required_gb=MIN_TOTAL_GB,
        )
    return DiskSpace(size_bytes=int(size_bytes), available_gb=available)


def compute_home_size(available_gb: int, root_gb: int) -> int:
    if root_gb < MIN_ROOT_GB:
        raise ValidationError(f"Root partition must be at least {MIN_ROOT_GB}GB (got {root_gb}GB)")
    home = available_gb - EFI_GB - root_gb
    if home < MIN_HOME_GB:
        raise ValidationError(
            f"Root size {root_gb}GB leaves {home}GB for home; at least {MIN_HOME_GB}GB is required"
        )
    return home
