"""Block device discovery and partition naming (read-only)."""
from __future__ import annotations

import json
import os
import re

from .errors import PreconditionError, ValidationError
from .model import DeviceMap

_DISK_NAME_RE = re.compile(r"^(nvme\d+n\d+|sd[a-z]+)$")


def partition_suffix(device: str) -> str:
    # NVMe and MMC nodes end in a digit and need a ``p`` separator (nvme0n1p1).
    base = device.rstrip("/") or device
    return "p" if base[-1:].isdigit() else ""


def partition_path(device: str, index: int) -> str:
    return f"{device}{partition_suffix(device)}{index}"


def partition_paths(device: str) -> DeviceMap:
    return DeviceMap(
        device=device,
        boot=partition_path(device, 1),
        root=partition_path(device, 2),
        home=partition_path(device, 3),
    )


def list_block_devices(executor) -> list[dict]:
    """Whole disks eligible as install targets, in ``lsblk`` order."""

    res = executor.query(["lsblk", "-J", "-d", "-o", "NAME,PATH,SIZE,TYPE,MODEL"])
    if res.rc != 0:
        raise PreconditionError(f"lsblk failed (exit code: {res.rc}): {res.err.strip()}")
    try:
        payload = json.loads(res.out or "{}")
    except json.JSONDecodeError as exc:
        raise PreconditionError(f"failed to parse lsblk output: {exc}") from exc

    disks = []
    for entry in payload.get("blockdevices") or []:
        name = entry.get("name") or ""
        if entry.get("type") != "disk" or not _DISK_NAME_RE.match(name):
            continue
        disks.append({
            "name": name,
            "path": entry.get("path") or f"/dev/{name}",
            "size": entry.get("size") or "?",
            "model": (entry.get("model") or "").strip(),
        })
    executor.logger.trace("devices.list", count=len(disks), names=[d["name"] for d in disks])
    return disks


def device_size_bytes(executor, device: str) -> int:
    res = executor.query(["lsblk", "-bnd", "-o", "SIZE", device])
    raw = (res.out or "").strip().splitlines()
    if res.rc != 0 or not raw or not raw[0].strip().isdecimal():
        raise ValidationError(f"Cannot determine size of {device}")
    return int(raw[0].strip())


def _blkid_value(executor, tag: str, path: str) -> str:
    res = executor.query(["blkid", "-s", tag, "-o", "value", path])
    return (res.out or "").strip() if res.rc == 0 else ""


def partuuid_of(executor, path: str) -> str:
    return _blkid_value(executor, "PARTUUID", path)


def uuid_of(executor, path: str) -> str:
    return _blkid_value(executor, "UUID", path)


def mapper_path(name: str) -> str:
    return os.path.join("/dev/mapper", name)
