"""Refusals for destructive operations aimed at the running system."""

from __future__ import annotations

import os


def _parent_disk(executor, mountpoint: str) -> str:
    src = (executor.query(["findmnt", "-no", "SOURCE", mountpoint]).out or "").strip()
    if not src:
        return ""
    # /dev/nvme0n1p2 -> nvme0n1
    lines = (executor.query(["lsblk", "-no", "PKNAME", src]).out or "").strip().splitlines()
    return lines[0].strip() if lines else ""


def guard_not_live_disk(executor, device: str) -> tuple[bool, str]:
    """
    Refuse when the target device is the parent disk of the live / or /boot.
    Returns (ok, reason).
    """
    root_pd = _parent_disk(executor, "/")
    boot_pd = _parent_disk(executor, "/boot")
    devname = os.path.basename(device)
    for live in (root_pd, boot_pd):
        if live and live == devname:
            return False, f"Target {device} looks like live disk ({live})."
    return True, ""
