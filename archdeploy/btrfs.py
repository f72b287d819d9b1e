"""BTRFS filesystem and subvolume layout on the opened root mapper."""

from __future__ import annotations

from dataclasses import dataclass

from .paths import target_path

BASE_MOUNT_OPTIONS = "compress=zstd,noatime,space_cache=v2"
FS_LABEL = "root_encrypted"


@dataclass(frozen=True)
class Subvolume:
    name: str
    mountpoint: str
    extra: str = ""


SUBVOLUMES = (
    Subvolume("@", "/", "nodev,nosuid,noexec"),
    Subvolume("@home", "/home"),
    Subvolume("@var", "/var", "nodev,nosuid"),
    Subvolume("@varcache", "/var/cache", "nodev,nosuid"),
    Subvolume("@snapshots", "/.snapshots", "nodev,nosuid"),
)
LOG_SUBVOLUME = Subvolume("@log", "/var/log", "nodev,nosuid")


def subvolumes(add_log: bool) -> tuple[Subvolume, ...]:
    """Subvolumes in mount order (parents before children)."""
    return SUBVOLUMES + ((LOG_SUBVOLUME,) if add_log else ())


def mount_options(sv: Subvolume) -> str:
    opts = f"subvol={sv.name},{BASE_MOUNT_OPTIONS}"
    return f"{opts},{sv.extra}" if sv.extra else opts


def create_filesystem(executor, device: str):
    executor.execute(["mkfs.btrfs", "-f", "-L", FS_LABEL, device], f"Formatting {device} with BTRFS")


def create_subvolumes(executor, device: str, mnt: str, add_log: bool):
    executor.make_dirs(mnt)
    executor.execute(["mount", device, mnt], "Mounting BTRFS root (temporary)")
    for sv in subvolumes(add_log):
        executor.execute(["btrfs", "subvolume", "create", f"{mnt}/{sv.name}"], f"Creating {sv.name} subvolume")
    executor.execute(["umount", mnt], "Unmounting temporary mount")


def mount_layout(executor, device: str, boot_partition: str, mnt: str, add_log: bool) -> list[str]:
    """Mount every subvolume plus the ESP; returns mountpoints in mount order."""
    mounted = []
    for sv in subvolumes(add_log):
        where = mnt if sv.mountpoint == "/" else target_path(mnt, sv.mountpoint)
        executor.logger.info(f"Mounting {sv.name} to {where}...")
        executor.make_dirs(where)
        executor.execute(["mount", "-o", mount_options(sv), device, where], f"Mounting {sv.name}")
        mounted.append(where)
    boot = target_path(mnt, "/boot")
    executor.make_dirs(boot)
    executor.execute(["mount", boot_partition, boot], "Mounting EFI partition")
    mounted.append(boot)
    return mounted


def unmount_order(mounted: list[str]) -> list[str]:
    """Deepest paths first so children come off before their parents."""
    return sorted(mounted, key=lambda p: (p.rstrip("/").count("/"), p), reverse=True)


def unmount_all(executor, mounted: list[str], lazy: bool = False) -> list[str]:
    failed = []
    for where in unmount_order(mounted):
        cmd = ["umount", "-l", where] if lazy else ["umount", where]
        res = executor.execute(cmd, f"Unmounting {where}", critical=False)
        if res.rc != 0:
            failed.append(where)
    return failed


def expected_mountpoints(mnt: str, add_log: bool) -> list[str]:
    points = [mnt if sv.mountpoint == "/" else target_path(mnt, sv.mountpoint) for sv in subvolumes(add_log)]
    return points + [target_path(mnt, "/boot")]
