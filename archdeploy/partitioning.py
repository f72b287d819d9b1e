"""GPT layout arithmetic and disk preparation."""
from __future__ import annotations

from dataclasses import dataclass

from .devices import mapper_path
from .errors import CommandError, PreconditionError
from .executil import with_backoff
from .model import DeviceMap

ESP_START_MIB = 1
ESP_END_MIB = 1025
LUKS_PART_TYPE = "8309"


@dataclass(frozen=True)
class Layout:
    esp_start: str
    esp_end: str
    root_start: str
    root_end: str
    home_start: str
    home_end: str = "100%"


def compute_layout(root_size_gb: int) -> Layout:
    root_end = ESP_END_MIB + root_size_gb * 1024
    return Layout(
        esp_start=f"{ESP_START_MIB}MiB",
        esp_end=f"{ESP_END_MIB}MiB",
        root_start=f"{ESP_END_MIB}MiB",
        root_end=f"{root_end}MiB",
        home_start=f"{root_end}MiB",
    )


def layout_commands(device: str, layout: Layout) -> list[tuple[list[str], str]]:
    return [
        (["parted", "-s", device, "mklabel", "gpt"], "Creating GPT label"),
        (["parted", "-s", "-a", "optimal", device, "mkpart", "ESP", "fat32", layout.esp_start, layout.esp_end],
         "Creating ESP partition"),
        (["parted", "-s", device, "set", "1", "esp", "on"], "Setting ESP boot flag"),
        (["parted", "-s", "-a", "optimal", device, "mkpart", "primary", layout.root_start, layout.root_end],
         "Creating root partition"),
        (["parted", "-s", "-a", "optimal", device, "mkpart", "primary", layout.home_start, layout.home_end],
         "Creating home partition"),
    ]


def precleanup(executor, dm: DeviceMap, mapper_names: tuple[str, ...]):
    """Close stale mappings and unmount stale partitions from an earlier attempt."""
    for name in mapper_names:
        if executor.dry_run or executor.is_block_device(mapper_path(name)):
            executor.execute(["cryptsetup", "close", name], f"Closing stale mapping {name}", critical=False)
    for node in (dm.boot, dm.root, dm.home):
        if executor.dry_run or executor.is_block_device(node):
            executor.execute(["umount", "-l", node], f"Unmounting stale {node}", critical=False)


def reread(executor, device: str):
    def _probe():
        res = executor.execute(["partprobe", device], "Refreshing partition table", critical=False)
        if res.rc != 0:
            raise CommandError(["partprobe", device], res.rc, "Refreshing partition table", res.err)

    try:
        with_backoff(_probe, tries=3, base=1.0, sleep=executor.sleep)
    except CommandError as exc:
        executor.logger.warn(f"{exc} (continuing, udev may still pick up the new table)")
    executor.execute(["udevadm", "settle", "--timeout=10"], "Waiting for udev", critical=False)
    executor.sleep(3)


def verify_partitions(executor, dm: DeviceMap):
    for label, node in (("Boot", dm.boot), ("Root", dm.root), ("Home", dm.home)):
        if not executor.is_block_device(node):
            executor.logger.output(executor.query(["lsblk", dm.device]).out)
            raise PreconditionError(f"{label} partition {node} not found")
    executor.logger.success("All partitions verified successfully")


def set_luks_types(executor, device: str):
    for index, label in (("2", "root"), ("3", "home")):
        executor.execute(
            ["parted", "-s", device, "set", index, "type", LUKS_PART_TYPE],
            f"Setting {label} partition type {LUKS_PART_TYPE}",
            critical=False,
        )


def prepare_disk(executor, dm: DeviceMap, root_size_gb: int, mapper_names: tuple[str, ...] = ()):
    log = executor.logger
    precleanup(executor, dm, mapper_names)
    log.info(f"Wiping existing filesystem signatures from {dm.device}...")
    executor.execute(["wipefs", "-af", dm.device], "Wiping all filesystem signatures")
    executor.execute(
        ["dd", "if=/dev/zero", f"of={dm.device}", "bs=1M", "count=10", "conv=fsync"],
        "Zeroing disk header",
    )
    layout = compute_layout(root_size_gb)
    for cmd, desc in layout_commands(dm.device, layout):
        executor.execute(cmd, desc)
    reread(executor, dm.device)
    verify_partitions(executor, dm)
    set_luks_types(executor, dm.device)
    if not executor.dry_run:
        executor.logger.output(executor.query(["lsblk", dm.device]).out)
    return layout
