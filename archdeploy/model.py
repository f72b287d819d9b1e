from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

MIN_ROOT_GB = 50
MIN_HOME_GB = 20
EFI_GB = 1
MIN_RETENTION = 2


@dataclass
class Flags:
    dry_run: bool = False
    enable_tpm2: bool = False
    enable_apparmor: bool = True
    enable_firewall: bool = True
    assume_defaults: bool = False
    resume_state: Optional[str] = None


@dataclass(frozen=True)
class DeploymentConfig:
    target_device: Optional[str] = None
    boot_partition: Optional[str] = None
    root_partition: Optional[str] = None
    home_partition: Optional[str] = None
    root_size_gb: int = MIN_ROOT_GB
    home_size_gb: int = 0
    available_gb: int = 0
    hostname: str = "devta"
    username: str = "patel"
    btrfs_root_vol: str = "root"
    btrfs_home_vol: str = "home"
    btrfs_snapshots_vol: str = "snapshots"
    luks_root_name: str = "yumraj"
    luks_home_name: str = "yumdut"
    add_log_subvolume: bool = True
    enable_nvidia: bool = False
    snapshot_retention: int = 12
    timezone: str = "UTC"
    user_shell: str = "/usr/bin/zsh"
    kernel: str = "linux-zen"

    @property
    def root_mapper(self) -> str:
        return f"/dev/mapper/{self.luks_root_name}"

    @property
    def home_mapper(self) -> str:
        return f"/dev/mapper/{self.luks_home_name}"


@dataclass
class DeviceMap:
    device: str
    boot: str
    root: str
    home: str


@dataclass
class Mounts:
    root: str = "/mnt/root"
    mounted: list[str] = field(default_factory=list)


@dataclass
class DeploymentContext:
    config: DeploymentConfig
    flags: Flags
    executor: Any
    logger: Any
    state: Any
    prompter: Any
    mounts: Mounts = field(default_factory=Mounts)
    # Set for the duration of the encrypt phase only.
    passphrase: Optional[str] = field(default=None, repr=False)
    current_phase: Optional[str] = None

    @property
    def dry_run(self) -> bool:
        return self.flags.dry_run
