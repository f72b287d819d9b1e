"""The ordered deployment phases.

Each phase takes the ``DeploymentContext`` and returns it, possibly with an
updated config.  A phase checks what the previous phase should have left
behind before it acts; those existence checks pass trivially under the
dry-run executor because nothing was created.
"""

from __future__ import annotations

import dataclasses
import os
import platform
import shutil
from typing import Callable, NamedTuple

from . import boot_plumbing, btrfs, hardening, luks, partitioning, snapshots
from .devices import device_size_bytes, list_block_devices, partition_paths, partuuid_of
from .errors import CommandError, PreconditionError, ValidationError
from .model import MIN_RETENTION, DeploymentContext
from .paths import target_path
from .recovery import write_recovery_doc
from .safety import guard_not_live_disk
from .validators import (
    check_disk_space,
    validate_block_device,
    validate_hostname,
    validate_timezone,
    validate_username,
    validate_volume_name,
)

NETWORK_HOSTS = ("1.1.1.1", "8.8.8.8", "archlinux.org", "google.com")
REQUIRED_TOOLS = ("cryptsetup", "parted", "mkfs.fat", "mkfs.btrfs", "pacstrap", "arch-chroot", "genfstab",
                  "udevadm")
MIN_RAM_GB = 4
SUPPORT_PACKAGES = ("mkinitcpio", "grub", "efibootmgr", "btrfs-progs", "cryptsetup",
                    "networkmanager", "vim", "nano", "git", "curl", "wget", "sudo", "zsh", "openssh")
DRY_RUN_PARTUUID = "00000000-0000-0000-0000-000000000000"


class Phase(NamedTuple):
    name: str
    title: str
    run: Callable[[DeploymentContext], DeploymentContext]


def _mnt(ctx: DeploymentContext) -> str:
    return ctx.mounts.root


def _read_target(ctx: DeploymentContext, path: str) -> str:
    try:
        return ctx.executor.read_file(target_path(_mnt(ctx), path))
    except FileNotFoundError:
        return ""


def _chroot(ctx: DeploymentContext, *cmd: str) -> list[str]:
    return ["arch-chroot", _mnt(ctx), *cmd]


def _partuuid(ctx: DeploymentContext, partition: str) -> str:
    value = partuuid_of(ctx.executor, partition)
    if value:
        return value
    if ctx.dry_run:
        return DRY_RUN_PARTUUID
    raise PreconditionError(f"cannot read PARTUUID of {partition}")


def _require_partitions(ctx: DeploymentContext):
    c = ctx.config
    if not (c.target_device and c.boot_partition and c.root_partition and c.home_partition):
        raise PreconditionError("target device and partitions are not resolved; run device selection first")


def _require_block(ctx: DeploymentContext, *paths: str):
    for path in paths:
        if not ctx.executor.is_block_device(path):
            raise PreconditionError(f"{path} is not present")


def _require_mounted(ctx: DeploymentContext):
    if ctx.dry_run:
        return
    if ctx.executor.query(["findmnt", "-no", "TARGET", _mnt(ctx)]).rc != 0:
        raise PreconditionError(f"target root {_mnt(ctx)} is not mounted")


# 1
def preflight(ctx: DeploymentContext) -> DeploymentContext:
    log, ex = ctx.logger, ctx.executor

    if os.geteuid() != 0:
        if not ctx.dry_run:
            raise PreconditionError("This installer must be run as root")
        log.warn("Not running as root (continuing because of --dry-run)")

    log.info(f"Architecture: {platform.machine()}")
    log.debug(f"CPU cores: {os.cpu_count()}")
    ram_gb = _ram_gb()
    log.debug(f"RAM: {ram_gb}GB")
    if ram_gb < MIN_RAM_GB:
        log.warn(f"RAM is below recommended {MIN_RAM_GB}GB (current: {ram_gb}GB)")

    log.info("Verifying network connectivity...")
    reachable = None
    for host in NETWORK_HOSTS:
        if ex.query(["ping", "-c", "1", "-W", "2", host]).rc == 0:
            reachable = host
            break
    if reachable:
        log.success(f"Connected to {reachable}")
    else:
        log.warn("Network check failed for all hosts; package installation may fail")
        ctx.prompter.confirm_continue("Continue without network?")

    log.info("Verifying required tools...")
    missing = [tool for tool in REQUIRED_TOOLS if shutil.which(tool) is None]
    for tool in REQUIRED_TOOLS:
        if tool not in missing:
            log.debug(f"{tool} available")
    if missing:
        message = f"Required tools not found: {' '.join(missing)}"
        if not ctx.dry_run:
            raise PreconditionError(message)
        log.warn(f"{message} (continuing because of --dry-run)")
    return ctx


def _ram_gb(meminfo: str = "/proc/meminfo") -> int:
    try:
        with open(meminfo, "r", encoding="utf-8") as fh:
            for line in fh:
                if line.startswith("MemTotal:"):
                    return int(line.split()[1]) // (1024 * 1024)
    except (OSError, ValueError, IndexError):
        pass
    return 0


# 2
def configure(ctx: DeploymentContext) -> DeploymentContext:
    p, c = ctx.prompter, ctx.config
    hostname = p.ask_validated("Hostname", c.hostname, validate_hostname, "letters, digits and '-' only")
    username = p.ask_validated("Primary username", c.username, validate_username,
                               "letters, digits, '_' and '-' only")
    vol_hint = "letters, digits, '_' and '-' only"
    root_vol = p.ask_validated("BTRFS root volume label", c.btrfs_root_vol, validate_volume_name, vol_hint)
    home_vol = p.ask_validated("BTRFS home volume label", c.btrfs_home_vol, validate_volume_name, vol_hint)
    snap_vol = p.ask_validated("BTRFS snapshots volume label", c.btrfs_snapshots_vol, validate_volume_name,
                               vol_hint)
    luks_root = p.ask_validated("LUKS root mapper name", c.luks_root_name, validate_volume_name, vol_hint)
    luks_home = p.ask_validated("LUKS home mapper name", c.luks_home_name, validate_volume_name, vol_hint)
    if luks_root == luks_home:
        raise ValidationError("LUKS root and home mapper names must differ")
    add_log = p.ask_yes_no("Create separate @log subvolume for /var/log?", c.add_log_subvolume)
    nvidia = p.ask_yes_no("Install NVIDIA drivers?", c.enable_nvidia)
    retention = p.ask_int("Snapshot retention", c.snapshot_retention, minimum=MIN_RETENTION)
    tz = p.ask_validated("Timezone", c.timezone, validate_timezone, "Region/City or UTC")

    config = dataclasses.replace(
        c,
        hostname=hostname,
        username=username,
        btrfs_root_vol=root_vol,
        btrfs_home_vol=home_vol,
        btrfs_snapshots_vol=snap_vol,
        luks_root_name=luks_root,
        luks_home_name=luks_home,
        add_log_subvolume=add_log,
        enable_nvidia=nvidia,
        snapshot_retention=retention,
        timezone=tz,
    )
    p.confirm_summary(summary_lines(ctx, config))
    ctx.state.update({
        "hostname": hostname,
        "username": username,
        "btrfs_root_vol": root_vol,
        "btrfs_home_vol": home_vol,
        "btrfs_snapshots_vol": snap_vol,
        "luks_root_name": luks_root,
        "luks_home_name": luks_home,
        "add_log_subvolume": add_log,
        "enable_nvidia": nvidia,
        "snapshot_retention": retention,
        "timezone": tz,
    })
    ctx.config = config
    ctx.logger.success("Configuration saved")
    return ctx


def summary_lines(ctx: DeploymentContext, config=None) -> list[str]:
    c = config or ctx.config
    f = ctx.flags
    lines = [
        f"Hostname:            {c.hostname}",
        f"Username:            {c.username} ({c.user_shell})",
        f"BTRFS volumes:       {c.btrfs_root_vol} / {c.btrfs_home_vol} / {c.btrfs_snapshots_vol}",
        f"LUKS mappers:        {c.luks_root_name} / {c.luks_home_name}",
        f"@log subvolume:      {'yes' if c.add_log_subvolume else 'no'}",
        f"NVIDIA drivers:      {'yes' if c.enable_nvidia else 'no'}",
        f"Snapshot retention:  {c.snapshot_retention}",
        f"Timezone:            {c.timezone}",
        f"Kernel:              {c.kernel}",
        f"TPM2 / AppArmor / firewall: {f.enable_tpm2} / {f.enable_apparmor} / {f.enable_firewall}",
    ]
    if c.target_device:
        lines.append(f"Target device:       {c.target_device} (root {c.root_size_gb}GB, home {c.home_size_gb}GB)")
    return lines


# 3
def select_device(ctx: DeploymentContext) -> DeploymentContext:
    log, ex, p = ctx.logger, ctx.executor, ctx.prompter
    devices = list_block_devices(ex)
    if not devices:
        raise PreconditionError("No suitable storage devices found")

    device = None
    for _ in range(3):
        candidate = p.select_device(devices)
        if not validate_block_device(candidate):
            log.warn(f"Invalid or mounted device: {candidate}")
            continue
        ok, reason = guard_not_live_disk(ex, candidate)
        if not ok:
            log.warn(reason)
            continue
        device = candidate
        break
    if device is None:
        raise ValidationError("No usable target device selected")
    ctx.state.save_state("target_device", device)

    space = check_disk_space(device_size_bytes(ex, device))
    log.info(f"Available disk space: {space.available_gb}GB")
    default_root = max(ctx.config.root_size_gb, 50)
    root_gb, home_gb = p.prompt_partition_size(space.available_gb, default_root=default_root)
    p.confirm_destructive_operation(device, space.available_gb, ctx.dry_run)

    dm = partition_paths(device)
    ctx.config = dataclasses.replace(
        ctx.config,
        target_device=device,
        boot_partition=dm.boot,
        root_partition=dm.root,
        home_partition=dm.home,
        root_size_gb=root_gb,
        home_size_gb=home_gb,
        available_gb=space.available_gb,
    )
    log.info("Partition configuration:")
    log.info(f"  Boot: {dm.boot}")
    log.info(f"  Root: {dm.root} ({root_gb}GB)")
    log.info(f"  Home: {dm.home} ({home_gb}GB)")
    ctx.state.update({
        "boot_partition": dm.boot,
        "root_partition": dm.root,
        "home_partition": dm.home,
        "root_size_gb": root_gb,
        "home_size_gb": home_gb,
        "available_gb": space.available_gb,
    })
    return ctx


# 4
def prepare_disk(ctx: DeploymentContext) -> DeploymentContext:
    _require_partitions(ctx)
    c = ctx.config
    dm = partition_paths(c.target_device)
    partitioning.prepare_disk(ctx.executor, dm, c.root_size_gb, (c.luks_root_name, c.luks_home_name))
    return ctx


# 5
def encrypt(ctx: DeploymentContext) -> DeploymentContext:
    _require_partitions(ctx)
    c, ex = ctx.config, ctx.executor
    _require_block(ctx, c.boot_partition, c.root_partition, c.home_partition)
    if ctx.dry_run:
        ctx.logger.info("[DRY-RUN] Skipping LUKS passphrase prompt")
    else:
        ctx.passphrase = ctx.prompter.prompt_luks_passphrase()
    try:
        ex.execute(["mkfs.fat", "-F", "32", "-n", "EFI", c.boot_partition], f"Formatting {c.boot_partition} as FAT32")
        luks.setup_volume(ex, c.root_partition, c.luks_root_name, "LUKS_ROOT", ctx.passphrase)
        luks.setup_volume(ex, c.home_partition, c.luks_home_name, "LUKS_HOME", ctx.passphrase)
    finally:
        ctx.passphrase = None
    return ctx


# 6
def btrfs_layout(ctx: DeploymentContext) -> DeploymentContext:
    c, ex = ctx.config, ctx.executor
    _require_block(ctx, c.root_mapper)
    btrfs.create_filesystem(ex, c.root_mapper)
    btrfs.create_subvolumes(ex, c.root_mapper, _mnt(ctx), c.add_log_subvolume)
    ctx.mounts.mounted = btrfs.mount_layout(ex, c.root_mapper, c.boot_partition, _mnt(ctx), c.add_log_subvolume)
    ctx.logger.success("BTRFS subvolume hierarchy created and mounted")
    return ctx


def package_list(ctx: DeploymentContext) -> list[str]:
    c, f = ctx.config, ctx.flags
    pkgs = ["base", c.kernel, f"{c.kernel}-headers", "linux-firmware"] + list(SUPPORT_PACKAGES)
    if f.enable_apparmor:
        pkgs.append("apparmor")
    if f.enable_firewall:
        pkgs.append("nftables")
    if f.enable_tpm2:
        pkgs.append("tpm2-tools")
    if c.enable_nvidia:
        pkgs.append("nvidia-dkms")
    return pkgs


def _retry_or_raise(ctx: DeploymentContext, cmd: list[str], description: str):
    outcome = ctx.executor.execute_with_retry(cmd, description)
    if not outcome.succeeded:
        last = outcome.last
        raise CommandError(cmd, last.rc if last else 1, description, last.err if last else "")
    return outcome


# 7
def install_base(ctx: DeploymentContext) -> DeploymentContext:
    _require_mounted(ctx)
    _retry_or_raise(ctx, ["pacman", "-Sy", "--noconfirm"], "Synchronizing package databases")
    _retry_or_raise(ctx, ["pacstrap", "-K", _mnt(ctx), *package_list(ctx)], "Installing base system")
    return ctx


# 8
def fstab_crypttab(ctx: DeploymentContext) -> DeploymentContext:
    _require_mounted(ctx)
    c, ex = ctx.config, ctx.executor
    res = ex.execute(["genfstab", "-U", _mnt(ctx)], "Generating fstab")
    ex.append_file(target_path(_mnt(ctx), "/etc/fstab"), res.out, description="Appending to /etc/fstab")

    entries = [
        (c.luks_root_name, _partuuid(ctx, c.root_partition)),
        (c.luks_home_name, _partuuid(ctx, c.home_partition)),
    ]
    text = boot_plumbing.render_crypttab(_read_target(ctx, "/etc/crypttab"), entries, tpm2=ctx.flags.enable_tpm2)
    ex.write_file(target_path(_mnt(ctx), "/etc/crypttab"), text, mode=0o600, description="Writing /etc/crypttab")
    return ctx


# 9
def initramfs(ctx: DeploymentContext) -> DeploymentContext:
    _require_mounted(ctx)
    ex = ctx.executor
    path = target_path(_mnt(ctx), "/etc/mkinitcpio.conf")
    current = _read_target(ctx, "/etc/mkinitcpio.conf")
    if current:
        ex.write_file(path + ".bak", current, description="Backing up mkinitcpio.conf")
    ex.write_file(path, boot_plumbing.render_mkinitcpio(current, tpm2=ctx.flags.enable_tpm2),
                  description="Writing MODULES/HOOKS to mkinitcpio.conf")
    ex.execute(_chroot(ctx, "mkinitcpio", "-p", ctx.config.kernel), "Regenerating initramfs")
    return ctx


def _grub_mkconfig(ctx: DeploymentContext):
    ctx.executor.execute(_chroot(ctx, "grub-mkconfig", "-o", "/boot/grub/grub.cfg"), "Generating GRUB configuration")


# 10
def bootloader(ctx: DeploymentContext) -> DeploymentContext:
    _require_mounted(ctx)
    c, ex = ctx.config, ctx.executor
    ex.execute(
        _chroot(ctx, "grub-install", "--target=x86_64-efi", "--efi-directory=/boot", "--bootloader-id=GRUB"),
        "Installing GRUB (x86_64-efi)",
    )
    flags = boot_plumbing.root_cmdline_flags(_partuuid(ctx, c.root_partition), c.luks_root_name)
    text = boot_plumbing.render_grub_default(_read_target(ctx, hardening.GRUB_DEFAULT), flags)
    ex.write_file(target_path(_mnt(ctx), hardening.GRUB_DEFAULT), text, description="Configuring /etc/default/grub")
    _grub_mkconfig(ctx)
    return ctx


# 11
def system_config(ctx: DeploymentContext) -> DeploymentContext:
    _require_mounted(ctx)
    c, ex, mnt = ctx.config, ctx.executor, _mnt(ctx)
    ex.write_file(target_path(mnt, "/etc/hostname"), c.hostname + "\n", description="Writing /etc/hostname")
    ex.write_file(target_path(mnt, "/etc/hosts"), boot_plumbing.render_hosts(c.hostname),
                  description="Writing /etc/hosts")
    ex.execute(_chroot(ctx, "ln", "-sf", f"/usr/share/zoneinfo/{c.timezone}", "/etc/localtime"),
               f"Setting timezone {c.timezone}")
    ex.execute(_chroot(ctx, "hwclock", "--systohc"), "Syncing hardware clock", critical=False)
    ex.write_file(target_path(mnt, "/etc/locale.gen"),
                  boot_plumbing.render_locale_gen(_read_target(ctx, "/etc/locale.gen")),
                  description="Enabling en_US.UTF-8 in /etc/locale.gen")
    ex.execute(_chroot(ctx, "locale-gen"), "Generating locales")
    ex.write_file(target_path(mnt, "/etc/locale.conf"), boot_plumbing.render_locale_conf(),
                  description="Writing /etc/locale.conf")
    ex.execute(_chroot(ctx, "systemctl", "enable", "NetworkManager"), "Enabling NetworkManager")
    sudoers = _read_target(ctx, "/etc/sudoers")
    if sudoers or ctx.dry_run:
        ex.write_file(target_path(mnt, "/etc/sudoers"), boot_plumbing.enable_wheel_sudo(sudoers), mode=0o440,
                      description="Enabling sudo for the wheel group")
    else:
        ctx.logger.warn("/etc/sudoers not found in target; wheel sudo not enabled")
    return ctx


# 12
def user_setup(ctx: DeploymentContext) -> DeploymentContext:
    _require_mounted(ctx)
    c, ex = ctx.config, ctx.executor
    ex.execute(_chroot(ctx, "useradd", "-m", "-G", "wheel", "-s", c.user_shell, c.username),
               f"Creating user {c.username}")
    ex.interactive(_chroot(ctx, "passwd", c.username), f"Set password for {c.username}")
    ex.interactive(_chroot(ctx, "passwd"), "Set password for root")
    return ctx


# 13
def snapshot_automation(ctx: DeploymentContext) -> DeploymentContext:
    _require_mounted(ctx)
    snapshots.install_automation(ctx.executor, _mnt(ctx), ctx.config.snapshot_retention)
    ctx.logger.success(f"Weekly snapshots enabled (keeping {ctx.config.snapshot_retention})")
    return ctx


# 14
def harden(ctx: DeploymentContext) -> DeploymentContext:
    _require_mounted(ctx)
    ex, mnt, f = ctx.executor, _mnt(ctx), ctx.flags
    hardening.write_sysctl(ex, mnt)
    hardening.apply_kernel_flags(ex, mnt, f.enable_apparmor)
    if f.enable_apparmor:
        hardening.enable_apparmor(ex, mnt)
    if f.enable_firewall:
        hardening.configure_firewall(ex, mnt)
    _grub_mkconfig(ctx)
    return ctx


# 15
def finalize(ctx: DeploymentContext) -> DeploymentContext:
    c, ex, log = ctx.config, ctx.executor, ctx.logger
    for line in summary_lines(ctx):
        log.info(line)
    log.debug("crypttab:\n" + _read_target(ctx, "/etc/crypttab"))
    log.debug("fstab:\n" + _read_target(ctx, "/etc/fstab"))
    mk = [ln for ln in _read_target(ctx, "/etc/mkinitcpio.conf").splitlines() if ln.startswith(("MODULES", "HOOKS"))]
    log.debug("mkinitcpio:\n" + "\n".join(mk))

    write_recovery_doc(ex, _mnt(ctx), c, _partuuid(ctx, c.root_partition), _partuuid(ctx, c.home_partition))

    mounted = ctx.mounts.mounted or btrfs.expected_mountpoints(_mnt(ctx), c.add_log_subvolume)
    failed = btrfs.unmount_all(ex, mounted, lazy=True)
    for where in failed:
        log.warn(f"Failed to unmount {where}")
    ctx.mounts.mounted = [m for m in mounted if m in failed]
    for name in (c.luks_home_name, c.luks_root_name):
        luks.close_luks(ex, name)
    log.success("Installation complete. Remove the install media and reboot.")
    return ctx


PHASES = (
    Phase("preflight", "PRE-FLIGHT VALIDATION", preflight),
    Phase("configure", "INTERACTIVE SYSTEM CONFIGURATION", configure),
    Phase("select_device", "DEVICE & PARTITION CONFIGURATION", select_device),
    Phase("prepare_disk", "DISK WIPING & PARTITIONING", prepare_disk),
    Phase("encrypt", "LUKS2 ENCRYPTION SETUP", encrypt),
    Phase("btrfs_layout", "BTRFS FILESYSTEM SETUP", btrfs_layout),
    Phase("install_base", "BASE SYSTEM INSTALLATION", install_base),
    Phase("fstab_crypttab", "FSTAB & CRYPTTAB", fstab_crypttab),
    Phase("initramfs", "INITRAMFS", initramfs),
    Phase("bootloader", "BOOTLOADER", bootloader),
    Phase("system_config", "SYSTEM CONFIGURATION", system_config),
    Phase("user_setup", "USER SETUP", user_setup),
    Phase("snapshots", "SNAPSHOT AUTOMATION", snapshot_automation),
    Phase("harden", "SECURITY HARDENING", harden),
    Phase("finalize", "FINALIZATION", finalize),
)
