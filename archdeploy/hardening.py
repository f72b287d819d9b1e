"""Kernel, sysctl, AppArmor and nftables hardening for the target system."""

from __future__ import annotations

from .boot_plumbing import render_grub_default
from .paths import target_path

SYSCTL_PATH = "/etc/sysctl.d/99-hardening.conf"
NFTABLES_PATH = "/etc/nftables.conf"
GRUB_DEFAULT = "/etc/default/grub"

SYSCTL_SETTINGS = (
    ("Kernel protection", (
        ("kernel.modules_disabled", "1"),
        ("kernel.dmesg_restrict", "1"),
        ("kernel.sysrq", "0"),
        ("kernel.perf_event_paranoid", "3"),
        ("kernel.kptr_restrict", "2"),
        ("kernel.printk_devkmsg", "off"),
        ("kernel.randomize_va_space", "2"),
    )),
    ("Network stack", (
        ("net.ipv4.tcp_syncookies", "1"),
        ("net.ipv4.tcp_max_syn_backlog", "2048"),
        ("net.ipv4.tcp_synack_retries", "2"),
        ("net.ipv4.conf.all.send_redirects", "0"),
        ("net.ipv4.conf.default.send_redirects", "0"),
        ("net.ipv4.conf.all.accept_redirects", "0"),
        ("net.ipv4.conf.default.accept_redirects", "0"),
        ("net.ipv4.conf.all.accept_source_route", "0"),
        ("net.ipv4.conf.default.accept_source_route", "0"),
        ("net.ipv4.conf.all.rp_filter", "1"),
        ("net.ipv4.conf.default.rp_filter", "1"),
    )),
    ("Filesystem", (
        ("fs.protected_fifos", "2"),
        ("fs.protected_regular", "2"),
        ("fs.protected_symlinks", "1"),
        ("fs.protected_hardlinks", "1"),
    )),
)

MITIGATION_FLAGS = ["mitigations=auto,nosmt", "spectre_v1=on", "spectre_v2=on", "tsx=off", "loglevel=0", "audit=1"]
APPARMOR_LSM = "lsm=landlock,lockdown,yama,integrity,apparmor,bpf"


def render_sysctl() -> str:
    out = ["# Kernel and network hardening (archdeploy)"]
    for title, settings in SYSCTL_SETTINGS:
        out.append("")
        out.append(f"# {title}")
        out.extend(f"{key} = {value}" for key, value in settings)
    return "\n".join(out) + "\n"


def kernel_flags(apparmor: bool) -> list[str]:
    return MITIGATION_FLAGS + ([APPARMOR_LSM] if apparmor else [])


def render_nftables() -> str:
    return """#!/usr/bin/nft -f
# Default-deny inbound, allow outbound and replies.
flush ruleset

table inet filter {
    chain input {
        type filter hook input priority filter; policy drop;
        ct state established,related accept
        ct state invalid drop
        iif "lo" accept
        meta l4proto { icmp, ipv6-icmp } accept
    }
    chain forward {
        type filter hook forward priority filter; policy drop;
    }
    chain output {
        type filter hook output priority filter; policy accept;
    }
}
"""


def write_sysctl(executor, mnt: str):
    executor.write_file(target_path(mnt, SYSCTL_PATH), render_sysctl(), description="Writing sysctl hardening")
    executor.execute(["arch-chroot", mnt, "sysctl", "-p", SYSCTL_PATH], "Applying sysctl parameters",
                     critical=False)


def apply_kernel_flags(executor, mnt: str, apparmor: bool):
    path = target_path(mnt, GRUB_DEFAULT)
    text = executor.read_file(path) if not executor.dry_run else ""
    executor.write_file(path, render_grub_default(text, kernel_flags(apparmor), cryptodisk=False),
                        description="Adding kernel mitigation flags to GRUB_CMDLINE_LINUX")


def enable_apparmor(executor, mnt: str):
    executor.execute(["arch-chroot", mnt, "systemctl", "enable", "apparmor.service"], "Enabling AppArmor")


def configure_firewall(executor, mnt: str):
    executor.write_file(target_path(mnt, NFTABLES_PATH), render_nftables(), mode=0o600,
                        description="Writing default-deny nftables ruleset")
    executor.execute(["arch-chroot", mnt, "systemctl", "enable", "nftables.service"], "Enabling nftables")
