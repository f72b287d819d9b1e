"""Text transforms for crypttab, mkinitcpio.conf, /etc/default/grub and friends.

All helpers take the current file text and return the new text; the phases
do the reading and writing through the executor.
"""
from __future__ import annotations

import re
from typing import Iterable

CRYPTTAB_OPTIONS = ["luks", "x-systemd.device-timeout=10"]
MKINITCPIO_MODULES = ["btrfs", "dm_crypt"]
MKINITCPIO_HOOKS = ["base", "udev", "autodetect", "keyboard", "sd-vconsole", "modconf", "block",
                    "sd-encrypt", "filesystems", "fsck"]
LOCALE = "en_US.UTF-8"

_WHEEL_RE = re.compile(r"^#[ \t]*(%wheel[ \t]+ALL=\(ALL:ALL\)[ \t]+ALL)[ \t]*$", re.M)
_CRYPTODISK_RE = re.compile(r"^[ \t]*#?[ \t]*GRUB_ENABLE_CRYPTODISK=.*$", re.M)
_CMDLINE_RE = re.compile(r'^(GRUB_CMDLINE_LINUX)="(.*)"[ \t]*$', re.M)


def _merge_options(initial: list[str], required: list[str]) -> list[str]:
    merged: list[str] = []
    seen: set[str] = set()
    for opt in list(initial) + list(required):
        candidate = opt.strip()
        if candidate and candidate not in seen:
            merged.append(candidate)
            seen.add(candidate)
    return merged


def crypttab_options(tpm2: bool = False) -> list[str]:
    return CRYPTTAB_OPTIONS + (["tpm2-device=auto"] if tpm2 else [])


def render_crypttab(existing: str, entries: Iterable[tuple[str, str]], tpm2: bool = False) -> str:
    """Merge ``(mapper_name, partuuid)`` entries into crypttab text.

    Comments and unrelated lines are preserved; a line for the same mapper
    name is replaced, keeping any options it already carried.
    """
    entries = list(entries)
    wanted = {name for name, _ in entries}
    old_opts: dict[str, list[str]] = {}
    preserved: list[str] = []
    for line in existing.splitlines():
        stripped = line.strip()
        parts = stripped.split()
        if parts and not stripped.startswith("#") and parts[0] in wanted:
            if len(parts) > 3:
                old_opts[parts[0]] = parts[3].split(",")
            continue
        preserved.append(line)
    for name, partuuid in entries:
        opts = _merge_options(old_opts.get(name, []), crypttab_options(tpm2))
        preserved.append(f"{name}\tPARTUUID={partuuid}\tnone\t{','.join(opts)}")
    return "\n".join(preserved).strip("\n") + "\n"


def _set_array(text: str, key: str, values: list[str]) -> str:
    line = f"{key}=({' '.join(values)})"
    pattern = re.compile(rf"^[ \t]*{key}=\(.*\)[ \t]*$", re.M)
    if pattern.search(text):
        return pattern.sub(line, text, count=1)
    return text.rstrip("\n") + ("\n" if text else "") + line + "\n"


def mkinitcpio_hooks(tpm2: bool = False) -> list[str]:
    if tpm2:
        return ["systemd" if h == "udev" else h for h in MKINITCPIO_HOOKS]
    return list(MKINITCPIO_HOOKS)


def render_mkinitcpio(text: str, tpm2: bool = False) -> str:
    text = _set_array(text, "MODULES", MKINITCPIO_MODULES)
    return _set_array(text, "HOOKS", mkinitcpio_hooks(tpm2))


def root_cmdline_flags(partuuid: str, mapper_name: str) -> list[str]:
    return [f"rd.luks.name={partuuid}:{mapper_name}",
            f"root=/dev/mapper/{mapper_name}",
            "quiet"]


def merge_cmdline(current: str, flags: Iterable[str]) -> str:
    """Append flags to a kernel command line without duplicates.

    A ``key=value`` flag replaces an earlier flag with the same key.
    """
    tokens = current.split()
    for flag in flags:
        if flag in tokens:
            continue
        if "=" in flag:
            key = flag.split("=", 1)[0] + "="
            idx = next((i for i, t in enumerate(tokens) if t.startswith(key)), None)
            if idx is not None:
                tokens[idx] = flag
                continue
        tokens.append(flag)
    return " ".join(tokens)


def render_grub_default(text: str, flags: Iterable[str], cryptodisk: bool = True) -> str:
    flags = list(flags)
    match = _CMDLINE_RE.search(text)
    if match:
        merged = merge_cmdline(match.group(2), flags)
        text = text[:match.start()] + f'GRUB_CMDLINE_LINUX="{merged}"' + text[match.end():]
    else:
        text = text.rstrip("\n") + ("\n" if text else "") + f'GRUB_CMDLINE_LINUX="{merge_cmdline("", flags)}"\n'
    if cryptodisk:
        text = _CRYPTODISK_RE.sub("", text)
        text = re.sub(r"\n{3,}", "\n\n", text).rstrip("\n") + "\nGRUB_ENABLE_CRYPTODISK=y\n"
    return text


def grub_cmdline(text: str) -> str:
    match = _CMDLINE_RE.search(text)
    return match.group(2) if match else ""


def render_hosts(hostname: str) -> str:
    return (
        "127.0.0.1\tlocalhost\n"
        "::1\t\tlocalhost\n"
        f"127.0.1.1\t{hostname}.localdomain\t{hostname}\n"
    )


def render_locale_gen(text: str) -> str:
    entry = f"{LOCALE} UTF-8"
    pattern = re.compile(rf"^[ \t]*#[ \t]*{re.escape(entry)}[ \t]*$", re.M)
    if re.search(rf"^{re.escape(entry)}[ \t]*$", text, re.M):
        return text
    if pattern.search(text):
        return pattern.sub(entry, text, count=1)
    return text.rstrip("\n") + ("\n" if text else "") + entry + "\n"


def render_locale_conf() -> str:
    return f"LANG={LOCALE}\n"


def enable_wheel_sudo(text: str) -> str:
    return _WHEEL_RE.sub(r"\1", text)
