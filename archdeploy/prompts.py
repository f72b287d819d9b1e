"""Operator interaction: questions with defaults, passphrase entry, confirmations."""

from __future__ import annotations

import getpass
import sys
from typing import Callable, Optional, Sequence

from .errors import UserCancelled, ValidationError
from .logs import CLR, CYAN, RED, YELLOW
from .validators import compute_home_size

MAX_ATTEMPTS = 3
_BOX = "=" * 62


class Prompter:
    def __init__(
            self,
            logger,
            *,
            input_fn: Callable[[str], str] = input,
            getpass_fn: Callable[[str], str] = getpass.getpass,
            assume_defaults: bool = False,
            stream=None,
    ):
        self.logger = logger
        self._input = input_fn
        self._getpass = getpass_fn
        self.assume_defaults = assume_defaults
        self.stream = stream if stream is not None else sys.stdout

    def _say(self, text: str = "") -> None:
        print(text, file=self.stream, flush=True)

    def _banner(self, title: str, color: str = CYAN) -> None:
        colored = getattr(self.logger, "color", False)
        c, r = (color, CLR) if colored else ("", "")
        self._say("")
        self._say(f"{c}{_BOX}{r}")
        self._say(f"{c}  {title}{r}")
        self._say(f"{c}{_BOX}{r}")

    def ask(self, question: str, default: str = "") -> str:
        if self.assume_defaults:
            self.logger.debug(f"{question}: using default '{default}'")
            return default
        suffix = f" [{default}]" if default != "" else ""
        try:
            answer = self._input(f"{question}{suffix}: ").strip()
        except EOFError:
            answer = ""
        return answer or default

    def ask_validated(
            self,
            question: str,
            default: str,
            validator: Callable[[str], bool],
            hint: str,
            attempts: int = MAX_ATTEMPTS,
    ) -> str:
        for _ in range(attempts):
            value = self.ask(question, default)
            if validator(value):
                return value
            self.logger.warn(f"Invalid value '{value}': {hint}")
            if self.assume_defaults:
                break
        raise ValidationError(f"{question}: no valid value after {attempts} attempts ({hint})")

    def ask_yes_no(self, question: str, default: bool) -> bool:
        for _ in range(MAX_ATTEMPTS):
            answer = self.ask(f"{question} (yes/no)", "yes" if default else "no").lower()
            if answer in ("y", "yes"):
                return True
            if answer in ("n", "no"):
                return False
            self.logger.warn("Please answer yes or no.")
        raise ValidationError(f"{question}: expected yes or no")

    def ask_int(self, question: str, default: int, minimum: Optional[int] = None) -> int:
        def _ok(v: str) -> bool:
            return v.isdecimal() and (minimum is None or int(v) >= minimum)

        hint = "enter a whole number" + (f" >= {minimum}" if minimum is not None else "")
        return int(self.ask_validated(question, str(default), _ok, hint))

    def prompt_luks_passphrase(self, attempts: int = MAX_ATTEMPTS) -> str:
        """Read the disk passphrase twice; the same value unlocks root and home."""

        self._banner("LUKS ENCRYPTION PASSPHRASE", YELLOW)
        self._say("You will need this passphrase to boot the system every time.")
        self._say("This single passphrase unlocks BOTH root and home partitions.")
        for attempt in range(1, attempts + 1):
            passphrase = self._getpass("Enter passphrase: ")
            confirm = self._getpass("Confirm passphrase: ")
            if passphrase != confirm:
                self.logger.warn(f"Passphrases do not match ({attempt}/{attempts})")
                continue
            if not passphrase:
                self.logger.warn(f"Passphrase cannot be empty ({attempt}/{attempts})")
                continue
            self.logger.success("Passphrase accepted")
            return passphrase
        self.logger.error(f"Failed to set valid passphrase after {attempts} attempts")
        raise ValidationError(f"Failed to set valid passphrase after {attempts} attempts")

    def prompt_partition_size(self, available_gb: int, default_root: int = 50,
                              attempts: int = MAX_ATTEMPTS) -> tuple[int, int]:
        self._banner("PARTITION SIZE CONFIGURATION")
        self._say(f"Total available space: {available_gb}GB")
        self._say("  1. EFI System Partition: 1GB (FAT32)")
        self._say(f"  2. Root partition (@): customizable (default: {default_root}GB)")
        self._say("  3. Home partition (@home): remainder of disk")
        for _ in range(attempts):
            raw = self.ask("Enter root partition size in GB", str(default_root))
            if not raw.isdecimal():
                self.logger.warn("Invalid input. Please enter a number.")
                if self.assume_defaults:
                    break
                continue
            root = int(raw)
            try:
                home = compute_home_size(available_gb, root)
            except ValidationError as exc:
                self.logger.warn(str(exc))
                if self.assume_defaults:
                    break
                continue
            self._say(f"  EFI: 1GB  Root (@): {root}GB  Home (@home): {home}GB  Total: {1 + root + home}GB")
            if self.assume_defaults or self.ask_yes_no("Is this configuration correct?", True):
                self.logger.success("Partition configuration confirmed")
                return root, home
        raise ValidationError(f"No valid partition size after {attempts} attempts")

    def confirm_destructive_operation(self, device: str, size_gb: int, dry_run: bool) -> None:
        if dry_run:
            self.logger.info(f"[DRY-RUN] Skipping destructive confirmation for {device}")
            return
        self._banner("DESTRUCTIVE OPERATION", RED)
        self._say(f"Device: {device}")
        self._say(f"Size:   {size_gb}GB")
        self._say("Action: ALL DATA WILL BE PERMANENTLY DESTROYED")
        self._say("This action CANNOT be undone. Type 'YES' to proceed.")
        try:
            answer = self._input("Type 'YES' to confirm: ").strip()
        except EOFError:
            answer = ""
        if answer != "YES":
            self.logger.warn("Confirmation failed. Operation cancelled.")
            raise UserCancelled(f"destructive operation on {device} not confirmed")

    def confirm_summary(self, lines: Sequence[str]) -> None:
        self._banner("CONFIGURATION SUMMARY")
        for line in lines:
            self._say(f"  {line}")
        if self.assume_defaults:
            self.logger.info("Configuration accepted (--assume-defaults)")
            return
        try:
            answer = self._input("Type 'YES' to accept this configuration: ").strip()
        except EOFError:
            answer = ""
        if answer != "YES":
            self.logger.warn("Configuration not confirmed. Operation cancelled.")
            raise UserCancelled("configuration not confirmed")

    def confirm_continue(self, question: str) -> None:
        if self.assume_defaults:
            self.logger.warn(f"{question}: continuing (--assume-defaults)")
            return
        if not self.ask_yes_no(question, False):
            raise UserCancelled(question)

    def select_device(self, devices: Sequence[dict], attempts: int = MAX_ATTEMPTS) -> str:
        """Numbered menu over ``{"path", "size", "model"}`` entries; returns the chosen path."""

        if not devices:
            raise ValidationError("No installable disks found (nvme/sd)")
        self._banner("SELECT TARGET DEVICE")
        for idx, dev in enumerate(devices, 1):
            model = f"  {dev.get('model')}" if dev.get("model") else ""
            self._say(f"  {idx:2}. {dev['path']}  {dev.get('size', '?')}{model}")
        for _ in range(attempts):
            raw = self.ask(f"Select device [1-{len(devices)}]", "1" if self.assume_defaults else "")
            if raw.isdecimal() and 1 <= int(raw) <= len(devices):
                return devices[int(raw) - 1]["path"]
            self.logger.warn(f"Please enter a number between 1 and {len(devices)}")
            if self.assume_defaults:
                break
        raise ValidationError("No valid device selected")
