"""Encrypted Arch Linux deployment: LUKS2 + BTRFS + GRUB, driven phase by phase."""

__version__ = "2.0.0"
