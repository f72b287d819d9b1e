"""LUKS2 lifecycle for the root and home partitions."""

from __future__ import annotations

import glob
import os
import shutil
import tempfile

from .devices import mapper_path
from .errors import PreconditionError

KEYDIR_PREFIX = "archdeploy-luks-"
LUKS_FORMAT_TIMEOUT = 360.0


class TransientKeyfile:
    """Passphrase materialized as a 0600 file in a private temp dir.

    The directory and file are removed on every exit path.  Under a dry-run
    executor nothing is written and ``path`` is a placeholder.
    """

    def __init__(self, executor, passphrase: str | None, label: str):
        self.executor = executor
        self.passphrase = passphrase
        self.label = label
        self.path: str | None = None
        self._dir: str | None = None

    def __enter__(self) -> str:
        if self.executor.dry_run:
            self.path = os.path.join(tempfile.gettempdir(), f"{KEYDIR_PREFIX}dryrun", f"{self.label}.key")
            return self.path
        if not self.passphrase:
            raise PreconditionError("no passphrase available for LUKS operation")
        self._dir = tempfile.mkdtemp(prefix=KEYDIR_PREFIX)
        os.chmod(self._dir, 0o700)
        self.path = os.path.join(self._dir, f"{self.label}.key")
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            # No trailing newline: cryptsetup reads the keyfile byte for byte.
            fh.write(self.passphrase)
        return self.path

    def __exit__(self, exc_type, exc, tb):
        if self._dir:
            shutil.rmtree(self._dir, ignore_errors=True)
        self._dir = None
        return False


def remove_stray_keyfiles(tmpdir: str | None = None) -> int:
    removed = 0
    for path in glob.glob(os.path.join(tmpdir or tempfile.gettempdir(), KEYDIR_PREFIX + "*")):
        shutil.rmtree(path, ignore_errors=True)
        removed += 1
    return removed


def is_luks(executor, partition: str) -> bool:
    return executor.query(["cryptsetup", "isLuks", partition]).rc == 0


def erase_header(executor, partition: str):
    executor.logger.warn(f"{partition} already has a LUKS header, erasing it")
    executor.execute(["cryptsetup", "-q", "luksErase", partition], f"Erasing LUKS header on {partition}",
                     critical=False)
    executor.settle()


def format_luks(executor, partition: str, label: str, keyfile: str):
    cmd = [
        "cryptsetup", "-q", "luksFormat",
        "--type", "luks2",
        "--pbkdf", "argon2id",
        "--pbkdf-force-iterations", "4",
        "--label", label,
        "--key-file", keyfile,
        partition,
    ]
    executor.execute(cmd, f"LUKS format {partition} ({label})", timeout=LUKS_FORMAT_TIMEOUT)
    executor.settle()
    if not executor.dry_run and not is_luks(executor, partition):
        raise PreconditionError(f"LUKS header verification failed for {partition}")
    executor.logger.success(f"LUKS header verified on {partition}")


def open_luks(executor, partition: str, name: str, keyfile: str):
    executor.execute(
        ["cryptsetup", "luksOpen", "--key-file", keyfile, partition, name],
        f"Opening LUKS {partition} as {name}",
        timeout=60.0,
    )
    executor.settle()
    mapper = mapper_path(name)
    if not executor.is_block_device(mapper):
        executor.logger.output(executor.query(["ls", "-la", "/dev/mapper/"]).out)
        raise PreconditionError(f"Encrypted device {mapper} not found")


def close_luks(executor, name: str, critical: bool = False):
    return executor.execute(["cryptsetup", "close", name], f"Closing LUKS mapping {name}", critical=critical)


def setup_volume(executor, partition: str, name: str, label: str, passphrase: str | None):
    """Erase stale header, format, verify, open; one transient keyfile per volume."""
    if not executor.dry_run:
        executor.settle()
        if not executor.is_block_device(partition):
            raise PreconditionError(f"Partition {partition} not available")
        if is_luks(executor, partition):
            erase_header(executor, partition)
    with TransientKeyfile(executor, passphrase, label.lower()) as keyfile:
        format_luks(executor, partition, label, keyfile)
        open_luks(executor, partition, name, keyfile)
    executor.logger.success(f"{partition} encrypted and opened as {mapper_path(name)}")
