"""Subprocess wrapper plus the real and dry-run executors used by the phases."""

from __future__ import annotations

import os
import shlex
import stat
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, Sequence

from .errors import CommandError, UnsafeCommandError

MAX_RETRIES = 3
RETRY_DELAY = 5.0
DEFAULT_TIMEOUT = 600.0

# Binaries (or argv prefixes) that only inspect state.  These are the only
# commands a dry run is allowed to spawn.
READ_ONLY_BINARIES = frozenset({
    "lsblk", "blkid", "findmnt", "ping", "df", "free", "nproc", "uname", "ls", "cat",
})
READ_ONLY_PREFIXES = (
    ("cryptsetup", "isLuks"),
    ("cryptsetup", "status"),
    ("btrfs", "subvolume", "list"),
    ("btrfs", "subvolume", "show"),
    ("parted", "-s", "-l"),
)


class Result:
    def __init__(self, rc: int, out: str, err: str, duration: float):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration

    @property
    def ok(self) -> bool:
        return self.rc == 0


@dataclass
class RetryOutcome:
    succeeded: bool
    attempts: int
    last: Result | None = None


def quote(cmd: Sequence[str]) -> str:
    return " ".join(shlex.quote(c) for c in cmd)


def is_read_only(cmd: Sequence[str]) -> bool:
    if not cmd:
        return False
    if os.path.basename(cmd[0]) in READ_ONLY_BINARIES:
        return True
    head = tuple(cmd)
    return any(head[:len(prefix)] == prefix for prefix in READ_ONLY_PREFIXES)


def run(
        cmd: Sequence[str],
        check: bool = True,
        timeout: float = DEFAULT_TIMEOUT,
        env: dict | None = None,
        input_text: str | None = None,
        logger=None,
) -> Result:
    if logger is not None:
        logger.trace("exec.start", cmd=list(cmd))
    started = time.time()
    env2 = (env or os.environ).copy()
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, env=env2, input=input_text)
    except subprocess.TimeoutExpired:
        udev_settle()
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, env=env2, input=input_text)
    dur = time.time() - started
    if logger is not None:
        logger.trace("exec.done", cmd=list(cmd), rc=proc.returncode, dur=dur)
    if check and proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, cmd, proc.stdout, proc.stderr)
    return Result(proc.returncode, proc.stdout or "", proc.stderr or "", dur)


def udev_settle(timeout: int = 10):
    try:
        subprocess.run(["udevadm", "settle", f"--timeout={timeout}"], check=False)
    except OSError:
        pass


def with_backoff(fn, tries: int = 3, base: float = 0.5, max_delay: float = 4.0, sleep=time.sleep):
    delay = base
    last = None
    for _ in range(max(1, tries)):
        try:
            return fn()
        except Exception as e:
            last = e
            sleep(delay)
            delay = min(max_delay, delay * 2)
    raise last


class Executor:
    """Runs external commands for the phases and mirrors their output into the log."""

    dry_run = False

    def __init__(
            self,
            logger,
            *,
            runner: Callable[..., Result] | None = None,
            sleep: Callable[[float], None] = time.sleep,
            retry_delay: float = RETRY_DELAY,
    ):
        self.logger = logger
        self._run = runner or run
        self._sleep = sleep
        self.retry_delay = retry_delay

    def _spawn(self, cmd: Sequence[str], timeout: float, input_text: str | None = None) -> Result:
        try:
            return self._run(list(cmd), check=False, timeout=timeout, input_text=input_text, logger=self.logger)
        except FileNotFoundError as exc:
            return Result(127, "", str(exc), 0.0)
        except subprocess.TimeoutExpired as exc:
            return Result(124, "", f"timed out after {exc.timeout}s", float(exc.timeout or 0))

    def execute(
            self,
            cmd: Sequence[str],
            description: str,
            critical: bool = True,
            *,
            timeout: float = DEFAULT_TIMEOUT,
            input_text: str | None = None,
    ) -> Result:
        self.logger.debug(description)
        self.logger.debug(f"Command: {quote(cmd)}")
        res = self._spawn(cmd, timeout, input_text)
        self.logger.output(res.out)
        self.logger.output(res.err)
        if res.rc == 0:
            self.logger.debug(f"{description} - SUCCESS")
            return res
        message = f"{description} - FAILED (exit code: {res.rc})"
        if critical:
            self.logger.error(message)
            self.logger.error_detail(f"Command: {quote(cmd)}\nExit code: {res.rc}\n{(res.err or '').strip()}")
            raise CommandError(cmd, res.rc, description, res.err)
        self.logger.warn(f"{message} (non-critical, continuing)")
        return res

    def execute_with_retry(
            self,
            cmd: Sequence[str],
            description: str,
            max_attempts: int = MAX_RETRIES,
            delay: float | None = None,
            *,
            timeout: float = DEFAULT_TIMEOUT,
    ) -> RetryOutcome:
        delay = self.retry_delay if delay is None else delay
        attempts = max(1, max_attempts)
        last = None
        for attempt in range(1, attempts + 1):
            self.logger.info(f"[{attempt}/{attempts}] {description}")
            last = self._spawn(cmd, timeout)
            self.logger.output(last.out)
            self.logger.output(last.err)
            if last.rc == 0:
                self.logger.success(f"{description} - SUCCESS")
                return RetryOutcome(True, attempt, last)
            if attempt < attempts:
                self.logger.warn(f"Attempt {attempt} failed, retrying in {delay:g}s...")
                self._sleep(delay)
        self.logger.error(f"{description} - FAILED after {attempts} attempts")
        self.logger.error_detail(f"Command: {quote(cmd)}\nExit code: {last.rc if last else 'n/a'}")
        return RetryOutcome(False, attempts, last)

    def query(self, cmd: Sequence[str], *, timeout: float = 30.0) -> Result:
        if not is_read_only(cmd):
            raise UnsafeCommandError(f"query() only runs read-only commands, got: {quote(cmd)}")
        res = self._spawn(cmd, timeout)
        self.logger.trace("exec.query", cmd=list(cmd), rc=res.rc)
        return res

    def interactive(self, cmd: Sequence[str], description: str, critical: bool = True) -> int:
        """Run with the operator's terminal attached (``passwd`` and friends)."""

        self.logger.info(description)
        self.logger.debug(f"Command: {quote(cmd)}")
        try:
            rc = subprocess.run(list(cmd), check=False).returncode
        except FileNotFoundError:
            rc = 127
        if rc != 0:
            message = f"{description} - FAILED (exit code: {rc})"
            if critical:
                self.logger.error(message)
                raise CommandError(cmd, rc, description)
            self.logger.warn(f"{message} (non-critical, continuing)")
        return rc

    def write_file(self, path: str, content: str, mode: int = 0o644, description: str | None = None) -> None:
        self.logger.debug(description or f"Writing {path}")
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        tmp_path = path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as fh:
            fh.write(content)
            try:
                fh.flush()
                os.fsync(fh.fileno())
            except OSError:
                pass
        os.replace(tmp_path, path)
        os.chmod(path, mode)

    def append_file(self, path: str, content: str, description: str | None = None) -> None:
        self.logger.debug(description or f"Appending to {path}")
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "a", encoding="utf-8") as fh:
            fh.write(content)

    def read_file(self, path: str) -> str:
        with open(path, "r", encoding="utf-8") as fh:
            return fh.read()

    def make_dirs(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)

    def is_block_device(self, path: str) -> bool:
        try:
            return stat.S_ISBLK(os.stat(path).st_mode)
        except OSError:
            return False

    def sleep(self, seconds: float) -> None:
        self._sleep(seconds)

    def settle(self, timeout: int = 10) -> None:
        self._spawn(["udevadm", "settle", f"--timeout={timeout}"], timeout + 5)


class DryRunExecutor(Executor):
    """Logs intent only.

    Mutating calls never reach ``subprocess`` or the filesystem; the only
    process it can spawn is a read-only ``query``.
    """

    dry_run = True

    def __init__(self, logger, *, runner: Callable[..., Result] | None = None, **kwargs):
        inner = runner or run

        def _guarded(cmd, **kw):
            if not is_read_only(cmd):
                raise UnsafeCommandError(f"refusing to execute in dry-run: {quote(cmd)}")
            return inner(cmd, **kw)

        super().__init__(logger, runner=_guarded, **kwargs)

    def _intent(self, description: str, cmd: Sequence[str] | None = None) -> Result:
        self.logger.info(f"[DRY-RUN] {description}")
        if cmd:
            self.logger.debug(f"Command: {quote(cmd)}")
            return Result(0, "DRY-RUN: " + quote(cmd), "", 0.0)
        return Result(0, "DRY-RUN", "", 0.0)

    def execute(self, cmd, description, critical=True, *, timeout=DEFAULT_TIMEOUT, input_text=None) -> Result:
        return self._intent(description, cmd)

    def execute_with_retry(self, cmd, description, max_attempts=MAX_RETRIES, delay=None, *,
                           timeout=DEFAULT_TIMEOUT) -> RetryOutcome:
        return RetryOutcome(True, 0, self._intent(f"{description} (retryable)", cmd))

    def interactive(self, cmd, description, critical=True) -> int:
        self._intent(description, cmd)
        return 0

    def write_file(self, path, content, mode=0o644, description=None) -> None:
        self._intent(description or f"Write {path}")

    def append_file(self, path, content, description=None) -> None:
        self._intent(description or f"Append to {path}")

    def read_file(self, path: str) -> str:
        try:
            return super().read_file(path)
        except OSError:
            return ""

    def make_dirs(self, path: str) -> None:
        self.logger.debug(f"[DRY-RUN] mkdir -p {path}")

    def is_block_device(self, path: str) -> bool:
        # Nothing was created, so later phases assume the nodes exist.
        return True

    def sleep(self, seconds: float) -> None:
        return None

    def settle(self, timeout: int = 10) -> None:
        return None


def make_executor(dry_run: bool, logger, **kwargs) -> Executor:
    if dry_run:
        return DryRunExecutor(logger, **kwargs)
    return Executor(logger, **kwargs)
