import os
from types import SimpleNamespace

import pytest

from archdeploy import executil
from archdeploy.errors import CommandError, UnsafeCommandError
from archdeploy.executil import DryRunExecutor, Executor, Result, is_read_only, make_executor


def _log(logger):
    with open(logger.log_path, encoding="utf-8") as fh:
        return fh.read()


def test_run_retries_once_after_timeout(monkeypatch):
    settled = []
    monkeypatch.setattr(executil, "udev_settle", lambda timeout=10: settled.append(timeout))
    calls = {"count": 0}

    def fake_run(cmd, capture_output=True, text=True, timeout=None, env=None, input=None):
        if calls["count"] == 0:
            calls["count"] += 1
            raise executil.subprocess.TimeoutExpired(cmd, timeout)
        return SimpleNamespace(returncode=0, stdout="done", stderr="")

    monkeypatch.setattr(executil.subprocess, "run", fake_run)
    result = executil.run(["true"], check=True)
    assert result.out == "done"
    assert result.rc == 0
    assert settled == [10]


def test_run_raises_on_failure(monkeypatch):
    def fake_run(cmd, capture_output=True, text=True, timeout=None, env=None, input=None):
        return SimpleNamespace(returncode=1, stdout="bad", stderr="oops")

    monkeypatch.setattr(executil.subprocess, "run", fake_run)
    with pytest.raises(executil.subprocess.CalledProcessError):
        executil.run(["false"], check=True)
    assert executil.run(["false"], check=False).err == "oops"


def test_with_backoff_eventually_succeeds():
    attempts = {"count": 0}
    delays = []

    def flaky():
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise RuntimeError("try again")
        return "ok"

    assert executil.with_backoff(flaky, tries=5, base=0.5, sleep=delays.append) == "ok"
    assert delays == [0.5, 1.0]


def test_with_backoff_raises_last_error():
    def always_fails():
        raise ValueError("nope")

    with pytest.raises(ValueError):
        executil.with_backoff(always_fails, tries=2, sleep=lambda s: None)


@pytest.mark.parametrize("cmd,expected", [
    (["lsblk", "-J"], True),
    (["/usr/bin/blkid", "/dev/sda1"], True),
    (["cryptsetup", "isLuks", "/dev/sda2"], True),
    (["btrfs", "subvolume", "list", "/"], True),
    (["cryptsetup", "luksFormat", "/dev/sda2"], False),
    (["btrfs", "subvolume", "delete", "/x"], False),
    (["parted", "-s", "/dev/sda", "mklabel", "gpt"], False),
    ([], False),
])
def test_is_read_only(cmd, expected):
    assert is_read_only(cmd) is expected


def test_execute_success_logs_command(executor, runner, logger):
    runner.reply(["echo"], out="hello\n")
    res = executor.execute(["echo", "hi"], "Saying hi")
    assert res.ok and res.out == "hello\n"
    text = _log(logger)
    assert "Command: echo hi" in text
    assert "hello" in text
    assert "Saying hi - SUCCESS" in text


def test_execute_critical_failure_raises(executor, runner, logger):
    runner.reply(["wipefs"], rc=32, err="device busy")
    with pytest.raises(CommandError) as exc:
        executor.execute(["wipefs", "-af", "/dev/sda"], "Wiping signatures")
    assert exc.value.rc == 32
    assert exc.value.exit_code == 32
    with open(logger.error_path, encoding="utf-8") as fh:
        errors = fh.read()
    assert "Wiping signatures - FAILED (exit code: 32)" in errors
    assert "device busy" in errors


def test_execute_non_critical_failure_continues(executor, runner, logger):
    runner.reply(["parted"], rc=1)
    res = executor.execute(["parted", "-s", "/dev/sda", "set", "2", "type", "8309"], "Setting type", critical=False)
    assert res.rc == 1
    assert "(non-critical, continuing)" in _log(logger)


def test_missing_binary_maps_to_127(logger):
    def missing(cmd, **kw):
        raise FileNotFoundError(cmd[0])

    ex = Executor(logger, runner=missing)
    assert ex.execute(["nope"], "Running nope", critical=False).rc == 127


def test_execute_with_retry_gives_up_after_three(logger, runner):
    slept = []
    ex = Executor(logger, runner=runner, sleep=slept.append)
    runner.reply(["pacstrap"], rc=1)
    outcome = ex.execute_with_retry(["pacstrap", "-K", "/mnt", "base"], "Installing base system")
    assert not outcome.succeeded
    assert outcome.attempts == 3
    assert slept == [5.0, 5.0]
    text = _log(logger)
    assert "[1/3] Installing base system" in text
    assert "[3/3] Installing base system" in text
    assert "FAILED after 3 attempts" in text


def test_execute_with_retry_recovers(logger):
    results = iter([Result(1, "", "mirror down", 0.0), Result(0, "ok", "", 0.0)])
    ex = Executor(logger, runner=lambda cmd, **kw: next(results), sleep=lambda s: None)
    outcome = ex.execute_with_retry(["pacman", "-Sy"], "Synchronizing", delay=0)
    assert outcome.succeeded and outcome.attempts == 2


def test_query_refuses_mutating_commands(executor, runner):
    with pytest.raises(UnsafeCommandError):
        executor.query(["wipefs", "-af", "/dev/sda"])
    assert runner.calls == []
    executor.query(["lsblk", "-J"])
    assert runner.calls == [["lsblk", "-J"]]


def test_write_file_is_atomic_and_sets_mode(executor, tmp_path):
    target = tmp_path / "etc" / "crypttab"
    executor.write_file(str(target), "line\n", mode=0o600)
    assert target.read_text() == "line\n"
    assert (os.stat(target).st_mode & 0o777) == 0o600
    assert not (tmp_path / "etc" / "crypttab.tmp").exists()
    executor.append_file(str(target), "more\n")
    assert executor.read_file(str(target)) == "line\nmore\n"


def test_dry_run_never_spawns_mutating_commands(dry_executor, runner, logger, tmp_path):
    res = dry_executor.execute(["wipefs", "-af", "/dev/sda"], "Wiping signatures")
    assert res.rc == 0
    assert res.out == "DRY-RUN: wipefs -af /dev/sda"
    outcome = dry_executor.execute_with_retry(["pacstrap", "-K", "/mnt", "base"], "Installing base system")
    assert outcome.succeeded and outcome.attempts == 0
    assert dry_executor.interactive(["passwd"], "Set password") == 0
    dry_executor.write_file(str(tmp_path / "out.txt"), "x")
    dry_executor.make_dirs(str(tmp_path / "newdir"))
    assert not (tmp_path / "out.txt").exists()
    assert not (tmp_path / "newdir").exists()
    assert runner.calls == []
    text = _log(logger)
    assert "[DRY-RUN] Wiping signatures" in text
    assert "[DRY-RUN] Installing base system (retryable)" in text


def test_dry_run_guard_blocks_direct_spawn(dry_executor, runner):
    with pytest.raises(UnsafeCommandError):
        dry_executor._spawn(["rm", "-rf", "/"], 1.0)
    dry_executor.query(["findmnt", "-no", "SOURCE", "/"])
    assert runner.calls == [["findmnt", "-no", "SOURCE", "/"]]


def test_dry_run_read_file_tolerates_missing(dry_executor, tmp_path):
    assert dry_executor.read_file(str(tmp_path / "missing")) == ""
    assert dry_executor.is_block_device("/dev/mapper/yumraj")


def test_make_executor_picks_class(logger):
    assert isinstance(make_executor(True, logger), DryRunExecutor)
    ex = make_executor(False, logger)
    assert isinstance(ex, Executor) and not ex.dry_run
