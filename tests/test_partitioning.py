import pytest

from archdeploy import partitioning
from archdeploy.devices import partition_paths
from archdeploy.errors import PreconditionError


def _index(calls, prefix):
    for i, call in enumerate(calls):
        if tuple(call[:len(prefix)]) == tuple(prefix):
            return i
    raise AssertionError(f"{prefix} not run")


def test_compute_layout_50gb():
    layout = partitioning.compute_layout(50)
    assert (layout.esp_start, layout.esp_end) == ("1MiB", "1025MiB")
    assert (layout.root_start, layout.root_end) == ("1025MiB", "52225MiB")
    assert (layout.home_start, layout.home_end) == ("52225MiB", "100%")


def test_prepare_disk_command_order(executor, runner):
    executor.is_block_device = lambda path: True
    dm = partition_paths("/dev/nvme0n1")
    partitioning.prepare_disk(executor, dm, 50, ("yumraj", "yumdut"))
    calls = runner.calls
    assert _index(calls, ["cryptsetup", "close", "yumraj"]) < _index(calls, ["wipefs", "-af", "/dev/nvme0n1"])
    assert _index(calls, ["wipefs"]) < _index(calls, ["dd"]) < _index(calls, ["parted", "-s", "/dev/nvme0n1", "mklabel"])
    assert ["parted", "-s", "-a", "optimal", "/dev/nvme0n1", "mkpart", "ESP", "fat32", "1MiB", "1025MiB"] in calls
    assert ["parted", "-s", "-a", "optimal", "/dev/nvme0n1", "mkpart", "primary", "52225MiB", "100%"] in calls
    assert ["parted", "-s", "/dev/nvme0n1", "set", "2", "type", "8309"] in calls
    assert _index(calls, ["partprobe"]) < _index(calls, ["udevadm", "settle"])


def test_partition_type_failure_is_not_fatal(executor, runner, logger):
    executor.is_block_device = lambda path: True
    runner.reply(["parted", "-s", "/dev/sda", "set", "2", "type"], rc=1)
    partitioning.prepare_disk(executor, partition_paths("/dev/sda"), 50)
    with open(logger.log_path, encoding="utf-8") as fh:
        assert "(non-critical, continuing)" in fh.read()


def test_partprobe_retried_then_tolerated(executor, runner):
    executor.is_block_device = lambda path: True
    runner.reply(["partprobe"], rc=1)
    partitioning.reread(executor, "/dev/sda")
    assert len(runner.ran("partprobe")) == 3
    assert runner.ran("udevadm", "settle")


def test_missing_partition_node_is_precondition_error(executor):
    executor.is_block_device = lambda path: path != "/dev/nvme0n1p3"
    with pytest.raises(PreconditionError, match="Home partition /dev/nvme0n1p3 not found"):
        partitioning.verify_partitions(executor, partition_paths("/dev/nvme0n1"))


def test_prepare_disk_dry_run_spawns_nothing(dry_executor, runner, logger):
    partitioning.prepare_disk(dry_executor, partition_paths("/dev/nvme0n1"), 60, ("yumraj", "yumdut"))
    assert runner.calls == []
    with open(logger.log_path, encoding="utf-8") as fh:
        text = fh.read()
    assert "[DRY-RUN] Wiping all filesystem signatures" in text
    assert "[DRY-RUN] Creating GPT label" in text
