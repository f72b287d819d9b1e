from archdeploy.safety import guard_not_live_disk


def _live_on(runner, partition, disk):
    runner.reply(["findmnt", "-no", "SOURCE", "/"], out=f"{partition}\n")
    runner.reply(["findmnt", "-no", "SOURCE", "/boot"], rc=1)
    runner.reply(["lsblk", "-no", "PKNAME", partition], out=f"{disk}\n")


def test_guard_refuses_live_root_disk(executor, runner):
    _live_on(runner, "/dev/nvme0n1p2", "nvme0n1")
    ok, reason = guard_not_live_disk(executor, "/dev/nvme0n1")
    assert not ok
    assert "live disk" in reason


def test_guard_allows_other_disk(executor, runner):
    _live_on(runner, "/dev/nvme0n1p2", "nvme0n1")
    assert guard_not_live_disk(executor, "/dev/sda") == (True, "")


def test_guard_allows_when_live_system_is_not_on_disk(executor, runner):
    # archiso root lives on an overlay/loop device with no parent disk
    runner.reply(["findmnt", "-no", "SOURCE"], out="airootfs\n")
    runner.reply(["lsblk", "-no", "PKNAME"], rc=32)
    assert guard_not_live_disk(executor, "/dev/sda")[0]
