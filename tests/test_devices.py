import json

import pytest

from archdeploy import devices
from archdeploy.errors import PreconditionError, ValidationError

LSBLK_JSON = json.dumps({"blockdevices": [
    {"name": "nvme0n1", "path": "/dev/nvme0n1", "size": "1.8T", "type": "disk", "model": "Samsung SSD 990 "},
    {"name": "sda", "path": "/dev/sda", "size": "200G", "type": "disk", "model": None},
    {"name": "loop0", "path": "/dev/loop0", "size": "700M", "type": "loop", "model": None},
    {"name": "sr0", "path": "/dev/sr0", "size": "1G", "type": "rom", "model": "DVD"},
    {"name": "mmcblk0", "path": "/dev/mmcblk0", "size": "32G", "type": "disk", "model": None},
]})


@pytest.mark.parametrize("device,boot,root,home", [
    ("/dev/nvme0n1", "/dev/nvme0n1p1", "/dev/nvme0n1p2", "/dev/nvme0n1p3"),
    ("/dev/sda", "/dev/sda1", "/dev/sda2", "/dev/sda3"),
    ("/dev/mmcblk0", "/dev/mmcblk0p1", "/dev/mmcblk0p2", "/dev/mmcblk0p3"),
])
def test_partition_paths(device, boot, root, home):
    dm = devices.partition_paths(device)
    assert (dm.device, dm.boot, dm.root, dm.home) == (device, boot, root, home)


def test_list_block_devices_keeps_nvme_and_sd_disks(executor, runner):
    runner.reply(["lsblk", "-J"], out=LSBLK_JSON)
    found = devices.list_block_devices(executor)
    assert [d["path"] for d in found] == ["/dev/nvme0n1", "/dev/sda"]
    assert found[0]["model"] == "Samsung SSD 990"
    assert found[1]["model"] == ""


def test_list_block_devices_errors(executor, runner):
    runner.reply(["lsblk", "-J"], rc=1, err="boom")
    with pytest.raises(PreconditionError):
        devices.list_block_devices(executor)
    runner.reply(["lsblk", "-J"], out="{broken")
    with pytest.raises(PreconditionError):
        devices.list_block_devices(executor)


def test_device_size_bytes(executor, runner):
    runner.reply(["lsblk", "-bnd"], out="214748364800\n")
    assert devices.device_size_bytes(executor, "/dev/sda") == 214748364800
    runner.reply(["lsblk", "-bnd"], out="\n")
    with pytest.raises(ValidationError):
        devices.device_size_bytes(executor, "/dev/sda")


def test_blkid_probes(executor, runner):
    runner.reply(["blkid", "-s", "PARTUUID"], out="4f1c-02\n")
    runner.reply(["blkid", "-s", "UUID"], rc=2)
    assert devices.partuuid_of(executor, "/dev/sda2") == "4f1c-02"
    assert devices.uuid_of(executor, "/dev/sda2") == ""
    assert devices.mapper_path("yumraj") == "/dev/mapper/yumraj"
