import stat
from types import SimpleNamespace

import pytest

from archdeploy import validators
from archdeploy.errors import InsufficientSpaceError, ValidationError
from archdeploy.validators import (
    GIB,
    check_disk_space,
    compute_home_size,
    is_mounted,
    validate_block_device,
    validate_hostname,
    validate_timezone,
    validate_username,
    validate_volume_name,
)


@pytest.mark.parametrize("value", ["devta", "my-host1", "A1"])
def test_hostname_accepts_letters_digits_hyphen(value):
    assert validate_hostname(value)


@pytest.mark.parametrize("value", ["", "a.b", "a_b", "a b", "hóst", "host\n"])
def test_hostname_rejects_everything_else(value):
    assert not validate_hostname(value)


def test_username_and_volume_names_allow_underscore():
    assert validate_username("user_1")
    assert validate_username("a-b")
    assert validate_volume_name("snapshots")
    assert not validate_username("a.b")
    assert not validate_username("")
    assert not validate_volume_name("vol name")


@pytest.mark.parametrize("value", ["UTC", "America/New_York", "Etc/GMT+5", "America/Argentina/Buenos_Aires"])
def test_timezone_valid(value):
    assert validate_timezone(value)


@pytest.mark.parametrize("value", ["", "Mars", "Europe/", "Europe/../Berlin", "Europe/Ber lin"])
def test_timezone_invalid(value):
    assert not validate_timezone(value)


def test_disk_space_threshold_is_71gb():
    assert check_disk_space(71 * GIB).available_gb == 71
    with pytest.raises(InsufficientSpaceError) as exc:
        check_disk_space(71 * GIB - 1)
    assert exc.value.available_gb == 70
    assert exc.value.exit_code == 4
    assert "need at least 71GB" in str(exc.value)
    assert "only 70GB available" in str(exc.value)


def test_compute_home_size():
    assert compute_home_size(200, 50) == 149
    assert compute_home_size(100, 79) == 20
    with pytest.raises(ValidationError):
        compute_home_size(200, 49)
    with pytest.raises(ValidationError):
        compute_home_size(100, 80)


def test_is_mounted_matches_partitions_only():
    mounts = "/dev/sda1 / ext4 rw 0 0\n/dev/nvme0n1p2 /data btrfs rw 0 0\n"
    assert is_mounted("/dev/sda", mounts)
    assert is_mounted("/dev/nvme0n1", mounts)
    assert not is_mounted("/dev/sdb", mounts)
    # sdab1 is a partition of sdab, not of sda
    assert not is_mounted("/dev/sda", "/dev/sdab1 /x ext4 rw 0 0\n")


def test_validate_block_device(monkeypatch):
    modes = {"/dev/sda": stat.S_IFBLK | 0o660, "/dev/sdb": stat.S_IFBLK | 0o660, "/tmp/file": stat.S_IFREG}

    def fake_stat(path):
        if path not in modes:
            raise FileNotFoundError(path)
        return SimpleNamespace(st_mode=modes[path])

    monkeypatch.setattr(validators.os, "stat", fake_stat)
    mounts = "/dev/sda2 / ext4 rw 0 0\n"
    assert validate_block_device("/dev/sdb", mounts)
    assert not validate_block_device("/dev/sda", mounts)
    assert not validate_block_device("/tmp/file", mounts)
    assert not validate_block_device("/dev/missing", mounts)
