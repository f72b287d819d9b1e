import os

from archdeploy import hardening
from archdeploy.boot_plumbing import grub_cmdline


def test_render_sysctl_has_unique_keys():
    text = hardening.render_sysctl()
    keys = [ln.split(" = ")[0] for ln in text.splitlines() if " = " in ln]
    assert len(keys) == len(set(keys))
    assert "kernel.kptr_restrict = 2" in text
    assert "net.ipv4.conf.all.accept_source_route = 0" in text
    assert "fs.protected_symlinks = 1" in text


def test_kernel_flags_apparmor_toggle():
    assert hardening.APPARMOR_LSM in hardening.kernel_flags(True)
    assert hardening.APPARMOR_LSM not in hardening.kernel_flags(False)
    assert "mitigations=auto,nosmt" in hardening.kernel_flags(False)


def test_apply_kernel_flags_is_idempotent(executor, tmp_path):
    mnt = str(tmp_path / "mnt")
    grub = tmp_path / "mnt" / "etc" / "default" / "grub"
    grub.parent.mkdir(parents=True)
    grub.write_text('GRUB_CMDLINE_LINUX="rd.luks.name=u:yumraj root=/dev/mapper/yumraj quiet"\n'
                    'GRUB_ENABLE_CRYPTODISK=y\n')
    hardening.apply_kernel_flags(executor, mnt, apparmor=True)
    hardening.apply_kernel_flags(executor, mnt, apparmor=True)
    text = grub.read_text()
    flags = grub_cmdline(text).split()
    assert flags[:3] == ["rd.luks.name=u:yumraj", "root=/dev/mapper/yumraj", "quiet"]
    assert flags.count("audit=1") == 1
    assert hardening.APPARMOR_LSM in flags
    assert text.count("GRUB_ENABLE_CRYPTODISK=y") == 1


def test_firewall_and_sysctl_written(executor, runner, tmp_path):
    mnt = str(tmp_path / "mnt")
    runner.reply(["arch-chroot", mnt, "sysctl"], rc=255)
    hardening.write_sysctl(executor, mnt)
    hardening.configure_firewall(executor, mnt)
    hardening.enable_apparmor(executor, mnt)
    nft = tmp_path / "mnt" / "etc" / "nftables.conf"
    assert "policy drop" in nft.read_text()
    assert (os.stat(nft).st_mode & 0o777) == 0o600
    assert (tmp_path / "mnt" / "etc" / "sysctl.d" / "99-hardening.conf").exists()
    assert ["arch-chroot", mnt, "systemctl", "enable", "nftables.service"] in runner.calls
    assert ["arch-chroot", mnt, "systemctl", "enable", "apparmor.service"] in runner.calls
