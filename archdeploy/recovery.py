from __future__ import annotations

# Recovery notes written into the installed system
from .model import DeploymentConfig
from .paths import target_path

RECOVERY_PATH = "/root/RECOVERY.md"


def render_recovery_doc(config: DeploymentConfig, root_partuuid: str, home_partuuid: str) -> str:
    c = config
    return (
        f'# {c.hostname} recovery (LUKS2 + BTRFS)\n\n'
        '## Unlock\n'
        f'cryptsetup open /dev/disk/by-partuuid/{root_partuuid} {c.luks_root_name}\n'
        f'cryptsetup open /dev/disk/by-partuuid/{home_partuuid} {c.luks_home_name}\n\n'
        '## Mount\n'
        f'mount -o subvol=@,compress=zstd {c.root_mapper} /mnt\n'
        f'mount -o subvol=@home,compress=zstd {c.root_mapper} /mnt/home\n'
        f'mount -o subvol=@var,compress=zstd {c.root_mapper} /mnt/var\n'
        f'mount {c.boot_partition or "<esp>"} /mnt/boot\n'
        'arch-chroot /mnt\n\n'
        '## Roll back from a snapshot (unlocked, nothing mounted)\n'
        'mkdir -p /mnt/top\n'
        f'mount -o subvolid=5 {c.root_mapper} /mnt/top\n'
        'ls /mnt/top/@snapshots\n'
        'mv /mnt/top/@ /mnt/top/@.broken\n'
        'btrfs subvolume snapshot /mnt/top/@snapshots/@-snapshot-<timestamp> /mnt/top/@\n'
        'umount /mnt/top\n\n'
        '## Rebuild boot\n'
        f'mkinitcpio -p {c.kernel}\n'
        'grub-mkconfig -o /boot/grub/grub.cfg\n'
    )


def write_recovery_doc(executor, mnt: str, config: DeploymentConfig, root_partuuid: str,
                       home_partuuid: str) -> dict:
    p = target_path(mnt, RECOVERY_PATH)
    executor.write_file(p, render_recovery_doc(config, root_partuuid, home_partuuid), mode=0o600,
                        description=f"Writing recovery notes to {RECOVERY_PATH}")
    return {'host_path': p, 'target_path': RECOVERY_PATH}
