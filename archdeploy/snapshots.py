"""Weekly BTRFS snapshot automation and retention pruning.

Two halves: rendering the script and systemd units installed into the
target, and ``archdeploy-snapshot``, the same rotation driven from Python.
"""

from __future__ import annotations

import argparse
import datetime as _dt
import re
import sys
from typing import Iterable, Optional

from .errors import DeployError, ValidationError
from .executil import make_executor
from .logs import DeployLogger
from .model import MIN_RETENTION
from .paths import target_path

SCRIPT_PATH = "/usr/local/bin/btrfs-snapshot-weekly.sh"
SERVICE_PATH = "/etc/systemd/system/btrfs-snapshot-weekly.service"
TIMER_PATH = "/etc/systemd/system/btrfs-snapshot-weekly.timer"
TIMER_UNIT = "btrfs-snapshot-weekly.timer"
SNAPSHOT_DIR = "/.snapshots"
SNAPSHOT_LOG = "/var/log/btrfs-snapshots.log"
TS_FORMAT = "%Y%m%d-%H%M%S"

# (subvolume name, source mountpoint)
SOURCES = (("@", "/"), ("@home", "/home"))

_NAME_RE = re.compile(r"^(?P<base>@[A-Za-z0-9_]*)-snapshot-(?P<ts>\d{8}-\d{6})$")


def snapshot_name(base: str, when: _dt.datetime) -> str:
    return f"{base}-snapshot-{when.strftime(TS_FORMAT)}"


def parse_snapshot_name(name: str) -> Optional[tuple[str, _dt.datetime]]:
    match = _NAME_RE.match(name)
    if not match:
        return None
    try:
        return match.group("base"), _dt.datetime.strptime(match.group("ts"), TS_FORMAT)
    except ValueError:
        return None


def snapshots_to_prune(names: Iterable[str], retention: int) -> list[str]:
    """Oldest managed snapshots beyond the newest ``retention``, oldest first.

    Names not following ``<subvol>-snapshot-<timestamp>`` are never touched.
    """
    if retention < MIN_RETENTION:
        raise ValidationError(f"snapshot retention must be at least {MIN_RETENTION}")
    managed = []
    for name in names:
        parsed = parse_snapshot_name(name)
        if parsed:
            managed.append((parsed[1], name))
    managed.sort()
    excess = len(managed) - retention
    return [name for _, name in managed[:excess]] if excess > 0 else []


def render_snapshot_script(retention: int, snapshot_dir: str = SNAPSHOT_DIR, log_file: str = SNAPSHOT_LOG) -> str:
    return f"""#!/usr/bin/env bash
# Weekly read-only snapshots of @ and @home, keeping the newest {retention}.
# Installed by archdeploy; run by {TIMER_UNIT}.
set -euo pipefail

readonly SNAPSHOT_DIR="{snapshot_dir}"
readonly MAX_SNAPSHOTS={retention}
readonly LOG_FILE="{log_file}"
readonly TIMESTAMP="$(date +{TS_FORMAT})"

log_snapshot() {{
    echo "[$(date '+%Y-%m-%d %H:%M:%S')] $*" | tee -a "$LOG_FILE"
}}

snapshot() {{
    local subvol="$1" source="$2"
    local name="${{subvol}}-snapshot-${{TIMESTAMP}}"
    log_snapshot "Creating snapshot: $name"
    if btrfs subvolume snapshot -r "$source" "$SNAPSHOT_DIR/$name"; then
        log_snapshot "Snapshot created: $SNAPSHOT_DIR/$name"
    else
        log_snapshot "ERROR: Failed to create snapshot of $source"
        return 1
    fi
}}

cleanup_old_snapshots() {{
    # Only <subvol>-snapshot-YYYYmmdd-HHMMSS names are managed; oldest first by timestamp.
    local -a snaps
    mapfile -t snaps < <(find "$SNAPSHOT_DIR" -mindepth 1 -maxdepth 1 -regextype posix-extended \\
        -regex '.*/@[A-Za-z0-9_]*-snapshot-[0-9]{{8}}-[0-9]{{6}}' -printf '%f\\n' \\
        | sed -E 's/^(.*-snapshot-)([0-9]{{8}}-[0-9]{{6}})$/\\2 \\1\\2/' | sort | awk '{{print $2}}')
    local excess=$(( ${{#snaps[@]}} - MAX_SNAPSHOTS ))
    if (( excess <= 0 )); then
        return 0
    fi
    log_snapshot "Snapshot count (${{#snaps[@]}}) exceeds limit ($MAX_SNAPSHOTS), cleaning up..."
    local snap
    for snap in "${{snaps[@]:0:excess}}"; do
        [[ -n "$snap" ]] || continue
        log_snapshot "Deleting old snapshot: $snap"
        btrfs subvolume delete "$SNAPSHOT_DIR/$snap" || log_snapshot "ERROR: Failed to delete $snap"
    done
}}

main() {{
    log_snapshot "=== Starting weekly snapshot process ==="
    if [[ ! -d "$SNAPSHOT_DIR" ]]; then
        log_snapshot "ERROR: Snapshot directory not found: $SNAPSHOT_DIR"
        exit 1
    fi
    snapshot @ /
    snapshot @home /home
    cleanup_old_snapshots
    log_snapshot "=== Weekly snapshot process completed ==="
}}

main "$@"
"""


def render_service() -> str:
    lines = [
        "[Unit]",
        "Description=Weekly BTRFS Snapshot Service",
        "Documentation=man:btrfs(8)",
        "After=local-fs.target",
        "",
        "[Service]",
        "Type=oneshot",
        f"ExecStart={SCRIPT_PATH}",
        "StandardOutput=journal",
        "StandardError=journal",
        "",
    ]
    return "\n".join(lines)


def render_timer() -> str:
    lines = [
        "[Unit]",
        "Description=Weekly BTRFS Snapshot Timer",
        "Documentation=man:btrfs(8)",
        "",
        "[Timer]",
        "OnCalendar=Sun *-*-* 02:00:00",
        "RandomizedDelaySec=5min",
        "Persistent=true",
        "Unit=btrfs-snapshot-weekly.service",
        "",
        "[Install]",
        "WantedBy=timers.target",
        "",
    ]
    return "\n".join(lines)


def install_automation(executor, mnt: str, retention: int) -> None:
    executor.write_file(target_path(mnt, SCRIPT_PATH), render_snapshot_script(retention), mode=0o755,
                        description="Installing snapshot script")
    executor.write_file(target_path(mnt, SERVICE_PATH), render_service(),
                        description="Writing snapshot service unit")
    executor.write_file(target_path(mnt, TIMER_PATH), render_timer(),
                        description="Writing snapshot timer unit")
    executor.execute(["arch-chroot", mnt, "systemctl", "enable", TIMER_UNIT], "Enabling snapshot timer")


def list_snapshots(executor, snapshot_dir: str) -> list[str]:
    res = executor.query(["ls", "-1", snapshot_dir])
    if res.rc != 0 and executor.dry_run:
        executor.logger.warn(f"[DRY-RUN] {snapshot_dir} not readable, assuming no snapshots")
        return []
    if res.rc != 0:
        raise DeployError(f"cannot list {snapshot_dir}: {res.err.strip()}")
    return [line.strip() for line in res.out.splitlines() if line.strip()]


def rotate_snapshots(executor, snapshot_dir: str, retention: int, *, create: bool = True,
                     now: Optional[_dt.datetime] = None) -> dict:
    log = executor.logger
    created = []
    if create:
        when = now or _dt.datetime.now()
        for base, source in SOURCES:
            name = snapshot_name(base, when)
            executor.execute(["btrfs", "subvolume", "snapshot", "-r", source, f"{snapshot_dir}/{name}"],
                             f"Creating snapshot {name}")
            created.append(name)
    names = list_snapshots(executor, snapshot_dir)
    # Dry runs never created anything; count the would-be snapshots anyway.
    names.extend(n for n in created if n not in names)
    doomed = snapshots_to_prune(names, retention)
    deleted, failed = [], []
    if doomed:
        log.info(f"Snapshot count ({len(names)}) exceeds limit ({retention}), cleaning up...")
    for name in doomed:
        res = executor.execute(["btrfs", "subvolume", "delete", f"{snapshot_dir}/{name}"],
                               f"Deleting old snapshot {name}", critical=False)
        (deleted if res.rc == 0 else failed).append(name)
    log.trace("snapshots.rotate", created=created, deleted=deleted, failed=failed)
    return {"created": created, "deleted": deleted, "failed": failed}


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="archdeploy-snapshot",
                                 description="Create read-only BTRFS snapshots and prune old ones")
    ap.add_argument("--snapshot-dir", default=SNAPSHOT_DIR)
    ap.add_argument("--retention", type=int, default=12)
    ap.add_argument("--dry-run", action="store_true")
    ap.add_argument("--no-create", action="store_true", help="Only prune, do not take new snapshots")
    ap.add_argument("--log-dir", default=None)
    return ap


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logger = DeployLogger(args.log_dir)
    executor = make_executor(args.dry_run, logger)
    try:
        summary = rotate_snapshots(executor, args.snapshot_dir, args.retention, create=not args.no_create)
    except DeployError as exc:
        logger.error(str(exc))
        return exc.exit_code or 1
    logger.success(f"Snapshots created: {len(summary['created'])}, pruned: {len(summary['deleted'])}")
    return 1 if summary["failed"] else 0


if __name__ == "__main__":
    sys.exit(main())
