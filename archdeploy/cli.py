"""CLI entrypoint for the Arch Linux secure deployment."""

from __future__ import annotations

import argparse
import dataclasses
import sys
from typing import Dict, Optional

from .errors import DeployError, UserCancelled, exit_code_for, result_kind_for
from .executil import make_executor
from .logs import DeployLogger
from .model import DeploymentConfig, DeploymentContext, Flags, Mounts
from .orchestrator import run_deployment
from .paths import mount_root
from .prompts import Prompter
from .state import StateStore

RESULT_CODES: Dict[str, int] = {
    "DEPLOY_OK": 0,
    "DRYRUN_OK": 0,
    "CANCELLED": 0,
    "FAIL_GENERIC": 1,
    "FAIL_VALIDATION": 2,
    "FAIL_PRECONDITION": 3,
    "FAIL_DISK_SPACE": 4,
    "FAIL_STATE": 5,
    "FAIL_UNSAFE_COMMAND": 6,
    "FAIL_UNHANDLED": 12,
    "FAIL_INTERRUPTED": 130,
}

# Config fields carried into the state file from the start of a run.
_PERSISTED = {"hostname", "username", "btrfs_root_vol", "btrfs_home_vol", "btrfs_snapshots_vol",
              "luks_root_name", "luks_home_name", "add_log_subvolume", "enable_nvidia",
              "snapshot_retention", "timezone", "user_shell", "kernel"}


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="archdeploy",
                                 description="Encrypted Arch Linux deployment (LUKS2 + BTRFS + GRUB)")
    ap.add_argument("--dry-run", action="store_true", help="Log every step, change nothing")
    ap.add_argument("--enable-tpm2", action="store_true", help="Unlock via TPM2 (systemd initramfs hook)")
    ap.add_argument("--disable-apparmor", action="store_true")
    ap.add_argument("--disable-firewall", action="store_true")
    ap.add_argument("--assume-defaults", action="store_true",
                    help="Accept every prompt default (unattended dry runs)")
    ap.add_argument("--resume-state", metavar="PATH", help="Reuse answers from an earlier state file")
    ap.add_argument("--log-dir", metavar="DIR")
    ap.add_argument("--mount-root", metavar="DIR")
    return ap


def flags_from_args(args: argparse.Namespace) -> Flags:
    return Flags(
        dry_run=args.dry_run,
        enable_tpm2=args.enable_tpm2,
        enable_apparmor=not args.disable_apparmor,
        enable_firewall=not args.disable_firewall,
        assume_defaults=args.assume_defaults,
        resume_state=args.resume_state,
    )


def build_context(args: argparse.Namespace, logger: Optional[DeployLogger] = None, **prompter_kw) -> DeploymentContext:
    flags = flags_from_args(args)
    logger = logger or DeployLogger(args.log_dir)
    executor = make_executor(flags.dry_run, logger)
    config = DeploymentConfig()
    if flags.resume_state:
        resumed = StateStore(flags.resume_state, logger, persist=False)
        resumed.load_state()
        config = resumed.apply_to(config)
        logger.info(f"Resumed answers from {flags.resume_state}")
        last = resumed.get("last_phase")
        if last:
            logger.info(f"Previous run completed phase: {last}")
    state = StateStore(logger=logger, persist=not flags.dry_run)
    state.update({k: v for k, v in dataclasses.asdict(config).items() if v is not None and k in _PERSISTED})
    prompter = Prompter(logger, assume_defaults=flags.assume_defaults, **prompter_kw)
    return DeploymentContext(
        config=config,
        flags=flags,
        executor=executor,
        logger=logger,
        state=state,
        prompter=prompter,
        mounts=Mounts(root=args.mount_root or mount_root()),
    )


def _emit_result(kind: str, phase: Optional[str], log_path: Optional[str], exit_code: Optional[int] = None) -> None:
    code = RESULT_CODES.get(kind, 1) if exit_code is None else exit_code
    print(f"result={kind} phase={phase or '-'} exit={code} log_path={log_path or '-'}", file=sys.stderr)
    raise SystemExit(code)


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        ctx = build_context(args)
    except DeployError as exc:
        print(f"archdeploy: {exc}", file=sys.stderr)
        _emit_result(exc.result, None, None, exc.exit_code)
    log = ctx.logger
    log.section("ARCH LINUX SECURE DEPLOYMENT")
    log.info(f"Deployment log: {log.log_path}")
    log.info(f"Error log: {log.error_path}")
    if ctx.dry_run:
        log.warn("DRY-RUN mode: no changes will be made to any disk")
    try:
        run_deployment(ctx)
    except UserCancelled as exc:
        log.warn(f"Cancelled: {exc}")
        _emit_result("CANCELLED", ctx.current_phase, log.log_path)
    except (KeyboardInterrupt, Exception) as exc:  # noqa: BLE001
        _emit_result(result_kind_for(exc), ctx.current_phase, log.log_path, exit_code_for(exc))
    _emit_result("DRYRUN_OK" if ctx.dry_run else "DEPLOY_OK", ctx.current_phase, log.log_path)
    return 0


if __name__ == "__main__":
    sys.exit(main())
