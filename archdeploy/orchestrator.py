"""Sequential phase runner with the error trap and best-effort cleanup."""

from __future__ import annotations

import datetime as _dt
from typing import Sequence

from .devices import mapper_path
from .errors import DeployError, UserCancelled, exit_code_for
from .luks import remove_stray_keyfiles
from .phases import PHASES, Phase


def run_deployment(ctx, phases: Sequence[Phase] = PHASES):
    total = len(phases)
    for index, phase in enumerate(phases, 1):
        ctx.current_phase = phase.name
        ctx.logger.section(f"PHASE {index}/{total}: {phase.title}")
        ctx.logger.trace("phase.start", phase=phase.name)
        try:
            ctx = phase.run(ctx)
        except UserCancelled:
            raise
        except (KeyboardInterrupt, Exception) as exc:
            trap_error(ctx, phase.name, exc)
            raise
        ctx.state.save_state("last_phase", phase.name)
        ctx.logger.trace("phase.done", phase=phase.name)
        ctx.logger.success(f"Phase {phase.name} completed successfully")
    return ctx


def _meminfo(path: str = "/proc/meminfo") -> str:
    keep = ("MemTotal:", "MemAvailable:", "SwapTotal:", "SwapFree:")
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return "".join(line for line in fh if line.startswith(keep))
    except OSError as exc:
        return f"unavailable: {exc}\n"


def diagnostics(ctx) -> str:
    disk = ctx.executor.query(["df", "-h", "/"])
    return (
        f"Timestamp: {_dt.datetime.now().isoformat(timespec='seconds')}\n"
        f"Disk usage:\n{(disk.out or disk.err).rstrip()}\n"
        f"Memory:\n{_meminfo().rstrip()}\n"
    )


def trap_error(ctx, phase: str, exc: BaseException) -> int:
    log = ctx.logger
    code = exit_code_for(exc)
    log.error(f"[FATAL ERROR] phase={phase}: {exc or type(exc).__name__} (exit code: {code})")
    try:
        log.error_detail(diagnostics(ctx))
    except (OSError, DeployError) as diag_exc:
        log.warn(f"Could not collect diagnostics: {diag_exc}")
    paths = log.paths()
    log.error(f"Full log: {paths.get('log_path')}")
    log.error(f"Error log: {paths.get('error_log')}")
    log.error(f"State file: {getattr(ctx.state, 'path', None)}")
    cleanup_on_error(ctx)
    return code


def _mounts_under(ctx, root: str) -> list[str]:
    res = ctx.executor.query(["findmnt", "-rn", "-o", "TARGET"])
    root = root.rstrip("/")
    found = [line.strip() for line in (res.out or "").splitlines()
             if line.strip() == root or line.strip().startswith(root + "/")]
    return sorted(found, key=lambda p: p.count("/"), reverse=True)


def cleanup_on_error(ctx) -> None:
    """Unmount, close mappers, drop keyfiles.  Safe to call repeatedly."""
    log, ex = ctx.logger, ctx.executor
    if ctx.dry_run:
        log.info("[DRY-RUN] Skipping cleanup")
        return
    log.warn("Attempting cleanup...")
    try:
        for where in _mounts_under(ctx, ctx.mounts.root):
            ex.execute(["umount", "-l", where], f"Unmounting {where}", critical=False)
    except Exception as exc:  # noqa: BLE001
        log.warn(f"Unmount during cleanup failed: {exc}")
    for name in (ctx.config.luks_home_name, ctx.config.luks_root_name):
        try:
            if ex.is_block_device(mapper_path(name)):
                ex.execute(["cryptsetup", "close", name], f"Closing {name}", critical=False)
        except Exception as exc:  # noqa: BLE001
            log.warn(f"Closing {name} during cleanup failed: {exc}")
    try:
        remove_stray_keyfiles()
    except OSError as exc:
        log.warn(f"Removing transient keyfiles failed: {exc}")
    log.info("Cleanup finished")
