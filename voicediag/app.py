from __future__ import annotations
import argparse
import logging
import os
import subprocess
import sys
from typing import List, Optional

from .config import load_config
from .log import setup_logging
from .models import SessionReport
from .session import DiagnosticSession

log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ISSUES = 1
EXIT_ABORTED = 2
EXIT_DECLINED = 3


def is_admin() -> bool:
    if not sys.platform.startswith("win"):
        return hasattr(os, "geteuid") and os.geteuid() == 0
    try:
        import ctypes
        return bool(ctypes.windll.shell32.IsUserAnAdmin())
    except (AttributeError, OSError):
        return False


def relaunch_elevated(argv: List[str]) -> bool:
    """Start an elevated copy through the UAC prompt. True if it launched."""
    if not sys.platform.startswith("win"):
        return False
    import ctypes
    params = subprocess.list2cmdline(["-m", "voicediag.app", *argv])
    rc = ctypes.windll.shell32.ShellExecuteW(None, "runas", sys.executable, params, None, 1)
    return int(rc) > 32


def confirm(prompt: str, auto_yes: bool) -> bool:
    if auto_yes:
        log.info(f"(--yes) auto-confirming: {prompt}")
        return True
    try:
        answer = input(f"\n  {prompt} [y/N]: ").strip().lower()
        return answer in ("y", "yes")
    except (EOFError, KeyboardInterrupt):
        return False


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="voicediag",
        description="Waits for the voice client to join a lobby, then checks "
                    "endpoints, DNS, firewall logging and clock sync.",
    )
    p.add_argument("--config", help="config JSON (default ~/.voicediag/config.json)")
    p.add_argument("--log-file", help="append the transcript to this file")
    p.add_argument("--no-remediation", action="store_true",
                   help="never create firewall allow rules")
    p.add_argument("--yes", action="store_true", help="skip the confirmation prompt")
    p.add_argument("--skip-elevation", action="store_true",
                   help="run without administrator rights (most probes will fail)")
    p.add_argument("--verbose", action="store_true", help="debug output and error tracebacks")
    return p


def exit_code(report: SessionReport) -> int:
    if report.aborted:
        return EXIT_ABORTED
    return EXIT_ISSUES if report.has_issues() else EXIT_OK


def run(argv: Optional[List[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    args = build_parser().parse_args(argv)

    cfg = load_config(args.config)
    if args.log_file:
        cfg.log_path = args.log_file
    if args.no_remediation:
        cfg.remediation_enabled = False
    setup_logging(cfg.log_path, verbose=args.verbose)

    if not args.skip_elevation and not is_admin():
        if relaunch_elevated(argv):
            log.info("[App] Relaunched with administrator rights")
            return EXIT_OK
        log.error("[App] Administrator rights are required (use --skip-elevation to run anyway)")
        return EXIT_DECLINED

    log.info(f"[App] Transcript: {cfg.log_path}")
    if not confirm("This run may change DNS servers and firewall rules/logging. Continue?", args.yes):
        log.info("[App] Cancelled by user")
        return EXIT_DECLINED

    report = DiagnosticSession(cfg).run()
    return exit_code(report)


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
