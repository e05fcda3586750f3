from __future__ import annotations
import fnmatch
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from PySide6 import QtCore

from .errors import FirewallError
from .models import FirewallLogEntry
from .prober import route_interface
from .shell import ps_quote, run_powershell, run_powershell_json

log = logging.getLogger(__name__)

FIELD_COUNT = 18
LOG_FIELDS = (
    "date", "time", "action", "protocol", "src_ip", "dst_ip", "src_port", "dst_port",
    "size", "tcp_flags", "tcp_syn", "tcp_ack", "tcp_win", "icmp_type", "icmp_code",
    "info", "path", "pid",
)

# Set-NetFirewallProfile -LogMaxSizeKilobytes range
LOG_MAX_KB_MIN = 1
LOG_MAX_KB_MAX = 32767


# ──────────────────────────────────────────────
# Log line parsing / filtering
# ──────────────────────────────────────────────
def parse_log_line(line: str) -> Optional[FirewallLogEntry]:
    """One pfirewall.log record, or None for blank/comment/short lines."""
    if not line or line.lstrip().startswith("#"):
        return None
    parts = line.split()
    if len(parts) < FIELD_COUNT:
        return None
    return FirewallLogEntry(**dict(zip(LOG_FIELDS, parts[:FIELD_COUNT])))


def matches_watched(entry: FirewallLogEntry, patterns: Sequence[str]) -> bool:
    return any(
        fnmatch.fnmatchcase(entry.src_ip, p) or fnmatch.fnmatchcase(entry.dst_ip, p)
        for p in patterns
    )


def filter_line(line: str, patterns: Sequence[str]) -> Optional[FirewallLogEntry]:
    entry = parse_log_line(line)
    if entry is None or not matches_watched(entry, patterns):
        return None
    return entry


# ──────────────────────────────────────────────
# WindowsFirewall – profile logging + rule store
# ──────────────────────────────────────────────
@dataclass(frozen=True)
class ProfileState:
    name: str
    enabled: bool
    log_allowed: bool
    log_blocked: bool
    log_path: str
    max_kb: int


def clamp_log_size(max_kb: int) -> int:
    clamped = min(max(int(max_kb), LOG_MAX_KB_MIN), LOG_MAX_KB_MAX)
    if clamped != max_kb:
        log.warning(f"[FirewallLogMonitor] Log size {max_kb} KB out of range, using {clamped} KB")
    return clamped


def select_profile(rows: Sequence[Dict], alias: Optional[str]) -> str:
    """
    Firewall profile for the connection on `alias`. Get-NetConnectionProfile
    lists one row per connected adapter (Ethernet + VPN etc.); without a
    match the first row is used.
    """
    if not rows:
        raise FirewallError("no active network connection profile")
    row = rows[0]
    if alias:
        for r in rows:
            if str(r.get("InterfaceAlias") or "") == alias:
                row = r
                break
        else:
            log.warning(f"[FirewallLogMonitor] No connection profile for {alias}, "
                        f"using {row.get('InterfaceAlias')}")
    category = str(row.get("NetworkCategory") or "Public")
    return "Domain" if category == "DomainAuthenticated" else category


def _flag(value) -> bool:
    # NetSecurity enums serialise as ints (1 = True) or as names.
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1")
    return value == 1 or value is True


class WindowsFirewall:
    def __init__(self, route_probe: str = "8.8.8.8",
                 interface_finder: Callable[[str], Optional[Tuple[str, str]]] = route_interface):
        self.route_probe = route_probe
        self.interface_finder = interface_finder

    def active_profile(self) -> str:
        """Firewall profile name for the default-route connection's network category."""
        rows = run_powershell_json(
            "Get-NetConnectionProfile | Select-Object InterfaceAlias, "
            "@{n='NetworkCategory';e={$_.NetworkCategory.ToString()}}"
        )
        iface = self.interface_finder(self.route_probe)
        return select_profile(rows, iface[0] if iface else None)

    def profile_state(self, profile: str) -> ProfileState:
        rows = run_powershell_json(
            f"Get-NetFirewallProfile -Name {ps_quote(profile)} | Select-Object Name, "
            "@{n='Enabled';e={$_.Enabled.ToString()}}, "
            "@{n='LogAllowed';e={$_.LogAllowed.ToString()}}, "
            "@{n='LogBlocked';e={$_.LogBlocked.ToString()}}, "
            "LogFileName, LogMaxSizeKilobytes"
        )
        if not rows:
            raise FirewallError(f"firewall profile {profile} not found")
        row = rows[0]
        return ProfileState(
            name=str(row.get("Name") or profile),
            enabled=_flag(row.get("Enabled")),
            log_allowed=_flag(row.get("LogAllowed")),
            log_blocked=_flag(row.get("LogBlocked")),
            log_path=os.path.expandvars(str(row.get("LogFileName") or "")),
            max_kb=int(row.get("LogMaxSizeKilobytes") or 4096),
        )

    def set_logging(self, profile: str, allowed: bool, blocked: bool,
                    max_kb: Optional[int] = None) -> None:
        tf = lambda b: "True" if b else "False"
        script = (
            f"Set-NetFirewallProfile -Name {ps_quote(profile)} "
            f"-LogAllowed {tf(allowed)} -LogBlocked {tf(blocked)}"
        )
        if max_kb:
            script += f" -LogMaxSizeKilobytes {int(max_kb)}"
        run_powershell(script)

    def rule_exists(self, display_name: str) -> bool:
        rows = run_powershell_json(
            f"Get-NetFirewallRule -DisplayName {ps_quote(display_name)} "
            "-ErrorAction SilentlyContinue | Select-Object DisplayName"
        )
        return bool(rows)

    def add_rule(self, display_name: str, direction: str, protocol: str,
                 port: str, remote_address: str) -> None:
        # Inbound rules scope our local port; outbound rules the remote one.
        port_arg = "-LocalPort" if direction == "Inbound" else "-RemotePort"
        run_powershell(
            f"New-NetFirewallRule -DisplayName {ps_quote(display_name)} "
            f"-Direction {direction} -Action Allow -Protocol {protocol} "
            f"{port_arg} {ps_quote(port)} -RemoteAddress {ps_quote(remote_address)} "
            "-ErrorAction Stop | Out-Null"
        )


# ──────────────────────────────────────────────
# Logging guard
# ──────────────────────────────────────────────
class ProfileLoggingGuard:
    """
    Enables allowed/blocked logging on enter and undoes it on exit.
    restore_previous=True puts back the flags captured on enter;
    False forces logging off.
    """
    def __init__(self, firewall, state: ProfileState, max_kb: int, restore_previous: bool = True):
        self.firewall = firewall
        self.state = state
        self.max_kb = max_kb
        self.restore_previous = restore_previous
        self._enabled = False

    def __enter__(self) -> "ProfileLoggingGuard":
        self._enabled = True
        try:
            self.firewall.set_logging(self.state.name, True, True, self.max_kb)
        except Exception:
            # The cmdlet may have applied some flags before failing.
            self._restore()
            raise
        log.info(f"[FirewallLogMonitor] Logging enabled on {self.state.name} profile "
                 f"(max {self.max_kb} KB)")
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self._restore()
        return False

    def _restore(self) -> None:
        if not self._enabled:
            return
        self._enabled = False
        if self.restore_previous:
            allowed, blocked, max_kb = self.state.log_allowed, self.state.log_blocked, self.state.max_kb
        else:
            allowed, blocked, max_kb = False, False, None
        try:
            self.firewall.set_logging(self.state.name, allowed, blocked, max_kb)
            log.info(f"[FirewallLogMonitor] Logging restored on {self.state.name} profile "
                     f"(allowed={allowed} blocked={blocked})")
        except Exception as e:
            log.error(f"[FirewallLogMonitor] Could not restore logging on {self.state.name}: {e}")


# ──────────────────────────────────────────────
# FirewallLogMonitor – background tail thread
# ──────────────────────────────────────────────
class FirewallLogMonitor(QtCore.QThread):
    """
    Tails the active profile's packet-filter log for the whole session.
    Matching entries accumulate here (drain() copies them) and are also
    emitted one by one.
    """

    entry_found = QtCore.Signal(object)   # FirewallLogEntry

    def __init__(self, firewall, patterns: Sequence[str], max_kb: int = 4096,
                 restore_previous: bool = True, poll_interval: float = 0.2):
        super().__init__()
        self.firewall = firewall
        self.patterns = list(patterns)
        self.max_kb = clamp_log_size(max_kb)
        self.restore_previous = restore_previous
        self.poll_interval = poll_interval

        self._entries: List[FirewallLogEntry] = []
        self._lock = threading.Lock()
        self._running = False
        self.profile: Optional[str] = None
        self.tailing = False

    @classmethod
    def from_config(cls, cfg, firewall=None) -> "FirewallLogMonitor":
        return cls(
            firewall or WindowsFirewall(cfg.dns_route_probe),
            cfg.watched_ip_patterns,
            max_kb=cfg.firewall_log_max_kb,
            restore_previous=cfg.firewall_restore_previous_logging,
            poll_interval=cfg.firewall_tail_interval,
        )

    # ── control (foreground) ──────────────────
    def start(self, *args, **kwargs) -> None:
        self._running = True
        super().start(*args, **kwargs)

    def stop(self) -> None:
        """Graceful shutdown; returns once cleanup has run."""
        self._running = False
        self.wait()

    def drain(self) -> List[FirewallLogEntry]:
        with self._lock:
            return list(self._entries)

    # ── thread body ───────────────────────────
    def run(self) -> None:
        log.info("[FirewallLogMonitor] Thread started")
        try:
            self.profile = self.firewall.active_profile()
            state = self.firewall.profile_state(self.profile)
        except Exception as e:
            log.error(f"[FirewallLogMonitor] Could not read firewall profile: {e}")
            return

        if not state.enabled:
            log.info(f"[FirewallLogMonitor] {state.name} firewall profile is disabled; not monitoring")
            return

        try:
            with ProfileLoggingGuard(self.firewall, state, self.max_kb, self.restore_previous):
                self._tail(state.log_path)
        except Exception as e:
            log.error(f"[FirewallLogMonitor] Tailing stopped: {e}")
        log.info(f"[FirewallLogMonitor] Thread finished, {len(self.drain())} matching entries")

    def _tail(self, path: str) -> None:
        log.info(f"[FirewallLogMonitor] Tailing {path}")
        from_end = os.path.exists(path)
        while self._running:
            # The file only appears once the first packet is logged,
            # and again after a size rotation.
            if not os.path.exists(path):
                time.sleep(self.poll_interval)
                continue
            if not self._follow(path, from_end):
                break
            from_end = False
            log.info(f"[FirewallLogMonitor] {path} rotated, reopening")

    def _follow(self, path: str, from_end: bool) -> bool:
        with open(path, "r", encoding="utf-8", errors="replace") as fh:
            if from_end:
                fh.seek(0, os.SEEK_END)
            self.tailing = True
            pending = ""
            while True:
                chunk = fh.readline()
                if not chunk:
                    if not self._running:
                        return False
                    try:
                        if os.path.getsize(path) < fh.tell():
                            return True
                    except FileNotFoundError:
                        pass
                    time.sleep(self.poll_interval)
                    continue
                pending += chunk
                if not pending.endswith("\n"):
                    continue    # partial line, wait for the rest
                line, pending = pending, ""
                self._accept(line)

    def _accept(self, line: str) -> None:
        entry = filter_line(line, self.patterns)
        if entry is None:
            return
        with self._lock:
            self._entries.append(entry)
        log.debug(f"[FirewallLogMonitor] {entry.action} {entry.protocol} "
                  f"{entry.src_ip}:{entry.src_port} -> {entry.dst_ip}:{entry.dst_port}")
        self.entry_found.emit(entry)
