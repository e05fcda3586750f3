from __future__ import annotations
import re
import socket
import sys
from typing import List, Optional, Tuple

import psutil

from .errors import ShellError
from .models import ProbeResult, TargetProcess
from .shell import run_command

# Only the TTL field and the "ms" unit survive ping's localisation:
#   "time=23ms TTL=55", "Zeit<1ms TTL=128", "temps=12 ms TTL=57", "ttl=57 time=12.4 ms"
_PING_TTL_RE = re.compile(r"\bttl[=:]\s*\d+", re.IGNORECASE)
_PING_TIME_RE = re.compile(r"[=<]\s*(\d+(?:[.,]\d+)?)\s*ms\b", re.IGNORECASE)

HINT_FIREWALL = "likely firewall (no answer before timeout)"
HINT_SERVICE = "service unresponsive (host answered, port refused)"


def parse_ping_latency(output: str) -> Optional[float]:
    """Round-trip time of the first echo reply, or None without one."""
    output = output or ""
    # "Destination host unreachable" replies exit 0 on Windows but carry no TTL.
    if not _PING_TTL_RE.search(output):
        return None
    m = _PING_TIME_RE.search(output)
    if not m:
        return None
    try:
        return float(m.group(1).replace(",", "."))
    except ValueError:
        return None


def route_interface(route_probe: str) -> Optional[Tuple[str, str]]:
    """(interface alias, source IP) of the default route towards route_probe."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            # UDP connect sends nothing; it only selects a route.
            s.connect((route_probe, 53))
            source_ip = s.getsockname()[0]
    except OSError:
        return None

    for alias, addrs in psutil.net_if_addrs().items():
        for a in addrs:
            if a.family == socket.AF_INET and a.address == source_ip:
                return alias, source_ip
    return None


def _ping_args(host: str, timeout_ms: int) -> List[str]:
    if sys.platform.startswith("win"):
        return ["ping", "-n", "1", "-w", str(timeout_ms), host]
    return ["ping", "-c", "1", "-W", str(max(1, timeout_ms // 1000)), host]


class EndpointProber:
    """
    Single-attempt latency + TCP reachability probes. Stateless; retry
    policy belongs to the caller.

    A missing echo reply is reported as ICMP blocked, never as host down.
    """
    def __init__(self, ping_timeout_ms: int = 1000, tcp_timeout_s: float = 3.0):
        self.ping_timeout_ms = ping_timeout_ms
        self.tcp_timeout_s = tcp_timeout_s

    def latency(self, host: str) -> Optional[float]:
        try:
            out = run_command(_ping_args(host, self.ping_timeout_ms),
                              timeout=self.ping_timeout_ms / 1000 + 5)
        except ShellError:
            return None
        return parse_ping_latency(out)

    def tcp_connect(self, host: str, port: int) -> Optional[str]:
        """Returns None on success, otherwise a hint describing the failure."""
        try:
            with socket.create_connection((host, port), timeout=self.tcp_timeout_s):
                return None
        except socket.timeout:
            return HINT_FIREWALL
        except (ConnectionRefusedError, ConnectionResetError):
            return HINT_SERVICE
        except OSError as exc:
            return f"{HINT_FIREWALL}: {exc}"

    def probe(self, host: str, tcp_port: Optional[int] = None) -> ProbeResult:
        latency = self.latency(host)
        icmp_blocked = latency is None
        error = "ICMP blocked or unreachable (inconclusive)" if icmp_blocked else ""

        tcp_ok: Optional[bool] = None
        hint = ""
        if tcp_port is not None:
            hint = self.tcp_connect(host, int(tcp_port)) or ""
            tcp_ok = not hint
            if not tcp_ok:
                error = f"TCP {tcp_port} blocked" + (f"; {error}" if error else "")

        return ProbeResult(
            host=host, port=tcp_port, latency_ms=latency,
            tcp_reachable=tcp_ok, icmp_blocked=icmp_blocked,
            error=error, hint=hint,
        )


def target_connections(target: TargetProcess) -> List[str]:
    """Remote endpoints currently held by the target process."""
    rows: List[str] = []
    try:
        conns = psutil.net_connections(kind="inet")
    except (psutil.AccessDenied, OSError):
        return rows

    for c in conns:
        if c.pid != target.pid or not c.raddr:
            continue
        proto = "TCP" if c.type == socket.SOCK_STREAM else "UDP"
        laddr = f"{c.laddr.ip}:{c.laddr.port}" if c.laddr else ""
        raddr = f"{c.raddr.ip}:{c.raddr.port}"
        rows.append(f"{proto} {laddr} -> {raddr} {c.status}".rstrip())

    # ESTABLISHED first
    rows.sort(key=lambda r: (0 if r.endswith("ESTABLISHED") else 1, r))
    return rows
