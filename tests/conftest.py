from __future__ import annotations
import time
from typing import Dict, List, Optional, Sequence, Set, Tuple

import pytest

from voicediag.config import AppConfig
from voicediag.errors import FirewallError, ShellError
from voicediag.firewall import ProfileState
from voicediag.models import FirewallLogEntry, ProbeResult, TargetProcess, TriggerEvent


def make_entry(action: str = "ALLOW", src: str = "192.168.1.10", dst: str = "188.42.147.20",
               protocol: str = "UDP") -> FirewallLogEntry:
    return FirewallLogEntry(
        date="2024-05-01", time="20:15:03", action=action, protocol=protocol,
        src_ip=src, dst_ip=dst, src_port="50000", dst_port="12000", size="120",
        tcp_flags="-", tcp_syn="-", tcp_ack="-", tcp_win="-", icmp_type="-",
        icmp_code="-", info="-", path="SEND", pid="4242",
    )


def log_line(action: str = "DROP", src: str = "192.168.1.10", dst: str = "188.42.147.20") -> str:
    return (f"2024-05-01 20:15:03 {action} UDP {src} {dst} 50000 12000 120 "
            f"- - - - - - - RECEIVE 4242\n")


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeProber:
    def __init__(self, blocked: Sequence[str] = ()):
        self.blocked: Set[str] = set(blocked)
        self.calls: List[Tuple[str, Optional[int]]] = []

    def probe(self, host: str, tcp_port: Optional[int] = None) -> ProbeResult:
        self.calls.append((host, tcp_port))
        if host in self.blocked:
            return ProbeResult(host=host, port=tcp_port, icmp_blocked=True,
                               tcp_reachable=False if tcp_port else None,
                               error="ICMP blocked", hint="likely firewall")
        return ProbeResult(host=host, port=tcp_port, latency_ms=12.0,
                           tcp_reachable=True if tcp_port else None)


class FakeResolver:
    """Resolver config for one interface. Resolution fails while a broken set is active."""

    def __init__(self, servers: Sequence[str] = ("10.0.0.1", "10.0.0.2"),
                 interface: Optional[Tuple[str, str]] = ("Ethernet", "192.168.1.10"),
                 broken: Sequence[Sequence[str]] = (),
                 fail_apply: Sequence[Sequence[str]] = ()):
        self.servers: Tuple[str, ...] = tuple(servers)
        self.original: Tuple[str, ...] = tuple(servers)
        self.interface = interface
        self.broken = {tuple(b) for b in broken}
        self.fail_apply = {tuple(f) for f in fail_apply}
        self.fail_restore = False
        self.applied: List[Tuple[str, ...]] = []
        self.flushes = 0
        self.cache: List[str] = []

    def cache_entries(self, pattern: str) -> List[str]:
        return [e for e in self.cache if pattern in e]

    def active_interface(self):
        return self.interface

    def get_servers(self, alias: str) -> Tuple[str, ...]:
        return self.servers

    def set_servers(self, alias: str, servers: Sequence[str]) -> None:
        servers = tuple(servers)
        self.applied.append(servers)
        if servers == self.original and self.fail_restore:
            raise ShellError("Set-DnsClientServerAddress: access denied")
        if servers in self.fail_apply:
            raise ShellError("Set-DnsClientServerAddress: adapter busy")
        self.servers = servers

    def flush_cache(self) -> None:
        self.flushes += 1

    def resolve(self, domain: str) -> List[str]:
        if self.servers in self.broken:
            raise ShellError(f"{domain}: DNS name does not exist")
        return ["203.0.113.5"]


class FakeFirewall:
    def __init__(self, log_path: str = "", enabled: bool = True, log_allowed: bool = False,
                 log_blocked: bool = False, max_kb: int = 4096, profile: str = "Private",
                 fail_enable: bool = False):
        self.profile = profile
        self.fail_enable = fail_enable
        self.state = ProfileState(name=profile, enabled=enabled, log_allowed=log_allowed,
                                  log_blocked=log_blocked, log_path=log_path, max_kb=max_kb)
        self.logging_calls: List[Tuple[str, bool, bool, Optional[int]]] = []
        self.rules: Dict[str, tuple] = {}
        self.add_calls: List[str] = []
        self.fail_rules: Set[str] = set()

    def active_profile(self) -> str:
        return self.profile

    def profile_state(self, profile: str) -> ProfileState:
        return self.state

    def set_logging(self, profile: str, allowed: bool, blocked: bool, max_kb=None) -> None:
        self.logging_calls.append((profile, allowed, blocked, max_kb))
        if self.fail_enable and allowed and blocked:
            raise FirewallError("Set-NetFirewallProfile: access denied")

    def rule_exists(self, display_name: str) -> bool:
        return display_name in self.rules

    def add_rule(self, display_name, direction, protocol, port, remote_address) -> None:
        self.add_calls.append(display_name)
        if display_name in self.fail_rules:
            raise FirewallError(f"New-NetFirewallRule failed for {display_name}")
        self.rules[display_name] = (direction, protocol, port, remote_address)


class FakeEventLog:
    """Channel with a pre-scripted record feed, released one batch per read."""

    def __init__(self, batches: Sequence[Sequence[TriggerEvent]] = (), latest: int = 100,
                 fail_enable: bool = False):
        self.batches = [list(b) for b in batches]
        self.latest = latest
        self.fail_enable = fail_enable
        self.enable_calls: List[bool] = []
        self.reads = 0

    def set_enabled(self, channel: str, enabled: bool) -> None:
        self.enable_calls.append(enabled)
        if enabled and self.fail_enable:
            raise ShellError("wevtutil: access denied")

    def latest_record_id(self, channel: str) -> int:
        return self.latest

    def read_since(self, channel: str, record_id: int) -> List[TriggerEvent]:
        self.reads += 1
        if not self.batches:
            return []
        return [r for r in self.batches.pop(0) if r.record_id > record_id]


def make_event(record_id: int, message: str) -> TriggerEvent:
    return TriggerEvent(timestamp="2024-05-01T20:15:03", source_name="Test/Operational",
                        event_id=65, provider_name="Test-Provider", message=message,
                        record_id=record_id)


def make_process(name: str = "VoiceClient.exe", pid: int = 4242) -> TargetProcess:
    return TargetProcess(name=name, pid=pid, start_time=1700000000.0, exe=rf"C:\Games\{name}")


@pytest.fixture
def cfg(tmp_path) -> AppConfig:
    c = AppConfig()
    c.log_path = str(tmp_path / "voicediag.log")
    c.process_poll_interval = 0.01
    c.event_poll_interval = 0.01
    c.firewall_tail_interval = 0.01
    return c
