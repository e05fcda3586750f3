from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

@dataclass(frozen=True)
class TargetProcess:
    name: str
    pid: int
    start_time: float
    exe: str = ""

@dataclass(frozen=True)
class TriggerEvent:
    timestamp: str
    source_name: str
    event_id: int
    provider_name: str
    message: str
    record_id: int = 0

@dataclass(frozen=True)
class FirewallLogEntry:
    date: str
    time: str
    action: str         # ALLOW|DROP|INFO-EVENTS-LOST|...
    protocol: str
    src_ip: str
    dst_ip: str
    src_port: str
    dst_port: str
    size: str
    tcp_flags: str
    tcp_syn: str
    tcp_ack: str
    tcp_win: str
    icmp_type: str
    icmp_code: str
    info: str
    path: str
    pid: str

@dataclass(frozen=True)
class DnsServerSet:
    name: str
    servers: Tuple[str, ...] = ()

    def __str__(self) -> str:
        shown = ", ".join(self.servers) if self.servers else "DHCP"
        return f"{self.name} ({shown})"

@dataclass(frozen=True)
class ProbeResult:
    host: str
    port: Optional[int] = None
    latency_ms: Optional[float] = None
    tcp_reachable: Optional[bool] = None   # None = no port probed
    icmp_blocked: bool = False
    error: str = ""
    hint: str = ""

    @property
    def ok(self) -> bool:
        return not self.icmp_blocked and self.tcp_reachable is not False

@dataclass(frozen=True)
class PhaseResult:
    name: str
    issues_detected: bool = False
    retries_used: int = 0
    status: str = "passed"  # passed|issues|repaired|inconclusive|failed|skipped|error|aborted
    detail: str = ""

@dataclass
class SessionReport:
    target: Optional[TargetProcess] = None
    trigger: Optional[TriggerEvent] = None
    phases: List[PhaseResult] = field(default_factory=list)
    entries: List[FirewallLogEntry] = field(default_factory=list)
    aborted: bool = False

    def has_issues(self) -> bool:
        return any(p.issues_detected or p.status == "error" for p in self.phases)

    def phase(self, name: str) -> Optional[PhaseResult]:
        for p in self.phases:
            if p.name == name:
                return p
        return None
