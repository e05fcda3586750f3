from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .firewall import WindowsFirewall
from .models import FirewallLogEntry

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleSpec:
    display_name: str
    direction: str      # Inbound|Outbound
    protocol: str       # TCP|UDP
    port: str           # "443" or "12000-65535"
    remote_address: str


class RemediationResult:
    """Tracks what was attempted, what succeeded, and what failed."""

    def __init__(self) -> None:
        self.attempted: List[str] = []
        self.succeeded: List[str] = []
        self.failed: List[str] = []
        self.skipped: List[str] = []

    def ok(self, msg: str) -> None:
        log.info(f"[Remediation] OK   {msg}")
        self.succeeded.append(msg)

    def fail(self, msg: str) -> None:
        log.error(f"[Remediation] FAIL {msg}")
        self.failed.append(msg)

    def skip(self, msg: str) -> None:
        log.info(f"[Remediation] SKIP {msg}")
        self.skipped.append(msg)

    def try_op(self, description: str) -> None:
        self.attempted.append(description)


def has_drops(entries: Sequence[FirewallLogEntry]) -> bool:
    return any(e.action.upper() == "DROP" for e in entries)


class Remediator:
    """
    Provisions allow rules for the known voice network blocks once blocked
    traffic has been seen. Best-effort batch: every rule is ensured on its
    own and a failure never stops the rest.
    """
    def __init__(self, firewall, blocks: Sequence[str], tcp_port: str = "443",
                 udp_ports: str = "12000-65535", prefix: str = "VoiceDiag"):
        self.firewall = firewall
        self.blocks = list(blocks)
        self.tcp_port = str(tcp_port)
        self.udp_ports = str(udp_ports)
        self.prefix = prefix
        self.last_result: Optional[RemediationResult] = None

    @classmethod
    def from_config(cls, cfg, firewall=None) -> "Remediator":
        return cls(
            firewall or WindowsFirewall(cfg.dns_route_probe),
            cfg.remediation_blocks,
            tcp_port=cfg.remediation_tcp_port,
            udp_ports=cfg.remediation_udp_ports,
            prefix=cfg.remediation_rule_prefix,
        )

    def rules(self) -> List[RuleSpec]:
        out: List[RuleSpec] = []
        for block in self.blocks:
            for protocol, port in (("TCP", self.tcp_port), ("UDP", self.udp_ports)):
                for direction in ("Inbound", "Outbound"):
                    short = "In" if direction == "Inbound" else "Out"
                    out.append(RuleSpec(
                        display_name=f"{self.prefix} Allow {protocol} {port} {short} {block}",
                        direction=direction, protocol=protocol, port=port,
                        remote_address=block,
                    ))
        return out

    def remediate(self, entries: Sequence[FirewallLogEntry]) -> bool:
        if not has_drops(entries):
            log.info("[Remediation] No blocked traffic logged; no rules needed")
            return False

        drops = sum(1 for e in entries if e.action.upper() == "DROP")
        log.warning(f"[Remediation] {drops} blocked packet(s) logged; ensuring allow rules")

        result = RemediationResult()
        for rule in self.rules():
            self._ensure(rule, result)
        self.last_result = result

        log.info(
            f"[Remediation] Attempted={len(result.attempted)} OK={len(result.succeeded)} "
            f"Failed={len(result.failed)} Skipped={len(result.skipped)}"
        )
        return True

    def _ensure(self, rule: RuleSpec, result: RemediationResult) -> None:
        result.try_op(rule.display_name)
        try:
            if self.firewall.rule_exists(rule.display_name):
                result.skip(f"{rule.display_name} already present")
                return
            self.firewall.add_rule(
                rule.display_name, rule.direction, rule.protocol,
                rule.port, rule.remote_address,
            )
            result.ok(f"Created {rule.display_name}")
        except Exception as exc:
            result.fail(f"{rule.display_name}: {exc}")
