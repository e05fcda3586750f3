from __future__ import annotations
import enum
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import DnsRollbackError, ShellError
from .models import DnsServerSet
from .prober import EndpointProber, route_interface
from .shell import ps_array, ps_quote, run_powershell, run_powershell_json

log = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# WindowsResolver – resolver configuration on the active interface
# ──────────────────────────────────────────────
class WindowsResolver:
    def __init__(self, route_probe: str = "8.8.8.8"):
        self.route_probe = route_probe

    def cache_entries(self, pattern: str) -> List[str]:
        script = (
            "Get-DnsClientCache | Where-Object { $_.Entry -like "
            f"{ps_quote('*' + pattern + '*')} }} | Select-Object -ExpandProperty Entry -Unique"
        )
        return [str(e) for e in run_powershell_json(script)]

    def active_interface(self) -> Optional[Tuple[str, str]]:
        """(interface alias, source IP) of the route towards route_probe."""
        return route_interface(self.route_probe)

    def get_servers(self, alias: str) -> Tuple[str, ...]:
        script = (
            f"(Get-DnsClientServerAddress -InterfaceAlias {ps_quote(alias)} "
            "-AddressFamily IPv4).ServerAddresses"
        )
        return tuple(str(s) for s in run_powershell_json(script))

    def set_servers(self, alias: str, servers: Sequence[str]) -> None:
        if servers:
            run_powershell(
                f"Set-DnsClientServerAddress -InterfaceAlias {ps_quote(alias)} "
                f"-ServerAddresses {ps_array(servers)}"
            )
        else:
            run_powershell(
                f"Set-DnsClientServerAddress -InterfaceAlias {ps_quote(alias)} -ResetServerAddresses"
            )

    def flush_cache(self) -> None:
        run_powershell("Clear-DnsClientCache")

    def resolve(self, domain: str) -> List[str]:
        script = (
            f"Resolve-DnsName -Name {ps_quote(domain)} -Type A -DnsOnly -ErrorAction Stop "
            "| Where-Object { $_.IP4Address } | Select-Object -ExpandProperty IP4Address"
        )
        addrs = [str(a) for a in run_powershell_json(script, timeout=15)]
        if not addrs:
            raise ShellError(f"{domain}: no A records")
        return addrs


# ──────────────────────────────────────────────
# ResolverTransaction – mutate/restore guard
# ──────────────────────────────────────────────
class ResolverTransaction:
    """
    Holds the single pending mutation of an interface's resolver set.
    Leaving the block without commit() restores the original set; a
    failed restore raises DnsRollbackError.
    """
    def __init__(self, resolver, alias: str, original: DnsServerSet):
        self.resolver = resolver
        self.alias = alias
        self.original = original
        self._dirty = False
        self._committed = False

    def __enter__(self) -> "ResolverTransaction":
        return self

    def apply(self, server_set: DnsServerSet) -> None:
        self._dirty = True
        log.info(f"[DNS] Applying {server_set} on '{self.alias}'")
        self.resolver.set_servers(self.alias, server_set.servers)

    def commit(self) -> None:
        self._committed = True

    def rollback(self) -> None:
        log.info(f"[DNS] Rolling back '{self.alias}' to {self.original}")
        try:
            self.resolver.set_servers(self.alias, self.original.servers)
            if self.original.servers:
                current = tuple(self.resolver.get_servers(self.alias))
                if current != tuple(self.original.servers):
                    raise DnsRollbackError(
                        f"resolver set on '{self.alias}' is {current}, expected {self.original.servers}"
                    )
        except DnsRollbackError:
            raise
        except Exception as exc:
            raise DnsRollbackError(f"could not restore {self.original} on '{self.alias}': {exc}") from exc
        self._dirty = False

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self._dirty and not self._committed:
            self.rollback()
        return False


# ──────────────────────────────────────────────
# DnsValidator – validate / repair state machine
# ──────────────────────────────────────────────
class DnsState(enum.Enum):
    VALIDATING = "validating"
    REPAIRING = "repairing"
    COMMITTED = "committed"
    PASSED = "passed"
    RESTORED = "restored"
    INCONCLUSIVE = "inconclusive"
    ABORTED = "aborted"


class DnsEvent(enum.Enum):
    CLEAN = "clean"
    ISSUES = "issues"
    NO_INTERFACE = "no_interface"
    FALLBACK_CLEAN = "fallback_clean"
    FALLBACK_FAILED = "fallback_failed"
    FALLBACKS_EXHAUSTED = "fallbacks_exhausted"
    ROLLBACK_FAILED = "rollback_failed"
    RETRY = "retry"


TRANSITIONS: Dict[Tuple[DnsState, DnsEvent], DnsState] = {
    (DnsState.VALIDATING,   DnsEvent.CLEAN):               DnsState.PASSED,
    (DnsState.VALIDATING,   DnsEvent.ISSUES):              DnsState.REPAIRING,
    (DnsState.VALIDATING,   DnsEvent.NO_INTERFACE):        DnsState.INCONCLUSIVE,
    (DnsState.REPAIRING,    DnsEvent.FALLBACK_CLEAN):      DnsState.COMMITTED,
    (DnsState.REPAIRING,    DnsEvent.FALLBACK_FAILED):     DnsState.REPAIRING,
    (DnsState.REPAIRING,    DnsEvent.FALLBACKS_EXHAUSTED): DnsState.RESTORED,
    (DnsState.REPAIRING,    DnsEvent.ROLLBACK_FAILED):     DnsState.ABORTED,
    (DnsState.RESTORED,     DnsEvent.RETRY):               DnsState.VALIDATING,
    (DnsState.INCONCLUSIVE, DnsEvent.RETRY):               DnsState.VALIDATING,
}

TERMINAL_STATES = {DnsState.PASSED, DnsState.COMMITTED, DnsState.ABORTED}


@dataclass(frozen=True)
class Transition:
    attempt: int
    source: DnsState
    event: DnsEvent
    target: DnsState
    note: str = ""


@dataclass
class DnsValidation:
    issues_detected: bool
    final_config: Optional[DnsServerSet]
    outcome: DnsState
    attempts: int
    history: List[Transition] = field(default_factory=list)

    def __iter__(self):
        # Unpacks as (issues_detected, final_config)
        yield self.issues_detected
        yield self.final_config


class DnsValidator:
    def __init__(self, resolver, prober: EndpointProber,
                 fallbacks: Sequence[DnsServerSet], cache_pattern: str = ""):
        self.resolver = resolver
        self.prober = prober
        self.fallbacks = list(fallbacks)
        self.cache_pattern = cache_pattern
        self.state = DnsState.VALIDATING
        self.history: List[Transition] = []
        self._attempt = 0

    @classmethod
    def from_config(cls, cfg, resolver=None, prober: Optional[EndpointProber] = None) -> "DnsValidator":
        fallbacks = [DnsServerSet(name, tuple(servers)) for name, servers in cfg.dns_fallbacks.items()]
        return cls(
            resolver or WindowsResolver(cfg.dns_route_probe),
            prober or EndpointProber(cfg.ping_timeout_ms, cfg.tcp_timeout_s),
            fallbacks,
            cache_pattern=cfg.dns_cache_pattern,
        )

    def _fire(self, event: DnsEvent, note: str = "") -> DnsState:
        try:
            target = TRANSITIONS[(self.state, event)]
        except KeyError:
            raise RuntimeError(f"illegal DNS transition: {self.state.value} + {event.value}") from None
        self.history.append(Transition(self._attempt, self.state, event, target, note))
        log.debug(f"[DNS] {self.state.value} --{event.value}--> {target.value} {note}".rstrip())
        self.state = target
        return target

    # ── public ────────────────────────────────
    def validate(self, test_domains: Sequence[str], max_retries: int = 2) -> DnsValidation:
        self.state = DnsState.VALIDATING
        self.history = []
        self._attempt = 0
        issues_seen = False
        original: Optional[DnsServerSet] = None
        max_retries = max(1, int(max_retries))

        while True:
            self._attempt += 1
            log.info(f"[DNS] Validation attempt {self._attempt}/{max_retries}")
            self._report_cache()

            iface = self.resolver.active_interface()
            if iface is None:
                log.warning("[DNS] No active network interface found; DNS checks inconclusive")
                self._fire(DnsEvent.NO_INTERFACE)
            else:
                alias, source_ip = iface
                log.info(f"[DNS] Active interface '{alias}' (source {source_ip})")
                original = DnsServerSet("original", tuple(self.resolver.get_servers(alias)))
                log.info(f"[DNS] Current resolvers: {original}")

                if not self._has_issues(original.servers, test_domains):
                    self._fire(DnsEvent.CLEAN)
                    log.info("[DNS] Resolvers and name resolution OK")
                    return self._result(False, original)

                issues_seen = True
                self._fire(DnsEvent.ISSUES)
                committed = self._repair(alias, original, test_domains)
                if committed is not None:
                    return self._result(False, committed)

            if self._attempt >= max_retries:
                break
            self._fire(DnsEvent.RETRY)

        if self.state is DnsState.RESTORED:
            log.error(f"[DNS] Validation failed after {self._attempt} attempt(s); original resolvers kept")
        return self._result(issues_seen, original)

    # ── private ───────────────────────────────
    def _result(self, issues: bool, final: Optional[DnsServerSet]) -> DnsValidation:
        return DnsValidation(
            issues_detected=issues, final_config=final, outcome=self.state,
            attempts=self._attempt, history=list(self.history),
        )

    def _report_cache(self) -> None:
        if not self.cache_pattern:
            return
        try:
            entries = self.resolver.cache_entries(self.cache_pattern)
        except (ShellError, OSError) as exc:
            log.info(f"[DNS] Resolver cache unreadable: {exc}")
            return
        if entries:
            log.info(f"[DNS] {len(entries)} cached entr{'y' if len(entries) == 1 else 'ies'} "
                     f"matching '{self.cache_pattern}': {', '.join(entries[:5])}")
        else:
            log.info(f"[DNS] No cached entries matching '{self.cache_pattern}'")

    def _has_issues(self, servers: Sequence[str], domains: Sequence[str]) -> bool:
        issues = False
        for server in servers:
            res = self.prober.probe(server)
            if res.icmp_blocked:
                issues = True
                log.warning(f"[DNS] Server {server}: ICMP blocked/unreachable (server not assumed down)")
            else:
                log.info(f"[DNS] Server {server}: {res.latency_ms:.0f} ms")

        for domain in domains:
            try:
                addrs = self.resolver.resolve(domain)
                log.info(f"[DNS] {domain} -> {', '.join(addrs)}")
            except (ShellError, OSError) as exc:
                issues = True
                log.error(f"[DNS] Resolution failed for {domain}: {exc}")
        return issues

    def _repair(self, alias: str, original: DnsServerSet,
                domains: Sequence[str]) -> Optional[DnsServerSet]:
        """Fallbacks strictly in order; the first clean re-test wins."""
        for i, fallback in enumerate(self.fallbacks, start=1):
            log.info(f"[DNS] Repair {i}/{len(self.fallbacks)}: trying {fallback}")
            committed = False
            try:
                with ResolverTransaction(self.resolver, alias, original) as txn:
                    txn.apply(fallback)
                    self.resolver.flush_cache()
                    if self._has_issues(fallback.servers, domains):
                        log.warning(f"[DNS] {fallback.name} still shows issues")
                    else:
                        txn.commit()
                        committed = True
            except DnsRollbackError as exc:
                self._fire(DnsEvent.ROLLBACK_FAILED, note=fallback.name)
                log.critical(f"[DNS] Rollback failed: {exc}")
                raise
            except (ShellError, OSError) as exc:
                log.error(f"[DNS] Applying {fallback.name} failed: {exc}")

            if committed:
                self._fire(DnsEvent.FALLBACK_CLEAN, note=fallback.name)
                log.info(f"[DNS] Committed {fallback}")
                return fallback
            self._fire(DnsEvent.FALLBACK_FAILED, note=fallback.name)

        self._fire(DnsEvent.FALLBACKS_EXHAUSTED)
        return None
