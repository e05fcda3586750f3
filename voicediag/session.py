from __future__ import annotations
import logging
from typing import Callable, List, Optional

from .config import AppConfig
from .dns import DnsState, DnsValidator
from .errors import DnsRollbackError
from .firewall import FirewallLogMonitor, WindowsFirewall
from .hardware import collect_hardware_report
from .models import PhaseResult, SessionReport, TargetProcess
from .prober import EndpointProber, target_connections
from .remediation import Remediator
from .timesync import TimeSync
from .trigger import TriggerWatcher

log = logging.getLogger(__name__)

_DNS_STATUS = {
    DnsState.PASSED:       "passed",
    DnsState.COMMITTED:    "repaired",
    DnsState.RESTORED:     "failed",
    DnsState.INCONCLUSIVE: "inconclusive",
    DnsState.ABORTED:      "aborted",
}


class DiagnosticSession:
    """
    Foreground pipeline: trigger gate -> connections -> endpoint probes ->
    DNS -> time sync -> remediation -> hardware report. The firewall log
    monitor runs beside it from start to the end of the time-sync phase.

    A failing phase is logged and the next one runs. Only a resolver
    rollback failure ends the session early.
    """
    def __init__(self, cfg: AppConfig,
                 watcher: Optional[TriggerWatcher] = None,
                 monitor: Optional[FirewallLogMonitor] = None,
                 prober: Optional[EndpointProber] = None,
                 dns: Optional[DnsValidator] = None,
                 timesync: Optional[TimeSync] = None,
                 remediator: Optional[Remediator] = None,
                 hardware: Callable[[], List[str]] = collect_hardware_report,
                 connections: Callable[[TargetProcess], List[str]] = target_connections):
        firewall = None
        if monitor is None or remediator is None:
            firewall = WindowsFirewall(cfg.dns_route_probe)
        self.cfg = cfg
        self.watcher = watcher or TriggerWatcher.from_config(cfg)
        self.monitor = monitor or FirewallLogMonitor.from_config(cfg, firewall)
        self.prober = prober or EndpointProber(cfg.ping_timeout_ms, cfg.tcp_timeout_s)
        self.dns = dns or DnsValidator.from_config(cfg, prober=self.prober)
        self.timesync = timesync or TimeSync(cfg.time_server, cfg.time_offset_threshold_s)
        self.remediator = remediator or Remediator.from_config(cfg, firewall)
        self.hardware = hardware
        self.connections = connections

    # ── public ────────────────────────────────
    def run(self) -> SessionReport:
        report = SessionReport()

        self.monitor.start()
        log.info("[Session] Firewall log monitor started")
        try:
            self._phase(report, "trigger", lambda: self._wait_for_trigger(report))
            self._phase(report, "target_connections", lambda: self._list_connections(report.target))
            self._phase(report, "endpoints", self._probe_endpoints)
            self._phase(report, "dns", self._validate_dns)
            self._phase(report, "time_sync", lambda: self.timesync.check(self.cfg.time_max_retries))
        except DnsRollbackError as exc:
            report.aborted = True
            report.phases.append(PhaseResult("dns", issues_detected=True, status="aborted", detail=str(exc)))
            log.critical(f"[Session] Original DNS servers could not be restored: {exc}. "
                         "Check the adapter's DNS settings manually. Aborting session.")
        finally:
            self.monitor.stop()
            report.entries = self.monitor.drain()
            log.info(f"[Session] Firewall log monitor stopped, {len(report.entries)} matching entries")

        if not report.aborted:
            self._phase(report, "remediation", lambda: self._remediate(report))
            self._phase(report, "hardware", self._hardware_report)

        self._summarize(report)
        return report

    # ── phases ────────────────────────────────
    def _phase(self, report: SessionReport, name: str, fn: Callable[[], PhaseResult]) -> None:
        log.info(f"[Session] ── {name} ──")
        try:
            result = fn()
        except DnsRollbackError:
            raise
        except Exception as exc:
            log.error(f"[Session] Phase {name} failed: {exc}", exc_info=True)
            result = PhaseResult(name, issues_detected=False, status="error", detail=str(exc))
        report.phases.append(result)

    def _wait_for_trigger(self, report: SessionReport) -> PhaseResult:
        cfg = self.cfg
        report.target = self.watcher.wait_for_trigger(cfg.target_process, cfg.event_channel, cfg.event_marker)
        report.trigger = self.watcher.last_event
        return PhaseResult("trigger", detail=f"{report.target.name} PID {report.target.pid}")

    def _list_connections(self, target: Optional[TargetProcess]) -> PhaseResult:
        if target is None:
            return PhaseResult("target_connections", status="skipped", detail="no target process")
        rows = self.connections(target)
        if not rows:
            log.info(f"[Session] {target.name} holds no remote connections")
        for row in rows:
            log.info(f"[Session] {target.name}: {row}")
        return PhaseResult("target_connections", detail=f"{len(rows)} remote endpoint(s)")

    def _probe_endpoints(self) -> PhaseResult:
        issues = 0
        for ep in self.cfg.endpoints:
            host = str(ep["host"])
            port = ep.get("port")
            name = ep.get("name") or host
            res = self.prober.probe(host, int(port) if port is not None else None)

            if res.icmp_blocked:
                log.warning(f"[Prober] {name} ({host}): ICMP blocked (host not assumed down)")
            else:
                log.info(f"[Prober] {name} ({host}): {res.latency_ms:.0f} ms")
            if res.tcp_reachable is True:
                log.info(f"[Prober] {name} ({host}): TCP {port} reachable")
            elif res.tcp_reachable is False:
                log.error(f"[Prober] {name} ({host}): TCP {port} blocked, {res.hint}")
            if not res.ok:
                issues += 1

        return PhaseResult("endpoints", issues_detected=bool(issues),
                           status="issues" if issues else "passed",
                           detail=f"{issues}/{len(self.cfg.endpoints)} endpoint(s) with issues")

    def _validate_dns(self) -> PhaseResult:
        res = self.dns.validate(self.cfg.dns_test_domains, self.cfg.dns_max_retries)
        return PhaseResult(
            "dns", issues_detected=res.issues_detected,
            retries_used=max(0, res.attempts - 1),
            status=_DNS_STATUS.get(res.outcome, res.outcome.value),
            detail=str(res.final_config) if res.final_config else "no interface",
        )

    def _remediate(self, report: SessionReport) -> PhaseResult:
        if not self.cfg.remediation_enabled:
            log.info("[Session] Remediation disabled")
            return PhaseResult("remediation", status="skipped", detail="disabled")
        if not self.remediator.remediate(report.entries):
            return PhaseResult("remediation", detail="no blocked traffic")
        result = self.remediator.last_result
        failed = len(result.failed) if result else 0
        return PhaseResult("remediation", issues_detected=True,
                           status="failed" if failed else "repaired",
                           detail=f"{failed} rule(s) failed" if failed else "allow rules in place")

    def _hardware_report(self) -> PhaseResult:
        lines = self.hardware()
        for line in lines:
            log.info(f"[Hardware] {line}")
        return PhaseResult("hardware", detail=f"{len(lines)} item(s)")

    # ── summary ───────────────────────────────
    def _summarize(self, report: SessionReport) -> None:
        log.info("[Session] ── summary ──")
        for p in report.phases:
            line = f"[Session] {p.name:<20} {p.status.upper():<12} {p.detail}".rstrip()
            if p.status in ("error", "failed", "aborted"):
                log.error(line)
            elif p.issues_detected:
                log.warning(line)
            else:
                log.info(line)
        if report.aborted:
            log.critical("[Session] Session aborted")
        elif report.has_issues():
            log.warning("[Session] Diagnostics finished with issues")
        else:
            log.info("[Session] Diagnostics finished, no issues found")
