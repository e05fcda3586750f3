from __future__ import annotations

import pytest

from conftest import FakeEventLog, FakeFirewall, FakeProber, FakeResolver, make_entry, make_event, make_process
from voicediag.app import EXIT_ABORTED, EXIT_ISSUES, EXIT_OK, build_parser, exit_code
from voicediag.dns import DnsValidator
from voicediag.models import DnsServerSet, PhaseResult
from voicediag.remediation import Remediator
from voicediag.session import DiagnosticSession
from voicediag.trigger import TriggerWatcher


class FakeMonitor:
    def __init__(self, entries=()):
        self.entries = list(entries)
        self.events = []

    def start(self):
        self.events.append("start")

    def stop(self):
        self.events.append("stop")

    def drain(self):
        self.events.append("drain")
        return list(self.entries)


class FakeTimeSync:
    def __init__(self, result=None, error=None):
        self.result = result or PhaseResult("time_sync", detail="offset +0.010s")
        self.error = error

    def check(self, max_retries=2):
        if self.error:
            raise self.error
        return self.result


def build(cfg, resolver=None, entries=(), timesync=None, firewall=None, prober=None):
    prober = prober or FakeProber()
    firewall = firewall or FakeFirewall()
    event_log = FakeEventLog(batches=[[make_event(101, "vivox channel joined")]])
    watcher = TriggerWatcher(event_log=event_log, process_lister=lambda: [make_process()],
                             poll_interval=0.01, event_poll_interval=0.01)
    dns = DnsValidator(resolver or FakeResolver(), prober,
                       [DnsServerSet("Cloudflare", ("1.1.1.1", "1.0.0.1")),
                        DnsServerSet("Google", ("8.8.8.8", "8.8.4.4"))])
    monitor = FakeMonitor(entries)
    session = DiagnosticSession(
        cfg, watcher=watcher, monitor=monitor, prober=prober, dns=dns,
        timesync=timesync or FakeTimeSync(),
        remediator=Remediator.from_config(cfg, firewall),
        hardware=lambda: ["CPU: test", "RAM: 16.0 GB total"],
        connections=lambda target: ["TCP 192.168.1.10:50000 -> 188.42.147.20:443 ESTABLISHED"],
    )
    return session, monitor, firewall, event_log


def names(report):
    return [p.name for p in report.phases]


def test_clean_session_runs_every_phase_in_order(cfg):
    session, monitor, firewall, event_log = build(cfg, entries=[make_entry("ALLOW")] * 5)
    report = session.run()

    assert names(report) == ["trigger", "target_connections", "endpoints", "dns",
                             "time_sync", "remediation", "hardware"]
    assert report.target.pid == 4242
    assert report.trigger.record_id == 101
    assert monitor.events == ["start", "stop", "drain"]
    assert event_log.enable_calls == [True, False]
    assert firewall.add_calls == []
    assert not report.aborted
    assert exit_code(report) == EXIT_OK


def test_drop_entries_trigger_remediation(cfg):
    entries = [make_entry("ALLOW")] * 5 + [make_entry("DROP")]
    session, _, firewall, _ = build(cfg, entries=entries)
    report = session.run()

    assert len(firewall.add_calls) == 12
    assert report.phase("remediation").status == "repaired"
    assert exit_code(report) == EXIT_ISSUES


def test_remediation_can_be_disabled(cfg):
    cfg.remediation_enabled = False
    session, _, firewall, _ = build(cfg, entries=[make_entry("DROP")])
    report = session.run()

    assert firewall.add_calls == []
    assert report.phase("remediation").status == "skipped"


def test_phase_error_is_isolated(cfg):
    session, _, _, _ = build(cfg, timesync=FakeTimeSync(error=RuntimeError("w32time service stopped")))
    report = session.run()

    assert report.phase("time_sync").status == "error"
    assert report.phase("remediation") is not None
    assert report.phase("hardware") is not None
    assert not report.aborted


def test_repaired_dns_is_reported(cfg):
    resolver = FakeResolver(broken=[("10.0.0.1", "10.0.0.2")])
    session, _, _, _ = build(cfg, resolver=resolver)
    report = session.run()

    dns = report.phase("dns")
    assert dns.status == "repaired"
    assert dns.issues_detected is False
    assert "Cloudflare" in dns.detail


def test_rollback_failure_aborts_session_but_stops_monitor(cfg):
    resolver = FakeResolver(broken=[("10.0.0.1", "10.0.0.2"), ("1.1.1.1", "1.0.0.1")])
    resolver.fail_restore = True
    session, monitor, firewall, _ = build(cfg, resolver=resolver, entries=[make_entry("DROP")])
    report = session.run()

    assert report.aborted
    assert report.phase("dns").status == "aborted"
    assert report.phase("time_sync") is None
    assert report.phase("remediation") is None
    assert monitor.events == ["start", "stop", "drain"]
    assert firewall.add_calls == []
    assert exit_code(report) == EXIT_ABORTED


def test_blocked_endpoint_marks_issues(cfg):
    blocked = str(cfg.endpoints[0]["host"])
    session, _, _, _ = build(cfg, prober=FakeProber(blocked=[blocked]))
    report = session.run()

    assert report.phase("endpoints").status == "issues"
    assert report.phase("endpoints").issues_detected


def test_cli_flags():
    args = build_parser().parse_args(["--yes", "--no-remediation", "--config", "c.json"])
    assert args.yes and args.no_remediation
    assert args.config == "c.json"
    assert not args.skip_elevation
