from __future__ import annotations

from conftest import FakeFirewall, make_entry
from voicediag.remediation import Remediator, has_drops

BLOCKS = ["188.42.147.0/24", "188.42.95.0/24", "85.236.0.0/16"]


def make_remediator(fw):
    return Remediator(fw, BLOCKS, tcp_port="443", udp_ports="12000-65535", prefix="VoiceDiag")


def test_allow_only_traffic_creates_nothing():
    fw = FakeFirewall()
    entries = [make_entry("ALLOW") for _ in range(5)]

    assert make_remediator(fw).remediate(entries) is False
    assert fw.add_calls == []


def test_single_drop_attempts_all_twelve_rules_even_if_one_fails():
    fw = FakeFirewall()
    rem = make_remediator(fw)
    fw.fail_rules.add(rem.rules()[1].display_name)
    entries = [make_entry("ALLOW") for _ in range(5)] + [make_entry("DROP")]

    assert rem.remediate(entries) is True
    assert len(fw.add_calls) == 12
    assert len(rem.last_result.failed) == 1
    assert len(rem.last_result.succeeded) == 11


def test_existing_rules_are_skipped():
    fw = FakeFirewall()
    rem = make_remediator(fw)
    rem.remediate([make_entry("DROP")])
    fw.add_calls.clear()

    rem.remediate([make_entry("DROP")])
    assert fw.add_calls == []
    assert len(rem.last_result.skipped) == 12


def test_rule_set_covers_each_block_protocol_and_direction():
    rules = make_remediator(FakeFirewall()).rules()
    assert len(rules) == 12
    kinds = {(r.remote_address, r.protocol, r.port, r.direction) for r in rules}
    for block in BLOCKS:
        for direction in ("Inbound", "Outbound"):
            assert (block, "TCP", "443", direction) in kinds
            assert (block, "UDP", "12000-65535", direction) in kinds
    assert len({r.display_name for r in rules}) == 12


def test_has_drops_is_case_insensitive():
    assert has_drops([make_entry("drop")])
    assert not has_drops([])
