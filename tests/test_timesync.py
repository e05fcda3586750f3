from __future__ import annotations

from voicediag.errors import ShellError
from voicediag.timesync import TimeSync, parse_offset


class ScriptedW32tm:
    def __init__(self, offsets):
        self.offsets = list(offsets)
        self.resyncs = 0

    def __call__(self, args, timeout=30):
        if "/resync" in args:
            self.resyncs += 1
            return "The command completed successfully."
        off = self.offsets.pop(0)
        if off is None:
            raise ShellError("w32tm: exit 1")
        return f"Tracking time.windows.com [20.101.57.9:123].\n20:15:03, {off:+.7f}s\n"


def test_parse_offset():
    assert parse_offset("20:15:03, +00.0123456s") == 0.0123456
    assert parse_offset("20:15:03, -03.5000000s") == -3.5
    assert parse_offset("error: 0x800705B4") is None


def test_in_sync_clock_passes_without_resync():
    w32tm = ScriptedW32tm([0.05])
    result = TimeSync(runner=w32tm).check(max_retries=2)
    assert result.status == "passed"
    assert result.issues_detected is False
    assert w32tm.resyncs == 0


def test_drift_is_repaired_by_resync():
    w32tm = ScriptedW32tm([5.0, 0.1])
    result = TimeSync(threshold_s=2.0, runner=w32tm).check(max_retries=2)
    assert result.status == "repaired"
    assert result.retries_used == 1
    assert w32tm.resyncs == 1


def test_retries_are_bounded():
    w32tm = ScriptedW32tm([9.0, None, 9.0])
    result = TimeSync(runner=w32tm).check(max_retries=2)
    assert result.status == "failed"
    assert result.issues_detected is True
    assert result.retries_used == 2
    assert w32tm.resyncs == 2
