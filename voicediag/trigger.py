from __future__ import annotations
import logging
import threading
import time
from typing import Callable, Iterable, List, Optional

import psutil
from PySide6 import QtCore

from .models import TargetProcess, TriggerEvent
from .shell import ps_quote, run_command, run_powershell_json

log = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# Process table / event channel backends
# ──────────────────────────────────────────────
def list_processes() -> List[TargetProcess]:
    rows: List[TargetProcess] = []
    for p in psutil.process_iter(["pid", "name", "exe", "create_time"]):
        try:
            rows.append(TargetProcess(
                name=p.info.get("name") or "",
                pid=int(p.info["pid"]),
                start_time=float(p.info.get("create_time") or 0.0),
                exe=p.info.get("exe") or "",
            ))
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return rows


class WindowsEventLog:
    def set_enabled(self, channel: str, enabled: bool) -> None:
        run_command(["wevtutil", "sl", channel, f"/e:{'true' if enabled else 'false'}"])

    def latest_record_id(self, channel: str) -> int:
        rows = run_powershell_json(
            f"Get-WinEvent -LogName {ps_quote(channel)} -MaxEvents 1 "
            "-ErrorAction SilentlyContinue | Select-Object RecordId"
        )
        return int(rows[0].get("RecordId") or 0) if rows else 0

    def read_since(self, channel: str, record_id: int) -> List[TriggerEvent]:
        xpath = f"*[System[EventRecordID>{int(record_id)}]]"
        rows = run_powershell_json(
            f"Get-WinEvent -LogName {ps_quote(channel)} -FilterXPath {ps_quote(xpath)} "
            "-ErrorAction SilentlyContinue | Sort-Object RecordId | Select-Object "
            "RecordId, Id, ProviderName, LogName, "
            "@{n='TimeCreated';e={$_.TimeCreated.ToString('o')}}, Message"
        )
        return [
            TriggerEvent(
                timestamp=str(r.get("TimeCreated") or ""),
                source_name=str(r.get("LogName") or channel),
                event_id=int(r.get("Id") or 0),
                provider_name=str(r.get("ProviderName") or ""),
                message=str(r.get("Message") or ""),
                record_id=int(r.get("RecordId") or 0),
            )
            for r in rows
        ]


# ──────────────────────────────────────────────
# OneShot – single-slot signal
# ──────────────────────────────────────────────
class OneShot:
    """First publish() wins and wakes the waiter; later values are dropped."""

    def __init__(self):
        self._cond = threading.Condition()
        self._value = None
        self._set = False

    def publish(self, value) -> bool:
        with self._cond:
            if self._set:
                return False
            self._value = value
            self._set = True
            self._cond.notify_all()
            return True

    def is_set(self) -> bool:
        with self._cond:
            return self._set

    def wait(self, slice_ms: int = 250):
        # Timed slices so Ctrl+C still reaches the interpreter.
        with self._cond:
            while not self._set:
                self._cond.wait(slice_ms / 1000)
            return self._value


# ──────────────────────────────────────────────
# EventSubscription – live record feed
# ──────────────────────────────────────────────
class EventSubscription(QtCore.QThread):
    """Emits every record written to the channel after start()."""

    record_arrived = QtCore.Signal(object)   # TriggerEvent

    def __init__(self, event_log, channel: str, poll_interval: float = 0.5):
        super().__init__()
        self.event_log = event_log
        self.channel = channel
        self.poll_interval = poll_interval
        self._bookmark = 0
        self._running = False

    def start(self, *args, **kwargs) -> None:
        self._bookmark = self.event_log.latest_record_id(self.channel)
        self._running = True
        super().start(*args, **kwargs)

    def stop(self) -> None:
        self._running = False
        self.wait()

    def run(self) -> None:
        while self._running:
            try:
                records = self.event_log.read_since(self.channel, self._bookmark)
            except Exception as e:
                log.warning(f"[EventSubscription] Read from {self.channel} failed: {e}")
                records = []
            for rec in records:
                if rec.record_id <= self._bookmark:
                    continue
                self._bookmark = rec.record_id
                self.record_arrived.emit(rec)
            time.sleep(self.poll_interval)


class EventSourceGuard:
    """
    Enables the channel on enter and disables it exactly once on exit.
    A failed disable is an error, never ignored.
    """
    def __init__(self, event_log, channel: str):
        self.event_log = event_log
        self.channel = channel
        self._armed = False

    def __enter__(self) -> "EventSourceGuard":
        self._armed = True
        try:
            self.event_log.set_enabled(self.channel, True)
        except Exception:
            self._disable()
            raise
        log.info(f"[TriggerWatcher] Event channel {self.channel} enabled")
        return self

    def _disable(self) -> None:
        if not self._armed:
            return
        self._armed = False
        self.event_log.set_enabled(self.channel, False)
        log.info(f"[TriggerWatcher] Event channel {self.channel} disabled")

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            self._disable()
        except Exception as e:
            log.error(f"[TriggerWatcher] Could not disable event channel {self.channel}: {e}")
            if exc_type is None:
                raise
        return False


# ──────────────────────────────────────────────
# TriggerWatcher
# ──────────────────────────────────────────────
class TriggerWatcher:
    """
    Gate for the session: blocks until the target process runs and has
    written the marker into the event channel. Both waits are unbounded;
    the operator has to start the application and join a lobby.
    """
    def __init__(self, event_log=None,
                 process_lister: Optional[Callable[[], Iterable[TargetProcess]]] = None,
                 poll_interval: float = 1.0, event_poll_interval: float = 0.5,
                 sleep: Callable[[float], None] = time.sleep):
        self.event_log = event_log or WindowsEventLog()
        self.process_lister = process_lister or list_processes
        self.poll_interval = poll_interval
        self.event_poll_interval = event_poll_interval
        self.sleep = sleep
        self.last_event: Optional[TriggerEvent] = None

    @classmethod
    def from_config(cls, cfg, event_log=None, process_lister=None) -> "TriggerWatcher":
        return cls(
            event_log=event_log,
            process_lister=process_lister,
            poll_interval=cfg.process_poll_interval,
            event_poll_interval=cfg.event_poll_interval,
        )

    def wait_for_process(self, name: str) -> TargetProcess:
        wanted = name.lower()
        polls = 0
        log.info(f"[TriggerWatcher] Waiting for {name} to start...")
        while True:
            found = [p for p in self.process_lister() if p.name.lower() == wanted]
            if found:
                target = min(found, key=lambda p: p.start_time)
                log.info(f"[TriggerWatcher] Found {target.name} (PID {target.pid})")
                return target
            polls += 1
            if polls % 30 == 0:
                log.info(f"[TriggerWatcher] Still waiting for {name} ({polls} polls)")
            self.sleep(self.poll_interval)

    def wait_for_milestone(self, channel: str, marker: str) -> TriggerEvent:
        slot = OneShot()
        needle = marker.lower()

        def on_record(rec: TriggerEvent) -> None:
            if needle in (rec.message or "").lower() and slot.publish(rec):
                log.info(f"[TriggerWatcher] Milestone event {rec.event_id} from {rec.provider_name}")

        log.info(f"[TriggerWatcher] Waiting for '{marker}' in {channel} (join a lobby to continue)")
        with EventSourceGuard(self.event_log, channel):
            sub = EventSubscription(self.event_log, channel, self.event_poll_interval)
            sub.record_arrived.connect(on_record, QtCore.Qt.ConnectionType.DirectConnection)
            try:
                sub.start()
                event = slot.wait()
            finally:
                sub.stop()
                sub.record_arrived.disconnect(on_record)

        self.last_event = event
        return event

    def wait_for_trigger(self, process_name: str, channel: str, marker: str) -> TargetProcess:
        target = self.wait_for_process(process_name)
        self.wait_for_milestone(channel, marker)
        return target
