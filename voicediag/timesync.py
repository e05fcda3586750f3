from __future__ import annotations
import logging
import re
from typing import Callable, Optional

from .errors import ShellError
from .models import PhaseResult
from .shell import run_command

log = logging.getLogger(__name__)

# "12:00:01, +00.0123456s" (w32tm /stripchart /dataonly)
_OFFSET_RE = re.compile(r",\s*([+-]?\d+(?:\.\d+)?)s")


def parse_offset(output: str) -> Optional[float]:
    m = _OFFSET_RE.search(output or "")
    return float(m.group(1)) if m else None


class TimeSync:
    """Clock offset check with bounded resync retries."""

    def __init__(self, server: str = "time.windows.com", threshold_s: float = 2.0,
                 runner: Callable[..., str] = run_command):
        self.server = server
        self.threshold_s = threshold_s
        self.runner = runner

    def offset(self) -> Optional[float]:
        try:
            out = self.runner(
                ["w32tm", "/stripchart", f"/computer:{self.server}", "/samples:1", "/dataonly"],
                timeout=20,
            )
        except ShellError as e:
            log.warning(f"[TimeSync] Could not query {self.server}: {e}")
            return None
        return parse_offset(out)

    def resync(self) -> None:
        try:
            self.runner(["w32tm", "/resync", "/force"], timeout=30)
        except ShellError as e:
            log.error(f"[TimeSync] Resync failed: {e}")

    def check(self, max_retries: int = 2) -> PhaseResult:
        retries = 0
        while True:
            off = self.offset()
            if off is not None and abs(off) <= self.threshold_s:
                log.info(f"[TimeSync] Clock offset {off:+.3f}s against {self.server}")
                status = "repaired" if retries else "passed"
                return PhaseResult("time_sync", issues_detected=False, retries_used=retries,
                                   status=status, detail=f"offset {off:+.3f}s")

            if off is None:
                log.warning("[TimeSync] Clock offset unknown")
            else:
                log.warning(f"[TimeSync] Clock offset {off:+.3f}s exceeds {self.threshold_s}s")

            if retries >= max_retries:
                detail = "offset unknown" if off is None else f"offset {off:+.3f}s"
                log.error(f"[TimeSync] Time still out of sync after {retries} resync(s)")
                return PhaseResult("time_sync", issues_detected=True, retries_used=retries,
                                   status="failed", detail=detail)
            retries += 1
            log.info(f"[TimeSync] Resyncing ({retries}/{max_retries})")
            self.resync()
