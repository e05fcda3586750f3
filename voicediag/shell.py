from __future__ import annotations
import json
import subprocess
import sys
from typing import Any, List, Sequence

from .errors import ShellError

# CREATE_NO_WINDOW constant for Windows
CREATE_NO_WINDOW = 0x08000000


def _is_windows() -> bool:
    return sys.platform.startswith("win")


def run_command(args: Sequence[str], timeout: float = 30) -> str:
    """Run a command, return stdout. Non-zero exit or timeout raises ShellError."""
    try:
        proc = subprocess.run(
            list(args),
            capture_output=True, text=True, timeout=timeout,
            errors="replace",
            creationflags=CREATE_NO_WINDOW if _is_windows() else 0,
        )
    except subprocess.TimeoutExpired as exc:
        raise ShellError(f"{args[0]}: timed out after {timeout}s") from exc
    except (FileNotFoundError, OSError) as exc:
        raise ShellError(f"{args[0]}: {exc}") from exc

    if proc.returncode != 0:
        stderr = (proc.stderr or proc.stdout or "").strip()
        raise ShellError(
            f"{args[0]}: exit {proc.returncode} {stderr[:300]}".rstrip(),
            returncode=proc.returncode, stderr=stderr,
        )
    return proc.stdout


def run_powershell(script: str, timeout: float = 30) -> str:
    return run_command(
        [
            "powershell.exe", "-NonInteractive", "-NoProfile",
            "-ExecutionPolicy", "Bypass",
            "-Command", script,
        ],
        timeout=timeout,
    )


def run_powershell_json(script: str, timeout: float = 30) -> List[Any]:
    """
    Run `script | ConvertTo-Json` and return the result as a list.
    ConvertTo-Json emits a bare object for one result and nothing for none.
    """
    out = run_powershell(f"{script} | ConvertTo-Json -Depth 4 -Compress", timeout=timeout).strip()
    if not out:
        return []
    try:
        data = json.loads(out)
    except ValueError as exc:
        raise ShellError(f"powershell: unparseable JSON output: {out[:200]}") from exc
    if isinstance(data, list):
        return data
    return [data]


def ps_quote(value: str) -> str:
    """Quote a PowerShell single-quoted string literal."""
    return "'" + str(value).replace("'", "''") + "'"


def ps_array(values: Sequence[str]) -> str:
    return "@(" + ",".join(ps_quote(v) for v in values) + ")"
