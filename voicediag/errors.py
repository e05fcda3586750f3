from __future__ import annotations


class VoiceDiagError(Exception):
    """Base class for errors raised by voicediag."""


class ShellError(VoiceDiagError):
    """An external command failed, timed out or could not be started."""

    def __init__(self, message: str, returncode: int = -1, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class FirewallError(VoiceDiagError):
    pass


class DnsRollbackError(VoiceDiagError):
    """
    The original resolver set could not be restored.
    Leaves host DNS in an unknown state, so the whole session stops.
    """
