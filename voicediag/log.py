from __future__ import annotations
import logging
import sys
from pathlib import Path
from typing import Optional

LOGGER_NAME = "voicediag"
DATE_FMT = "%Y-%m-%d %H:%M:%S"

_MARKERS = {
    logging.WARNING:  "WARNING: ",
    logging.ERROR:    "ERROR: ",
    logging.CRITICAL: "CRITICAL ERROR: ",
}

_RESET = "\033[0m"
_COLOURS = {
    logging.DEBUG:    "\033[2m",
    logging.INFO:     "",
    logging.WARNING:  "\033[33m",
    logging.ERROR:    "\033[31m",
    logging.CRITICAL: "\033[31m\033[1m",
}


class TranscriptFormatter(logging.Formatter):
    """
    `[yyyy-MM-dd HH:mm:ss] <message>`, one line per message.
    Warnings and errors carry a marker so the transcript shows which
    lines were noise and which one aborted the run.
    """
    def __init__(self):
        super().__init__("[%(asctime)s] %(message)s", datefmt=DATE_FMT)

    def formatMessage(self, record: logging.LogRecord) -> str:
        marker = _MARKERS.get(record.levelno, "")
        record.message = marker + record.message
        return super().formatMessage(record)

    def formatException(self, ei) -> str:
        # Keep the file one line per message; tracebacks go to the console only.
        return ""


class ConsoleFormatter(logging.Formatter):
    """Tracebacks follow CRITICAL messages, or ERROR ones in verbose mode."""
    def __init__(self, colour: bool, verbose: bool = False):
        super().__init__("%(message)s")
        self.colour = colour
        self.traceback_level = logging.ERROR if verbose else logging.CRITICAL

    def format(self, record: logging.LogRecord) -> str:
        text = _MARKERS.get(record.levelno, "") + record.getMessage()
        if record.exc_info and record.levelno >= self.traceback_level:
            text += "\n" + self.formatException(record.exc_info)
        if not self.colour:
            return text
        return f"{_COLOURS.get(record.levelno, '')}{text}{_RESET}"


def setup_logging(log_path: Optional[str] = None, verbose: bool = False,
                  stream=None) -> logging.Logger:
    """Attach the transcript file handler and the console handler once."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False

    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()

    stream = stream or sys.stdout
    console = logging.StreamHandler(stream)
    colour = hasattr(stream, "isatty") and stream.isatty()
    console.setFormatter(ConsoleFormatter(colour, verbose))
    logger.addHandler(console)

    if log_path:
        Path(log_path).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        file_handler.setFormatter(TranscriptFormatter())
        logger.addHandler(file_handler)

    return logger
