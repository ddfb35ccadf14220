"""
Progress extraction from rclone output.

Pure functions only: no I/O, no state. Two signals are recognized:

- an explicit percentage token, e.g. ``Transferred: 1.2 MiB / 10 MiB, 12%``
- a file counter, e.g. ``Transferred: 1 / 2``, from which
  ``floor(100 * N / M)`` is derived

Per-file lines (``* name: 45% /10Mi ...``) describe a single file and carry
no job-level signal. Anything unrecognized is passed through as a log entry.
"""

import re
from dataclasses import dataclass
from typing import List, Optional

# ANSI escape sequences emitted by --progress when it redraws the screen
_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_PERCENT_RE = re.compile(r"(?<![\w.])(\d{1,3}(?:\.\d+)?)\s?%")
_COUNTER_RE = re.compile(r"Transferred:\s*(\d+)\s*/\s*(\d+)\s*(?:,|$)")
_PER_FILE_RE = re.compile(r"^\s*\*\s")


@dataclass(frozen=True)
class ParsedLine:
    """One output line with its optional progress signal."""

    log_entry: str
    percent: Optional[int] = None


def clean_line(raw: str) -> str:
    """Strip ANSI escapes and trailing whitespace from a raw output line."""
    return _ANSI_RE.sub("", raw).rstrip()


def split_output(chunk: str) -> List[str]:
    """Split raw output on newlines and carriage returns, dropping blanks."""
    parts = re.split(r"\r\n|\r|\n", chunk)
    return [part for part in (clean_line(p) for p in parts) if part.strip()]


def extract_percent(line: str) -> Optional[int]:
    """Return the job-level completion percentage carried by ``line``, if any."""
    if _PER_FILE_RE.match(line):
        return None

    match = _PERCENT_RE.search(line)
    if match:
        try:
            value = float(match.group(1))
        except ValueError:
            return None
        if 0 <= value <= 100:
            return int(value)
        return None

    match = _COUNTER_RE.search(line)
    if match:
        done, total = int(match.group(1)), int(match.group(2))
        if total == 0:
            return None
        return min(100, (100 * done) // total)

    return None


def parse_line(line) -> ParsedLine:
    """Parse a single output line. Never raises.

    Args:
        line: Raw line (str or bytes)

    Returns:
        ParsedLine with the cleaned log entry and an optional percentage
    """
    try:
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        elif not isinstance(line, str):
            line = str(line)
        entry = clean_line(line)
        return ParsedLine(log_entry=entry, percent=extract_percent(entry))
    except Exception:
        return ParsedLine(log_entry=repr(line))
