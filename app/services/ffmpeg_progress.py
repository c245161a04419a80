"""
Parsers for ffmpeg's text output.

Two formats are understood:
- the ``Duration: HH:MM:SS.frac`` line that ``ffmpeg -i <file>`` writes to stderr;
- the ``key=value`` blocks written by ``-progress pipe:1``, each block ending
  with a ``progress=continue`` or ``progress=end`` line.
"""
import re
from typing import Dict, Optional

DEFAULT_DURATION = "00:00:00.00"

# Progress window owned by the encoder process; 0-5 and 90-100 are reserved
PROGRESS_START = 5
PROGRESS_SPAN = 85
PROGRESS_CEILING = 90

_re_duration = re.compile(r"Duration:\s*(\d+:\d+:\d+\.\d+)")
_re_timecode = re.compile(r"(\d+):(\d+):(\d+\.?\d*)")


def parse_duration(text: str) -> str:
    """
    Find the first ``Duration:`` timecode in ffmpeg diagnostic output.

    Returns:
        str: the timecode, or ``00:00:00.00`` when none is present
    """
    match = _re_duration.search(text or "")
    if match:
        return match.group(1)
    return DEFAULT_DURATION


def timecode_to_millis(timecode: str) -> int:
    """Convert ``HH:MM:SS.frac`` to milliseconds. Unparseable input is 0."""
    if not timecode:
        return 0
    match = _re_timecode.search(timecode.strip())
    if not match or timecode.strip().startswith("-"):
        return 0
    hours = int(match.group(1))
    minutes = int(match.group(2))
    seconds = float(match.group(3))
    return (hours * 3600 + minutes * 60) * 1000 + int(round(seconds * 1000))


def progress_percent(current_ms: int, total_ms: int) -> int:
    """Map encoded time onto the 5-90% window."""
    if total_ms <= 0:
        return 0
    current_ms = max(0, current_ms)
    return min(PROGRESS_CEILING, PROGRESS_START + (PROGRESS_SPAN * current_ms) // total_ms)


class ProgressLineParser:
    """Accumulates ``-progress`` key=value lines for a single encoder run."""

    def __init__(self, total_duration: str = DEFAULT_DURATION):
        self.total_duration = total_duration
        self.total_ms = timecode_to_millis(total_duration)
        self.fields: Dict[str, str] = {}
        self.current_time = DEFAULT_DURATION
        self.finished = False

    def feed(self, line: str) -> Optional[int]:
        """
        Consume one output line.

        Returns:
            int | None: the new percentage when the line carried ``out_time``
        """
        line = line.strip()
        if "=" not in line:
            return None
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip()
        self.fields[key] = value

        if key == "progress" and value == "end":
            self.finished = True
        if key != "out_time":
            return None

        self.current_time = value
        return progress_percent(timecode_to_millis(value), self.total_ms)
