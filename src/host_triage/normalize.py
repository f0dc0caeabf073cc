"""Timestamp normalization, marker extraction and deduplication helpers.

Every collector funnels its raw text through these helpers so that all
records share one timestamp format and one notion of "duplicate".
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Callable, Hashable, Iterable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

# Tried in order by parse_timestamp() after ISO-8601 and epoch handling
DEFAULT_FORMATS = (
    "%Y-%m-%d %H:%M:%S.%f%z",  # macOS unified log: 2024-05-29 10:36:00.123456+0800
    "%Y-%m-%d %H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S%z",  # dnf.rpm.log: 2024-05-29T10:36:00+0000
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d  %H:%M:%S",  # apt history.log pads with two spaces
    "%m/%d/%Y, %H:%M:%S",  # softwareupdate --history
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y",  # Win32_QuickFixEngineering.InstalledOn
    "%a %b %d %H:%M:%S %Y",  # ctime style
)

_SYSLOG_RE = re.compile(r"^([A-Z][a-z]{2})\s+(\d{1,2})\s+(\d{2}):(\d{2}):(\d{2})")
_WMI_RE = re.compile(r"^(\d{14})(?:\.(\d{1,6}))?([+-]\d{3})?$")
_EPOCH_RE = re.compile(r"^\d{9,11}(?:\.\d+)?$")
_ISO_FRACTION_RE = re.compile(r"(?<=:\d\d)\.(\d+)")
_WINDOW_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}


def now_str() -> str:
    """Current local time in the record timestamp format."""
    return datetime.now().strftime(TIME_FORMAT)


def parse_window(window: str) -> timedelta:
    """Look-back window such as "24h" or "30m" as a timedelta."""
    m = re.fullmatch(r"(\d+)([smhd])", window.strip())
    if not m:
        raise ValueError(f"Invalid window: {window!r}")
    return timedelta(**{_WINDOW_UNITS[m.group(2)]: int(m.group(1))})


def format_time(value: datetime) -> str:
    """Format a datetime as local wall-clock time.

    Aware datetimes are converted to the local zone first.
    """
    if value.tzinfo is not None:
        value = value.astimezone().replace(tzinfo=None)
    return value.strftime(TIME_FORMAT)


def _parse_syslog(value: str, now: datetime) -> datetime | None:
    m = _SYSLOG_RE.match(value)
    if not m:
        return None
    try:
        parsed = datetime.strptime(
            f"{now.year} {m.group(1)} {int(m.group(2))} {m.group(3)}:{m.group(4)}:{m.group(5)}",
            "%Y %b %d %H:%M:%S",
        )
    except ValueError:
        return None
    # Syslog carries no year; a December line read in January belongs to last year
    if parsed > now + timedelta(days=1):
        parsed = parsed.replace(year=now.year - 1)
    return parsed


def _parse_wmi(value: str) -> datetime | None:
    """Parse a CIM datetime such as 20240529103600.000000+480."""
    m = _WMI_RE.match(value)
    if not m:
        return None
    try:
        parsed = datetime.strptime(m.group(1), "%Y%m%d%H%M%S")
    except ValueError:
        return None
    if m.group(3):
        offset = timedelta(minutes=int(m.group(3)))
        parsed = parsed.replace(tzinfo=timezone(offset))
    return parsed


def parse_timestamp(value, formats: Iterable[str] = DEFAULT_FORMATS) -> datetime | None:
    """Parse a raw timestamp from any supported source format.

    Accepts datetimes, epoch seconds (int/float or numeric strings),
    ISO-8601 (with or without a trailing Z), syslog "Mon DD HH:MM:SS",
    WMI CIM datetimes and each of ``formats``.

    Returns:
        A datetime, or None when nothing matched.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value)
        except (OverflowError, OSError, ValueError):
            return None

    text = str(value).strip()
    if not text:
        return None

    if _EPOCH_RE.match(text):
        return parse_timestamp(float(text))

    parsed = _parse_wmi(text) or _parse_syslog(text, datetime.now())
    if parsed is not None:
        return parsed

    iso = text[:-1] + "+00:00" if text.endswith("Z") else text
    # fromisoformat before 3.11 only takes 3 or 6 fractional digits; wevtutil writes 7
    iso = _ISO_FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), iso, count=1)
    try:
        return datetime.fromisoformat(iso)
    except ValueError:
        pass

    for fmt in formats:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def normalize_timestamp(value, formats: Iterable[str] = DEFAULT_FORMATS) -> str:
    """Return ``value`` as YYYY-MM-DD HH:MM:SS, substituting now when unparsable."""
    parsed = parse_timestamp(value, formats)
    if parsed is None:
        logger.debug("Unparsable timestamp %r, using collection time", value)
        return now_str()
    return format_time(parsed)


def extract_after(message: str, marker: str) -> str:
    """Text following the first ``marker`` up to the end of that line, stripped.

    Returns "" when the marker is absent.
    """
    idx = message.find(marker)
    if idx < 0:
        return ""
    rest = message[idx + len(marker):]
    return rest.split("\n", 1)[0].strip()


def extract_last_after(message: str, marker: str) -> str:
    """Like extract_after(), but for the last occurrence of ``marker``.

    Windows logon messages repeat "Account Name:" for the subject and the
    target account; the target is always the later block.
    """
    idx = message.rfind(marker)
    if idx < 0:
        return ""
    rest = message[idx + len(marker):]
    return rest.split("\n", 1)[0].strip()


def extract_first(message: str, markers: Iterable[str]) -> str:
    """First non-empty extract_after() result across ``markers``."""
    for marker in markers:
        found = extract_after(message, marker)
        if found:
            return found
    return ""


def first_token(text: str) -> str:
    """First whitespace-separated token, trailing punctuation removed."""
    parts = text.split()
    return parts[0].rstrip(",;.") if parts else ""


def dedupe(records: Iterable[T], key: Callable[[T], Hashable]) -> list[T]:
    """Keep the first record per key, preserving input order.

    Callers feed records in their scan order (newest first for log scans),
    so the survivor of each duplicate group is the first one scanned.
    Applying dedupe twice yields the same list.
    """
    seen: set = set()
    out: list[T] = []
    for record in records:
        k = key(record)
        if k in seen:
            continue
        seen.add(k)
        out.append(record)
    return out


def sort_by_time(records: list[T], attr: str = "time") -> list[T]:
    """Stable ascending sort on a formatted time attribute.

    Records share TIME_FORMAT, which sorts lexically in time order.
    """
    return sorted(records, key=lambda r: getattr(r, attr))
