"""Windows Event Log (.evtx) extraction.

Records are read with python-evtx and rendered to nested dicts with
xmltodict. Each field is resolved independently through a fallback chain:
the direct structured path first (``System/Provider/@Name``), then a
tolerant search of the flattened ``System`` map, then a default. A record
missing one field still produces an event.

Usage:
    from host_triage.evtx import parse_file

    for event in parse_file("Security.evtx"):
        print(event.time, event.event_id, event.level)
"""

from __future__ import annotations

import logging
import shutil
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import xmltodict
from Evtx.Evtx import Evtx

from .config import get_config
from .exceptions import FormatError, NotFoundError, PermissionDeniedError
from .models import EvtxEvent
from .normalize import normalize_timestamp

logger = logging.getLogger(__name__)

CORRUPTED_MESSAGE = "Invalid or corrupted event log file"

LEVEL_NAMES = {
    1: "Critical",
    2: "Error",
    3: "Warning",
    4: "Information",
    5: "Verbose",
}

LOGON_TYPES = {
    2: "Local interactive",
    3: "Network",
    4: "Batch",
    5: "Service",
    7: "Workstation unlock",
    8: "Network cleartext",
    9: "New-credentials",
    10: "Remote interactive (RDP)",
    11: "Cached interactive",
}

# Logon success/explicit-credential and failure/logoff events
LOGON_EVENT_IDS = frozenset({4624, 4648, 4625, 4647})

_SUBJECT_FIELDS = frozenset({"SubjectUserSid", "SubjectUserName", "SubjectDomainName"})


# =============================================================================
# Lookup tables
# =============================================================================


def _to_int(value: Any) -> int | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(text, 16) if text.lower().startswith("0x") else int(text)
    except ValueError:
        return None


def event_level(value: Any) -> str:
    """Severity name for a raw System/Level value."""
    return LEVEL_NAMES.get(_to_int(value), "Unknown")


def logon_type_label(raw: Any) -> str:
    """Human label for a raw LogonType value, e.g. 10 -> Remote interactive (RDP)."""
    label = LOGON_TYPES.get(_to_int(raw))
    if label is None:
        return f"Unknown({raw})"
    return label


# =============================================================================
# Input selection and staging
# =============================================================================


def validate_evtx_path(path: str | Path) -> Path:
    """Check that ``path`` exists and carries the .evtx extension.

    Raises:
        NotFoundError: Path does not exist
        FormatError: Extension is not .evtx (case-insensitive)
    """
    p = Path(path)
    if not p.exists():
        raise NotFoundError(f"File does not exist: {p}")
    if p.suffix.lower() != ".evtx":
        raise FormatError(f"Not an .evtx file: {p.name}")
    return p


def select_evtx_path(candidate: str | Path | None) -> Path | None:
    """Resolve a path handed over by a file picker.

    An empty selection (cancelled dialog) returns None rather than raising.
    """
    if candidate is None or not str(candidate).strip():
        return None
    return validate_evtx_path(candidate)


def stage_evtx_file(source: str | Path, staging_dir: str | Path | None = None) -> Path:
    """Copy a selected log into a private staging location and return the copy.

    Raises:
        OSError: Source unreadable or staging directory unwritable
    """
    target_dir = Path(staging_dir) if staging_dir else get_config().evtx_staging_dir
    target_dir.mkdir(parents=True, exist_ok=True)
    dest = target_dir / f"evtx_{time.time_ns()}.evtx"
    shutil.copyfile(source, dest)
    logger.debug("Staged %s -> %s", source, dest)
    return dest


# =============================================================================
# Field resolution
# =============================================================================


def _text(node: Any) -> str:
    """Text content of an xmltodict node."""
    if node is None:
        return ""
    if isinstance(node, dict):
        return str(node.get("#text", "") or "")
    if isinstance(node, list):
        return ", ".join(_text(n) for n in node)
    return str(node)


def lookup_path(event: dict, path: str) -> Any:
    """Walk ``event`` along a slash-separated path such as System/Provider/@Name."""
    node: Any = event
    for part in path.split("/"):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    if isinstance(node, dict) and "#text" not in node:
        return None
    return _text(node)


def _normalize_key(part: str) -> str:
    part = part.lstrip("@")
    if ":" in part:
        part = part.split(":", 1)[1]
    return part.lower()


def flatten_node(node: Any, prefix: str = "") -> dict[str, str]:
    """Flatten nested xmltodict output into {"Provider/@Name": "..."} pairs."""
    flat: dict[str, str] = {}
    if isinstance(node, dict):
        for key, value in node.items():
            if key.startswith("@xmlns"):
                continue
            child = f"{prefix}/{key}" if prefix else key
            if key == "#text":
                flat[prefix or key] = str(value)
            else:
                flat.update(flatten_node(value, child))
    elif isinstance(node, list):
        for idx, item in enumerate(node):
            flat.update(flatten_node(item, f"{prefix}[{idx}]"))
    elif prefix:
        flat[prefix] = "" if node is None else str(node)
    return flat


def _search_system(system_flat: dict[str, str], path: str) -> str | None:
    """Find ``path`` in the flattened System map ignoring case, '@' and namespaces."""
    target = [_normalize_key(p) for p in path.split("/") if p != "System"]
    for key, value in system_flat.items():
        parts = [_normalize_key(p) for p in key.split("/") if p != "#text"]
        if parts[-len(target):] == target and value != "":
            return value
    return None


def resolve_field(event: dict, system_flat: dict[str, str], path: str) -> str | None:
    """Direct path lookup, falling back to the flattened System map."""
    value = lookup_path(event, path)
    if value not in (None, ""):
        return value
    return _search_system(system_flat, path)


def _resolve_int(event: dict, system_flat: dict[str, str], path: str) -> int:
    value = _to_int(resolve_field(event, system_flat, path))
    return 0 if value is None else value


def _event_data(event: dict) -> dict[str, str]:
    """EventData/Data elements as an ordered {Name: value} map."""
    section = event.get("EventData")
    if not isinstance(section, dict):
        return {}
    items = section.get("Data")
    if items is None:
        return {}
    if not isinstance(items, list):
        items = [items]

    data: dict[str, str] = {}
    unnamed: list[str] = []
    for item in items:
        if isinstance(item, dict) and "@Name" in item:
            data[item["@Name"]] = _text(item)
        else:
            unnamed.append(_text(item))
    if unnamed:
        data["Data"] = ", ".join(unnamed)
    return data


def _user_data(event: dict) -> dict[str, str]:
    """UserData payload flattened to leaf element names."""
    section = event.get("UserData")
    if not isinstance(section, dict):
        return {}
    data: dict[str, str] = {}
    for key, value in flatten_node(section).items():
        leaf = key.rsplit("/", 1)[-1]
        if not leaf.startswith("@"):
            data[leaf] = value
    return data


def describe_event(event_id: int, provider: str, event_data: dict[str, str], message: str = "") -> str:
    """Build the human description for an event.

    ``Event ID: <id>, Provider: <provider>``, a logon-type line for logon
    events, every event-data pair except the Subject* fields, then the message.
    """
    lines = [f"Event ID: {event_id}, Provider: {provider}"]
    if event_id in LOGON_EVENT_IDS and "LogonType" in event_data:
        lines.append(f"Logon type: {logon_type_label(event_data['LogonType'])}")
    for key, value in event_data.items():
        if key in _SUBJECT_FIELDS or key == "Message":
            continue
        lines.append(f"{key}: {value}")
    if message:
        lines.append(f"Message: {message}")
    return "\n".join(lines)


def event_from_dict(event: dict) -> EvtxEvent:
    """Convert one xmltodict ``Event`` mapping into an EvtxEvent."""
    system = event.get("System") if isinstance(event.get("System"), dict) else {}
    system_flat = flatten_node(system)
    event_data = _event_data(event)

    event_id = _resolve_int(event, system_flat, "System/EventID")
    provider = resolve_field(event, system_flat, "System/Provider/@Name") or "Unknown"
    message = event_data.get("Message") or lookup_path(event, "RenderingInfo/Message") or ""

    return EvtxEvent(
        time=normalize_timestamp(resolve_field(event, system_flat, "System/TimeCreated/@SystemTime")),
        event_id=event_id,
        provider=provider,
        level=event_level(resolve_field(event, system_flat, "System/Level")),
        channel=resolve_field(event, system_flat, "System/Channel") or "",
        computer=resolve_field(event, system_flat, "System/Computer") or "Unknown",
        user_id=resolve_field(event, system_flat, "System/Security/@UserID") or "Unknown",
        description=describe_event(event_id, provider, event_data, message),
        event_record_id=_resolve_int(event, system_flat, "System/EventRecordID"),
        version=_resolve_int(event, system_flat, "System/Version"),
        qualifiers=_resolve_int(event, system_flat, "System/EventID/@Qualifiers"),
        task=_resolve_int(event, system_flat, "System/Task"),
        opcode=_resolve_int(event, system_flat, "System/Opcode"),
        keywords=resolve_field(event, system_flat, "System/Keywords") or "",
        process_id=_resolve_int(event, system_flat, "System/Execution/@ProcessID"),
        thread_id=_resolve_int(event, system_flat, "System/Execution/@ThreadID"),
        message=message,
        system_info=system_flat,
        event_data=event_data,
        user_data=_user_data(event),
    )


# =============================================================================
# File reading
# =============================================================================


@contextmanager
def _open_log(path: Path):
    """Open an .evtx file, mapping open failures onto FormatError."""
    reader = Evtx(str(path))
    try:
        log = reader.__enter__()
    except PermissionError as e:
        raise PermissionDeniedError(f"Permission denied: {path}") from e
    except ValueError as e:
        # mmap refuses empty files
        raise FormatError(CORRUPTED_MESSAGE) from e
    except OSError as e:
        raise FormatError(f"Failed to open event log file: {e}") from e
    except Exception as e:
        # python-evtx raises its own parse exceptions on truncated headers
        raise FormatError(CORRUPTED_MESSAGE) from e

    try:
        try:
            valid = log.get_file_header().check_magic()
        except Exception as e:
            logger.debug("Header check failed for %s: %s", path, e)
            valid = False
        if not valid:
            raise FormatError(CORRUPTED_MESSAGE)
        yield log
    finally:
        reader.__exit__(None, None, None)


def iter_events(path: str | Path, limit: int | None = None) -> Iterator[EvtxEvent]:
    """Stream events from an .evtx file.

    Records whose XML cannot be rendered are skipped with a warning.

    Raises:
        NotFoundError, FormatError, PermissionDeniedError
    """
    p = validate_evtx_path(path)
    seen = 0
    with _open_log(p) as log:
        records = iter(log.records())
        while True:
            try:
                record = next(records)
            except StopIteration:
                break
            except Exception as e:
                logger.warning("Stopped reading %s after %d events: %s", p, seen, e)
                break

            try:
                doc = xmltodict.parse(record.xml())
                event = event_from_dict(doc["Event"])
            except Exception as e:
                logger.warning("Skipping unreadable record in %s: %s: %s", p, type(e).__name__, e)
                continue

            yield event
            seen += 1
            if limit and seen >= limit:
                break


def parse_file(path: str | Path, limit: int | None = None) -> list[EvtxEvent]:
    """Parse an .evtx file into a list of events.

    Args:
        path: Path to the .evtx file.
        limit: Stop after this many events (None or 0 for all).

    Raises:
        NotFoundError: File does not exist
        FormatError: Wrong extension, corrupted header, or open failure
        PermissionDeniedError: The OS denied read access
    """
    events = list(iter_events(path, limit=limit))
    logger.info("Parsed %d events from %s", len(events), path)
    return events
