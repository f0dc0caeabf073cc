"""Artifact collection entry points.

collect() is the one call a caller needs: it asks the strategy in the
CollectionContext for one artifact kind and always hands back a list. A
failing or unsupported collector yields an empty list and a log line, never
an exception.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from .config import Config, get_config
from .exceptions import HostTriageError, PlatformUnsupportedError
from .models import ArtifactKind
from .platforms import PlatformStrategy, get_strategy

if TYPE_CHECKING:
    from .db.store import ArtifactStore

logger = logging.getLogger(__name__)

# ArtifactKind -> PlatformStrategy method
KIND_METHODS = {
    ArtifactKind.LOGIN_SUCCESS: "login_success",
    ArtifactKind.LOGIN_FAILED: "login_failed",
    ArtifactKind.PROCESS: "processes",
    ArtifactKind.NETWORK_INFO: "network_info",
    ArtifactKind.NETWORK_CONNECTION: "network_connections",
    ArtifactKind.STARTUP: "startup_items",
    ArtifactKind.SHELL_HISTORY: "shell_history",
    ArtifactKind.PATCH: "patches",
    ArtifactKind.CRON: "cron_entries",
    ArtifactKind.RDP: "rdp_sessions",
    ArtifactKind.SYSTEM_INFO: "system_info",
    ArtifactKind.USERS: "users",
    ArtifactKind.FILE_MONITOR: "file_monitor",
}


@dataclass
class CollectionContext:
    """Everything one collection run needs, passed explicitly."""

    strategy: PlatformStrategy = field(default_factory=get_strategy)
    store: Optional["ArtifactStore"] = None
    cancel: threading.Event = field(default_factory=threading.Event)
    config: Config = field(default_factory=get_config)


def parse_kind(kind: str | ArtifactKind) -> ArtifactKind:
    """ArtifactKind from its value, e.g. "login_failed".

    Raises:
        ValueError: Unknown kind
    """
    if isinstance(kind, ArtifactKind):
        return kind
    try:
        return ArtifactKind(kind)
    except ValueError:
        valid = ", ".join(k.value for k in ArtifactKind)
        raise ValueError(f"Unknown artifact kind: {kind!r} (expected one of: {valid})") from None


def collect(kind: str | ArtifactKind, ctx: CollectionContext | None = None) -> list:
    """Collect one artifact kind from the host.

    Returns:
        List of records, possibly empty. Never raises for collection
        failures; an unknown ``kind`` still raises ValueError.
    """
    kind = parse_kind(kind)
    ctx = ctx or CollectionContext()
    method = getattr(ctx.strategy, KIND_METHODS[kind])

    start = time.monotonic()
    try:
        records = list(method() or [])
    except PlatformUnsupportedError as e:
        logger.info("%s", e)
        return []
    except (HostTriageError, OSError) as e:
        logger.warning(
            "No data available for this source: %s (%s: %s)",
            kind.value, type(e).__name__, e,
        )
        return []
    except Exception:
        logger.warning("Collector for %s failed unexpectedly", kind.value, exc_info=True)
        return []

    if ctx.cancel.is_set():
        logger.info("Collection of %s cancelled; discarding %d records", kind.value, len(records))
        return []

    logger.info(
        "Collected %d %s records on %s in %.2fs",
        len(records), kind.value, ctx.strategy.name, time.monotonic() - start,
    )
    return records


def collect_and_save(kind: str | ArtifactKind, ctx: CollectionContext) -> list:
    """Collect one artifact kind and persist it through ``ctx.store``.

    Raises:
        DatabaseError: The batch could not be saved (nothing was written)
        ValueError: The context has no store
    """
    kind = parse_kind(kind)
    if ctx.store is None:
        raise ValueError("CollectionContext has no store")
    records = collect(kind, ctx)
    if records:
        ctx.store.save(kind, records)
    return records
