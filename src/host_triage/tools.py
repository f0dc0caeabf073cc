"""Tool implementations behind the MCP server.

Each ``*_data`` function returns a response envelope and never raises for
expected failures (bad input, unreadable log, database error); the server
module only wraps them as MCP tools.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path

from .collectors import KIND_METHODS, CollectionContext, collect, parse_kind
from .db import KIND_TABLES, TABLE_COLUMNS, ArtifactStore
from .evtx import parse_file, select_evtx_path, stage_evtx_file
from .exceptions import HostTriageError
from .models import ArtifactKind, records_to_dicts
from .platforms import PlatformStrategy, get_strategy
from .response import build_response, error_response

logger = logging.getLogger(__name__)

MAX_ROWS = 10_000


def list_artifact_kinds_data(strategy: PlatformStrategy | None = None) -> dict:
    strategy = strategy or get_strategy()
    kinds = [
        {"kind": kind.value, "table": KIND_TABLES[kind], "method": KIND_METHODS[kind]}
        for kind in ArtifactKind
    ]
    return build_response(
        tool_name="list_artifact_kinds",
        success=True,
        data=kinds,
        record_count=len(kinds),
        platform=strategy.name,
        tables=sorted(TABLE_COLUMNS),
    )


def collect_artifacts_data(
    kind: str,
    save: bool = False,
    *,
    strategy: PlatformStrategy | None = None,
    store: ArtifactStore | None = None,
) -> dict:
    """Collect one artifact kind; optionally persist it."""
    start = time.monotonic()
    try:
        artifact_kind = parse_kind(kind)
    except ValueError as e:
        return error_response("collect_artifacts", e)

    ctx = CollectionContext(strategy=strategy or get_strategy(), store=store)
    records = collect(artifact_kind, ctx)

    saved = 0
    if save and records:
        if store is None:
            return error_response("collect_artifacts", "No artifact store configured")
        try:
            saved = store.save(artifact_kind, records)
        except HostTriageError as e:
            return error_response("collect_artifacts", e)

    return build_response(
        tool_name="collect_artifacts",
        success=True,
        data=records_to_dicts(records),
        record_count=len(records),
        elapsed_seconds=time.monotonic() - start,
        kind=artifact_kind.value,
        platform=ctx.strategy.name,
        saved=saved,
    )


def parse_evtx_data(
    path: str,
    stage: bool = True,
    limit: int = 1000,
    save: bool = False,
    *,
    store: ArtifactStore | None = None,
    staging_dir: str | Path | None = None,
) -> dict:
    """Parse an .evtx file, optionally from a staged private copy."""
    start = time.monotonic()
    try:
        source = select_evtx_path(path)
        if source is None:
            return error_response("parse_evtx", "No file selected")
        target = stage_evtx_file(source, staging_dir) if stage else source
        try:
            events = parse_file(target, limit=limit or None)
        finally:
            if target is not source:
                target.unlink(missing_ok=True)
        saved = 0
        if save and events:
            if store is None:
                return error_response("parse_evtx", "No artifact store configured")
            saved = store.save_evtx_events(events)
    except (HostTriageError, OSError) as e:
        return error_response("parse_evtx", e)

    logger.info("Parsed %d events from %s", len(events), source)
    return build_response(
        tool_name="parse_evtx",
        success=True,
        data=records_to_dicts(events),
        record_count=len(events),
        elapsed_seconds=time.monotonic() - start,
        source=str(source),
        saved=saved,
    )


def get_stored_rows_data(table: str, limit: int = 100, *, store: ArtifactStore) -> dict:
    """Read back persisted rows of one table."""
    limit = max(1, min(int(limit or 100), MAX_ROWS))
    try:
        rows = store.fetch_rows(table, limit=limit)
        total = store.count_rows(table)
    except (ValueError, HostTriageError) as e:
        return error_response("get_stored_rows", e)
    return build_response(
        tool_name="get_stored_rows",
        success=True,
        data=rows,
        record_count=len(rows),
        table=table,
        total_rows=total,
    )
