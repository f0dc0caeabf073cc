"""Persistence for collected artifacts.

host_triage.db holds one append-only table per artifact kind, plus
evtx_event for parsed Windows event logs.
"""

from .schemas import TRIAGE_SCHEMA
from .store import KIND_TABLES, TABLE_COLUMNS, ArtifactStore

__all__ = [
    "TRIAGE_SCHEMA",
    "TABLE_COLUMNS",
    "KIND_TABLES",
    "ArtifactStore",
]
