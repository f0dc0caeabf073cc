"""Response envelope builder.

Every host-triage tool response is wrapped in the same envelope so callers
can check ``success`` before touching ``data``.
"""

from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)


def build_response(
    *,
    tool_name: str,
    success: bool,
    data: Any = None,
    record_count: int | None = None,
    elapsed_seconds: float | None = None,
    error: str | None = None,
    **extra: Any,
) -> dict:
    """Build a response envelope.

    Args:
        tool_name: The MCP tool name (e.g., "collect_artifacts")
        success: Whether the call succeeded
        data: Records or other payload
        record_count: Number of records in ``data``
        elapsed_seconds: Wall time of the call
        error: Error message if failed
        extra: Tool-specific fields (platform, saved, ...)
    """
    response: dict[str, Any] = {
        "success": success,
        "tool": tool_name,
        "data": data,
        # Log lines, history and event text come from the examined host
        "data_provenance": "host_artifacts_may_contain_untrusted_content",
    }
    if record_count is not None:
        response["record_count"] = record_count
    if elapsed_seconds is not None:
        response["elapsed_seconds"] = round(elapsed_seconds, 2)
    if error:
        response["error"] = error
    response.update(extra)
    return response


def error_response(tool_name: str, error: Exception | str) -> dict:
    """Failure envelope carrying the exception type and message."""
    if isinstance(error, Exception):
        logger.warning("%s failed: %s: %s", tool_name, type(error).__name__, error)
        return build_response(
            tool_name=tool_name,
            success=False,
            error=str(error),
            error_type=type(error).__name__,
        )
    return build_response(tool_name=tool_name, success=False, error=error)
