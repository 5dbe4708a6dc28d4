"""MCP server exposing the traversal engine as tools via stdio transport.

This module is the outer surface between a renderer (or any other MCP
client) and the :class:`~mourning.engine.Engine`.  Renderers submit new
messages, read the cluster on display and the working set, and poll the
event buffer for ``cluster_changed`` / ``working_set_changed`` events.

The ``mcp`` object is imported by :mod:`mourning.__main__` and launched with
``mcp.run()`` over stdio.

Architecture notes
------------------
* A single global :pydata:`_engine` instance is lazily initialised on the
  first tool call via :func:`_ensure_engine`; its cycle and poll timers then
  run on the server's event loop.
* All tools catch exceptions and return structured error dicts so the MCP
  server never crashes on a bad request.
"""

from __future__ import annotations

import logging
import traceback
from typing import Any

from mcp.server.fastmcp import FastMCP

from mourning.engine import Engine

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Server and Engine instances
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "mourning",
    instructions="Traversal engine for a collective grief-message exhibition",
)

_engine = Engine()


async def _ensure_engine() -> None:
    """Lazily initialise the engine on the first tool call."""
    if not _engine._initialized:
        await _engine.initialize()


def _error_response(err: Exception) -> dict[str, Any]:
    """Create a structured error dict for MCP tool responses."""
    return {
        "error": type(err).__name__,
        "detail": str(err),
        "traceback": traceback.format_exception_only(type(err), err)[-1].strip(),
    }


# ===================================================================
# MCP Tools
# ===================================================================


@mcp.tool()
async def submit_message(content: str) -> dict[str, Any]:
    """Submit a new message to the exhibition.

    The message is stored and queued so it reaches the foreground within a
    few cycles.

    Args:
        content: The message text, 1-280 characters after trimming.

    Returns:
        A dict with keys:
        - message: The stored message (id, content, created_at, ...)
        - queue_depth: Messages currently waiting for display
        - estimated_wait_seconds: Rough time until the queue drains
    """
    try:
        await _ensure_engine()
        return await _engine.submit(content)
    except Exception as exc:
        logger.exception("submit_message failed")
        return _error_response(exc)


@mcp.tool()
async def current_cluster() -> dict[str, Any]:
    """Return the cluster currently on display.

    Returns:
        A dict with keys focus, related (each with a similarity score),
        next, duration_ms, total_shown, created_at and placeholder.  While
        the store is empty, placeholder is true and focus is null.
    """
    try:
        await _ensure_engine()
        return await _engine.current_cluster()
    except Exception as exc:
        logger.exception("current_cluster failed")
        return _error_response(exc)


@mcp.tool()
async def working_set() -> dict[str, Any]:
    """Return every message in the working set.

    Returns:
        A dict with keys count, target, priority_ids (members still waiting
        for their first featured appearance) and messages.
    """
    try:
        await _ensure_engine()
        return await _engine.working_set()
    except Exception as exc:
        logger.exception("working_set failed")
        return _error_response(exc)


@mcp.tool()
async def engine_stats() -> dict[str, Any]:
    """Return engine health and traversal statistics.

    Returns:
        A dict with the engine state, cluster totals, skipped ticks, store
        failures, working-set size, pool cursors and queue depth, the
        current cluster's similarity spread, and store totals.
    """
    try:
        await _ensure_engine()
        return await _engine.stats()
    except Exception as exc:
        logger.exception("engine_stats failed")
        return _error_response(exc)


@mcp.tool()
async def recent_events(since: int = 0, limit: int = 100) -> dict[str, Any]:
    """Return cluster and working-set events newer than a sequence number.

    Poll with the latest_seq of the previous response to receive each event
    exactly once.

    Args:
        since: Return events with seq greater than this (default 0: all).
        limit: Maximum number of events to return (default 100).

    Returns:
        A dict with keys events, latest_seq and truncated (true when events
        were lost from the buffer and the caller should resync).
    """
    try:
        await _ensure_engine()
        return await _engine.recent_events(since=since, limit=limit)
    except Exception as exc:
        logger.exception("recent_events failed")
        return _error_response(exc)


@mcp.tool()
async def traversal_control(action: str) -> dict[str, Any]:
    """Pause, resume or reset the traversal.

    Args:
        action: One of:
            - "pause"   -- stop cycling (new messages keep queueing)
            - "resume"  -- resume cycling
            - "reset"   -- forget continuity; the next cluster starts fresh

    Returns:
        A dict with keys action and state.
    """
    try:
        await _ensure_engine()
        return await _engine.control(action)
    except Exception as exc:
        logger.exception("traversal_control failed")
        return _error_response(exc)
