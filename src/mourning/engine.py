"""Process-level facade over the traversal engine.

The :class:`Engine` wires storage, the retrying gateway and the
:class:`~mourning.coordinator.TraversalCoordinator` together and exposes a
small dict-returning API that the MCP server and the CLI call.  There is
**one Engine per process**.

Cluster and working-set events are copied into a bounded ring buffer with
monotonically increasing sequence numbers, so a renderer that cannot hold a
callback can poll :meth:`Engine.recent_events` instead.

Usage::

    from mourning.engine import Engine

    engine = Engine()
    await engine.initialize()
    await engine.submit("Missing my father every day")
    print(await engine.current_cluster())
    await engine.shutdown()
"""

from __future__ import annotations

import itertools
import logging
from collections import deque
from pathlib import Path
from typing import Any

from mourning.config import EngineConfig, get_config
from mourning.coordinator import TraversalCoordinator
from mourning.gateway import StoreGateway
from mourning.messages import MessageCluster, WorkingSetChange, utc_now
from mourning.storage import Storage

logger = logging.getLogger(__name__)

EVENT_BUFFER_SIZE = 256

CONTROL_ACTIONS = ("pause", "resume", "reset")


class Engine:
    """Own the storage handle and coordinator for one process.

    Parameters
    ----------
    db_path:
        Override the configured database path (tests, CLI ``--db``).
    config:
        Engine configuration; defaults to :func:`~mourning.config.get_config`.
    """

    def __init__(
        self,
        db_path: Path | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self._config = config or get_config()
        self._db_path = Path(db_path) if db_path else self._config.db_path

        self._storage: Storage | None = None
        self._gateway: StoreGateway | None = None
        self._coordinator: TraversalCoordinator | None = None

        self._events: deque[dict[str, Any]] = deque(maxlen=EVENT_BUFFER_SIZE)
        self._seq = itertools.count(1)
        self._last_seq = 0
        self._initialized = False

    @property
    def coordinator(self) -> TraversalCoordinator:
        self._ensure_initialized()
        assert self._coordinator is not None
        return self._coordinator

    @property
    def gateway(self) -> StoreGateway:
        self._ensure_initialized()
        assert self._gateway is not None
        return self._gateway

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, *, schedule: bool = True) -> None:
        """Open the store and start the traversal.  Idempotent."""
        if self._initialized:
            return

        self._storage = Storage(self._db_path)
        await self._storage.initialize()
        self._gateway = StoreGateway(self._storage, self._config.retry)

        self._coordinator = TraversalCoordinator(self._gateway, self._config)
        self._coordinator.on_cluster_changed(self._record_cluster)
        self._coordinator.on_working_set_changed(self._record_working_set)

        await self._coordinator.initialize(schedule=schedule)
        self._initialized = True
        logger.info("Engine initialized. DB: %s", self._db_path)

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError("Engine not initialized. Call await engine.initialize() first.")

    async def shutdown(self) -> None:
        """Stop the traversal and close storage.

        Safe to call even if the engine was never initialised.
        """
        if self._coordinator is not None:
            await self._coordinator.shutdown()
        if self._storage is not None:
            await self._storage.close()
        self._initialized = False
        logger.info("Engine shut down")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _record(self, kind: str, payload: dict[str, Any]) -> None:
        seq = next(self._seq)
        self._last_seq = seq
        self._events.append(
            {"seq": seq, "type": kind, "at": utc_now().isoformat(), "payload": payload}
        )

    def _record_cluster(self, cluster: MessageCluster) -> None:
        self._record("cluster_changed", cluster.to_dict())

    def _record_working_set(self, change: WorkingSetChange) -> None:
        self._record("working_set_changed", change.to_dict())

    async def recent_events(self, since: int = 0, limit: int = 100) -> dict[str, Any]:
        """Events with ``seq > since``, oldest first.

        ``truncated`` is set when events after *since* have already fallen
        out of the buffer, in which case the caller should resync from
        :meth:`current_cluster` and :meth:`working_set`.
        """
        self._ensure_initialized()
        events = [e for e in self._events if e["seq"] > since]
        oldest = self._events[0]["seq"] if self._events else self._last_seq + 1
        return {
            "events": events[: max(0, limit)],
            "latest_seq": self._last_seq,
            "truncated": since + 1 < oldest and since < self._last_seq,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit(self, content: str) -> dict[str, Any]:
        """Store a submission and queue it for display."""
        coordinator = self.coordinator
        message = await coordinator.submit_content(content)
        return {
            "message": message.to_dict(),
            "queue_depth": coordinator.pool.queue_depth,
            "estimated_wait_seconds": coordinator.pool.estimate_queue_wait_seconds(),
        }

    async def current_cluster(self) -> dict[str, Any]:
        return self.coordinator.get_current_cluster().to_dict()

    async def working_set(self) -> dict[str, Any]:
        coordinator = self.coordinator
        messages = coordinator.get_working_set()
        return {
            "count": len(messages),
            "target": self._config.working_set_size,
            "priority_ids": sorted(coordinator.priority_members),
            "messages": [m.to_dict() for m in messages],
        }

    async def stats(self) -> dict[str, Any]:
        """Coordinator statistics plus store totals."""
        stats = self.coordinator.get_stats()
        stats["store"] = {
            "db_path": str(self._db_path),
            "visible_messages": await self.gateway.count(),
        }
        return stats

    async def control(self, action: str) -> dict[str, Any]:
        """Apply a traversal control action: ``pause``, ``resume`` or ``reset``."""
        coordinator = self.coordinator
        if action == "pause":
            coordinator.pause()
        elif action == "resume":
            coordinator.resume()
        elif action == "reset":
            await coordinator.reset_traversal()
        else:
            raise ValueError(
                f"Unknown action {action!r}; expected one of {', '.join(CONTROL_ACTIONS)}"
            )
        return {"action": action, "state": coordinator.state.value}
