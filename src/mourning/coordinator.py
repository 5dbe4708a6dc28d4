"""Traversal coordinator: the engine's single owner of mutable state.

The :class:`TraversalCoordinator` ties the subsystems together:

* it owns the fixed-size **working set** and the set of members still
  awaiting their first featured appearance;
* every ``cluster_duration_ms`` it runs a **cycle** -- evict the outgoing
  related messages, replenish from the :class:`~mourning.pool.PoolManager`,
  select the next cluster with the :class:`~mourning.selector.ClusterSelector`
  and emit events;
* every ``polling_interval_ms`` it **polls** the store for new messages so
  they queue up even between cycles.

Cycle and poll bodies share one :class:`asyncio.Lock`, and each has its own
in-flight guard, so they never interleave their mutations.  Store failures
and selection bugs are logged and absorbed here; the timers always keep
running, which makes an unattended multi-hour run self-healing.

Typical lifecycle::

    coordinator = TraversalCoordinator(gateway)
    coordinator.on_cluster_changed(render_cluster)
    coordinator.on_working_set_changed(sync_particles)
    await coordinator.initialize()      # fills the set, starts timers
    ...
    await coordinator.shutdown()
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping

from mourning.config import EngineConfig, get_config
from mourning.gateway import StoreGateway, StoreUnavailable
from mourning.messages import Message, MessageCluster, WorkingSetChange
from mourning.pool import PoolManager
from mourning.selector import ClusterSelector, InvariantViolation

logger = logging.getLogger(__name__)

ClusterListener = Callable[[MessageCluster], None]
WorkingSetListener = Callable[[WorkingSetChange], None]


class EngineState(str, Enum):
    """Lifecycle states.  ``STOPPED`` is terminal."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class TraversalCoordinator:
    """Own the working set, run the cycle timer and emit public events.

    Parameters
    ----------
    gateway:
        Store access, shared with the pool manager.
    config:
        Engine configuration; defaults to :func:`~mourning.config.get_config`.
    pool, selector:
        Injected collaborators, mainly for tests.
    """

    def __init__(
        self,
        gateway: StoreGateway,
        config: EngineConfig | None = None,
        *,
        pool: PoolManager | None = None,
        selector: ClusterSelector | None = None,
    ) -> None:
        self._config = config or get_config()
        self._gateway = gateway
        self._pool = pool or PoolManager(gateway, self._config)
        self._selector = selector or ClusterSelector(self._config)

        self._working_set: dict[int, Message] = {}
        self._priority_members: set[int] = set()
        self._current: MessageCluster | None = None

        self._state = EngineState.UNINITIALIZED
        self._lock = asyncio.Lock()
        self._cycle_in_flight = False
        self._poll_in_flight = False
        self._tasks: list[asyncio.Task[None]] = []

        self._cluster_listeners: list[ClusterListener] = []
        self._working_set_listeners: list[WorkingSetListener] = []

        self._total_shown = 0
        self._cycles_run = 0
        self._skipped_ticks = 0
        self._invariant_recoveries = 0
        self._store_failures = 0
        self._last_error: str | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def pool(self) -> PoolManager:
        return self._pool

    @property
    def priority_members(self) -> frozenset[int]:
        return frozenset(self._priority_members)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on_cluster_changed(self, callback: ClusterListener) -> Callable[[], None]:
        """Register *callback* for every newly emitted cluster.

        Returns a function that unregisters it.
        """
        self._cluster_listeners.append(callback)
        return lambda: self._discard(self._cluster_listeners, callback)

    def on_working_set_changed(self, callback: WorkingSetListener) -> Callable[[], None]:
        """Register *callback* for working-set membership changes.

        Returns a function that unregisters it.
        """
        self._working_set_listeners.append(callback)
        return lambda: self._discard(self._working_set_listeners, callback)

    @staticmethod
    def _discard(listeners: list[Any], callback: Any) -> None:
        if callback in listeners:
            listeners.remove(callback)

    def _emit_cluster(self, cluster: MessageCluster) -> None:
        for callback in list(self._cluster_listeners):
            try:
                callback(cluster)
            except Exception:
                logger.exception("Cluster listener %r failed", callback)

    def _emit_working_set(self, change: WorkingSetChange) -> None:
        logger.debug(
            "Working set change (%s): -%d +%d",
            change.reason,
            len(change.removed),
            len(change.added),
        )
        for callback in list(self._working_set_listeners):
            try:
                callback(change)
            except Exception:
                logger.exception("Working set listener %r failed", callback)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, *, schedule: bool = True) -> None:
        """Build the initial working set, emit the first cluster, start timers.

        A store outage here is not fatal: the engine starts with an empty
        working set and retries on the normal cycle schedule.

        Parameters
        ----------
        schedule:
            Start the cycle and poll timers.  Pass ``False`` to drive
            :meth:`cycle` and :meth:`poll` by hand.
        """
        if self._state is not EngineState.UNINITIALIZED:
            logger.warning("initialize() called in state %s; ignored", self._state.value)
            return

        self._state = EngineState.INITIALIZING
        logger.info(
            "Initialising traversal (working_set=%d, cluster=%d, cycle=%dms, poll=%dms)",
            self._config.working_set_size,
            self._config.cluster_size,
            self._config.cluster_duration_ms,
            self._config.polling_interval_ms,
        )

        async with self._lock:
            added: list[Message] = []
            if await self._ensure_pool():
                added = await self._replenish()
            if added:
                self._emit_working_set(WorkingSetChange(added=tuple(added), reason="initialization"))
            try:
                self._advance_cluster()
            except InvariantViolation as exc:
                self._last_error = f"InvariantViolation: {exc}"
                logger.exception("Initial selection failed; showing placeholder")
                self._current = MessageCluster.placeholder(
                    self._config.cluster_duration_ms, self._total_shown
                )
                self._emit_cluster(self._current)

        if self._state is EngineState.STOPPED:
            return
        self._state = EngineState.RUNNING

        if not self._working_set:
            logger.warning("Store is empty; running with placeholder cluster")
        else:
            logger.info(
                "Working set loaded: %d message(s) (%d priority)",
                len(self._working_set),
                len(self._priority_members),
            )

        if schedule:
            self._start_timers()

    def _start_timers(self) -> None:
        cycle_s = self._config.cluster_duration_ms / 1000.0
        poll_s = self._config.polling_interval_ms / 1000.0
        self._tasks = [
            asyncio.create_task(
                self._run_periodic(cycle_s, self.cycle, skip_when_paused=True),
                name="mourning-cycle",
            ),
            asyncio.create_task(
                self._run_periodic(poll_s, self.poll, skip_when_paused=False),
                name="mourning-poll",
            ),
        ]

    async def _run_periodic(
        self,
        interval: float,
        tick: Callable[[], Awaitable[Any]],
        *,
        skip_when_paused: bool,
    ) -> None:
        """Fire *tick* at a fixed rate; overrun ticks are dropped, never stacked."""
        loop = asyncio.get_running_loop()
        due = loop.time() + interval
        while True:
            await asyncio.sleep(max(0.0, due - loop.time()))
            if not (skip_when_paused and self._state is EngineState.PAUSED):
                try:
                    await tick()
                except Exception:
                    logger.exception("Timer tick %s failed; rescheduling", tick.__name__)
            due += interval
            now = loop.time()
            if due < now:
                missed = int((now - due) // interval) + 1
                logger.debug("Dropping %d overdue tick(s) of %s", missed, tick.__name__)
                due += missed * interval

    def pause(self) -> None:
        """Stop cycling; polling continues so new messages keep queueing."""
        if self._state is EngineState.RUNNING:
            self._state = EngineState.PAUSED
            logger.info("Traversal paused")
        else:
            logger.warning("pause() ignored in state %s", self._state.value)

    def resume(self) -> None:
        """Resume cycling after :meth:`pause`."""
        if self._state is EngineState.PAUSED:
            self._state = EngineState.RUNNING
            logger.info("Traversal resumed")
        else:
            logger.warning("resume() ignored in state %s", self._state.value)

    def stop(self) -> None:
        """Halt both timers.  Idempotent and safe from any state.

        In-flight store reads may still complete; their results are
        discarded because every mutation checks for ``STOPPED`` first.
        """
        if self._state is EngineState.STOPPED:
            return
        for task in self._tasks:
            task.cancel()
        self._pool.clear()
        self._state = EngineState.STOPPED
        logger.info("Traversal stopped after %d cluster(s)", self._total_shown)

    async def shutdown(self) -> None:
        """:meth:`stop` and wait for the timer tasks to unwind."""
        self.stop()
        tasks, self._tasks = self._tasks, []
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def cycle(self) -> MessageCluster:
        """Run one evict-replenish-select-emit iteration.

        Never raises for store or selection failures: they are logged and
        the tick's emission is skipped.  A call made while another cycle is
        still in flight returns the current cluster untouched.

        Returns
        -------
        MessageCluster
            The cluster on display after the cycle (the placeholder when
            there is nothing to show).
        """
        if self._state is EngineState.UNINITIALIZED:
            raise RuntimeError("Traversal not initialized. Call await initialize() first.")
        if self._state is EngineState.STOPPED:
            return self.get_current_cluster()
        if self._cycle_in_flight:
            self._skipped_ticks += 1
            logger.debug("Cycle already in flight; tick dropped")
            return self.get_current_cluster()

        self._cycle_in_flight = True
        try:
            async with self._lock:
                if self._state is not EngineState.STOPPED:
                    await self._run_cycle()
        except Exception as exc:
            self._skipped_ticks += 1
            self._last_error = f"{type(exc).__name__}: {exc}"
            logger.exception("Cycle failed; emission skipped")
        finally:
            self._cycle_in_flight = False
        return self.get_current_cluster()

    async def _run_cycle(self) -> None:
        current = self._current
        outgoing: list[int] = []
        if current is not None and not current.is_placeholder:
            outgoing = [rid for rid in current.related_ids if rid != current.next_id]

        evicted: dict[int, Message] = {}
        added: list[Message] = []
        try:
            for rid in outgoing:
                msg = self._working_set.pop(rid, None)
                if msg is not None:
                    evicted[rid] = msg
                self._priority_members.discard(rid)
            if await self._ensure_pool():
                added = await self._replenish(evicted)
        finally:
            # re-admitted members never left from a listener's point of view
            kept = {msg.id for msg in added if msg.id in evicted}
            change = WorkingSetChange(
                tuple(rid for rid in outgoing if rid not in kept),
                tuple(msg for msg in added if msg.id not in kept),
                "cycle",
            )
            if not change.is_empty:
                self._emit_working_set(change)

        if self._state is EngineState.STOPPED:
            return
        self._advance_cluster()
        self._cycles_run += 1

    async def _ensure_pool(self) -> bool:
        """Initialise the pool manager if an earlier attempt failed."""
        if self._pool.initialized:
            return True
        try:
            await self._pool.initialize()
        except StoreUnavailable as exc:
            self._record_store_failure(exc, "pool initialisation")
            return False
        return True

    async def _replenish(self, evicted: Mapping[int, Message] | None = None) -> list[Message]:
        """Top the working set up to its target size with exact dedupe.

        Stops when the set is full, when a batch comes back empty, when two
        cursor recycles pass without a new member (the whole store has been
        scanned), or after ``max_replenish_rounds`` batches.

        Members *evicted* this cycle are skipped while the store offers
        anything else.  If the set is still short afterwards they are
        re-admitted, lowest id first, so a store only slightly larger than
        the set keeps it full.
        """
        target = self._config.working_set_size
        evicted = evicted or {}
        blocked = set(evicted)
        added: list[Message] = []
        recycles_at_start = self._pool.stats()["recycle_count"]

        for _ in range(self._config.max_replenish_rounds):
            deficit = target - len(self._working_set)
            if deficit <= 0:
                break
            try:
                batch = await self._pool.next_batch(deficit)
            except StoreUnavailable as exc:
                self._record_store_failure(exc, "replenishment")
                break
            if self._state is EngineState.STOPPED or not batch.messages:
                break

            priority = set(batch.priority_ids)
            fresh = 0
            for msg in batch.messages:
                if msg.id in self._working_set or msg.id in blocked or not msg.visible:
                    continue
                self._working_set[msg.id] = msg
                added.append(msg)
                fresh += 1
                if msg.id in priority:
                    self._priority_members.add(msg.id)

            if fresh == 0 and self._pool.stats()["recycle_count"] - recycles_at_start >= 2:
                logger.debug("Store exhausted at %d member(s)", len(self._working_set))
                break

        if self._state is not EngineState.STOPPED:
            for mid in sorted(evicted):
                if len(self._working_set) >= target:
                    break
                if mid not in self._working_set:
                    self._working_set[mid] = evicted[mid]
                    added.append(evicted[mid])

        if len(self._working_set) < target:
            logger.debug(
                "Working set below target after replenishment: %d/%d",
                len(self._working_set),
                target,
            )
        return added

    def _advance_cluster(self) -> None:
        """Select, demote and emit the next cluster."""
        previous = self._current
        if previous is not None and previous.is_placeholder:
            previous = None

        try:
            cluster = self._selector.select(
                self._working_set,
                self._priority_members,
                previous,
                total_shown=self._total_shown + 1,
            )
        except InvariantViolation as exc:
            self._invariant_recoveries += 1
            self._last_error = f"InvariantViolation: {exc}"
            logger.error(
                "Invariant violated (%s); working_set=%s priority=%s previous=%s. "
                "Retrying without continuity.",
                exc,
                sorted(self._working_set),
                sorted(self._priority_members),
                previous.to_dict() if previous is not None else None,
            )
            cluster = self._selector.select(
                self._working_set,
                self._priority_members,
                None,
                total_shown=self._total_shown + 1,
            )

        if cluster is None:
            was_placeholder = self._current is not None and self._current.is_placeholder
            self._current = MessageCluster.placeholder(
                self._config.cluster_duration_ms, self._total_shown
            )
            if not was_placeholder:
                self._emit_cluster(self._current)
            return

        self._priority_members.discard(cluster.focus.id)
        if cluster.next is not None:
            self._priority_members.discard(cluster.next.id)

        self._total_shown += 1
        self._current = cluster
        logger.debug(
            "Cluster %d: focus=%d related=%d next=%s",
            self._total_shown,
            cluster.focus.id,
            len(cluster.related),
            cluster.next_id,
        )
        self._emit_cluster(cluster)

    # ------------------------------------------------------------------
    # Polling & submission
    # ------------------------------------------------------------------

    async def poll(self) -> int:
        """Fold new store messages into the priority queue.

        Returns the number of messages found; 0 when skipped or failed.
        """
        if self._state in (EngineState.UNINITIALIZED, EngineState.STOPPED):
            return 0
        if self._poll_in_flight:
            return 0

        self._poll_in_flight = True
        try:
            async with self._lock:
                if self._state is EngineState.STOPPED or not self._pool.initialized:
                    return 0
                return await self._pool.poll()
        except StoreUnavailable as exc:
            self._record_store_failure(exc, "poll")
            return 0
        except Exception as exc:
            self._skipped_ticks += 1
            self._last_error = f"{type(exc).__name__}: {exc}"
            logger.exception("Poll failed")
            return 0
        finally:
            self._poll_in_flight = False

    async def submit(self, message: Message) -> bool:
        """Route a freshly stored message to the priority queue.

        Returns whether it was queued (messages the pool has already seen
        are covered by the normal traversal).
        """
        if self._state is EngineState.STOPPED:
            return False
        async with self._lock:
            return self._pool.mark_new_submission(message)

    async def submit_content(self, content: str) -> Message:
        """Store a new submission and queue it for display.

        Raises
        ------
        ValueError
            If *content* is empty or longer than 280 characters.
        StoreUnavailable
            If the store rejected the write after retries.
        """
        message = await self._gateway.insert(content, approved=self._config.auto_approve)
        queued = await self.submit(message)
        logger.info("Submission %d stored (queued=%s)", message.id, queued)
        return message

    # ------------------------------------------------------------------
    # Traversal control & inspection
    # ------------------------------------------------------------------

    async def reset_traversal(self) -> None:
        """Forget continuity and emit a freshly selected cluster.

        The working set is kept.
        """
        if self._state in (EngineState.UNINITIALIZED, EngineState.STOPPED):
            return
        async with self._lock:
            self._current = None
            self._advance_cluster()
        logger.info("Traversal reset")

    def get_current_cluster(self) -> MessageCluster:
        """The cluster on display, or the placeholder if there is none."""
        if self._current is None:
            return MessageCluster.placeholder(self._config.cluster_duration_ms, self._total_shown)
        return self._current

    def get_working_set(self) -> list[Message]:
        """Copy of the working set in insertion order."""
        return list(self._working_set.values())

    def get_stats(self) -> dict[str, Any]:
        """Engine, pool and current-cluster statistics for monitoring."""
        current = self._current
        cluster_stats = None
        if current is not None and not current.is_placeholder:
            cluster_stats = self._selector.cluster_stats(current)
        return {
            "state": self._state.value,
            "total_clusters_shown": self._total_shown,
            "cycles_run": self._cycles_run,
            "skipped_ticks": self._skipped_ticks,
            "invariant_recoveries": self._invariant_recoveries,
            "store_failures": self._store_failures,
            "last_error": self._last_error,
            "working_set_size": len(self._working_set),
            "working_set_target": self._config.working_set_size,
            "priority_member_count": len(self._priority_members),
            "current_focus": current.focus_id if current is not None else None,
            "next_focus": current.next_id if current is not None else None,
            "pool": self._pool.stats(),
            "cluster": cluster_stats,
        }

    def _record_store_failure(self, exc: StoreUnavailable, during: str) -> None:
        self._store_failures += 1
        self._last_error = f"StoreUnavailable: {exc}"
        logger.warning("Store unavailable during %s; continuing degraded: %s", during, exc)
