"""Dual-cursor pool manager feeding the working set.

Two independent cursors decouple "show old" from "show new":

* the **historical cursor** walks backwards through ids already in the
  store when the engine started (and recycles from the top once it reaches
  the oldest message);
* the **watermark** is the highest id ever observed.  Anything above it is
  new and is routed through a bounded in-memory **priority queue**.

:meth:`PoolManager.next_batch` always drains priority messages before
reading history, which bounds how long a fresh submission waits without a
hand-tuned new/historical ratio.

Pure business logic -- no presentation concepts.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable

from mourning.config import EngineConfig, get_config
from mourning.gateway import StoreGateway, StoreUnavailable
from mourning.messages import Message

log = logging.getLogger(__name__)


@dataclass
class Batch:
    """Messages returned by :meth:`PoolManager.next_batch`.

    ``priority_ids`` lists the ids that came from the priority queue or a
    fresh above-watermark read, in the order they appear in ``messages``.
    """

    messages: list[Message] = field(default_factory=list)
    priority_ids: list[int] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.messages)


class PoolManager:
    """Produce bounded batches of messages on demand.

    Parameters
    ----------
    gateway:
        Store access used for cursor reads.
    config:
        Engine configuration; defaults to :func:`~mourning.config.get_config`.
    """

    def __init__(self, gateway: StoreGateway, config: EngineConfig | None = None) -> None:
        self._gateway = gateway
        self._config = config or get_config()
        self._max_queue = self._config.priority_queue_max_size

        self._historical_cursor: int | None = None
        self._watermark: int = 0
        self._queue: deque[Message] = deque()

        self._dropped_total = 0
        self._recycle_count = 0
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def watermark(self) -> int:
        return self._watermark

    @property
    def historical_cursor(self) -> int | None:
        return self._historical_cursor

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    def queued_ids(self) -> list[int]:
        """Ids currently waiting in the priority queue, lowest first."""
        return [m.id for m in self._queue]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Point both cursors at the newest visible message.

        Raises
        ------
        StoreUnavailable
            If the store cannot be reached.
        """
        max_id = await self._gateway.max_id()
        self._watermark = max_id
        self._historical_cursor = max_id if max_id > 0 else None
        self._initialized = True
        if max_id == 0:
            log.info("Pool initialised against an empty store")
        else:
            log.info("Pool initialised: cursor=watermark=%d", max_id)

    def clear(self) -> None:
        """Drop everything waiting in the priority queue."""
        self._queue.clear()

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def next_batch(self, count: int) -> Batch:
        """Return up to *count* messages, priority first.

        Stages run in order and only while a deficit remains:

        1. drain the priority queue, lowest id first;
        2. read above the watermark, consume what fits and queue the rest;
        3. fill from the historical cursor, recycling once on an empty read.

        Fewer than *count* messages come back when the store cannot supply
        them; callers must tolerate that.  A store failure after stage 1
        returns the partial batch, and only propagates as
        :class:`~mourning.gateway.StoreUnavailable` when nothing was gathered.
        """
        batch = Batch()
        if count <= 0:
            return batch

        # Stage 1: queued priority messages.
        while self._queue and len(batch) < count:
            msg = self._queue.popleft()
            batch.messages.append(msg)
            batch.priority_ids.append(msg.id)

        try:
            # Stage 2: fresh messages above the watermark.
            deficit = count - len(batch)
            if deficit > 0:
                fresh = await self._gateway.above(self._watermark)
                if fresh:
                    taken, rest = fresh[:deficit], fresh[deficit:]
                    batch.messages.extend(taken)
                    batch.priority_ids.extend(m.id for m in taken)
                    self._enqueue(rest)
                    self._watermark = max(self._watermark, fresh[-1].id)
                    log.debug(
                        "Found %d new message(s) above watermark; %d used, %d queued",
                        len(fresh),
                        len(taken),
                        len(rest),
                    )

            # Stage 3: historical fill.
            deficit = count - len(batch)
            if deficit > 0:
                batch.messages.extend(await self._fetch_historical(deficit))
        except StoreUnavailable:
            # Messages already drained from the queue must not be lost.
            if not batch.messages:
                raise
            log.warning(
                "Store unavailable mid-batch; returning %d of %d message(s)",
                len(batch),
                count,
            )
            return batch

        log.debug(
            "Batch of %d/%d (%d priority, queue=%d, cursor=%s)",
            len(batch),
            count,
            len(batch.priority_ids),
            len(self._queue),
            self._historical_cursor,
        )
        return batch

    async def _fetch_historical(self, count: int) -> list[Message]:
        """Read backwards from the historical cursor, recycling once if exhausted."""
        for attempt in range(2):
            if self._historical_cursor is None:
                if not await self._recycle():
                    return []

            messages = await self._gateway.range_backward(
                self._historical_cursor, count, self._watermark
            )
            if messages:
                self._historical_cursor = messages[-1].id - 1
                return messages

            if attempt == 0:
                log.info("Historical cursor exhausted at %s, recycling", self._historical_cursor)
            self._historical_cursor = None
        return []

    async def _recycle(self) -> bool:
        """Restart the historical cursor from the newest visible message."""
        max_id = await self._gateway.max_id()
        if max_id == 0:
            log.debug("Store is empty, nothing to recycle")
            return False
        self._historical_cursor = max_id
        self._recycle_count += 1
        log.info("Historical cursor recycled to %d (recycle #%d)", max_id, self._recycle_count)
        return True

    # ------------------------------------------------------------------
    # New messages
    # ------------------------------------------------------------------

    async def poll(self) -> int:
        """Fold every message above the watermark into the priority queue.

        Returns the number of messages found.  Raises
        :class:`~mourning.gateway.StoreUnavailable` when the read fails.
        """
        fresh = await self._gateway.above(self._watermark)
        if not fresh:
            return 0
        self._enqueue(fresh)
        self._watermark = max(self._watermark, fresh[-1].id)
        log.info(
            "Polled %d new message(s); watermark=%d queue=%d",
            len(fresh),
            self._watermark,
            len(self._queue),
        )
        return len(fresh)

    def mark_new_submission(self, message: Message) -> bool:
        """Queue a freshly submitted message for prompt display.

        Messages at or below the watermark are already covered by the
        historical cursor and are ignored, as are invisible ones.  Returns
        whether the message was queued.
        """
        if not message.visible:
            log.debug("Ignoring invisible submission %d", message.id)
            return False
        if message.id <= self._watermark:
            log.debug(
                "Submission %d is at or below watermark %d; ignored",
                message.id,
                self._watermark,
            )
            return False
        self._enqueue([message])
        self._watermark = message.id
        return True

    def _enqueue(self, messages: Iterable[Message]) -> None:
        """Append ascending messages and trim the lowest ids beyond capacity."""
        self._queue.extend(messages)
        overflow = len(self._queue) - self._max_queue
        if overflow > 0:
            for _ in range(overflow):
                self._queue.popleft()
            self._dropped_total += overflow
            log.warning(
                "Priority queue overflow: dropped %d oldest message(s) (total dropped %d)",
                overflow,
                self._dropped_total,
            )

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def estimate_queue_wait_seconds(self) -> float:
        """Rough time until the last queued message enters the working set.

        Each cycle replaces about ``cluster_size - 2`` members (the related
        messages minus the one that becomes next).
        """
        depth = len(self._queue)
        if depth == 0:
            return 0.0
        per_cycle = max(1, self._config.cluster_size - 2)
        cycles = math.ceil(depth / per_cycle)
        return cycles * self._config.cluster_duration_ms / 1000.0

    def stats(self) -> dict[str, Any]:
        """Return cursor and queue state for monitoring."""
        return {
            "historical_cursor": self._historical_cursor,
            "watermark": self._watermark,
            "queue_depth": len(self._queue),
            "queue_max_size": self._max_queue,
            "dropped_total": self._dropped_total,
            "recycle_count": self._recycle_count,
            "estimated_queue_wait_seconds": self.estimate_queue_wait_seconds(),
        }
