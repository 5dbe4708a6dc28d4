"""Cluster selection: which messages are shown together, and what comes next.

Given the working set, the ids still awaiting their first featured
appearance, and the previous cluster, :meth:`ClusterSelector.select` picks:

1. a **focus** -- the previous cluster's ``next`` whenever it is still
   available, which is what chains clusters into a continuous traversal;
2. **related** messages -- the focus's nearest neighbours by
   :func:`~mourning.similarity.similarity`, with room guaranteed for a
   waiting priority message and for the previous focus;
3. a **next** -- preferring a priority message so new submissions reach the
   foreground quickly.

The selector is pure: it never mutates its inputs and never touches the
store.  Postcondition failures raise :class:`InvariantViolation`; they are
programming errors, not runtime conditions.
"""

from __future__ import annotations

import logging
import statistics
from typing import Any, Collection, Mapping

from mourning.config import EngineConfig, get_config
from mourning.messages import Message, MessageCluster, RelatedMessage
from mourning.similarity import rank_by_similarity

log = logging.getLogger(__name__)

CONTINUITY_SIMILARITY = 1.0
"""Similarity recorded for the previous focus when it is forced into related."""

_DIVERSITY_WINDOW_SECONDS = 30 * 86_400
_DIVERSITY_LENGTH_STDDEV = 100.0


class InvariantViolation(RuntimeError):
    """A selected cluster broke one of its structural guarantees."""


class ClusterSelector:
    """Score, rank and assemble clusters from the working set."""

    def __init__(self, config: EngineConfig | None = None) -> None:
        self._config = config or get_config()

    def select(
        self,
        working_set: Mapping[int, Message],
        priority_ids: Collection[int],
        previous_cluster: MessageCluster | None,
        *,
        total_shown: int = 0,
    ) -> MessageCluster | None:
        """Build the next cluster, or return ``None`` when there is nothing to show.

        Parameters
        ----------
        working_set:
            Current members keyed by id.
        priority_ids:
            Members still awaiting their first featured appearance.
        previous_cluster:
            The cluster currently on display, or ``None`` to start fresh.
        total_shown:
            Running count recorded on the returned cluster.
        """
        if not working_set:
            return None

        focus = self._pick_focus(working_set, priority_ids, previous_cluster)
        limit = self._config.related_limit

        ranked = rank_by_similarity(
            focus,
            (m for mid, m in working_set.items() if mid != focus.id),
            self._config.similarity,
        )
        related = [RelatedMessage(m, score) for m, score in ranked[:limit]]
        forced: set[int] = set()

        self._reserve_priority(related, ranked, priority_ids, forced)

        previous_focus_id = self._force_continuity(
            related, working_set, previous_cluster, focus, forced, limit
        )
        related.sort(key=lambda r: (-r.similarity, r.id))

        next_msg = self._pick_next(related, priority_ids, previous_focus_id, focus)

        cluster = MessageCluster(
            focus=focus,
            related=tuple(related),
            next=next_msg,
            duration_ms=self._config.cluster_duration_ms,
            total_shown=total_shown,
        )
        self.validate(cluster, len(working_set))
        return cluster

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    @staticmethod
    def _pick_focus(
        working_set: Mapping[int, Message],
        priority_ids: Collection[int],
        previous_cluster: MessageCluster | None,
    ) -> Message:
        if previous_cluster is not None and previous_cluster.next is not None:
            carried = working_set.get(previous_cluster.next.id)
            if carried is not None:
                return carried
            log.warning(
                "Previous next %d left the working set; picking a fresh focus",
                previous_cluster.next.id,
            )

        waiting = [pid for pid in priority_ids if pid in working_set]
        if waiting:
            return working_set[min(waiting)]
        return working_set[min(working_set)]

    def _reserve_priority(
        self,
        related: list[RelatedMessage],
        ranked: list[tuple[Message, float]],
        priority_ids: Collection[int],
        forced: set[int],
    ) -> None:
        """Swap waiting priority members in over the weakest similarity picks."""
        slots = self._config.priority_related_slots
        if slots <= 0 or not priority_ids or not related:
            return

        present = sorted(r.id for r in related if r.id in priority_ids)
        for pid in present[:slots]:
            forced.add(pid)
        needed = slots - len(present)
        if needed <= 0:
            return

        in_related = {r.id for r in related}
        waiting = sorted(
            (m.id, m, score)
            for m, score in ranked
            if m.id in priority_ids and m.id not in in_related
        )
        for _, msg, score in waiting[:needed]:
            related[self._weakest_unforced(related, forced)] = RelatedMessage(msg, score)
            forced.add(msg.id)

    def _force_continuity(
        self,
        related: list[RelatedMessage],
        working_set: Mapping[int, Message],
        previous_cluster: MessageCluster | None,
        focus: Message,
        forced: set[int],
        limit: int,
    ) -> int | None:
        """Keep the previous focus on screen so consecutive clusters overlap."""
        if previous_cluster is None or previous_cluster.focus is None:
            return None
        prev_id = previous_cluster.focus.id
        if prev_id == focus.id or prev_id not in working_set:
            return None

        if any(entry.id == prev_id for entry in related):
            forced.add(prev_id)
            return prev_id

        entry = RelatedMessage(working_set[prev_id], CONTINUITY_SIMILARITY)
        if len(related) < limit:
            related.append(entry)
        else:
            related[self._weakest_unforced(related, forced)] = entry
        forced.add(prev_id)
        return prev_id

    @staticmethod
    def _pick_next(
        related: list[RelatedMessage],
        priority_ids: Collection[int],
        previous_focus_id: int | None,
        focus: Message,
    ) -> Message:
        if not related:
            return focus  # single-member set: the focus loops onto itself

        candidates = [r for r in related if r.id != previous_focus_id]
        if not candidates:
            return related[0].message

        waiting = [r for r in candidates if r.id in priority_ids]
        if waiting:
            return min(waiting, key=lambda r: r.id).message

        best = min(candidates, key=lambda r: (-r.similarity, r.id))
        return best.message

    @staticmethod
    def _weakest_unforced(related: list[RelatedMessage], forced: set[int]) -> int:
        """Index of the lowest-scored entry not pinned by an earlier rule."""
        index = -1
        for i, entry in enumerate(related):
            if entry.id in forced:
                continue
            if index < 0 or (entry.similarity, -entry.id) <= (
                related[index].similarity,
                -related[index].id,
            ):
                index = i
        if index < 0:
            index = len(related) - 1
        return index

    # ------------------------------------------------------------------
    # Validation & stats
    # ------------------------------------------------------------------

    def validate(self, cluster: MessageCluster, working_set_size: int) -> None:
        """Raise :class:`InvariantViolation` if *cluster* breaks a guarantee."""
        if cluster.focus is None:
            if cluster.related or cluster.next is not None:
                raise InvariantViolation("placeholder cluster carries members")
            return

        ids = cluster.member_ids()
        if len(ids) != len(set(ids)):
            raise InvariantViolation(f"duplicate ids in cluster: {ids}")
        if cluster.focus.id in cluster.related_ids:
            raise InvariantViolation(f"focus {cluster.focus.id} appears in related")

        expected = min(self._config.related_limit, working_set_size - 1)
        if len(cluster.related) < expected:
            raise InvariantViolation(
                f"only {len(cluster.related)} related messages, expected >= {expected}"
            )
        if len(cluster.related) > self._config.related_limit:
            raise InvariantViolation(
                f"{len(cluster.related)} related messages exceeds cap "
                f"{self._config.related_limit}"
            )

        if cluster.next is None:
            raise InvariantViolation("non-placeholder cluster has no next")
        if cluster.next.id != cluster.focus.id and cluster.next.id not in cluster.related_ids:
            raise InvariantViolation(f"next {cluster.next.id} is neither focus nor related")

    @staticmethod
    def cluster_stats(cluster: MessageCluster) -> dict[str, Any]:
        """Similarity spread and diversity of a cluster, for monitoring.

        Diversity averages the temporal spread (normalised by 30 days) and
        the standard deviation of content length (normalised by 100 chars),
        each capped at 1.0.
        """
        messages = ([cluster.focus] if cluster.focus else []) + [
            r.message for r in cluster.related
        ]
        scores = [r.similarity for r in cluster.related]

        diversity = 0.0
        if len(messages) > 1:
            times = [m.created_at.timestamp() for m in messages]
            temporal = min(1.0, (max(times) - min(times)) / _DIVERSITY_WINDOW_SECONDS)
            spread = statistics.pstdev(len(m.content) for m in messages)
            lengths = min(1.0, spread / _DIVERSITY_LENGTH_STDDEV)
            diversity = (temporal + lengths) / 2

        return {
            "total_messages": len(messages),
            "avg_similarity": statistics.fmean(scores) if scores else 0.0,
            "min_similarity": min(scores) if scores else 0.0,
            "max_similarity": max(scores) if scores else 0.0,
            "diversity": diversity,
        }
