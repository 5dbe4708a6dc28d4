"""Tests for cluster selection: focus, related, next and their guarantees."""

from __future__ import annotations

import random
from dataclasses import replace

import pytest

from mourning.config import EngineConfig
from mourning.messages import Message, MessageCluster, RelatedMessage
from mourning.selector import CONTINUITY_SIMILARITY, ClusterSelector, InvariantViolation
from mourning.similarity import similarity
from tests.conftest import make_message


@pytest.fixture
def selector(config: EngineConfig) -> ClusterSelector:
    return ClusterSelector(config)


def _working_set(count: int, start: int = 1) -> dict[int, Message]:
    """Messages an hour apart with varied lengths."""
    return {
        i: make_message(i, "x" * (10 + (i * 37) % 200), hours_ago=float(i))
        for i in range(start, start + count)
    }


def _assert_structure(cluster: MessageCluster, config: EngineConfig, size: int) -> None:
    ids = cluster.member_ids()
    assert len(ids) == len(set(ids))
    assert cluster.focus_id not in cluster.related_ids
    assert len(cluster.related) == min(config.related_limit, size - 1)
    assert cluster.next is not None
    assert cluster.next_id == cluster.focus_id or cluster.next_id in cluster.related_ids


# -----------------------------------------------------------------------
# 1. Edge cases
# -----------------------------------------------------------------------


class TestEdgeCases:
    def test_empty_working_set(self, selector: ClusterSelector) -> None:
        """Nothing to show yields None rather than a cluster."""
        assert selector.select({}, set(), None) is None

    def test_single_message_self_loop(self, selector: ClusterSelector) -> None:
        """A lone message is its own next with no related."""
        only = make_message(7)
        cluster = selector.select({7: only}, set(), None)
        assert cluster is not None
        assert cluster.focus_id == 7
        assert cluster.related == ()
        assert cluster.next_id == 7

    def test_two_messages(self, selector: ClusterSelector) -> None:
        """With two messages the other one is related and next."""
        ws = _working_set(2)
        cluster = selector.select(ws, set(), None)
        assert cluster is not None
        assert cluster.related_ids == [2]
        assert cluster.next_id == 2

    def test_records_duration_and_total(
        self, selector: ClusterSelector, config: EngineConfig
    ) -> None:
        """Duration comes from config and total_shown is passed through."""
        cluster = selector.select(_working_set(3), set(), None, total_shown=12)
        assert cluster.duration_ms == config.cluster_duration_ms
        assert cluster.total_shown == 12


# -----------------------------------------------------------------------
# 2. Focus and related
# -----------------------------------------------------------------------


class TestSelection:
    def test_fresh_focus_is_lowest_id(self, selector: ClusterSelector) -> None:
        """Without history or priority the lowest id is the focus."""
        cluster = selector.select(_working_set(10, start=5), set(), None)
        assert cluster.focus_id == 5

    def test_fresh_focus_prefers_priority(self, selector: ClusterSelector) -> None:
        """The lowest-id priority member wins a fresh focus."""
        cluster = selector.select(_working_set(10), {8, 6}, None)
        assert cluster.focus_id == 6

    def test_related_capped(self, selector: ClusterSelector, config: EngineConfig) -> None:
        """Related never exceeds cluster_size - 1."""
        cluster = selector.select(_working_set(30), set(), None)
        assert len(cluster.related) == config.related_limit

    def test_related_sorted_by_similarity(self, selector: ClusterSelector) -> None:
        """Related is ordered by descending score, ties by id."""
        cluster = selector.select(_working_set(30), set(), None)
        keys = [(-r.similarity, r.id) for r in cluster.related]
        assert keys == sorted(keys)

    def test_related_are_nearest_without_priority(self, config: EngineConfig) -> None:
        """With no reserved slots related is exactly the top scores."""
        selector = ClusterSelector(replace(config, priority_related_slots=0))
        ws = _working_set(30)
        cluster = selector.select(ws, set(), None)
        scores = sorted(_scores(cluster.focus, ws, config), reverse=True)
        assert [r.similarity for r in cluster.related] == pytest.approx(
            scores[: config.related_limit]
        )

    def test_does_not_mutate_inputs(self, selector: ClusterSelector) -> None:
        """Selection leaves the working set and priority set untouched."""
        ws = _working_set(10)
        priority = {3, 4}
        snapshot = (dict(ws), set(priority))
        selector.select(ws, priority, None)
        assert (ws, priority) == snapshot


def _scores(focus: Message, ws: dict[int, Message], config: EngineConfig) -> list[float]:
    return [similarity(focus, m, config.similarity) for mid, m in ws.items() if mid != focus.id]


# -----------------------------------------------------------------------
# 3. Continuity
# -----------------------------------------------------------------------


class TestContinuity:
    def test_next_becomes_focus(self, selector: ClusterSelector) -> None:
        """The previous next is the new focus."""
        ws = _working_set(30)
        first = selector.select(ws, set(), None)
        second = selector.select(ws, set(), first)
        assert second.focus_id == first.next_id

    def test_previous_focus_kept_in_related(self, selector: ClusterSelector) -> None:
        """The previous focus stays visible among the related."""
        ws = _working_set(30)
        first = selector.select(ws, set(), None)
        second = selector.select(ws, set(), first)
        assert first.focus_id in second.related_ids

    def test_previous_focus_forced_in_with_full_score(self, config: EngineConfig) -> None:
        """A previous focus too dissimilar to rank is forced in at 1.0."""
        selector = ClusterSelector(replace(config, priority_related_slots=0))
        ws = _working_set(30)
        outlier = make_message(999, "y" * 280, hours_ago=24 * 60)
        ws[outlier.id] = outlier
        previous = MessageCluster(focus=outlier, next=ws[1], related=(RelatedMessage(ws[1], 0.1),))

        cluster = selector.select(ws, set(), previous)

        assert cluster.focus_id == 1
        forced = [r for r in cluster.related if r.id == 999]
        assert forced and forced[0].similarity == CONTINUITY_SIMILARITY
        assert len(cluster.related) == config.related_limit

    def test_next_avoids_previous_focus(self, selector: ClusterSelector) -> None:
        """Two messages never alternate as focus."""
        ws = _working_set(30)
        first = selector.select(ws, set(), None)
        second = selector.select(ws, set(), first)
        assert second.next_id != first.focus_id

    def test_missing_next_falls_back(self, selector: ClusterSelector) -> None:
        """A next that left the set falls back to a fresh focus."""
        ws = _working_set(10)
        first = selector.select(ws, set(), None)
        del ws[first.next_id]
        second = selector.select(ws, set(), first)
        assert second.focus_id == min(ws)

    def test_long_traversal_keeps_structure(
        self, selector: ClusterSelector, config: EngineConfig
    ) -> None:
        """A hundred chained selections keep every structural guarantee."""
        ws = _working_set(config.working_set_size)
        previous = None
        for _ in range(100):
            cluster = selector.select(ws, set(), previous)
            _assert_structure(cluster, config, len(ws))
            if previous is not None:
                assert cluster.focus_id == previous.next_id
                assert previous.focus_id in cluster.related_ids
            previous = cluster


# -----------------------------------------------------------------------
# 4. Priority
# -----------------------------------------------------------------------


class TestPriority:
    def test_priority_member_gets_related_slot(self, selector: ClusterSelector) -> None:
        """A waiting member is shown even when it ranks last by similarity."""
        ws = _working_set(30)
        outlier = make_message(500, "z" * 280, hours_ago=24 * 90)
        ws[outlier.id] = outlier
        cluster = selector.select(ws, {500}, None)
        # 500 is the only priority member, so a fresh selection focuses it.
        assert cluster.focus_id == 500

        previous = selector.select(ws, set(), None)
        ws[501] = replace(outlier, id=501)
        cluster = selector.select(ws, {501}, previous)
        assert 501 in cluster.related_ids
        assert cluster.next_id == 501

    def test_priority_preferred_as_next(self, selector: ClusterSelector) -> None:
        """A waiting member in related is chosen as next."""
        ws = _working_set(30)
        first = selector.select(ws, set(), None)
        waiting = next(r.id for r in first.related if r.id != first.next_id)
        second = selector.select(ws, {waiting}, first)
        assert second.next_id == waiting or second.focus_id == waiting

    def test_zero_slots_ranks_purely(self, config: EngineConfig) -> None:
        """With no reserved slots an outlier stays out of related."""
        selector = ClusterSelector(replace(config, priority_related_slots=0))
        ws = _working_set(30)
        outlier = make_message(500, "z" * 280, hours_ago=24 * 90)
        ws[outlier.id] = outlier
        previous = selector.select(ws, set(), None)
        cluster = selector.select(ws, {500}, previous)
        assert 500 not in cluster.related_ids

    def test_random_sets_keep_structure(self, selector: ClusterSelector,
                                        config: EngineConfig) -> None:
        """Random sizes and priority mixes always yield a valid cluster."""
        rng = random.Random(7)
        for _ in range(50):
            size = rng.randint(1, 60)
            ws = _working_set(size, start=rng.randint(1, 1000))
            priority = {mid for mid in ws if rng.random() < 0.2}
            cluster = selector.select(ws, priority, None)
            _assert_structure(cluster, config, size)


# -----------------------------------------------------------------------
# 5. Validation & stats
# -----------------------------------------------------------------------


class TestValidation:
    def test_duplicate_rejected(self, selector: ClusterSelector) -> None:
        """The same id twice in related is a violation."""
        a, b = make_message(1), make_message(2)
        bad = MessageCluster(
            focus=a, related=(RelatedMessage(b, 0.5), RelatedMessage(b, 0.5)), next=b
        )
        with pytest.raises(InvariantViolation):
            selector.validate(bad, 3)

    def test_focus_in_related_rejected(self, selector: ClusterSelector) -> None:
        """The focus may not appear among its own related."""
        a = make_message(1)
        bad = MessageCluster(focus=a, related=(RelatedMessage(a, 1.0),), next=a)
        with pytest.raises(InvariantViolation):
            selector.validate(bad, 2)

    def test_next_outside_cluster_rejected(self, selector: ClusterSelector) -> None:
        """Next must be the focus or one of the related."""
        a, b, c = make_message(1), make_message(2), make_message(3)
        bad = MessageCluster(focus=a, related=(RelatedMessage(b, 0.5),), next=c)
        with pytest.raises(InvariantViolation):
            selector.validate(bad, 2)

    def test_too_few_related_rejected(self, selector: ClusterSelector) -> None:
        """Related must be full when the working set allows it."""
        a, b = make_message(1), make_message(2)
        bad = MessageCluster(focus=a, related=(RelatedMessage(b, 0.5),), next=b)
        with pytest.raises(InvariantViolation):
            selector.validate(bad, 10)

    def test_placeholder_valid(self, selector: ClusterSelector) -> None:
        """The placeholder passes validation over an empty set."""
        selector.validate(MessageCluster.placeholder(), 0)


class TestClusterStats:
    def test_stats(self, selector: ClusterSelector) -> None:
        """Similarity spread is ordered and diversity is a fraction."""
        cluster = selector.select(_working_set(10), set(), None)
        stats = selector.cluster_stats(cluster)
        assert stats["total_messages"] == 6
        assert stats["min_similarity"] <= stats["avg_similarity"] <= stats["max_similarity"]
        assert 0.0 <= stats["diversity"] <= 1.0

    def test_placeholder_stats(self, selector: ClusterSelector) -> None:
        """The placeholder reports an empty cluster."""
        stats = selector.cluster_stats(MessageCluster.placeholder())
        assert stats["total_messages"] == 0
        assert stats["diversity"] == 0.0
