"""Unit tests for clustering strategies."""

import asyncio
import random
import time

import numpy as np

from threadreport.clusterer import (
    EmbeddingClusterer,
    LLMTopicClusterer,
    calculate_cluster_sentiment,
    kmeans,
    reduce_to_2d,
)

from conftest import FakeCompleter, make_message


def _identity_reducer(embeddings: np.ndarray) -> np.ndarray:
    return embeddings[:, :2]


class TestKMeans:
    def test_deterministic(self) -> None:
        rng = np.random.default_rng(7)
        points = rng.normal(size=(40, 2))
        assert kmeans(points, 4) == kmeans(points, 4)

    def test_separates_obvious_groups(self) -> None:
        points = [[0, 0], [0.1, 0], [0, 0.1], [10, 10], [10.1, 10], [10, 10.1]]
        assignments = kmeans(points, 2)
        assert len(set(assignments[:3])) == 1
        assert len(set(assignments[3:])) == 1
        assert assignments[0] != assignments[3]

    def test_k_at_least_n(self) -> None:
        assert kmeans([[0, 0], [1, 1]], 5) == [0, 1]

    def test_empty(self) -> None:
        assert kmeans([], 3) == []


class TestClusterSentiment:
    def test_majority_positive(self) -> None:
        msgs = [make_message(str(i), "x" * 20, sentiment="positive") for i in range(4)]
        msgs.append(make_message("n", "x" * 20, sentiment="neutral"))
        assert calculate_cluster_sentiment(msgs) == "positive"

    def test_mixed(self) -> None:
        msgs = [
            make_message("1", "x" * 20, sentiment="positive"),
            make_message("2", "x" * 20, sentiment="negative"),
            make_message("3", "x" * 20, sentiment="neutral"),
        ]
        assert calculate_cluster_sentiment(msgs) == "mixed"

    def test_neutral(self) -> None:
        msgs = [make_message("1", "x" * 20), make_message("2", "x" * 20, sentiment="positive")]
        assert calculate_cluster_sentiment(msgs) == "neutral"

    def test_empty(self) -> None:
        assert calculate_cluster_sentiment([]) == "neutral"


class TestEmbeddingClusterer:
    def test_below_minimum_single_cluster(self) -> None:
        msgs = [make_message(str(i), f"message about billing {i}", embedding=[i, 0.0]) for i in range(5)]
        result = asyncio.run(EmbeddingClusterer(reducer=_identity_reducer).cluster(msgs))
        assert len(result.clusters) == 1
        assert len(result.clusters[0].messages) == 5
        assert result.clusters[0].id == "cluster-0"
        assert len(result.projection) == 5

    def test_counts_conserved(self) -> None:
        msgs = [
            make_message(f"a{i}", f"billing question {i}", embedding=[0.0 + i * 0.01, 0.0, 1.0])
            for i in range(8)
        ] + [
            make_message(f"b{i}", f"login problem {i}", embedding=[5.0 + i * 0.01, 5.0, 1.0])
            for i in range(8)
        ]
        result = asyncio.run(EmbeddingClusterer(num_clusters=2, reducer=_identity_reducer).cluster(msgs))
        assert len(result.clusters) == 2
        assert sum(len(c.messages) for c in result.clusters) == 16
        groups = [{m.id[0] for m in c.messages} for c in result.clusters]
        assert sorted(groups, key=sorted) == [{"a"}, {"b"}]
        assert {p.id for p in result.projection} == {m.id for m in msgs}

    def test_non_substantive_dropped(self) -> None:
        msgs = [make_message(str(i), f"message {i} text", embedding=[i, 0.0]) for i in range(3)]
        msgs.append(make_message("x", "hello", is_substantive=False, embedding=[9.0, 9.0]))
        result = asyncio.run(EmbeddingClusterer(reducer=_identity_reducer).cluster(msgs))
        assert "x" not in {m.id for c in result.clusters for m in c.messages}

    def test_empty(self) -> None:
        result = asyncio.run(EmbeddingClusterer(reducer=_identity_reducer).cluster([]))
        assert result.clusters == []

    def test_projection_does_not_block_event_loop(self) -> None:
        def slow_reducer(embeddings: np.ndarray) -> np.ndarray:
            time.sleep(0.3)
            return embeddings[:, :2]

        msgs = [make_message(str(i), f"message number {i}", embedding=[i, i % 3, 1.0]) for i in range(12)]

        async def scenario() -> int:
            ticks = 0
            done = asyncio.Event()

            async def ticker() -> None:
                nonlocal ticks
                while not done.is_set():
                    ticks += 1
                    await asyncio.sleep(0.02)

            task = asyncio.create_task(ticker())
            await EmbeddingClusterer(num_clusters=2, reducer=slow_reducer).cluster(msgs)
            done.set()
            await task
            return ticks

        assert asyncio.run(scenario()) >= 5


class TestReduceTo2D:
    def test_small_input_caps_neighbors(self) -> None:
        points = np.random.default_rng(0).normal(size=(10, 16))
        reduced = reduce_to_2d(points)
        assert reduced.shape == (10, 2)
        assert np.isfinite(reduced).all()

    def test_real_projection_clusters(self) -> None:
        rng = np.random.default_rng(1)
        msgs = [
            make_message(f"m{i}", f"message number {i}", embedding=rng.normal(size=8).tolist())
            for i in range(10)
        ]
        result = asyncio.run(EmbeddingClusterer(num_clusters=2).cluster(msgs))
        assert sum(len(c.messages) for c in result.clusters) == 10
        assert len(result.projection) == 10


class TestLLMTopicClusterer:
    def _handler(self, prompt: str):
        if prompt.startswith("Analyze the following user messages and identify"):
            return {"topics": [{"name": "Billing"}, {"name": "Login"}]}
        if prompt.startswith("Assign each message"):
            assignments = []
            for idx in range(20):
                if f'"index": {idx},' in prompt:
                    topic = 1 if "invoice" in prompt.split(f'"index": {idx},')[1].split("}")[0] else 2
                    assignments.append({"index": idx, "topic": topic})
            return {"assignments": assignments}
        return {
            "opinions": ["Users want clearer invoices"],
            "summary": {"consensus": ["Needs work"], "conflicting": [], "sentiment": "negative"},
            "nextSteps": [{"action": "Redesign", "priority": "high", "rationale": "Most reported"}, {"priority": "low"}],
        }

    def test_topics_assigned_and_sorted(self) -> None:
        msgs = [make_message(f"i{i}", f"my invoice number {i} is wrong") for i in range(3)]
        msgs += [make_message(f"l{i}", f"cannot sign in attempt {i}") for i in range(5)]
        clusterer = LLMTopicClusterer(FakeCompleter(self._handler), rng=random.Random(0))
        result = asyncio.run(clusterer.cluster(msgs))

        assert [c.topic for c in result.clusters] == ["Login", "Billing"]
        assert [len(c.messages) for c in result.clusters] == [5, 3]
        billing = result.clusters[1]
        assert billing.opinions[0].text == "Users want clearer invoices"
        assert billing.opinions[0].id == f"{billing.id}-op-0"
        assert billing.summary.sentiment == "negative"
        assert len(billing.next_steps) == 1

    def test_failed_topic_identification_uses_categories(self) -> None:
        def handler(prompt: str):
            if prompt.startswith("Analyze the following user messages and identify"):
                return RuntimeError("timeout")
            return "not json"

        msgs = [make_message("1", "a complaint about fees", category="complaint")]
        msgs.append(make_message("2", "a question about fees", category="question"))
        result = asyncio.run(LLMTopicClusterer(FakeCompleter(handler)).cluster(msgs))

        # Assignment failed, so everything lands in the first topic with a fallback analysis
        assert len(result.clusters) == 1
        assert result.clusters[0].topic == "complaint"
        assert result.clusters[0].opinions[0].text == "2 messages about this topic"

    def test_wrong_summary_types_keep_cluster(self) -> None:
        def handler(prompt: str):
            if prompt.startswith("Analyze the following user messages and identify"):
                return {"topics": [{"name": "Billing"}]}
            if prompt.startswith("Assign each message"):
                return {"assignments": [{"index": 0, "topic": 1}, {"index": 1, "topic": "1"}]}
            return {"opinions": 3, "summary": [], "nextSteps": 1}

        msgs = [make_message("1", "invoice is wrong", sentiment="negative")]
        msgs.append(make_message("2", "invoice is late", sentiment="negative"))
        result = asyncio.run(LLMTopicClusterer(FakeCompleter(handler), rng=random.Random(0)).cluster(msgs))

        cluster = result.clusters[0]
        assert cluster.topic == "Billing"
        assert len(cluster.messages) == 2
        assert cluster.opinions == []
        assert cluster.summary.sentiment == "negative"
        assert cluster.next_steps == []
