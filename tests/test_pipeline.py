"""End-to-end pipeline tests with fake model and embedding backends."""

import asyncio
import random
from datetime import UTC, datetime, timedelta

import numpy as np
import pytest

from threadreport import config
from threadreport.categorizer import load_taxonomy
from threadreport.clusterer import Clusterer, EmbeddingClusterer
from threadreport.models import ClustererResult, MessageCluster, ReportRequestParams
from threadreport.pipeline import STEPS, ReportPipeline
from threadreport.store import MemoryStore
from threadreport.threads import InMemoryThreadStore, Thread, ThreadMessage
from threadreport.validator import ReportValidationError

from conftest import FakeCompleter, FakeEmbedder, make_message

CATEGORY_NAMES = [c.name for c in load_taxonomy().categories]


def _one_hot(name: str) -> list[float]:
    return [1.0 if n == name else 0.0 for n in CATEGORY_NAMES]


def _embedding_rule(text: str) -> list[float]:
    head = text.split(":", 1)[0]
    if head in CATEGORY_NAMES:
        return _one_hot(head)
    if text.lower() in ("hello", "thanks"):
        return _one_hot("greeting")
    if "export" in text:
        return _one_hot("complaint")
    return _one_hot("question")


def _reducer(embeddings: np.ndarray) -> np.ndarray:
    question, complaint = CATEGORY_NAMES.index("question"), CATEGORY_NAMES.index("complaint")
    return embeddings[:, [question, complaint]]


def _thread_store(contents: list[str]) -> InMemoryThreadStore:
    now = datetime.now(UTC)
    history = [
        ThreadMessage(id=f"m{i}", speaker="User", content=text, timestamp=now - timedelta(hours=i + 1))
        for i, text in enumerate(contents)
    ]
    history.append(ThreadMessage(id="bot", speaker="helper", content="Happy to help with that.", timestamp=now))
    return InMemoryThreadStore([Thread(id="t1")], {"t1": history})


CONTENTS = (
    [f"The export to CSV failed on attempt {i}" for i in range(6)]
    + [f"How do I invite teammate number {i}?" for i in range(6)]
    + ["hello", "thanks"]
)


def _handler(prompt: str):
    if "Topic Label" in prompt:
        topic = "Export failures" if "export" in prompt.split("Examples INSIDE")[1] else "Team invites"
        return {
            "topic": topic,
            "description": f"About {topic.lower()}",
            "opinions": [f"{topic} need attention"],
            "summary": {"consensus": [], "conflicting": [], "sentiment": "negative"},
            "nextSteps": [{"action": f"Look into {topic.lower()}", "priority": "high", "rationale": "Volume"}],
        }
    if "Opinions to ground" in prompt:
        return {"groundings": [{"opinionIndex": 0, "supportingMessageIndices": [0, 1], "mentionCount": 6, "confidence": 0.8}]}
    if "Synthesize the following" in prompt:
        return {
            "overallSentiment": "negative",
            "keyFindings": ["Exports fail often"],
            "topPriorities": [{"action": "Fix exports", "priority": "high", "rationale": "Most reported"}],
            "executiveSummary": "Exports are the main pain point.",
        }
    return "unexpected prompt"


def _pipeline(store=None, thread_store=None, **kwargs) -> ReportPipeline:
    kwargs.setdefault("embed_fn", FakeEmbedder(_embedding_rule))
    kwargs.setdefault("clusterer", EmbeddingClusterer(num_clusters=2, reducer=_reducer))
    return ReportPipeline(
        thread_store or _thread_store(CONTENTS),
        store or MemoryStore(),
        FakeCompleter(_handler),
        mode="embedding",
        rng=random.Random(0),
        **kwargs,
    )


class TestEmbeddingPipeline:
    def test_full_report(self) -> None:
        progress = []
        report = asyncio.run(_pipeline().generate_report(ReportRequestParams(title="Weekly"), progress.append))

        stats = report.statistics
        assert stats.total_messages == 12
        assert stats.non_substantive_count == 2
        assert stats.total_threads == 1
        assert stats.total_messages == sum(len(c.messages) for c in report.clusters)
        assert all(m.is_substantive for c in report.clusters for m in c.messages)

        assert sorted(c.topic for c in report.clusters) == ["Export failures", "Team invites"]
        assert all(c.opinions[0].mention_count == 6 for c in report.clusters)
        assert report.synthesis.executive_summary == "Exports are the main pain point."
        assert report.visualization.scatter_plot.axes["x"].label == "UMAP Dimension 1"
        assert report.markdown.startswith("# Weekly")
        assert "Export failures" in report.markdown

        assert [p.step for p in progress] == list(range(1, len(STEPS) + 1))
        assert progress[-1].percentage == 100
        assert progress[0].current_step == "Parsing messages"

    def test_embeddings_reused_across_runs(self) -> None:
        store = MemoryStore()
        embed = FakeEmbedder(_embedding_rule)
        asyncio.run(_pipeline(store, embed_fn=embed).generate_report(ReportRequestParams()))
        first = embed.texts_embedded
        asyncio.run(_pipeline(store, embed_fn=embed).generate_report(ReportRequestParams()))
        assert embed.texts_embedded == first

    def test_no_messages(self) -> None:
        progress = []
        pipeline = _pipeline(thread_store=InMemoryThreadStore([], {}))
        report = asyncio.run(pipeline.generate_report(ReportRequestParams(), progress.append))
        assert report.clusters == []
        assert "No user messages found to analyze." in report.markdown
        assert [p.step for p in progress] == [1]

    def test_only_greetings(self) -> None:
        pipeline = _pipeline(thread_store=_thread_store(["hello", "thanks"]))
        report = asyncio.run(pipeline.generate_report(ReportRequestParams()))
        assert report.statistics.total_messages == 0
        assert report.statistics.total_threads == 1

    def test_missing_embedding_key_is_fatal(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(config, "OPENAI_API_KEY", "")
        with pytest.raises(ValueError):
            ReportPipeline(_thread_store(CONTENTS), MemoryStore(), FakeCompleter(), mode="embedding")

    def test_unknown_mode(self) -> None:
        with pytest.raises(ValueError):
            ReportPipeline(_thread_store(CONTENTS), MemoryStore(), FakeCompleter(), mode="magic")

    def test_wrong_typed_model_output_still_reports(self) -> None:
        bad = {
            "topic": {"name": "Exports"},
            "opinions": 3,
            "summary": "bad",
            "nextSteps": 1,
            "groundings": [{"opinionIndex": [0]}],
            "keyFindings": 5,
            "topPriorities": {"action": "x"},
        }
        pipeline = ReportPipeline(
            _thread_store(CONTENTS),
            MemoryStore(),
            FakeCompleter(lambda p: bad),
            mode="embedding",
            embed_fn=FakeEmbedder(_embedding_rule),
            clusterer=EmbeddingClusterer(num_clusters=2, reducer=_reducer),
            rng=random.Random(0),
        )
        report = asyncio.run(pipeline.generate_report(ReportRequestParams(title="Weekly")))

        assert report.statistics.total_messages == 12
        assert [c.topic for c in report.clusters] == ["Exports", "Exports"]
        assert report.synthesis.key_findings == []
        assert report.markdown.startswith("# Weekly")

    def test_non_substantive_in_output_fails(self) -> None:
        class LeakyClusterer(Clusterer):
            async def cluster(self, messages):
                leaked = make_message("leak", "hello", is_substantive=False)
                return ClustererResult(
                    clusters=[MessageCluster(id="c", topic="All", messages=[*messages, leaked])]
                )

        with pytest.raises(ReportValidationError):
            asyncio.run(_pipeline(clusterer=LeakyClusterer()).generate_report(ReportRequestParams()))


class TestLLMPipeline:
    def test_prompt_strategies(self) -> None:
        def handler(prompt: str):
            if "categorize each one" in prompt:
                count = prompt.count('"index":') - 1
                return {
                    "results": [
                        {"index": i, "category": "question", "sentiment": "neutral", "isSubstantive": True}
                        for i in range(count)
                    ]
                }
            if "identify the main topics" in prompt:
                return {"topics": [{"name": "Accounts"}]}
            if "Assign each message" in prompt:
                return {"assignments": [{"index": i, "topic": 1} for i in range(20)]}
            if "Summarize the different opinions" in prompt:
                return {"opinions": ["People want easier invites"], "summary": {"sentiment": "neutral"}, "nextSteps": []}
            return _handler(prompt)

        contents = [f"How do I invite teammate number {i}?" for i in range(4)]
        pipeline = ReportPipeline(
            _thread_store(contents),
            MemoryStore(),
            FakeCompleter(handler),
            mode="llm",
            rng=random.Random(0),
        )
        report = asyncio.run(pipeline.generate_report(ReportRequestParams(language="en")))

        assert [c.topic for c in report.clusters] == ["Accounts"]
        assert len(report.clusters[0].messages) == 4
        assert report.clusters[0].opinions[0].text == "People want easier invites"
        assert report.visualization.scatter_plot.axes["x"].label == "Sentiment"
