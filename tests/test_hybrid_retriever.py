import tempfile
import unittest
from datetime import datetime
from pathlib import Path

from application.use_cases.hybrid_retrieve import (
    RETURN_ALL_LIMIT,
    HybridRetriever,
    daily_note_titles,
    recency_score,
)
from domain.entities import CancellationToken, Chunk, RerankResult, RetrieverOptions, SearchHit, TimeRange
from domain.interfaces import QueryRewriter, Reranker
from infrastructure.embedding.hash_embedder import WordHashEmbedder
from infrastructure.vault.local_vault import LocalVault
from vault_fixtures import write_note


def ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def make_hit(index: int, score: float, *, path: str | None = None, content: str | None = None) -> SearchHit:
    chunk = Chunk(
        id=f"chunk-{index}",
        path=path or f"note{index}.md",
        title=f"note{index}",
        content=content or f"content {index}",
    )
    return SearchHit(chunk=chunk, score=score)


class FakeStore:
    def __init__(self, hits: list[SearchHit] | None = None, error: Exception | None = None, empty: bool = False) -> None:
        self.hits = hits or []
        self.error = error
        self.empty = empty
        self.params = []

    async def is_index_empty(self):
        return self.empty

    async def search(self, mode, params):
        self.params.append(params)
        if self.error is not None:
            raise self.error
        return self.hits[: params.limit]

    async def get_indexed_files(self):
        return []

    def get_chunks_by_path(self, path):
        return []


class SpyEmbedder(WordHashEmbedder):
    def __init__(self) -> None:
        super().__init__(dimension=16)
        self.queries: list[str] = []

    def embed_query(self, text: str) -> list[float]:
        self.queries.append(text)
        return super().embed_query(text)


class RecordingReranker(Reranker):
    def __init__(self) -> None:
        self.calls: list[list[str]] = []

    def rerank(self, query, texts):
        self.calls.append(list(texts))
        return [RerankResult(index=index, relevance_score=0.1 * (index + 1)) for index in range(len(texts))]


class FailingReranker(Reranker):
    def rerank(self, query, texts):
        raise RuntimeError("reranker offline")


class StaticRewriter(QueryRewriter):
    def rewrite(self, query: str) -> str:
        return f"{query}\n\nhypothetical passage"


class CancellingRewriter(QueryRewriter):
    def __init__(self, token: CancellationToken) -> None:
        self.token = token

    def rewrite(self, query: str) -> str:
        self.token.cancel()
        return query


class RetrieverTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.vault_dir = Path(self._tmp.name)
        self.vault = LocalVault(self.vault_dir)
        self.embedder = SpyEmbedder()

    def make_retriever(self, store, **overrides) -> HybridRetriever:
        options = {"store": store, "embedder": self.embedder, "vault": self.vault}
        options.update(overrides)
        return HybridRetriever(**options)


class TestTimeRangeRetrieval(RetrieverTestCase):
    async def test_time_range_returns_only_daily_and_window_notes(self) -> None:
        now = datetime(2024, 1, 3, 12, 0)
        write_note(self.vault_dir, "daily/2024-01-02.md", "daily log")
        write_note(self.vault_dir, "project.md", "project work", ms(datetime(2024, 1, 2, 12, 0)))
        write_note(self.vault_dir, "old.md", "old stuff", ms(datetime(2023, 6, 1)))
        store = FakeStore([make_hit(1, 0.99)])
        retriever = self.make_retriever(store, clock=lambda: now.timestamp())
        time_range = TimeRange(start_time=ms(datetime(2024, 1, 1)), end_time=ms(datetime(2024, 1, 3, 23, 59)))

        documents = await retriever.retrieve("what did I do", RetrieverOptions(time_range=time_range))

        self.assertEqual([document.path for document in documents], ["daily/2024-01-02.md", "project.md"])
        self.assertEqual(documents[0].source, "daily-note")
        self.assertEqual(documents[0].score, 1.0)
        self.assertEqual(documents[0].content, "daily log")
        self.assertEqual(documents[1].source, "time-filtered")
        self.assertAlmostEqual(documents[1].score, 1.0 - 1.0 / 30, places=3)
        self.assertEqual(store.params, [])

    async def test_time_range_window_is_capped(self) -> None:
        start = datetime(2024, 1, 1)
        for index in range(5):
            write_note(self.vault_dir, f"n{index}.md", "text", ms(datetime(2024, 1, 1, 10, index)))
        retriever = self.make_retriever(FakeStore(), clock=lambda: datetime(2024, 1, 2).timestamp())
        time_range = TimeRange(start_time=ms(start), end_time=ms(datetime(2024, 1, 1, 23)))

        documents = await retriever.retrieve("q", RetrieverOptions(time_range=time_range, max_k=3))

        self.assertEqual(len(documents), 3)

    def test_recency_score_is_clamped(self) -> None:
        now = ms(datetime(2024, 3, 1))
        self.assertEqual(recency_score(now, now), 1.0)
        self.assertEqual(recency_score(ms(datetime(2023, 1, 1)), now), 0.3)

    def test_daily_note_titles_are_limited_to_a_year(self) -> None:
        titles = daily_note_titles(TimeRange(start_time=ms(datetime(2020, 1, 1)), end_time=ms(datetime(2024, 1, 1))))
        self.assertLessEqual(len(titles), 366)
        self.assertEqual(titles[-1], "2024-01-01")


class TestHybridRetrieval(RetrieverTestCase):
    async def test_invalid_scores_survive_threshold_filter(self) -> None:
        store = FakeStore([make_hit(1, float("nan")), make_hit(2, 0.9), make_hit(3, 0.1)])
        retriever = self.make_retriever(store)

        documents = await retriever.retrieve("query", RetrieverOptions(min_similarity_score=0.5))

        self.assertEqual([document.chunk_id for document in documents], ["chunk-1", "chunk-2"])
        self.assertFalse(documents[0].has_valid_score)

    async def test_duplicate_chunks_are_merged(self) -> None:
        hit = make_hit(1, 0.9)
        store = FakeStore([hit, hit, make_hit(2, 0.8)])

        documents = await self.make_retriever(store).retrieve("query", RetrieverOptions())

        self.assertEqual([document.chunk_id for document in documents], ["chunk-1", "chunk-2"])

    async def test_limits_follow_max_k_and_return_all(self) -> None:
        store = FakeStore([make_hit(index, 0.9) for index in range(150)])
        retriever = self.make_retriever(store)

        limited = await retriever.retrieve("query", RetrieverOptions(max_k=5))
        everything = await retriever.retrieve("query", RetrieverOptions(max_k=5, return_all=True))

        self.assertEqual(len(limited), 5)
        self.assertEqual(store.params[0].limit, 10)
        self.assertEqual(len(everything), RETURN_ALL_LIMIT)
        self.assertEqual(store.params[1].limit, RETURN_ALL_LIMIT)

    async def test_tag_only_query_skips_embedding(self) -> None:
        store = FakeStore([make_hit(1, 0.9)])
        retriever = self.make_retriever(store)

        await retriever.retrieve("#project", RetrieverOptions(text_weight=0.2))

        self.assertEqual(self.embedder.queries, [])
        self.assertEqual(store.params[0].text_weight, 1.0)
        self.assertIsNone(store.params[0].vector)

    async def test_rewriter_feeds_vector_query_only(self) -> None:
        store = FakeStore([make_hit(1, 0.9)])
        retriever = self.make_retriever(store, rewriter=StaticRewriter())

        await retriever.retrieve("find plans", RetrieverOptions())
        await retriever.retrieve("find plans", RetrieverOptions(skip_rewrite=True))

        self.assertEqual(self.embedder.queries, ["find plans\n\nhypothetical passage", "find plans"])
        self.assertEqual(store.params[0].term, "find plans")

    async def test_reranker_runs_when_scores_are_weak(self) -> None:
        reranker = RecordingReranker()
        store = FakeStore([make_hit(1, 0.4, content="x" * 5000), make_hit(2, 0.3)])
        retriever = self.make_retriever(store, reranker=reranker)

        documents = await retriever.retrieve(
            "query", RetrieverOptions(min_similarity_score=0.0, use_reranker_threshold=0.5)
        )

        self.assertEqual(len(reranker.calls), 1)
        self.assertEqual(len(reranker.calls[0][0]), 3000)
        self.assertEqual([document.chunk_id for document in documents], ["chunk-2", "chunk-1"])
        self.assertAlmostEqual(documents[0].score, 0.2)
        self.assertAlmostEqual(documents[0].rerank_score, 0.2)
        self.assertAlmostEqual(documents[0].original_score, 0.3)

    async def test_reranker_skipped_for_strong_scores(self) -> None:
        reranker = RecordingReranker()
        store = FakeStore([make_hit(1, 0.9), make_hit(2, 0.3)])
        retriever = self.make_retriever(store, reranker=reranker)

        documents = await retriever.retrieve(
            "query", RetrieverOptions(min_similarity_score=0.0, use_reranker_threshold=0.5)
        )

        self.assertEqual(reranker.calls, [])
        self.assertEqual(documents[0].chunk_id, "chunk-1")

    async def test_reranker_runs_when_all_scores_are_invalid(self) -> None:
        reranker = RecordingReranker()
        store = FakeStore([make_hit(1, float("nan")), make_hit(2, float("nan"))])
        retriever = self.make_retriever(store, reranker=reranker)

        documents = await retriever.retrieve("query", RetrieverOptions(use_reranker_threshold=0.5))

        self.assertEqual(len(reranker.calls), 1)
        self.assertTrue(all(document.has_valid_score for document in documents))


class TestRetrievalFailures(RetrieverTestCase):
    async def test_cancelled_token_returns_nothing(self) -> None:
        token = CancellationToken()
        token.cancel()
        store = FakeStore([make_hit(1, 0.9)])

        documents = await self.make_retriever(store).retrieve("query", RetrieverOptions(), token)

        self.assertEqual(documents, [])
        self.assertEqual(store.params, [])

    async def test_cancellation_during_rewrite_returns_nothing(self) -> None:
        token = CancellationToken()
        store = FakeStore([make_hit(1, 0.9)])
        retriever = self.make_retriever(store, rewriter=CancellingRewriter(token))

        documents = await retriever.retrieve("query", RetrieverOptions(), token)

        self.assertEqual(documents, [])
        self.assertEqual(store.params, [])

    async def test_store_failure_returns_nothing(self) -> None:
        store = FakeStore(error=RuntimeError("index unavailable"))

        with self.assertLogs("application.use_cases.hybrid_retrieve", level="ERROR"):
            documents = await self.make_retriever(store).retrieve("query", RetrieverOptions())

        self.assertEqual(documents, [])

    async def test_empty_index_skips_embedding_and_search(self) -> None:
        store = FakeStore([make_hit(1, 0.9)], empty=True)

        documents = await self.make_retriever(store).retrieve("query", RetrieverOptions())

        self.assertEqual(documents, [])
        self.assertEqual(self.embedder.queries, [])
        self.assertEqual(store.params, [])

    async def test_reranker_failure_returns_nothing(self) -> None:
        store = FakeStore([make_hit(1, 0.2)])
        retriever = self.make_retriever(store, reranker=FailingReranker())

        documents = await retriever.retrieve(
            "query", RetrieverOptions(min_similarity_score=0.0, use_reranker_threshold=0.5)
        )

        self.assertEqual(documents, [])


if __name__ == "__main__":
    unittest.main()
