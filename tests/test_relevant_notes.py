import tempfile
import unittest
from pathlib import Path

from application.use_cases.find_relevant_notes import (
    RelevanceGraphScorer,
    link_bonus,
    merged_score,
    rank_related,
    similarity_category,
)
from domain.entities import Chunk, RelatedNote
from domain.interfaces import LinkGraph
from infrastructure.embedding.hash_embedder import WordHashEmbedder
from infrastructure.storage.partitioned_chunk_store import PartitionedChunkStore


class StaticLinkGraph(LinkGraph):
    def __init__(self, outgoing: dict[str, list[str]]) -> None:
        self._outgoing = outgoing

    def get_linked_notes(self, path: str) -> list[str]:
        return list(self._outgoing.get(path, []))

    def get_backlinked_notes(self, path: str) -> list[str]:
        return [source for source, targets in self._outgoing.items() if path in targets]


class TestRanking(unittest.TestCase):
    def test_similarity_tier_dominates_merged_score(self) -> None:
        notes = [
            RelatedNote(path="low.md", title="low", score=0.95, similarity_score=0.5),
            RelatedNote(path="high.md", title="high", score=0.75, similarity_score=0.8),
            RelatedNote(path="medium.md", title="medium", score=0.9, similarity_score=0.6),
        ]

        ranked = rank_related(notes)

        self.assertEqual([note.path for note in ranked], ["high.md", "medium.md", "low.md"])
        self.assertEqual([note.category for note in ranked], [3, 2, 1])

    def test_merged_score_within_tier(self) -> None:
        notes = [
            RelatedNote(path="a.md", title="a", score=0.4, similarity_score=0.3),
            RelatedNote(path="b.md", title="b", score=0.5, similarity_score=0.2),
        ]
        self.assertEqual([note.path for note in rank_related(notes)], ["b.md", "a.md"])

    def test_link_bonus(self) -> None:
        self.assertAlmostEqual(link_bonus(True, True), 0.3)
        self.assertAlmostEqual(link_bonus(True, False), 0.24)
        self.assertAlmostEqual(link_bonus(False, True), 0.24)
        self.assertEqual(link_bonus(False, False), 0.0)
        self.assertAlmostEqual(merged_score(0.5, True, True), 0.65)
        self.assertAlmostEqual(merged_score(0.5, False, False), 0.35)

    def test_similarity_category_boundaries(self) -> None:
        self.assertEqual(similarity_category(0.71), 3)
        self.assertEqual(similarity_category(0.7), 2)
        self.assertEqual(similarity_category(0.56), 2)
        self.assertEqual(similarity_category(0.55), 1)


class TestRelevanceGraphScorer(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.embedder = WordHashEmbedder(dimension=64)
        self.store = PartitionedChunkStore(index_dir=Path(self._tmp.name), embedder=self.embedder)
        await self.store.initialize()
        await self.add("source.md", "apple orchard harvest", chunk_index=0)
        await self.add("source.md", "engine repair manual", chunk_index=1)
        await self.add("fruit.md", "apple orchard harvest")
        await self.add("motor.md", "engine repair manual")
        await self.add("linked.md", "quiet winter evening")
        await self.add("photo.png", "apple orchard harvest")

    async def add(self, path: str, content: str, chunk_index: int = 0) -> None:
        await self.store.upsert(
            Chunk(
                id=f"{path}-{chunk_index}",
                path=path,
                title=path.rsplit(".", 1)[0],
                content=content,
                embedding=self.embedder.embed_texts([content])[0],
                metadata={"chunk_index": chunk_index},
            )
        )

    async def test_each_chunk_contributes_its_best_match(self) -> None:
        scorer = RelevanceGraphScorer(store=self.store, link_graph=StaticLinkGraph({}))

        similarity = await scorer.similarity_scores("source.md")

        self.assertAlmostEqual(similarity["fruit.md"], 1.0, places=5)
        self.assertAlmostEqual(similarity["motor.md"], 1.0, places=5)
        self.assertNotIn("source.md", similarity)

    async def test_find_related_combines_links_and_similarity(self) -> None:
        graph = StaticLinkGraph(
            {
                "source.md": ["linked.md", "orphan.md"],
                "linked.md": ["source.md"],
            }
        )
        scorer = RelevanceGraphScorer(store=self.store, link_graph=graph)

        notes = await scorer.find_related("source.md")

        by_path = {note.path: note for note in notes}
        self.assertNotIn("source.md", by_path)
        self.assertNotIn("photo.png", by_path)
        self.assertEqual({notes[0].path, notes[1].path}, {"fruit.md", "motor.md"})
        self.assertTrue(by_path["linked.md"].has_outgoing_links)
        self.assertTrue(by_path["linked.md"].has_backlinks)
        self.assertAlmostEqual(
            by_path["linked.md"].score,
            merged_score(by_path["linked.md"].similarity_score, True, True),
        )
        self.assertEqual(by_path["orphan.md"].similarity_score, 0.0)
        self.assertAlmostEqual(by_path["orphan.md"].score, 0.24)
        self.assertFalse(by_path["orphan.md"].has_backlinks)


class TestLinkOnlyScoring(unittest.IsolatedAsyncioTestCase):
    async def test_without_similarity_source_links_are_ranked(self) -> None:
        graph = StaticLinkGraph({"source.md": ["linked.md"], "fan.md": ["source.md"]})
        scorer = RelevanceGraphScorer(link_graph=graph)

        notes = await scorer.find_related("source.md")

        self.assertEqual(await scorer.similarity_scores("source.md"), {})
        self.assertEqual({note.path for note in notes}, {"linked.md", "fan.md"})
        for note in notes:
            self.assertEqual(note.similarity_score, 0.0)
            self.assertAlmostEqual(note.score, 0.24)


if __name__ == "__main__":
    unittest.main()
