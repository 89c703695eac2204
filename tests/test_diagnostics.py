"""Диагностические тесты для локализации падений в инфраструктуре."""
from __future__ import annotations

import logging
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import requests

from infrastructure.embedding.hash_embedder import WordHashEmbedder
from infrastructure.query.llm_rewriter import LLMQueryRewriter, LLMRewriterConfig
from infrastructure.query.simple_reranker import TermOverlapReranker
from infrastructure.splitting.fixed_window_splitter import FixedWindowSplitter, build_chunk_header
from infrastructure.vault.local_vault import LocalVault, split_frontmatter
from infrastructure.vault.wikilink_graph import WikiLinkGraph
from vault_fixtures import write_note


class DiagnosticLoggingMixin:
    def setUp(self) -> None:
        logging.basicConfig(level=logging.DEBUG)


class TestHashEmbedder(DiagnosticLoggingMixin, unittest.TestCase):
    def test_hash_embedder_returns_consistent_dimensions(self) -> None:
        embedder = WordHashEmbedder(dimension=24)
        vectors = embedder.embed_texts(["тестовый текст", "ещё один текст", ""])
        self.assertEqual(len(vectors), 3)
        for vector in vectors:
            self.assertEqual(len(vector), embedder.dimension)
        self.assertEqual(vectors[2][0], 1.0)
        self.assertEqual(embedder.model_id, "hash-words-24")

    def test_same_text_gives_same_vector(self) -> None:
        embedder = WordHashEmbedder()
        self.assertEqual(embedder.embed_query("пример текста"), embedder.embed_texts(["пример текста"])[0])


class TestSentenceTransformers(DiagnosticLoggingMixin, unittest.TestCase):
    def test_sentence_transformers_embedder_optional(self) -> None:
        if os.getenv("VAULTSEARCH_ENABLE_ST"):
            from infrastructure.embedding.sentence_transformers_embedder import (  # noqa: PLC0415
                SentenceTransformersConfig,
                SentenceTransformersEmbedder,
            )

            embedder = SentenceTransformersEmbedder(SentenceTransformersConfig(model_name="sentence-transformers/all-MiniLM-L6-v2"))
            vector = embedder.embed_query("тестовый запрос")
            self.assertEqual(len(vector), len(embedder.embed_texts(["пример"])[0]))
        else:
            self.skipTest("Переменная VAULTSEARCH_ENABLE_ST не установлена.")


class TestSplitter(DiagnosticLoggingMixin, unittest.TestCase):
    def test_windows_overlap(self) -> None:
        splitter = FixedWindowSplitter(window_size=10, overlap=4)
        self.assertEqual(splitter.windows("abcdefghijklmnop"), ["abcdefghij", "ghijklmnop"])

    def test_chunks_carry_header(self) -> None:
        chunks = FixedWindowSplitter().split("Заметка", "текст", {"tags": ["#a"]})
        self.assertEqual(len(chunks), 1)
        self.assertTrue(chunks[0].startswith(build_chunk_header("Заметка", {"tags": ["#a"], "chunk_index": 0})))
        self.assertTrue(chunks[0].endswith("текст"))

    def test_overlap_must_be_smaller_than_window(self) -> None:
        with self.assertRaises(ValueError):
            FixedWindowSplitter(window_size=10, overlap=10)


class TestLocalVault(DiagnosticLoggingMixin, unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.root = Path(self._tmp.name)
        write_note(self.root, "notes/plan.md", "---\ntags: [Work, idea]\nstatus: draft\n---\nТекст #Срочно и [[ideas]]")
        write_note(self.root, "ideas.md", "Идеи, см. [[plan|план]]")
        write_note(self.root, ".obsidian/config.md", "hidden")
        write_note(self.root, "image.txt", "not a note")

    def test_lists_markdown_files_with_relative_paths(self) -> None:
        vault = LocalVault(self.root)
        self.assertEqual([file.path for file in vault.list_files()], ["ideas.md", "notes/plan.md"])
        self.assertIsNone(vault.get_file("missing.md"))
        self.assertTrue(vault.file_exists("ideas.md"))

    def test_tags_merge_frontmatter_and_body(self) -> None:
        vault = LocalVault(self.root)
        self.assertEqual(vault.get_tags("notes/plan.md"), ["#work", "#idea", "#срочно"])
        self.assertEqual(vault.get_frontmatter("notes/plan.md")["status"], "draft")

    def test_split_frontmatter_without_header(self) -> None:
        self.assertEqual(split_frontmatter("просто текст"), ({}, "просто текст"))

    def test_frontmatter_keeps_nested_mappings_and_scalar_types(self) -> None:
        text = "---\nauthor:\n  name: Ann\n  role: editor\ncount: 3\ndraft: false\ncreated: 2024-01-05\n---\nтело"

        properties, body = split_frontmatter(text)

        self.assertEqual(
            properties,
            {"author": {"name": "Ann", "role": "editor"}, "count": 3, "draft": False, "created": "2024-01-05"},
        )
        self.assertEqual(body, "тело")

    def test_invalid_frontmatter_is_ignored(self) -> None:
        properties, body = split_frontmatter("---\ntags: [unclosed\n---\nтело")
        self.assertEqual(properties, {})
        self.assertEqual(body, "тело")

    def test_paths_outside_vault_are_rejected(self) -> None:
        vault = LocalVault(self.root / "notes")

        self.assertIsNone(vault.get_file("../ideas.md"))
        self.assertFalse(vault.file_exists("../ideas.md"))
        with self.assertRaises(FileNotFoundError):
            vault.read_file("../ideas.md")
        self.assertEqual(vault.get_tags("../ideas.md"), [])

    def test_foreign_extensions_are_rejected(self) -> None:
        vault = LocalVault(self.root)
        self.assertIsNone(vault.get_file("image.txt"))
        self.assertEqual(vault.get_file("notes/../ideas.md").path, "ideas.md")

    def test_wikilink_graph(self) -> None:
        graph = WikiLinkGraph(LocalVault(self.root))
        self.assertEqual(graph.get_linked_notes("notes/plan.md"), ["ideas.md"])
        self.assertEqual(graph.get_linked_notes("ideas.md"), ["notes/plan.md"])
        self.assertEqual(graph.get_backlinked_notes("ideas.md"), ["notes/plan.md"])


class TestQueryHelpers(DiagnosticLoggingMixin, unittest.TestCase):
    def test_overlap_reranker_orders_by_shared_terms(self) -> None:
        results = TermOverlapReranker().rerank("apple pie", ["no match", "apple pie recipe", "apple"])
        self.assertEqual([result.index for result in results], [1, 2, 0])

    def test_llm_rewriter_appends_passage(self) -> None:
        response = mock.Mock()
        response.json.return_value = {"response": "  Гипотетический ответ  "}
        with mock.patch("requests.post", return_value=response):
            rewritten = LLMQueryRewriter(LLMRewriterConfig()).rewrite("вопрос")
        self.assertEqual(rewritten, "вопрос\n\nГипотетический ответ")

    def test_llm_rewriter_falls_back_to_query(self) -> None:
        with mock.patch("requests.post", side_effect=requests.ConnectionError("offline")):
            self.assertEqual(LLMQueryRewriter(LLMRewriterConfig()).rewrite("вопрос"), "вопрос")


if __name__ == "__main__":
    unittest.main()
