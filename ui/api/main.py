"""FastAPI layer that exposes indexing and retrieval operations."""
from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Query as FastAPIQuery
from pydantic import BaseModel

from application.use_cases.find_relevant_notes import RelevanceGraphScorer
from domain.entities import RetrieverOptions
from infrastructure.config import Container, ContainerConfig, build_default_container
from ui.logging_utils import setup_logging


class DocumentPayload(BaseModel):
    path: str
    title: str
    content: str
    score: float | None
    rerank_score: float | None = None
    source: str


class SearchResponse(BaseModel):
    query: str
    backend: str
    results: list[DocumentPayload]


class IndexResponse(BaseModel):
    status: str
    indexed: int
    total: int
    errors: list[str]


class RelatedNotePayload(BaseModel):
    path: str
    title: str
    score: float
    similarity_score: float
    has_outgoing_links: bool
    has_backlinks: bool


class HealthResponse(BaseModel):
    status: str
    backend: str
    indexing: bool


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


def _config_from_env() -> ContainerConfig:
    defaults = ContainerConfig()
    return ContainerConfig(
        vault_dir=os.getenv("VAULTSEARCH_VAULT_DIR", defaults.vault_dir),
        index_dir=os.getenv("VAULTSEARCH_INDEX_DIR", defaults.index_dir),
        embedder=os.getenv("VAULTSEARCH_EMBEDDER", defaults.embedder),  # type: ignore[arg-type]
        embedding_model=os.getenv("VAULTSEARCH_EMBEDDING_MODEL", defaults.embedding_model),
        models_dir=os.getenv("VAULTSEARCH_MODELS_DIR"),
        reranker=os.getenv("VAULTSEARCH_RERANKER", defaults.reranker),  # type: ignore[arg-type]
        rewriter=os.getenv("VAULTSEARCH_REWRITER", defaults.rewriter),  # type: ignore[arg-type]
        inclusions=os.getenv("VAULTSEARCH_INCLUSIONS", ""),
        exclusions=os.getenv("VAULTSEARCH_EXCLUSIONS", ""),
        use_legacy_storage=_env_flag("VAULTSEARCH_LEGACY_STORAGE"),
        enable_remote_search=_env_flag("VAULTSEARCH_REMOTE_SEARCH"),
        remote_base_url=os.getenv("VAULTSEARCH_REMOTE_URL", defaults.remote_base_url),
        remote_api_key=os.getenv("VAULTSEARCH_REMOTE_API_KEY"),
        remote_source_id=os.getenv("VAULTSEARCH_REMOTE_SOURCE_ID"),
    )


def create_app(container: Container | None = None) -> FastAPI:
    state: dict[str, Container] = {}

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        setup_logging()
        active = container or build_default_container(_config_from_env())
        await active.selector.initialize()
        state["container"] = active
        autosave: asyncio.Task[None] | None = None
        store = active.selector.local_store
        if store is not None:
            autosave = asyncio.create_task(store.run_autosave())
        try:
            yield
        finally:
            if autosave is not None:
                autosave.cancel()
            if active.selector.local_store is not None:
                await active.selector.local_store.save_if_dirty()

    app = FastAPI(title="vaultsearch API", lifespan=lifespan)

    @app.get("/search", response_model=SearchResponse)
    async def search_endpoint(
        q: str = FastAPIQuery(..., description="User query"),
        max_k: int = FastAPIQuery(10, ge=1, le=100),
        min_score: float = FastAPIQuery(0.1),
    ) -> SearchResponse:
        active = state["container"]
        retriever = active.selector.get_active_retriever()
        documents = await retriever.retrieve(q, RetrieverOptions(max_k=max_k, min_similarity_score=min_score))
        selection = active.selector.selection
        return SearchResponse(
            query=q,
            backend=selection.type if selection else "unknown",
            results=[
                DocumentPayload(
                    path=document.path,
                    title=document.title,
                    content=document.content,
                    score=document.score if document.has_valid_score else None,
                    rerank_score=document.rerank_score,
                    source=document.source,
                )
                for document in documents
            ],
        )

    @app.post("/index", response_model=IndexResponse)
    async def index_endpoint(overwrite: bool = False) -> IndexResponse:
        pipeline = state["container"].selector.pipeline
        if pipeline.is_running:
            raise HTTPException(status_code=409, detail="Indexing already in progress")
        await pipeline.index_vault(overwrite=overwrite)
        state["container"].link_graph.refresh()
        report = pipeline.last_report
        assert report is not None
        return IndexResponse(
            status=report.status,
            indexed=report.indexed,
            total=report.total,
            errors=[f"{error.path}: {error.reason}" for error in report.errors],
        )

    @app.post("/reindex", response_model=IndexResponse)
    async def reindex_endpoint(path: str) -> IndexResponse:
        pipeline = state["container"].selector.pipeline
        written = await pipeline.reindex_file(path)
        return IndexResponse(status="completed", indexed=1 if written else 0, total=1, errors=[])

    @app.get("/related", response_model=list[RelatedNotePayload])
    async def related_endpoint(path: str) -> list[RelatedNotePayload]:
        active = state["container"]
        scorer = RelevanceGraphScorer(
            link_graph=active.link_graph,
            similarity_source=active.selector.similarity_source,
        )
        notes = await scorer.find_related(path)
        return [
            RelatedNotePayload(
                path=note.path,
                title=note.title,
                score=note.score,
                similarity_score=note.similarity_score,
                has_outgoing_links=note.has_outgoing_links,
                has_backlinks=note.has_backlinks,
            )
            for note in notes
        ]

    @app.get("/health", response_model=HealthResponse)
    async def health_endpoint() -> HealthResponse:
        selector = state["container"].selector
        selection = selector.selection
        return HealthResponse(
            status="ok" if selection is not None else "initializing",
            backend=selection.type if selection else "unknown",
            indexing=selector.pipeline.is_running if selection is not None else False,
        )

    return app


app = create_app()
