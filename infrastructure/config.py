"""Dependency wiring and backend selection for the vaultsearch engine."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Literal

from application.services.pattern_filters import PatternFilter
from application.services.rate_limiter import RateLimiter
from application.use_cases.find_relevant_notes import StoreSimilaritySource
from application.use_cases.hybrid_retrieve import HybridRetriever
from application.use_cases.index_vault import DEFAULT_CHECKPOINT_INTERVAL, IndexingPipeline
from domain.interfaces import (
    ChunkSplitter,
    Embedder,
    IndexBackend,
    NoteSimilaritySource,
    QueryRewriter,
    Reranker,
    Retriever,
    VaultFileSystem,
)
from infrastructure.embedding.hash_embedder import WordHashEmbedder
from infrastructure.query.simple_reranker import TermOverlapReranker
from infrastructure.remote.remote_index_backend import RemoteIndexBackend
from infrastructure.remote.remote_related_notes import RemoteSimilaritySource
from infrastructure.remote.remote_retriever import RemoteRetriever
from infrastructure.remote.remote_search_client import (
    DEFAULT_TIMEOUT_MS,
    RemoteSearchClient,
    RemoteSearchConfig,
)
from infrastructure.splitting.fixed_window_splitter import FixedWindowSplitter
from infrastructure.storage.partitioned_chunk_store import DEFAULT_SAVE_DB_DELAY, PartitionedChunkStore
from infrastructure.vault.local_vault import LocalVault
from infrastructure.vault.wikilink_graph import WikiLinkGraph

logger = logging.getLogger(__name__)

EmbedderName = Literal["hash", "sentence_transformers"]
RerankerName = Literal["none", "overlap", "cross_encoder"]
RewriterName = Literal["none", "llm"]
SelectionType = Literal["self_hosted", "semantic", "legacy"]

SELF_HOST_GRACE_PERIOD_MS = 15 * 24 * 60 * 60 * 1000
SELF_HOST_PERMANENT_VALIDATIONS = 3


@dataclass(slots=True)
class ContainerConfig:
    """Configuration for selecting models, storage and the retrieval backend."""

    vault_dir: str = "vault"
    index_dir: str = "index"
    index_identifier: str = "default"
    num_partitions: int = 4
    use_legacy_storage: bool = False
    embedder: EmbedderName = "hash"
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    models_dir: str | None = None
    reranker: RerankerName = "none"
    reranker_model: str = "cross-encoder/ms-marco-MiniLM-L-6-v2"
    rewriter: RewriterName = "none"
    rewriter_provider: str = "ollama"
    rewriter_model: str = "llama3.1"
    embedding_requests_per_second: float = 10.0
    checkpoint_interval: int = DEFAULT_CHECKPOINT_INTERVAL
    chunk_size: int = 6000
    chunk_overlap: int = 600
    inclusions: str = ""
    exclusions: str = ""
    save_db_delay_seconds: float = DEFAULT_SAVE_DB_DELAY
    enable_remote_search: bool = False
    remote_base_url: str = "http://127.0.0.1:8742"
    remote_api_key: str | None = None
    remote_source_id: str | None = None
    remote_timeout_ms: int = DEFAULT_TIMEOUT_MS


def _resolve_model_reference(model_ref: str, cfg: ContainerConfig) -> str:
    """Prefer a prefetched copy under ``models_dir`` when it exists."""
    if cfg.models_dir:
        local_path = Path(cfg.models_dir).expanduser() / model_ref
        if local_path.is_dir():
            return str(local_path)
    return model_ref


def _sentence_transformers_embedder(cfg: ContainerConfig) -> Embedder:
    from infrastructure.embedding.sentence_transformers_embedder import (  # noqa: PLC0415
        SentenceTransformersConfig,
        SentenceTransformersEmbedder,
    )

    return SentenceTransformersEmbedder(
        SentenceTransformersConfig(model_name=_resolve_model_reference(cfg.embedding_model, cfg))
    )


def _cross_encoder_reranker(cfg: ContainerConfig) -> Reranker:
    from infrastructure.query.cross_encoder_reranker import (  # noqa: PLC0415
        CrossEncoderConfig,
        CrossEncoderReranker,
    )

    return CrossEncoderReranker(CrossEncoderConfig(model_name=_resolve_model_reference(cfg.reranker_model, cfg)))


def _llm_rewriter(cfg: ContainerConfig) -> QueryRewriter:
    from infrastructure.query.llm_rewriter import LLMQueryRewriter, LLMRewriterConfig  # noqa: PLC0415

    return LLMQueryRewriter(LLMRewriterConfig(provider=cfg.rewriter_provider, model=cfg.rewriter_model))


_EMBEDDER_FACTORIES: dict[EmbedderName, Callable[[ContainerConfig], Embedder]] = {
    "hash": lambda cfg: WordHashEmbedder(),
    "sentence_transformers": _sentence_transformers_embedder,
}

_RERANKER_FACTORIES: dict[RerankerName, Callable[[ContainerConfig], Reranker | None]] = {
    "none": lambda cfg: None,
    "overlap": lambda cfg: TermOverlapReranker(),
    "cross_encoder": _cross_encoder_reranker,
}

_REWRITER_FACTORIES: dict[RewriterName, Callable[[ContainerConfig], QueryRewriter | None]] = {
    "none": lambda cfg: None,
    "llm": _llm_rewriter,
}


def build_embedder(cfg: ContainerConfig) -> Embedder:
    try:
        factory = _EMBEDDER_FACTORIES[cfg.embedder]
    except KeyError as exc:
        raise ValueError(f"Unknown embedder '{cfg.embedder}'") from exc
    return factory(cfg)


def build_reranker(cfg: ContainerConfig) -> Reranker | None:
    try:
        factory = _RERANKER_FACTORIES[cfg.reranker]
    except KeyError as exc:
        raise ValueError(f"Unknown reranker '{cfg.reranker}'") from exc
    return factory(cfg)


def build_rewriter(cfg: ContainerConfig) -> QueryRewriter | None:
    try:
        factory = _REWRITER_FACTORIES[cfg.rewriter]
    except KeyError as exc:
        raise ValueError(f"Unknown rewriter '{cfg.rewriter}'") from exc
    return factory(cfg)


class SelfHostAccess:
    """Tracks whether remote self-hosted search may be used.

    Three successful validations make access permanent; otherwise access
    stays valid for 15 days after the last successful validation.
    """

    def __init__(
        self,
        validator: Callable[[], bool] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._validator = validator
        self._clock = clock
        self.validation_count = 0
        self.last_validated_ms: int | None = None

    def record_validation(self, success: bool) -> None:
        if not success:
            return
        self.validation_count += 1
        self.last_validated_ms = int(self._clock() * 1000)

    def validate(self) -> bool:
        if self._validator is None:
            return self.is_valid()
        try:
            success = bool(self._validator())
        except Exception:
            logger.exception("Self-host validation failed")
            success = False
        self.record_validation(success)
        return self.is_valid()

    def is_valid(self) -> bool:
        if self.validation_count >= SELF_HOST_PERMANENT_VALIDATIONS:
            return True
        if self.last_validated_ms is None:
            return False
        return int(self._clock() * 1000) - self.last_validated_ms < SELF_HOST_GRACE_PERIOD_MS


@dataclass(slots=True)
class RetrieverSelection:
    retriever: Retriever
    type: SelectionType
    reason: str


class BackendSelector:
    """Chooses the active retriever and index backend, falling back to local storage."""

    def __init__(
        self,
        config: ContainerConfig,
        *,
        vault: VaultFileSystem,
        embedder: Embedder,
        splitter: ChunkSplitter,
        rewriter: QueryRewriter | None = None,
        reranker: Reranker | None = None,
        self_host_access: SelfHostAccess | None = None,
        client_factory: Callable[[RemoteSearchConfig], RemoteSearchClient] = RemoteSearchClient,
    ) -> None:
        self._config = config
        self._vault = vault
        self._embedder = embedder
        self._splitter = splitter
        self._rewriter = rewriter
        self._reranker = reranker
        self._self_host_access = self_host_access or SelfHostAccess()
        self._client_factory = client_factory
        self._rate_limiter = RateLimiter(config.embedding_requests_per_second)
        self._selection: RetrieverSelection | None = None
        self._backend: IndexBackend | None = None
        self._local_store: PartitionedChunkStore | None = None
        self._similarity_source: NoteSimilaritySource | None = None
        self._pipeline: IndexingPipeline | None = None

    @property
    def config(self) -> ContainerConfig:
        return self._config

    @property
    def selection(self) -> RetrieverSelection | None:
        return self._selection

    @property
    def local_store(self) -> PartitionedChunkStore | None:
        return self._local_store

    @property
    def similarity_source(self) -> NoteSimilaritySource | None:
        return self._similarity_source

    @property
    def pipeline(self) -> IndexingPipeline:
        if self._pipeline is None:
            raise RuntimeError("Backend selector is not initialized")
        return self._pipeline

    def get_active_retriever(self) -> Retriever:
        if self._selection is None:
            raise RuntimeError("Backend selector is not initialized")
        return self._selection.retriever

    async def initialize(self) -> RetrieverSelection:
        return await self.select()

    async def select(self) -> RetrieverSelection:
        selection: RetrieverSelection | None = None
        backend: IndexBackend | None = None
        similarity: NoteSimilaritySource | None = None
        store: PartitionedChunkStore | None = None

        if self._config.enable_remote_search:
            if await asyncio.to_thread(self._self_host_access.validate):
                try:
                    selection, backend, similarity = await self._build_remote()
                except Exception:
                    logger.exception("Remote backend construction failed, falling back to local store")
            else:
                logger.warning("Self-host access is not valid, using local store")

        if selection is None and self._config.use_legacy_storage:
            try:
                store = await self._build_store(num_partitions=1)
                selection = RetrieverSelection(
                    retriever=self._build_local_retriever(store),
                    type="legacy",
                    reason="Legacy single-partition storage enabled",
                )
            except Exception:
                logger.exception("Legacy store construction failed, falling back to partitioned store")
                store = None

        if selection is None:
            store = await self._build_store(num_partitions=self._config.num_partitions)
            reason = "Local partitioned store"
            if self._config.enable_remote_search:
                reason = "Fallback to local partitioned store"
            selection = RetrieverSelection(
                retriever=self._build_local_retriever(store),
                type="semantic",
                reason=reason,
            )

        self._local_store = store
        if similarity is None and store is not None:
            similarity = StoreSimilaritySource(store)
        self._similarity_source = similarity
        self._switch_backend(backend or store)
        self._selection = selection
        logger.info("Active retriever: %s (%s)", selection.type, selection.reason)
        return selection

    async def _build_remote(self) -> tuple[RetrieverSelection, IndexBackend, NoteSimilaritySource]:
        client = self._client_factory(
            RemoteSearchConfig(
                base_url=self._config.remote_base_url,
                api_key=self._config.remote_api_key,
                source_id=self._config.remote_source_id,
                timeout_ms=self._config.remote_timeout_ms,
            )
        )
        if not await asyncio.to_thread(client.is_available):
            raise RuntimeError("Remote search service is not available")
        backend = RemoteIndexBackend(client)
        selection = RetrieverSelection(
            retriever=RemoteRetriever(client),
            type="self_hosted",
            reason="Remote hybrid search service enabled and validated",
        )
        return selection, backend, RemoteSimilaritySource(client)

    async def _build_store(self, *, num_partitions: int) -> PartitionedChunkStore:
        store = PartitionedChunkStore(
            index_dir=self._config.index_dir,
            identifier=self._config.index_identifier,
            embedder=self._embedder,
            num_partitions=num_partitions,
            save_db_delay=self._config.save_db_delay_seconds,
        )
        await store.initialize()
        return store

    def _build_local_retriever(self, store: PartitionedChunkStore) -> HybridRetriever:
        return HybridRetriever(
            store=store,
            embedder=self._embedder,
            vault=self._vault,
            rewriter=self._rewriter,
            reranker=self._reranker,
            pattern_filter=self._pattern_filter(),
        )

    def _pattern_filter(self) -> PatternFilter:
        return PatternFilter(self._config.inclusions, self._config.exclusions)

    def _switch_backend(self, backend: IndexBackend | None, *, force: bool = False) -> None:
        assert backend is not None
        if backend is self._backend and self._pipeline is not None and not force:
            return
        if self._pipeline is not None and self._pipeline.is_running:
            logger.info("Backend switched, cancelling the running indexing job")
            self._pipeline.cancel()
        self._backend = backend
        self._pipeline = IndexingPipeline(
            vault=self._vault,
            backend=backend,
            embedder=self._embedder,
            splitter=self._splitter,
            rate_limiter=self._rate_limiter,
            pattern_filter=self._pattern_filter(),
            checkpoint_interval=self._config.checkpoint_interval,
        )

    async def reconfigure(self, new_config: ContainerConfig) -> RetrieverSelection:
        """Apply new settings; the rate limiter is always rebuilt."""
        old_config = self._config
        self._config = new_config
        self._rate_limiter = RateLimiter(new_config.embedding_requests_per_second)
        if _backend_key(old_config) != _backend_key(new_config) or self._selection is None:
            return await self.select()
        if (old_config.inclusions, old_config.exclusions, old_config.checkpoint_interval) != (
            new_config.inclusions,
            new_config.exclusions,
            new_config.checkpoint_interval,
        ):
            self._switch_backend(self._backend, force=True)
            self._selection = replace(
                self._selection,
                retriever=self._build_local_retriever(self._local_store)
                if self._local_store is not None
                else self._selection.retriever,
            )
        elif self._pipeline is not None:
            self._pipeline.rate_limiter = self._rate_limiter
        return self._selection


def _backend_key(cfg: ContainerConfig) -> tuple[object, ...]:
    return (
        cfg.enable_remote_search,
        cfg.use_legacy_storage,
        cfg.num_partitions,
        cfg.index_dir,
        cfg.index_identifier,
        cfg.remote_base_url,
        cfg.remote_api_key,
        cfg.remote_source_id,
        cfg.remote_timeout_ms,
    )


@dataclass(slots=True)
class Container:
    """Simple container bundling concrete infrastructure implementations."""

    vault: VaultFileSystem
    link_graph: WikiLinkGraph
    splitter: ChunkSplitter
    embedder: Embedder
    query_rewriter: QueryRewriter | None
    reranker: Reranker | None
    selector: BackendSelector


def build_default_container(
    config: ContainerConfig | None = None,
    *,
    self_host_access: SelfHostAccess | None = None,
) -> Container:
    """Instantiate the default infrastructure stack; call ``selector.initialize()`` before use."""

    cfg = config or ContainerConfig()
    vault = LocalVault(cfg.vault_dir)
    splitter = FixedWindowSplitter(window_size=cfg.chunk_size, overlap=cfg.chunk_overlap)
    embedder = build_embedder(cfg)
    rewriter = build_rewriter(cfg)
    reranker = build_reranker(cfg)
    selector = BackendSelector(
        cfg,
        vault=vault,
        embedder=embedder,
        splitter=splitter,
        rewriter=rewriter,
        reranker=reranker,
        self_host_access=self_host_access,
    )
    return Container(
        vault=vault,
        link_graph=WikiLinkGraph(vault),
        splitter=splitter,
        embedder=embedder,
        query_rewriter=rewriter,
        reranker=reranker,
        selector=selector,
    )


__all__ = [
    "BackendSelector",
    "Container",
    "ContainerConfig",
    "RetrieverSelection",
    "SelfHostAccess",
    "SELF_HOST_GRACE_PERIOD_MS",
    "build_default_container",
    "build_embedder",
    "build_reranker",
    "build_rewriter",
]
