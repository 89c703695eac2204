"""Скачать модели эмбеддингов и реранкинга в models_dir для работы без сети."""
from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

from sentence_transformers import CrossEncoder, SentenceTransformer

from infrastructure.config import ContainerConfig, _resolve_model_reference
from ui.logging_utils import setup_logging

logger = logging.getLogger(__name__)

_DEFAULTS = ContainerConfig()


def _already_cached(model_name: str, cfg: ContainerConfig) -> bool:
    return _resolve_model_reference(model_name, cfg) != model_name


def prefetch(model_name: str, cfg: ContainerConfig, *, cross_encoder: bool = False) -> Path:
    assert cfg.models_dir is not None
    target_dir = Path(cfg.models_dir).expanduser() / model_name
    if _already_cached(model_name, cfg):
        logger.info("Модель %s уже сохранена в %s", model_name, target_dir)
        return target_dir
    model = CrossEncoder(model_name) if cross_encoder else SentenceTransformer(model_name)
    target_dir.parent.mkdir(parents=True, exist_ok=True)
    model.save(str(target_dir))
    logger.info("Модель %s сохранена в %s", model_name, target_dir)
    return target_dir


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--models-dir",
        default=os.getenv("VAULTSEARCH_MODELS_DIR", "models"),
        help="Директория для локальных моделей (по умолчанию: $VAULTSEARCH_MODELS_DIR или models)",
    )
    parser.add_argument(
        "--embedding-model",
        action="append",
        dest="embedding_models",
        help=f"ID embedding-модели, можно повторять (по умолчанию: {_DEFAULTS.embedding_model})",
    )
    parser.add_argument(
        "--reranker-model",
        default=_DEFAULTS.reranker_model,
        help=f"ID cross-encoder модели (по умолчанию: {_DEFAULTS.reranker_model})",
    )
    parser.add_argument("--skip-reranker", action="store_true", help="Не скачивать cross-encoder модель.")
    return parser.parse_args()


def main() -> None:
    setup_logging()
    args = parse_args()
    cfg = ContainerConfig(models_dir=args.models_dir)
    for model_name in args.embedding_models or [cfg.embedding_model]:
        prefetch(model_name, cfg)
    if not args.skip_reranker:
        prefetch(args.reranker_model, cfg, cross_encoder=True)


if __name__ == "__main__":
    main()
