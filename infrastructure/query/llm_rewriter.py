"""LLM-powered HyDE query rewriter."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass

import requests

from domain.interfaces import QueryRewriter

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LLMRewriterConfig:
    provider: str = "ollama"
    model: str = "llama3.1"
    max_passage_length: int = 1200
    timeout: int = 60
    ollama_url: str = "http://localhost:11434"
    openai_api_key: str | None = None
    openai_url: str = "https://api.openai.com/v1/chat/completions"


_PROMPT = (
    "Write a short passage from a personal note that would answer the question below. "
    "Do not mention that the passage is hypothetical.\n\n"
    "Question: {query}"
)


class LLMQueryRewriter(QueryRewriter):
    """Generate a hypothetical answer passage used for semantic search."""

    def __init__(self, config: LLMRewriterConfig) -> None:
        self._config = config

    def rewrite(self, query: str) -> str:
        try:
            raw = self._request_passage(query)
        except Exception:  # pragma: no cover - best effort
            logger.exception("LLM query rewriting failed.")
            return query

        passage = raw.strip()[: self._config.max_passage_length]
        if not passage:
            return query
        return f"{query}\n\n{passage}"

    def _request_passage(self, text: str) -> str:
        prompt = _PROMPT.format(query=text)
        if self._config.provider == "openai":
            return self._call_openai(prompt)
        return self._call_ollama(prompt)

    def _call_ollama(self, prompt: str) -> str:
        response = requests.post(
            f"{self._config.ollama_url}/api/generate",
            json={"model": self._config.model, "prompt": prompt, "stream": False},
            timeout=self._config.timeout,
        )
        response.raise_for_status()
        payload = response.json()
        return payload.get("response", "")

    def _call_openai(self, prompt: str) -> str:
        api_key = self._config.openai_api_key or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise RuntimeError("Missing OpenAI API key.")
        response = requests.post(
            self._config.openai_url,
            headers={"Authorization": f"Bearer {api_key}"},
            json={
                "model": self._config.model,
                "messages": [
                    {"role": "system", "content": "You write concise hypothetical note passages."},
                    {"role": "user", "content": prompt},
                ],
                "temperature": 0.3,
            },
            timeout=self._config.timeout,
        )
        response.raise_for_status()
        payload = response.json()
        return payload["choices"][0]["message"]["content"]


__all__ = ["LLMQueryRewriter", "LLMRewriterConfig"]
