# =============================================================================
# Embedding Service: Batch Vector Generation (Provider-Agnostic)
# =============================================================================
#
# Generates vector embeddings using any OpenAI-compatible embedding API.
#
# Sync only: the consumer is the document pipeline running inside a Celery
# worker. No retry logic here; a failed call surfaces to the pipeline,
# which skips that vector batch and carries on.
#
# The client is created on first use so a context can be built without an
# API key (e.g. for tests or text-only deployments that never embed).
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence

from openai import OpenAI

from freight_agent.config import Settings

logger = logging.getLogger(__name__)


class Embedder:
    """Batch embedding client bound to one model."""

    def __init__(self, settings: Settings) -> None:
        self._api_key = settings.openai_api_key or settings.llm_api_key
        self._base_url = settings.embedding_base_url
        self._model = settings.embedding_model
        self._batch_size = settings.embedding_batch_size
        self._client: OpenAI | None = None

    def _get_client(self) -> OpenAI:
        if self._client is None:
            if not self._api_key:
                raise ValueError(
                    "No API key configured for embeddings. "
                    "Set OPENAI_API_KEY or LLM_API_KEY in .env"
                )
            client_kwargs: dict = {"api_key": self._api_key}
            if self._base_url:
                client_kwargs["base_url"] = self._base_url
            self._client = OpenAI(**client_kwargs)

            logger.info(
                "Initialized embedding client (model=%s, base_url=%s)",
                self._model,
                self._base_url or "https://api.openai.com/v1",
            )
        return self._client

    def embed_batch(
        self,
        texts: Sequence[str],
        batch_size: int | None = None,
    ) -> list[list[float]]:
        """
        Embed `texts`, preserving input order.

        Raises:
            ValueError: If no API key is configured.
            openai.APIError: If the embeddings call fails.
        """
        if not texts:
            return []

        client = self._get_client()
        size = batch_size or self._batch_size
        embeddings: list[list[float]] = [[] for _ in texts]

        for i in range(0, len(texts), size):
            batch = list(texts[i : i + size])
            response = client.embeddings.create(model=self._model, input=batch)

            # Items carry their position; sort so order can never drift
            for item in sorted(response.data, key=lambda x: x.index):
                embeddings[i + item.index] = item.embedding

        logger.debug("Generated %d embeddings (model=%s)", len(texts), self._model)
        return embeddings

    def embed_query(self, text: str) -> list[float]:
        return self.embed_batch([text], batch_size=1)[0]

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
