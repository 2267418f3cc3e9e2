from __future__ import annotations

import logging

from tmr_core.constants import DEFAULT_VECTOR_SIMILARITY
from tmr_core.embeddings.provider_base import EmbeddingProvider
from tmr_core.tm.locale_match import LocaleFilter
from tmr_core.vector.store import VectorFilters, VectorHit, VectorSearchError, VectorStore

logger = logging.getLogger(__name__)


class VectorRetriever:
    def __init__(self, provider: EmbeddingProvider, store: VectorStore) -> None:
        self.provider = provider
        self.store = store

    def retrieve(
        self,
        text: str,
        *,
        project_id: str | None,
        source_locale: LocaleFilter,
        target_locale: LocaleFilter,
        limit: int,
        min_similarity: float = DEFAULT_VECTOR_SIMILARITY,
    ) -> list[VectorHit]:
        """Embed ``text`` and return its nearest stored neighbors.

        Provider failures propagate as ``EmbeddingProviderError`` and store
        failures as ``VectorSearchError``.
        """

        if not text or not text.strip():
            return []

        vector = self.provider.embed(text)
        if len(vector) != self.provider.dimension:
            raise VectorSearchError(
                f"Query embedding has {len(vector)} dimensions, expected {self.provider.dimension}"
            )

        hits = self.store.nearest_neighbors(
            vector,
            VectorFilters(
                project_id=project_id,
                source_locale=source_locale,
                target_locale=target_locale,
            ),
            min_similarity=min_similarity,
            limit=limit,
        )
        logger.info("Vector search returned %d matches (floor %.2f)", len(hits), min_similarity)
        return hits
