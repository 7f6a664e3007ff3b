"""In-memory knowledge store for one loaded documentation source.

Holds ``(text, embedding)`` records in discovery order and answers
nearest-neighbour queries by cosine similarity.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

import numpy as np

from ..config import Settings, get_settings
from ..errors import EmbeddingSystemicError, NoValidChunksError
from ..pipelines.chunker import chunk_document
from ..pipelines.crawler import Page
from .embeddings import EmbeddingClient, cosine_similarity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmbeddedRecord:
    text: str
    embedding: np.ndarray

    @property
    def dimension(self) -> int:
        return int(self.embedding.size)


@dataclass(frozen=True)
class ScoredRecord:
    index: int
    text: str
    similarity: float


class KnowledgeStore:
    """Embedded chunks of one knowledge base.

    ``populate`` builds a complete new record list and swaps it in with a
    single assignment, so readers see either the old generation or the new
    one, never a mix.
    """

    def __init__(self, embedder: EmbeddingClient, settings: Optional[Settings] = None):
        self.embedder = embedder
        self.settings = settings or get_settings()
        self._records: List[EmbeddedRecord] = []

    @property
    def records(self) -> List[EmbeddedRecord]:
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)

    @property
    def is_empty(self) -> bool:
        return not self._records

    @property
    def dimension(self) -> Optional[int]:
        return self._records[0].dimension if self._records else None

    def clear(self) -> None:
        self._records = []

    def collect_chunks(self, pages: Iterable[Page]) -> List[str]:
        """Chunk every page and drop fragments too short to embed."""
        texts: List[str] = []
        for page in pages:
            texts.extend(chunk_document(
                page.content,
                self.settings.max_chars_per_chunk,
                self.settings.max_chunks_per_document,
                source=page.url
            ))
        return [text for text in texts if len(text.strip()) >= self.settings.min_chunk_chars]

    def build_records(self, texts: Sequence[str], vectors: Sequence[np.ndarray]) -> List[EmbeddedRecord]:
        """Zip texts with vectors positionally, dropping unusable vectors.

        Raises EmbeddingSystemicError when the dropped share exceeds the
        configured failure rate.
        """
        records: List[EmbeddedRecord] = []
        dimension: Optional[int] = None
        failure_count = 0

        for i, text in enumerate(texts):
            vector = vectors[i] if i < len(vectors) else None
            if vector is None or np.asarray(vector).size == 0:
                failure_count += 1
                continue

            vector = np.asarray(vector, dtype=np.float32)
            if dimension is None:
                dimension = vector.size
            elif vector.size != dimension:
                logger.warning(f"Dropping chunk {i}: dimension {vector.size} != {dimension}")
                failure_count += 1
                continue

            records.append(EmbeddedRecord(text=text, embedding=vector))

        failure_rate = failure_count / len(texts) if texts else 0.0
        if failure_rate > self.settings.max_embedding_failure_rate:
            raise EmbeddingSystemicError(failure_count, len(texts))

        if failure_count:
            logger.warning(f"Dropped {failure_count}/{len(texts)} chunks without a usable embedding")

        return records

    async def populate(self, pages: Sequence[Page]) -> int:
        """Replace the store's contents with the embedded chunks of ``pages``.

        Returns the number of stored records. On failure the store is left
        empty; stale records are never kept.
        """
        self.clear()

        texts = self.collect_chunks(pages)
        if not texts:
            raise NoValidChunksError()

        logger.info(f"Embedding {len(texts)} chunks from {len(pages)} pages")
        vectors = await self.embedder.embed_many(texts)
        records = self.build_records(texts, vectors)

        self._records = records
        logger.info(f"Knowledge store populated with {len(records)} records")
        return len(records)

    def rank(self, query_embedding: Sequence[float]) -> List[ScoredRecord]:
        """Score every record against the query, best first.

        A record whose similarity cannot be computed scores 0 instead of
        failing the whole ranking. Ties keep insertion order.
        """
        records = self._records
        scored: List[ScoredRecord] = []
        for index, record in enumerate(records):
            try:
                similarity = cosine_similarity(query_embedding, record.embedding)
            except Exception as e:
                logger.warning(f"Error calculating similarity for record {index}: {e}")
                similarity = 0.0
            scored.append(ScoredRecord(index=index, text=record.text, similarity=similarity))

        # list.sort is stable
        scored.sort(key=lambda item: item.similarity, reverse=True)
        return scored

    def retrieve(self, query_embedding: Sequence[float],
                 top_k: Optional[int] = None,
                 threshold: Optional[float] = None) -> List[str]:
        """Texts of the most similar records above the threshold, ranked."""
        top_k = self.settings.retrieval_top_k if top_k is None else top_k
        threshold = self.settings.retrieval_threshold if threshold is None else threshold

        ranked = self.rank(query_embedding)
        for position, item in enumerate(ranked[:top_k], 1):
            logger.debug(f"Record {position} | score {item.similarity:.4f} | {item.text[:80]}")

        return [item.text for item in ranked if item.similarity >= threshold][:top_k]
