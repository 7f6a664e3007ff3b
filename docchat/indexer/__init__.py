"""Embedding and retrieval for DocChat."""

from .embeddings import EmbeddingClient, cosine_similarity, to_vector
from .knowledge_store import EmbeddedRecord, KnowledgeStore, ScoredRecord

__all__ = [
    'EmbeddingClient',
    'cosine_similarity',
    'to_vector',
    'EmbeddedRecord',
    'KnowledgeStore',
    'ScoredRecord'
]
