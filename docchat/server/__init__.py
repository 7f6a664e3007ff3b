"""Session pipeline, answer generation and WebSocket transport for DocChat."""

from .generation import (
    ContentResult,
    GenerationClient,
    GenerationResult,
    StreamResult,
    TextResult,
    iter_result_text,
    normalize_result
)
from .pipeline import ChatMessage, LoadResult, PipelineState, RetrievalPipeline
from .rag_api import ChatSession, create_app

__all__ = [
    'ContentResult',
    'GenerationClient',
    'GenerationResult',
    'StreamResult',
    'TextResult',
    'iter_result_text',
    'normalize_result',
    'ChatMessage',
    'LoadResult',
    'PipelineState',
    'RetrievalPipeline',
    'ChatSession',
    'create_app'
]
