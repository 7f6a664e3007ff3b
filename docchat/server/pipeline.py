"""Retrieval pipeline for one chat session.

Load phase: crawl -> chunk -> embed -> populate a fresh knowledge store.
Query phase: embed the question -> rank stored chunks -> generate an answer.

The session moves IDLE -> LOADING -> READY, back to LOADING on reload and to
IDLE when a load fails. Questions are only answered in READY.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, List, Optional, Protocol, Sequence

from ..config import Settings, get_settings
from ..errors import LoadEmptyError, NotReadyError
from ..indexer.embeddings import EmbeddingClient
from ..indexer.knowledge_store import KnowledgeStore
from ..observability.logging import log_performance
from ..pipelines.crawler import DocsCrawler, ProgressCallback
from .generation import NO_ANSWER_MESSAGE, iter_result_text, normalize_result

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"


class AnswerGenerator(Protocol):
    async def generate(self, query: str, knowledge_records: Sequence[str], history: Sequence): ...


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ChatMessage:
    role: str
    content: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: int = field(default_factory=_now_ms)


@dataclass(frozen=True)
class LoadResult:
    url: str
    page_count: int
    record_count: int


class RetrievalPipeline:
    """Owns one session's knowledge base and conversation."""

    def __init__(self,
                 embedder: EmbeddingClient,
                 generator: AnswerGenerator,
                 settings: Optional[Settings] = None,
                 crawler: Optional[DocsCrawler] = None):
        self.settings = settings or get_settings()
        self.embedder = embedder
        self.generator = generator
        self.crawler = crawler or DocsCrawler(settings=self.settings)
        self._state = PipelineState.IDLE
        self._store: Optional[KnowledgeStore] = None
        self._messages: List[ChatMessage] = []
        self._load_generation = 0
        self.documentation_url: Optional[str] = None

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is PipelineState.READY and self._store is not None

    @property
    def store(self) -> Optional[KnowledgeStore]:
        return self._store

    @property
    def history(self) -> List[ChatMessage]:
        """Most recent conversation turns, oldest first."""
        return self._messages[-self.settings.max_conversation_history:]

    def _remember(self, message: ChatMessage) -> None:
        self._messages.append(message)
        del self._messages[:-self.settings.max_conversation_history]

    def reset(self) -> None:
        """Drop the knowledge base and conversation."""
        self._load_generation += 1
        self._store = None
        self._messages = []
        self.documentation_url = None
        self._state = PipelineState.IDLE

    @log_performance(threshold_ms=30000)
    async def load(self, url: str, on_progress: Optional[ProgressCallback] = None) -> LoadResult:
        """Build a new knowledge base from the documentation at ``url``.

        The previous knowledge base stops answering immediately; the new one
        is installed only after it is fully populated. Any failure leaves the
        pipeline IDLE with no knowledge base.
        """
        self._load_generation += 1
        generation = self._load_generation
        self._state = PipelineState.LOADING
        self._messages = []
        self.documentation_url = None

        logger.info(f"Loading documentation from {url}")
        try:
            pages = await self.crawler.crawl(url, self.settings.max_pages, on_progress)
            if not pages:
                raise LoadEmptyError()

            store = KnowledgeStore(self.embedder, self.settings)
            record_count = await store.populate(pages)
        except Exception:
            if generation == self._load_generation:
                self._store = None
                self._state = PipelineState.IDLE
            raise

        if generation != self._load_generation:
            # A newer load or reset took over while this one was in flight
            logger.info(f"Discarding superseded load of {url}")
            return LoadResult(url=url, page_count=len(pages), record_count=record_count)

        self._store = store
        self.documentation_url = url
        self._state = PipelineState.READY
        logger.info(f"Loaded {len(pages)} pages into {record_count} knowledge records")
        return LoadResult(url=url, page_count=len(pages), record_count=record_count)

    def _ready_store(self) -> KnowledgeStore:
        if not self.is_ready:
            raise NotReadyError()
        return self._store

    async def retrieve_context(self, query: str) -> List[str]:
        """Ranked documentation passages relevant to ``query``."""
        store = self._ready_store()
        query_embedding = await self.embedder.embed_one(query)
        return store.retrieve(query_embedding)

    def ask(self, query: str) -> AsyncIterator[str]:
        """Answer a question as a lazy stream of text fragments.

        Raises NotReadyError right away when no knowledge base is loaded.
        """
        store = self._ready_store()
        return self._answer(store, query)

    async def _answer(self, store: KnowledgeStore, query: str) -> AsyncIterator[str]:
        history = self.history
        self._remember(ChatMessage(role="user", content=query))

        query_embedding = await self.embedder.embed_one(query)
        knowledge_records = store.retrieve(query_embedding)
        logger.info(f"Retrieved {len(knowledge_records)} knowledge records for query")

        raw = await self.generator.generate(query, knowledge_records, history)
        parts: List[str] = []
        async for fragment in iter_result_text(normalize_result(raw)):
            parts.append(fragment)
            yield fragment

        if parts:
            self._remember(ChatMessage(role="assistant", content="".join(parts)))
        else:
            yield NO_ANSWER_MESSAGE
