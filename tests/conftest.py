"""Shared fixtures for DocChat tests.

Nothing here touches the network: the crawler, embedding service and
generation service are all replaced with in-memory fakes.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import pytest

from docchat.config import Settings

from fakes import FakeCrawler, FakeEmbedder, FakeGenerator, make_page


@pytest.fixture
def settings():
    """Settings with deterministic, test-friendly values."""
    return Settings(
        api_key="test-key",
        embedding_batch_size=100,
        crawl_concurrency=5,
        crawl_delay=0.0,
        crawl_max_retries=0,
        max_pages=100,
        retrieval_top_k=5,
        retrieval_threshold=0.5,
    )


@pytest.fixture
def doc_pages():
    return [
        make_page("https://example.com/docs/intro",
                  "Embeddings convert text into vectors. Vectors can be compared with cosine similarity.",
                  title="Introduction"),
        make_page("https://example.com/docs/crawl",
                  "The crawler visits every documentation page once. It follows links breadth first.",
                  title="Crawling"),
    ]


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def fake_generator():
    return FakeGenerator()


@pytest.fixture
def fake_crawler(doc_pages):
    return FakeCrawler(doc_pages)


@pytest.fixture
def openai_embeddings_client():
    """Mock AsyncOpenAI client whose embeddings echo text length."""

    async def create(model, input):
        texts = [input] if isinstance(input, str) else input
        return SimpleNamespace(data=[
            SimpleNamespace(index=i, embedding=[float(len(text)), 1.0, 0.0])
            for i, text in enumerate(texts)
        ])

    client = Mock()
    client.embeddings.create = AsyncMock(side_effect=create)
    client.close = AsyncMock()
    return client
