import asyncio

import pytest

from docchat.errors import EmbeddingSystemicError, LoadEmptyError, NotReadyError
from docchat.server.generation import NO_ANSWER_MESSAGE
from docchat.server.pipeline import PipelineState, RetrievalPipeline

from fakes import FakeCrawler, FakeEmbedder, FakeGenerator, make_page

DOCS_URL = "https://example.com/docs/"


def _pipeline(settings, crawler, embedder=None, generator=None) -> RetrievalPipeline:
    return RetrievalPipeline(
        embedder or FakeEmbedder(),
        generator or FakeGenerator(),
        settings=settings,
        crawler=crawler,
    )


async def _answer(pipeline: RetrievalPipeline, query: str) -> str:
    return "".join([fragment async for fragment in pipeline.ask(query)])


class BlockingCrawler(FakeCrawler):
    """Crawler that waits for ``release`` before returning its pages."""

    def __init__(self, pages):
        super().__init__(pages)
        self.release = asyncio.Event()

    async def crawl(self, seed_url, max_pages=None, on_progress=None):
        await self.release.wait()
        return await super().crawl(seed_url, max_pages, on_progress)


class TestLoad:

    @pytest.mark.asyncio
    async def test_successful_load(self, settings, fake_crawler):
        pipeline = _pipeline(settings, fake_crawler)
        assert pipeline.state is PipelineState.IDLE

        result = await pipeline.load(DOCS_URL)

        assert pipeline.state is PipelineState.READY
        assert pipeline.is_ready
        assert result.page_count == 2
        assert result.record_count == len(pipeline.store)
        assert pipeline.documentation_url == DOCS_URL
        assert fake_crawler.calls == [DOCS_URL]

    @pytest.mark.asyncio
    async def test_progress_is_forwarded(self, settings, fake_crawler):
        pipeline = _pipeline(settings, fake_crawler)
        seen = []

        await pipeline.load(DOCS_URL, on_progress=lambda current, total, title: seen.append(title))

        assert seen == ["Introduction", "Crawling"]

    @pytest.mark.asyncio
    async def test_empty_crawl_returns_to_idle(self, settings):
        pipeline = _pipeline(settings, FakeCrawler([]))

        with pytest.raises(LoadEmptyError, match="Unable to scrape any documentation"):
            await pipeline.load(DOCS_URL)

        assert pipeline.state is PipelineState.IDLE
        assert pipeline.store is None

    @pytest.mark.asyncio
    async def test_systemic_embedding_failure_returns_to_idle(self, settings, doc_pages):
        embedder = FakeEmbedder(vector_for=lambda text: [])
        pipeline = _pipeline(settings, FakeCrawler(doc_pages), embedder=embedder)

        with pytest.raises(EmbeddingSystemicError):
            await pipeline.load(DOCS_URL)

        assert pipeline.state is PipelineState.IDLE
        assert pipeline.store is None

    @pytest.mark.asyncio
    async def test_failed_reload_drops_previous_knowledge(self, settings, doc_pages):
        crawler = FakeCrawler(doc_pages)
        pipeline = _pipeline(settings, crawler)
        await pipeline.load(DOCS_URL)

        crawler.pages = []
        with pytest.raises(LoadEmptyError):
            await pipeline.load("https://example.com/other/")

        assert pipeline.state is PipelineState.IDLE
        with pytest.raises(NotReadyError):
            pipeline.ask("still there?")

    @pytest.mark.asyncio
    async def test_reload_replaces_knowledge_and_clears_history(self, settings, doc_pages):
        crawler = FakeCrawler(doc_pages)
        pipeline = _pipeline(settings, crawler)
        await pipeline.load(DOCS_URL)
        await _answer(pipeline, "What are embeddings?")
        assert pipeline.history

        crawler.pages = [make_page("https://example.com/docs/new", "Brand new documentation about streaming answers.")]
        await pipeline.load(DOCS_URL)

        assert pipeline.history == []
        assert [r.text for r in pipeline.store.records] == ["Brand new documentation about streaming answers."]

    @pytest.mark.asyncio
    async def test_questions_rejected_while_loading(self, settings, doc_pages):
        crawler = BlockingCrawler(doc_pages)
        pipeline = _pipeline(settings, crawler)

        task = asyncio.create_task(pipeline.load(DOCS_URL))
        await asyncio.sleep(0)
        assert pipeline.state is PipelineState.LOADING
        with pytest.raises(NotReadyError):
            pipeline.ask("too early")

        crawler.release.set()
        await task
        assert pipeline.state is PipelineState.READY

    @pytest.mark.asyncio
    async def test_superseded_load_is_discarded(self, settings):
        old_pages = [make_page("https://example.com/docs/old", "Old documentation that should never become active.")]
        new_pages = [make_page("https://example.com/docs/new", "New documentation that wins the race to load.")]
        slow_crawler = BlockingCrawler(old_pages)
        pipeline = _pipeline(settings, slow_crawler)

        slow_load = asyncio.create_task(pipeline.load("https://example.com/docs/old"))
        await asyncio.sleep(0)

        pipeline.crawler = FakeCrawler(new_pages)
        await pipeline.load("https://example.com/docs/new")

        slow_crawler.release.set()
        await slow_load

        assert pipeline.state is PipelineState.READY
        assert pipeline.documentation_url == "https://example.com/docs/new"
        assert [r.text for r in pipeline.store.records] == ["New documentation that wins the race to load."]


class TestAsk:

    @pytest.mark.asyncio
    async def test_ask_before_load_is_rejected(self, settings, fake_crawler):
        embedder = FakeEmbedder()
        pipeline = _pipeline(settings, fake_crawler, embedder=embedder)

        with pytest.raises(NotReadyError, match="Please load documentation first"):
            pipeline.ask("What is this?")

        assert embedder.embed_one_calls == []
        with pytest.raises(NotReadyError):
            await pipeline.retrieve_context("What is this?")

    @pytest.mark.asyncio
    async def test_answer_is_streamed(self, settings, fake_crawler):
        generator = FakeGenerator(["Embeddings ", "are ", "vectors."])
        pipeline = _pipeline(settings, fake_crawler, generator=generator)
        await pipeline.load(DOCS_URL)

        fragments = [fragment async for fragment in pipeline.ask("What are embeddings?")]

        assert fragments == ["Embeddings ", "are ", "vectors."]
        assert generator.calls[0]["query"] == "What are embeddings?"
        assert generator.calls[0]["knowledge_records"]

    @pytest.mark.asyncio
    async def test_retrieve_context_ranks_relevant_records(self, settings, doc_pages):
        def vector_for(text):
            return [1.0, 0.0] if "crawler" in text else [0.0, 1.0]

        embedder = FakeEmbedder(vector_for=vector_for, query_vector=[1.0, 0.0])
        pipeline = _pipeline(settings, FakeCrawler(doc_pages), embedder=embedder)
        await pipeline.load(DOCS_URL)

        context = await pipeline.retrieve_context("How does crawling work?")

        assert context == ["The crawler visits every documentation page once. It follows links breadth first."]

    @pytest.mark.asyncio
    async def test_history_is_recorded_and_passed(self, settings, fake_crawler):
        generator = FakeGenerator(["First answer."])
        pipeline = _pipeline(settings, fake_crawler, generator=generator)
        await pipeline.load(DOCS_URL)

        await _answer(pipeline, "First question?")
        generator.fragments = ["Second answer."]
        await _answer(pipeline, "Second question?")

        assert generator.calls[0]["history"] == []
        assert generator.calls[1]["history"] == [("user", "First question?"), ("assistant", "First answer.")]
        assert [(m.role, m.content) for m in pipeline.history][-2:] == [
            ("user", "Second question?"), ("assistant", "Second answer.")
        ]

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, settings, fake_crawler):
        pipeline = _pipeline(settings, fake_crawler)
        await pipeline.load(DOCS_URL)

        for i in range(8):
            await _answer(pipeline, f"Question {i}?")

        assert len(pipeline.history) == settings.max_conversation_history
        assert pipeline.history[-2].content == "Question 7?"

    @pytest.mark.asyncio
    async def test_empty_answer_falls_back(self, settings, fake_crawler):
        pipeline = _pipeline(settings, fake_crawler, generator=FakeGenerator([]))
        await pipeline.load(DOCS_URL)

        assert await _answer(pipeline, "Anything?") == NO_ANSWER_MESSAGE

    @pytest.mark.asyncio
    async def test_reset_returns_to_idle(self, settings, fake_crawler):
        pipeline = _pipeline(settings, fake_crawler)
        await pipeline.load(DOCS_URL)

        pipeline.reset()

        assert pipeline.state is PipelineState.IDLE
        assert pipeline.store is None
        with pytest.raises(NotReadyError):
            pipeline.ask("Gone?")
