"""Tests for the DocChat WebSocket API.

Tests cover:
- Health endpoint
- Connection handshake
- Documentation loading events and progress
- Streaming chat events
- Loads running alongside chat and newer loads
- Error reporting for bad input and unloaded sessions
"""

import asyncio
import json
from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketState

from docchat.errors import LoadEmptyError, NotReadyError
from docchat.server.pipeline import PipelineState, RetrievalPipeline
from docchat.server.rag_api import BAD_MESSAGE, ChatSession, create_app

from fakes import FakeCrawler, FakeEmbedder, FakeGenerator

DOCS_URL = "https://example.com/docs/"


def _receive_until(websocket, event_type, stop_on_error=True):
    """Collect events up to and including the first ``event_type``."""
    events = []
    while True:
        event = websocket.receive_json()
        events.append(event)
        if event["type"] == event_type or (stop_on_error and event["type"] == "error"):
            return events


class TestRAGAPI:
    """Test suite for the chat WebSocket."""

    @pytest.fixture
    def generator(self):
        return FakeGenerator(["Embeddings ", "are ", "vectors."])

    @pytest.fixture
    def pages(self, doc_pages):
        return list(doc_pages)

    @pytest.fixture
    def crawlers(self):
        return []

    def _app(self, settings, generator, pages, crawlers, delay=0):
        def crawler_factory():
            crawler = FakeCrawler(pages, delay=delay)
            crawlers.append(crawler)
            return crawler

        return create_app(settings=settings, embedder=FakeEmbedder(), generator=generator,
                          crawler_factory=crawler_factory)

    @pytest.fixture
    def client(self, settings, generator, pages, crawlers):
        with TestClient(self._app(settings, generator, pages, crawlers)) as client:
            yield client

    @pytest.fixture
    def slow_client(self, settings, generator, pages, crawlers):
        with TestClient(self._app(settings, generator, pages, crawlers, delay=0.3)) as client:
            yield client

    def _load(self, websocket, url=DOCS_URL):
        websocket.send_text(json.dumps({"type": "load_docs", "data": {"url": url}}))
        return _receive_until(websocket, "docs_loaded")

    def test_health_check_endpoint(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "sessions": 0}

    def test_connection_handshake(self, client):
        with client.websocket_connect("/ws") as websocket:
            event = websocket.receive_json()
            assert event["type"] == "connected"
            assert event["data"]["sessionId"]
            assert isinstance(event["timestamp"], int)

    def test_load_docs_events(self, client):
        with client.websocket_connect("/ws") as websocket:
            websocket.receive_json()
            events = self._load(websocket)

        assert [e["type"] for e in events] == [
            "clear_messages", "loading_docs", "scraping_progress", "scraping_progress", "docs_loaded"
        ]
        assert events[1]["data"] == {"status": "started", "url": DOCS_URL}
        progress = events[2]["data"]
        assert progress["current"] == 1
        assert progress["title"] == "Introduction"
        assert progress["percentage"] == round(1 / progress["total"] * 100)
        assert events[-1]["data"] == {"url": DOCS_URL, "pageCount": 2, "recordCount": 2}

    def test_chat_streams_answer(self, client):
        with client.websocket_connect("/ws") as websocket:
            websocket.receive_json()
            self._load(websocket)

            websocket.send_text(json.dumps({"type": "chat", "data": {"message": "What are embeddings?"}}))
            events = _receive_until(websocket, "message_end")

        assert [e["type"] for e in events] == ["message_start", "message_chunk", "message_chunk", "message_end"]
        assert "".join(e["data"]["content"] for e in events) == "Embeddings are vectors."
        assert events[-1]["data"]["content"] == ""
        assert len({e["data"]["id"] for e in events}) == 1
        assert all(e["data"]["role"] == "assistant" for e in events)

    def test_chat_during_load_is_not_ready(self, slow_client, generator):
        with slow_client.websocket_connect("/ws") as websocket:
            websocket.receive_json()
            websocket.send_text(json.dumps({"type": "load_docs", "data": {"url": DOCS_URL}}))
            websocket.send_text(json.dumps({"type": "chat", "data": {"message": "Too early?"}}))
            events = _receive_until(websocket, "docs_loaded", stop_on_error=False)

            websocket.send_text(json.dumps({"type": "chat", "data": {"message": "Ready now?"}}))
            answer = _receive_until(websocket, "message_end")

        errors = [e["data"]["error"] for e in events if e["type"] == "error"]
        assert errors == [NotReadyError.default_message]
        assert events[-1]["type"] == "docs_loaded"
        assert answer[-1]["type"] == "message_end"
        assert [call["query"] for call in generator.calls] == ["Ready now?"]

    def test_newer_load_replaces_running_load(self, slow_client, crawlers):
        second_url = "https://example.com/docs/guide/"
        with slow_client.websocket_connect("/ws") as websocket:
            websocket.receive_json()
            websocket.send_text(json.dumps({"type": "load_docs", "data": {"url": DOCS_URL}}))
            events = self._load(websocket, second_url)

        loaded = [e for e in events if e["type"] == "docs_loaded"]
        assert [e["data"]["url"] for e in loaded] == [second_url]
        assert "error" not in [e["type"] for e in events]
        assert crawlers[0].calls == [DOCS_URL, second_url]

    def test_chat_before_load(self, client):
        with client.websocket_connect("/ws") as websocket:
            websocket.receive_json()
            websocket.send_text(json.dumps({"type": "chat", "data": {"message": "Hello?"}}))
            event = websocket.receive_json()

        assert event["type"] == "error"
        assert event["data"]["error"] == NotReadyError.default_message

    def test_load_with_no_pages(self, client, pages):
        pages.clear()
        with client.websocket_connect("/ws") as websocket:
            websocket.receive_json()
            events = self._load(websocket)

        assert events[-1]["type"] == "error"
        assert events[-1]["data"]["error"] == LoadEmptyError.default_message

    def test_load_with_invalid_url(self, client):
        with client.websocket_connect("/ws") as websocket:
            websocket.receive_json()
            websocket.send_text(json.dumps({"type": "load_docs", "data": {}}))
            event = websocket.receive_json()

        assert event == {"type": "error", "data": {"error": BAD_MESSAGE}, "timestamp": event["timestamp"]}

    def test_malformed_message(self, client):
        with client.websocket_connect("/ws") as websocket:
            websocket.receive_json()
            websocket.send_text("this is not json")
            event = websocket.receive_json()

            assert event["type"] == "error"
            assert event["data"]["error"] == BAD_MESSAGE

            # The session keeps working after a bad message
            websocket.send_text(json.dumps({"type": "chat", "data": {"message": "Still there?"}}))
            assert websocket.receive_json()["type"] == "error"

    def test_sessions_are_isolated(self, client):
        with client.websocket_connect("/ws") as first:
            first.receive_json()
            self._load(first)

            with client.websocket_connect("/ws") as second:
                second.receive_json()
                second.send_text(json.dumps({"type": "chat", "data": {"message": "Loaded?"}}))
                assert second.receive_json()["data"]["error"] == NotReadyError.default_message

    def test_generation_failure_is_reported(self, client, generator):
        async def broken(*args, **kwargs):
            raise RuntimeError("backend crashed")

        generator.generate = broken
        with client.websocket_connect("/ws") as websocket:
            websocket.receive_json()
            self._load(websocket)
            websocket.send_text(json.dumps({"type": "chat", "data": {"message": "Why?"}}))
            event = websocket.receive_json()

        assert event["type"] == "error"
        assert event["data"]["error"] == "Failed to process your question. Please try again."


@pytest.mark.asyncio
async def test_close_cancels_running_load(settings, doc_pages):
    websocket = Mock()
    websocket.application_state = WebSocketState.CONNECTED
    websocket.send_json = AsyncMock()
    pipeline = RetrievalPipeline(FakeEmbedder(), FakeGenerator(), settings=settings,
                                 crawler=FakeCrawler(doc_pages, delay=10))
    session = ChatSession(websocket, pipeline)

    task = session.start_load(DOCS_URL)
    await asyncio.sleep(0)
    assert pipeline.state is PipelineState.LOADING

    await session.close()

    assert task.cancelled()
    sent = [call.args[0]["type"] for call in websocket.send_json.await_args_list]
    assert "docs_loaded" not in sent
