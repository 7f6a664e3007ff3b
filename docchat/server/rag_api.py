"""WebSocket front end for DocChat.

Each connection gets its own RetrievalPipeline; the embedding and generation
clients are shared across connections.
"""

import asyncio
import contextlib
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError
from starlette.websockets import WebSocketState

from ..config import Settings, get_settings
from ..errors import DocChatError
from ..indexer.embeddings import EmbeddingClient
from ..observability.logging import get_structured_logger
from ..pipelines.crawler import DocsCrawler
from .generation import GenerationClient
from .pipeline import AnswerGenerator, RetrievalPipeline

logger = logging.getLogger(__name__)

LOAD_FAILED_MESSAGE = "Failed to load documentation. Please check the URL and try again."
BAD_MESSAGE = "Failed to process message"


class ClientMessage(BaseModel):
    type: str
    data: Dict[str, Any] = {}


class LoadDocsData(BaseModel):
    url: str


class ChatData(BaseModel):
    message: str


class ChatSession:
    """Protocol handler for one WebSocket connection.

    Documentation loads run as a background task so the connection keeps
    reading messages while one is in flight: a chat arriving mid-load is
    answered "not ready", and a newer load_docs replaces the running one.
    """

    def __init__(self, websocket: WebSocket, pipeline: RetrievalPipeline):
        self.websocket = websocket
        self.pipeline = pipeline
        self.session_id = str(uuid.uuid4())
        self.log = get_structured_logger(__name__, session_id=self.session_id)
        self._load_task: Optional[asyncio.Task] = None

    async def send(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> None:
        if self.websocket.application_state != WebSocketState.CONNECTED:
            return
        await self.websocket.send_json({
            "type": event_type,
            "data": data or {},
            "timestamp": int(time.time() * 1000)
        })

    async def send_error(self, message: str) -> None:
        await self.send("error", {"error": message})

    async def handle_raw(self, raw: str) -> None:
        try:
            message = ClientMessage.model_validate_json(raw)
        except ValidationError as e:
            self.log.warning("Rejected malformed message", error=str(e))
            await self.send_error(BAD_MESSAGE)
            return

        try:
            if message.type == "load_docs":
                self.start_load(LoadDocsData.model_validate(message.data).url)
            elif message.type == "chat":
                await self.handle_chat(ChatData.model_validate(message.data).message)
            else:
                self.log.debug("Ignoring unknown message type", message_type=message.type)
        except ValidationError as e:
            self.log.warning("Rejected message with invalid data", message_type=message.type, error=str(e))
            await self.send_error(BAD_MESSAGE)

    async def _on_progress(self, current: int, total: int, title: str) -> None:
        await self.send("scraping_progress", {
            "current": current,
            "total": total,
            "title": title,
            "percentage": round(current / total * 100) if total else 100
        })

    def start_load(self, url: str) -> asyncio.Task:
        """Load documentation in the background, cancelling any running load."""
        if self._load_task is not None and not self._load_task.done():
            self.log.info("Superseding running documentation load", url=url)
            self._load_task.cancel()
        self._load_task = asyncio.create_task(self.handle_load_docs(url))
        self._load_task.add_done_callback(self._load_finished)
        return self._load_task

    def _load_finished(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.log.error("Documentation load task failed", exc_info=error)

    async def close(self) -> None:
        """Cancel an in-flight load and wait for it to unwind."""
        task, self._load_task = self._load_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def handle_load_docs(self, url: str) -> None:
        await self.send("clear_messages")
        await self.send("loading_docs", {"status": "started", "url": url})

        try:
            result = await self.pipeline.load(url, on_progress=self._on_progress)
        except DocChatError as e:
            self.log.warning("Documentation load failed", url=url, error=e.message)
            await self.send_error(e.message)
            return
        except Exception:
            self.log.exception("Error loading documentation", url=url)
            await self.send_error(LOAD_FAILED_MESSAGE)
            return

        await self.send("docs_loaded", {
            "url": result.url,
            "pageCount": result.page_count,
            "recordCount": result.record_count
        })

    async def handle_chat(self, message: str) -> None:
        assistant_id = str(uuid.uuid4())
        try:
            first = True
            async for fragment in self.pipeline.ask(message):
                await self.send("message_start" if first else "message_chunk", {
                    "role": "assistant",
                    "content": fragment,
                    "id": assistant_id
                })
                first = False
        except DocChatError as e:
            self.log.warning("Chat request failed", error=e.message)
            await self.send_error(e.message)
            return
        except Exception:
            self.log.exception("Error processing chat")
            await self.send_error("Failed to process your question. Please try again.")
            return

        await self.send("message_end", {"role": "assistant", "content": "", "id": assistant_id})


def create_app(settings: Optional[Settings] = None,
               embedder: Optional[EmbeddingClient] = None,
               generator: Optional[AnswerGenerator] = None,
               crawler_factory: Optional[Callable[[], DocsCrawler]] = None) -> FastAPI:
    """Build the FastAPI application.

    Collaborators default to the real remote clients; tests pass fakes.
    """
    settings = settings or get_settings()
    embedder = embedder or EmbeddingClient(settings=settings)
    generator = generator or GenerationClient(settings=settings)
    crawler_factory = crawler_factory or (lambda: DocsCrawler(settings=settings))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("DocChat API starting")
        yield
        for client in (embedder, generator):
            close = getattr(client, "close", None)
            if close is not None:
                await close()
        logger.info("DocChat API stopped")

    app = FastAPI(title="DocChat API", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.sessions = {}

    @app.get("/health")
    async def health():
        return {"status": "healthy", "sessions": len(app.state.sessions)}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await websocket.accept()
        pipeline = RetrievalPipeline(embedder, generator, settings=settings, crawler=crawler_factory())
        session = ChatSession(websocket, pipeline)
        app.state.sessions[session.session_id] = session
        session.log.info("New connection established")

        await session.send("connected", {"sessionId": session.session_id})
        try:
            while True:
                raw = await websocket.receive_text()
                await session.handle_raw(raw)
        except WebSocketDisconnect:
            session.log.info("Connection closed")
        finally:
            await session.close()
            pipeline.reset()
            app.state.sessions.pop(session.session_id, None)

    return app
