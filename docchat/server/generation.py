"""Answer generation on top of retrieved documentation passages.

The chat-completion backend can hand back a whole message, a token stream
or a bare string. Those shapes are normalized once into the closed
``GenerationResult`` variant and consumed through a single ``match``.
"""

import logging
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Sequence, Union

import openai
from openai import AsyncOpenAI

from ..config import Settings, get_settings
from ..errors import GenerationError

logger = logging.getLogger(__name__)

NO_ANSWER_MESSAGE = (
    "I couldn't find any information about that in the current documentation. "
    "Please try asking about topics covered in the loaded documentation."
)
SAFETY_BLOCKED_MESSAGE = (
    "Your question was blocked by safety filters. Please try rephrasing your question."
)

SYSTEM_PROMPT = """You are a documentation assistant. Answer the user's question using only the documentation excerpts below.
If the excerpts do not contain the answer, say that the loaded documentation does not cover it.
Keep answers concise and quote API names exactly as they appear.

Documentation excerpts:
{knowledge}"""


@dataclass(frozen=True)
class ContentResult:
    """A complete answer delivered in one piece."""
    content: str


@dataclass(frozen=True)
class StreamResult:
    """An answer delivered as a lazy stream of text fragments."""
    stream: AsyncIterator[str]


@dataclass(frozen=True)
class TextResult:
    """A bare string; empty means the backend had nothing to say."""
    text: str


GenerationResult = Union[ContentResult, StreamResult, TextResult]


def normalize_result(raw) -> GenerationResult:
    """Map whatever a generation backend returned onto GenerationResult."""
    if isinstance(raw, (ContentResult, StreamResult, TextResult)):
        return raw
    if raw is None:
        return TextResult("")
    if isinstance(raw, str):
        return TextResult(raw)
    if hasattr(raw, "__aiter__"):
        return StreamResult(raw)
    raise TypeError(f"Unsupported generation result: {type(raw).__name__}")


async def iter_result_text(result: GenerationResult) -> AsyncIterator[str]:
    """Yield the non-empty text fragments of a generation result."""
    match result:
        case StreamResult(stream=stream):
            async for fragment in stream:
                if fragment:
                    yield fragment
        case ContentResult(content=content):
            if content:
                yield content
        case TextResult(text=text):
            if text:
                yield text
        case _:
            raise TypeError(f"Unsupported generation result: {type(result).__name__}")


def format_knowledge(records: Sequence[str]) -> str:
    if not records:
        return "(no relevant excerpts found)"
    return "\n\n".join(f"[{i}] {text}" for i, text in enumerate(records, 1))


def build_messages(query: str, knowledge_records: Sequence[str], history: Sequence) -> List[dict]:
    """Chat messages for one question: instructions, past turns, question.

    ``history`` holds objects with ``role`` and ``content`` attributes, oldest
    first, excluding the current question.
    """
    messages = [{"role": "system", "content": SYSTEM_PROMPT.format(knowledge=format_knowledge(knowledge_records))}]
    for message in history:
        messages.append({"role": message.role, "content": message.content})
    messages.append({"role": "user", "content": query})
    return messages


def _describe_error(error: Exception) -> str:
    if "blocked by the safety filters" in str(error):
        return SAFETY_BLOCKED_MESSAGE
    return GenerationError.default_message


class GenerationClient:
    """Chat-completion client for an OpenAI-compatible endpoint."""

    def __init__(self,
                 settings: Optional[Settings] = None,
                 model: Optional[str] = None,
                 stream: bool = True,
                 client: Optional[AsyncOpenAI] = None):
        self.settings = settings or get_settings()
        self.model = model or self.settings.llm_model
        self.stream = stream
        self._client = client

    async def initialize(self) -> None:
        if self._client is None:
            logger.info(f"Initializing generation client for model: {self.model}")
            self._client = AsyncOpenAI(
                api_key=self.settings.require_api_key(),
                base_url=self.settings.api_base_url
            )

    async def generate(self, query: str, knowledge_records: Sequence[str],
                       history: Sequence = ()) -> GenerationResult:
        await self.initialize()
        messages = build_messages(query, knowledge_records, history)
        logger.debug(f"Generating answer with {len(knowledge_records)} knowledge records "
                     f"and {len(history)} history messages")

        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                stream=self.stream,
                temperature=self.settings.llm_temperature,
                top_p=self.settings.llm_top_p,
                max_tokens=self.settings.llm_max_tokens
            )
        except openai.OpenAIError as e:
            logger.error(f"Generation request failed: {e}")
            raise GenerationError(_describe_error(e)) from e

        if self.stream:
            return StreamResult(self._iter_stream(response))

        if not response.choices:
            return TextResult("")
        return ContentResult(response.choices[0].message.content or "")

    async def _iter_stream(self, response) -> AsyncIterator[str]:
        try:
            async for chunk in response:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta is not None and delta.content:
                    yield delta.content
        except openai.OpenAIError as e:
            logger.error(f"Generation stream failed: {e}")
            raise GenerationError(_describe_error(e)) from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
        self._client = None
