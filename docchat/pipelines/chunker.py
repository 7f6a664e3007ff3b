"""Sentence-aware text chunking.

Greedy bin-packing of sentences into chunks of at most ``max_chars``
characters. Sentences that are too long on their own are packed word by
word instead.
"""

import logging
import re
from typing import Iterable, List, Optional

logger = logging.getLogger(__name__)

_SENTENCE_SPLIT_RE = re.compile(r'(?<=[.!?])\s+')


def split_sentences(text: str) -> List[str]:
    """Split on sentence terminators followed by whitespace.

    Trailing text without a terminator is kept as the last sentence.
    """
    return [s for s in _SENTENCE_SPLIT_RE.split(text.strip()) if s]


def _join(current: str, piece: str) -> str:
    return f"{current} {piece}" if current else piece


def chunk_text(text: str, max_chars: int) -> List[str]:
    """Split text into ordered chunks no longer than ``max_chars``.

    The only chunks that may exceed the limit are single words longer than
    it; words are never split.
    """
    if max_chars <= 0:
        raise ValueError("max_chars must be positive")

    chunks: List[str] = []
    current = ""

    for sentence in split_sentences(text):
        candidate = _join(current, sentence)
        if len(candidate) <= max_chars:
            current = candidate
            continue

        if current:
            chunks.append(current.strip())
        current = ""

        if len(sentence) <= max_chars:
            current = sentence
            continue

        # Oversized sentence: same greedy rule over words
        for word in sentence.split():
            candidate = _join(current, word)
            if len(candidate) <= max_chars:
                current = candidate
            else:
                if current:
                    chunks.append(current.strip())
                current = word

    if current.strip():
        chunks.append(current.strip())

    return chunks


def chunk_document(text: str, max_chars: int,
                   max_chunks: Optional[int] = None, source: str = "document") -> List[str]:
    """Chunk one page's text, keeping at most ``max_chunks`` chunks."""
    chunks = chunk_text(text, max_chars)
    if max_chunks is not None and len(chunks) > max_chunks:
        logger.warning(f"{source}: keeping first {max_chunks} of {len(chunks)} chunks")
        chunks = chunks[:max_chunks]
    return chunks


def chunk_documents(texts: Iterable[str], max_chars: int,
                    max_chunks_per_document: Optional[int] = None) -> List[str]:
    """Chunk several documents, preserving document then chunk order."""
    all_chunks: List[str] = []
    for index, text in enumerate(texts):
        all_chunks.extend(chunk_document(text, max_chars, max_chunks_per_document,
                                         source=f"document {index}"))
    return all_chunks
