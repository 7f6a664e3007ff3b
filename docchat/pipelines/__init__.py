"""Pipelines package for DocChat.

Provides crawling, content extraction, link policy and chunking functionality.
"""

from .policy import LinkPolicy, normalize_url, validate_seed_url
from .extractor import (
    ExtractedContent,
    MIN_CONTENT_CHARS,
    CODE_BLOCK_PLACEHOLDER,
    extract,
    extract_links,
    is_usable
)
from .crawler import DocsCrawler, Page, PageFetch, CrawlStats, FetchError, crawl_docs
from .chunker import chunk_text, chunk_document, chunk_documents, split_sentences

__all__ = [
    # Policy
    'LinkPolicy',
    'normalize_url',
    'validate_seed_url',

    # Extractor
    'ExtractedContent',
    'MIN_CONTENT_CHARS',
    'CODE_BLOCK_PLACEHOLDER',
    'extract',
    'extract_links',
    'is_usable',

    # Crawler
    'DocsCrawler',
    'Page',
    'PageFetch',
    'CrawlStats',
    'FetchError',
    'crawl_docs',

    # Chunker
    'chunk_text',
    'chunk_document',
    'chunk_documents',
    'split_sentences'
]
