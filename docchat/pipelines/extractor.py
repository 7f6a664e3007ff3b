"""HTML to plain-text extraction for documentation pages.

Pulls the readable body out of a documentation page while suppressing the
noise that surrounds it on most doc sites: table-of-contents widgets,
syntax-highlighted code and small UI labels. Generic navigation landmarks
(``<nav>``, ``role="navigation"``) are kept unless ``strip_navigation`` is
set, since some sites put real content inside them.
"""

import copy
import logging
import re
from dataclasses import dataclass
from typing import List, Set, Union
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup, Tag

from .policy import ALLOWED_SCHEMES, normalize_url

logger = logging.getLogger(__name__)

MIN_CONTENT_CHARS = 50
MIN_ELEMENT_CHARS = 6
CODE_BLOCK_PLACEHOLDER = "[CODE_BLOCK_REMOVED]"
UNTITLED = "Untitled"

# Removed before text collection; link discovery works on the untouched document.
NOISE_SELECTOR = ", ".join([
    "script",
    "style",
    '[data-testid="copy-code-button"]',
    "#navigation-items",
    "#table-of-contents-layout",
])

# Removed only with strip_navigation=True
NAVIGATION_SELECTOR = 'nav, [role="navigation"]'

# Tried in order; the first selector matching anything becomes the content root.
CONTENT_ROOT_SELECTORS = [
    ".mdx-content",
    'main, article, [role="main"], .content, #content',
    "body",
]

TEXT_TAGS = [
    "p", "h1", "h2", "h3", "h4", "h5", "h6",
    "li", "td", "th", "blockquote",
    "div", "span", "section", "article",
    "code", "pre",
]

CODE_TAGS = {"pre", "code"}

CODE_CLASS_PATTERNS = [
    "language-",
    "lang-",
    "highlight",
    "hljs",
    "code",
    "codehilite",
    "sourceCode",
    "prism",
    "syntax",
    "brush:",
    "crayon-",
    "EnlighterJS",
    "copy",
    "clipboard",
    "code-block",
    "shiki",
    "codeblock",
]

CODE_ANCESTOR_CLASSES = {"highlight", "code", "code-block", "shiki"}

UI_TEXT_PATTERNS = [re.compile(p, re.IGNORECASE) for p in [
    r"^Search\.\.\.",
    r"^⌘K$",
    r"^Copy$",
    r"^Copy page$",
    r"^Log In$",
    r"^Get started$",
    r"^bash$",
    r"^typescript$",
    r"^\.env$",
    r"^Powered by Mintlify$",
    r"^home page$",
    r"^On this page$",
    r"^Table of contents$",
    r"^Skip to",
]]

_FENCED_CODE_RE = re.compile(r"```[\s\S]*?```")
_CAMEL_JOIN_RE = re.compile(r"([a-z])([A-Z][a-z])")
_SENTENCE_JOIN_RE = re.compile(r"([.!?])([A-Z])")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class ExtractedContent:
    title: str
    content: str

    @property
    def is_usable(self) -> bool:
        return is_usable(self.content)


def is_usable(content: str) -> bool:
    """Pages shorter than MIN_CONTENT_CHARS are not worth indexing."""
    return len(content) >= MIN_CONTENT_CHARS


def parse_html(html: Union[str, bytes]) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


def _as_soup(document: Union[str, bytes, BeautifulSoup]) -> BeautifulSoup:
    if isinstance(document, BeautifulSoup):
        return document
    return parse_html(document)


def extract_title(soup: BeautifulSoup) -> str:
    """First <h1>, then <title>, then a literal placeholder."""
    for tag_name in ("h1", "title"):
        tag = soup.find(tag_name)
        if tag is not None:
            text = tag.get_text().strip()
            if text:
                return text
    return UNTITLED


def is_code_block(element: Tag) -> bool:
    """Heuristically classify an element as code or code-related UI."""
    if element.name in CODE_TAGS:
        return True

    classes = " ".join(element.get("class") or [])
    if classes and any(pattern in classes for pattern in CODE_CLASS_PATTERNS):
        return True

    for parent in element.parents:
        if parent.name in CODE_TAGS:
            return True
        if CODE_ANCESTOR_CLASSES.intersection(parent.get("class") or []):
            return True

    if element.get("data-lang") or element.get("data-language"):
        return True

    test_id = element.get("data-testid")
    if test_id and "copy" in test_id:
        return True

    return False


def is_ui_text(text: str) -> bool:
    text = text.strip()
    return any(pattern.search(text) for pattern in UI_TEXT_PATTERNS)


def cleanup_text(text: str) -> str:
    text = _FENCED_CODE_RE.sub(CODE_BLOCK_PLACEHOLDER, text)
    # Markup stripping glues words together: "fooBar" / "end.Next"
    text = _CAMEL_JOIN_RE.sub(r"\1 \2", text)
    text = _SENTENCE_JOIN_RE.sub(r"\1 \2", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def _select_content_roots(soup: BeautifulSoup) -> List[Tag]:
    for selector in CONTENT_ROOT_SELECTORS:
        roots = soup.select(selector)
        if roots:
            return roots
    return [soup]


def extract_text(soup: BeautifulSoup, strip_navigation: bool = False) -> str:
    """Collect the readable text of a page.

    Mutates ``soup``; callers that still need the full document pass a copy.
    With ``strip_navigation`` the page's ``<nav>`` and ``role="navigation"``
    landmarks are dropped as well.
    """
    selector = f"{NOISE_SELECTOR}, {NAVIGATION_SELECTOR}" if strip_navigation else NOISE_SELECTOR
    for element in soup.select(selector):
        if not element.decomposed:
            element.decompose()

    fragments: List[str] = []
    processed: Set[int] = set()

    for root in _select_content_roots(soup):
        for element in root.find_all(TEXT_TAGS):
            if id(element) in processed:
                continue
            # Nested elements repeat their ancestor's text
            if any(id(parent) in processed for parent in element.parents):
                continue

            text = element.get_text().strip()
            if len(text) < MIN_ELEMENT_CHARS:
                continue
            if is_code_block(element) or is_ui_text(text):
                continue

            fragments.append(text)
            processed.add(id(element))

    return cleanup_text("\n".join(fragments))


def extract(document: Union[str, bytes, BeautifulSoup], strip_navigation: bool = False) -> ExtractedContent:
    """Extract title and body text from a fetched page.

    The passed document is left untouched so links can still be discovered
    from the original markup.
    """
    soup = _as_soup(document)
    title = extract_title(soup)
    content = extract_text(copy.copy(soup), strip_navigation=strip_navigation)
    logger.debug(f"Extracted '{title}' ({len(content)} chars)")
    return ExtractedContent(title=title, content=content)


def extract_links(document: Union[str, bytes, BeautifulSoup], page_url: str) -> List[str]:
    """Return absolute, fragment-free http(s) links in document order."""
    soup = _as_soup(document)
    links: List[str] = []
    seen: Set[str] = set()

    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith("#"):
            continue
        try:
            absolute_url = urljoin(page_url, href)
        except ValueError:
            logger.debug(f"Skipping malformed href on {page_url}: {href!r}")
            continue
        if urlparse(absolute_url).scheme.lower() not in ALLOWED_SCHEMES:
            continue

        clean_url = normalize_url(absolute_url)
        if clean_url not in seen:
            seen.add(clean_url)
            links.append(clean_url)

    return links
