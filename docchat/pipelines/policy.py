"""Link-following policy for documentation crawls.

Decides which discovered links are worth queueing: same host as the seed,
inside the documentation tree, and not an auth or redirect hop.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Pattern
from urllib.parse import urlparse, urlunparse

from ..errors import InvalidURLError

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = {'http', 'https'}


def normalize_url(url: str) -> str:
    """Strip the fragment so ``/a#x`` and ``/a#y`` are the same page."""
    parsed = urlparse(url.strip())
    return urlunparse(parsed._replace(fragment=''))


def validate_seed_url(url: str) -> str:
    """Return the normalized seed URL or raise InvalidURLError."""
    if not url or not url.strip():
        raise InvalidURLError()

    parsed = urlparse(url.strip())
    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        raise InvalidURLError(f"Unsupported URL scheme: {parsed.scheme or 'none'}")
    if not parsed.hostname:
        raise InvalidURLError(f"URL has no host: {url}")

    return normalize_url(url)


@dataclass
class LinkPolicy:
    """Configurable allow/deny rules for discovered links.

    Args:
        doc_path_pattern: Regex a URL must match to count as documentation
        deny_patterns: Substrings marking non-content URLs (auth, redirects)
        allow_query_strings: Follow URLs that carry a ``?query``
    """
    doc_path_pattern: Optional[str] = r"/docs/"
    deny_patterns: List[str] = field(default_factory=lambda: ["/login", "redirect="])
    allow_query_strings: bool = False

    def __post_init__(self):
        self._doc_path: Optional[Pattern] = (
            re.compile(self.doc_path_pattern) if self.doc_path_pattern else None
        )

    def should_follow(self, url: str, base_host: str) -> bool:
        """Check if a (normalized, absolute) link should be queued."""
        parsed = urlparse(url)

        if parsed.scheme.lower() not in ALLOWED_SCHEMES:
            return False

        # Only follow links on the same host
        if (parsed.hostname or '').lower() != base_host.lower():
            return False

        if self._doc_path is not None and not self._doc_path.search(url):
            return False

        if any(pattern in url for pattern in self.deny_patterns):
            return False

        if parsed.query and not self.allow_query_strings:
            return False

        return True
