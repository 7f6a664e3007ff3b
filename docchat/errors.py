"""Error taxonomy for DocChat.

Every error that can reach a user carries a descriptive message that the
transport layer forwards verbatim.
"""


class DocChatError(Exception):
    """Base class for user-facing DocChat errors."""

    default_message = "Something went wrong. Please try again."

    def __init__(self, message: str = None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class ConfigurationError(DocChatError):
    """Raised at startup when required configuration is missing."""
    default_message = "DOCCHAT_API_KEY (or OPENAI_API_KEY) is required"


class InvalidURLError(DocChatError):
    """Raised when a seed URL cannot be crawled."""
    default_message = "Please provide a valid http(s) documentation URL."


class LoadEmptyError(DocChatError):
    """Raised when a crawl produces no usable pages."""
    default_message = (
        "Unable to scrape any documentation from this URL. "
        "Please try a different documentation URL."
    )


class NoValidChunksError(DocChatError):
    """Raised when no chunk survives the pre-embedding filter."""
    default_message = "No valid text chunks found for embedding"


class EmbeddingError(DocChatError):
    """Raised when a call to the embedding service fails."""
    default_message = "Failed to embed text"


class EmbeddingSystemicError(EmbeddingError):
    """Raised when too many chunks fail to embed for the load to be trusted."""

    def __init__(self, failed: int, attempted: int):
        self.failed = failed
        self.attempted = attempted
        rate = failed / attempted if attempted else 0.0
        super().__init__(
            f"Embedding failure rate too high: {round(rate * 100)}% ({failed}/{attempted})."
        )


class DimensionMismatchError(DocChatError):
    """Raised when comparing vectors of unequal length."""

    def __init__(self, left: int, right: int):
        self.left = left
        self.right = right
        super().__init__(f"Vectors must have the same length ({left} != {right})")


class NotReadyError(DocChatError):
    """Raised when a question arrives before documentation is loaded."""
    default_message = "Please load documentation first before asking questions."


class GenerationError(DocChatError):
    """Raised when the text-generation service fails."""
    default_message = "Failed to process your question. Please try again."
