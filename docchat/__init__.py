"""DocChat: chat with any documentation site.

Crawls a documentation site, embeds its text into an in-memory knowledge
base and answers questions from the most relevant passages.
"""

__version__ = "0.1.0"
