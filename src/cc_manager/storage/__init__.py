"""Storage abstractions for the session manager."""

from .chroma import ChromaEvent, ChromaStore, ChromaUnavailableError
from .models import RepositoryRecord, SessionRecord
from .registry import RepositoryRegistry, SessionStore

__all__ = [
    "ChromaEvent",
    "ChromaStore",
    "ChromaUnavailableError",
    "RepositoryRecord",
    "RepositoryRegistry",
    "SessionRecord",
    "SessionStore",
]
