"""Provider implementations."""

from .base import FileStore, Provider, ProviderCapabilities
from .gemini import GeminiProvider
from .mock import MockProvider

__all__ = [
    "FileStore",
    "GeminiProvider",
    "MockProvider",
    "Provider",
    "ProviderCapabilities",
]
