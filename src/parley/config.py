"""Configuration: frozen provider-level Config with explicit model requirements."""

from __future__ import annotations

from dataclasses import dataclass, field
import os
from typing import Literal

from dotenv import load_dotenv

from parley.constants import PDF_INLINE_LIMIT_BYTES
from parley.errors import ConfigurationError
from parley.retry import RetryPolicy

load_dotenv()

ProviderName = Literal["gemini"]

_API_KEY_ENV_VARS: dict[ProviderName, str] = {
    "gemini": "GEMINI_API_KEY",
}


@dataclass(frozen=True)
class Config:
    """Immutable provider configuration for a completion session.

    Provider and model are required. The API key is auto-resolved from the
    provider's standard environment variable.

    Example:
        config = Config(provider="gemini", model="gemini-2.0-flash")
        # API key is automatically resolved from GEMINI_API_KEY
    """

    provider: ProviderName
    model: str
    #: Auto-resolved from ``GEMINI_API_KEY`` when *None*.
    api_key: str | None = None
    #: Alternate API host; the SDK default is used when *None*.
    base_url: str | None = None
    use_mock: bool = False
    #: PDFs at or above this size are sent as file references.
    pdf_inline_limit_bytes: int = PDF_INLINE_LIMIT_BYTES
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        """Auto-resolve API key and validate configuration."""
        if self.provider not in _API_KEY_ENV_VARS:
            raise ConfigurationError(
                f"Unknown provider: {self.provider!r}",
                hint="Supported providers: 'gemini'",
            )

        if not isinstance(self.model, str) or not self.model.strip():
            raise ConfigurationError(
                "model must be a non-empty string",
                hint="Pass model='gemini-2.0-flash' or another model id.",
            )

        if self.pdf_inline_limit_bytes < 0:
            raise ConfigurationError(
                f"pdf_inline_limit_bytes must be ≥ 0, got {self.pdf_inline_limit_bytes}",
                hint="0 sends every PDF through the file store.",
            )

        if self.api_key is None and not self.use_mock:
            env_var = _API_KEY_ENV_VARS[self.provider]
            object.__setattr__(self, "api_key", os.environ.get(env_var))

        if not self.use_mock and not self.api_key:
            env_var = _API_KEY_ENV_VARS[self.provider]
            raise ConfigurationError(
                f"API key required for {self.provider}",
                hint=f"Set {env_var} environment variable or pass api_key=...",
            )

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        return (
            f"Config(provider={self.provider!r}, model={self.model!r}, "
            f"api_key={'[REDACTED]' if self.api_key else None}, use_mock={self.use_mock})"
        )

    __repr__ = __str__
