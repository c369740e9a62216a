"""Per-call assistant settings for `completions()`."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from parley.constants import DEFAULT_CONTEXT_COUNT
from parley.errors import ConfigurationError


@dataclass(frozen=True)
class Options:
    """Assistant settings applied to one completion session."""

    #: Assistant prompt, sent as the provider's system instruction.
    system_instruction: str | None = None
    #: Prior messages kept as context; the window is ``context_count + 2``.
    context_count: int = DEFAULT_CONTEXT_COUNT
    #: Stream units as they arrive; ``False`` emits a single chunk.
    stream_output: bool = True

    #: Generation tuning parameters
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    #: Merged verbatim into the provider generation config.
    custom_parameters: dict[str, Any] = field(default_factory=dict)

    #: Adds the provider's search-grounding tool to the request.
    enable_web_search: bool = False
    #: Opaque provider safety settings, passed through untouched.
    safety_settings: list[dict[str, Any]] | None = None

    def __post_init__(self) -> None:
        """Validate option shapes early for clear errors."""
        if self.system_instruction is not None and not isinstance(
            self.system_instruction, str
        ):
            raise ConfigurationError(
                "system_instruction must be a string",
                hint="Pass system_instruction='You are a concise assistant.'",
            )

        if (
            not isinstance(self.context_count, int)
            or isinstance(self.context_count, bool)
            or self.context_count < 0
        ):
            raise ConfigurationError(
                f"context_count must be a non-negative integer, got {self.context_count!r}",
                hint="context_count=0 keeps only the current ask and one prior message.",
            )

        if self.max_tokens is not None and (
            not isinstance(self.max_tokens, int) or self.max_tokens <= 0
        ):
            raise ConfigurationError(
                "max_tokens must be a positive integer",
                hint="Pass max_tokens=4096 or leave it unset for the model default.",
            )

        if self.temperature is not None and not 0.0 <= self.temperature <= 2.0:
            raise ConfigurationError(
                f"temperature must be between 0 and 2, got {self.temperature}",
            )

        if self.top_p is not None and not 0.0 <= self.top_p <= 1.0:
            raise ConfigurationError(
                f"top_p must be between 0 and 1, got {self.top_p}",
            )

        if not isinstance(self.custom_parameters, dict):
            raise ConfigurationError(
                "custom_parameters must be a dict",
                hint="Pass custom_parameters={'top_k': 40}.",
            )

        if self.safety_settings is not None and not isinstance(
            self.safety_settings, list
        ):
            raise ConfigurationError(
                "safety_settings must be a list of provider safety settings",
            )
