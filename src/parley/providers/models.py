"""Domain models for the provider transport layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from parley.parts import ConversationTurn, FunctionCallPart


@dataclass(frozen=True)
class FileReference:
    """A file held by the provider's file store."""

    uri: str
    mime_type: str
    #: Provider-side resource name (e.g. ``files/abc123``).
    name: str | None = None


@dataclass(frozen=True)
class ProviderRequest:
    """A unified request payload for one generation call.

    ``contents`` is the full turn sequence: prior history followed by the
    turn being asked (a user message or a tool-result turn).
    """

    model: str
    contents: tuple[ConversationTurn, ...]
    system_instruction: str | None = None
    #: Provider-neutral function declarations (``name``/``description``/``parameters``).
    tools: list[dict[str, Any]] | None = None
    enable_web_search: bool = False
    temperature: float | None = None
    top_p: float | None = None
    max_output_tokens: int | None = None
    custom_parameters: dict[str, Any] = field(default_factory=dict)
    safety_settings: list[dict[str, Any]] | None = None


@dataclass
class ProviderResponse:
    """A full response, or one unit of a streamed response."""

    text: str = ""
    #: Keys: ``prompt_tokens``, ``completion_tokens``, ``total_tokens``.
    usage: dict[str, int] = field(default_factory=dict)
    function_calls: list[FunctionCallPart] = field(default_factory=list)
    grounding_metadata: Any = None
