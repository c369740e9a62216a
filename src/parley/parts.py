"""Provider-agnostic request content.

A ``ConversationTurn`` is a role plus an ordered tuple of content parts. Each
provider adapter converts these to and from its SDK types at the boundary, so
the session never handles vendor part unions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from parley.errors import InternalError

if TYPE_CHECKING:
    from collections.abc import Iterator

TurnRole = Literal["user", "model"]


@dataclass(frozen=True, slots=True)
class TextPart:
    """Plain text content."""

    text: str


@dataclass(frozen=True, slots=True)
class InlineDataPart:
    """Binary content sent inline with the request."""

    data: bytes
    mime_type: str


@dataclass(frozen=True, slots=True)
class FileDataPart:
    """Reference to content held by the provider's file store."""

    uri: str
    mime_type: str


@dataclass(frozen=True, slots=True)
class FunctionCallPart:
    """A tool call issued by the model."""

    name: str
    args: dict[str, Any] = field(default_factory=dict)
    #: Provider-issued call id, when the provider assigns one.
    id: str | None = None


@dataclass(frozen=True, slots=True)
class FunctionResponsePart:
    """The result of a tool call, fed back to the model."""

    name: str
    response: dict[str, Any]
    id: str | None = None


ContentPart = (
    TextPart | InlineDataPart | FileDataPart | FunctionCallPart | FunctionResponsePart
)


@dataclass(frozen=True, slots=True)
class ConversationTurn:
    """One role-tagged request turn."""

    role: TurnRole
    parts: tuple[ContentPart, ...]

    @property
    def function_calls(self) -> tuple[FunctionCallPart, ...]:
        """Tool-call parts in this turn, in order."""
        return tuple(p for p in self.parts if isinstance(p, FunctionCallPart))

    @property
    def is_tool_result(self) -> bool:
        """Whether this turn carries tool results."""
        return any(isinstance(p, FunctionResponsePart) for p in self.parts)


class History:
    """Append-only sequence of request turns owned by one session.

    A tool-result turn may only follow a model turn that issued tool calls.
    """

    __slots__ = ("_turns",)

    def __init__(self, turns: list[ConversationTurn] | None = None) -> None:
        self._turns: list[ConversationTurn] = []
        for turn in turns or ():
            self.append(turn)

    def append(self, turn: ConversationTurn) -> None:
        """Append *turn*, enforcing the tool-result ordering invariant."""
        if turn.is_tool_result:
            previous = self._turns[-1] if self._turns else None
            if previous is None or previous.role != "model" or not previous.function_calls:
                raise InternalError(
                    "tool-result turn appended without a preceding model tool-call turn",
                    hint="This is a Parley internal error. Please report it.",
                )
        self._turns.append(turn)

    @property
    def turns(self) -> tuple[ConversationTurn, ...]:
        """Snapshot of the turns appended so far."""
        return tuple(self._turns)

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[ConversationTurn]:
        return iter(tuple(self._turns))
