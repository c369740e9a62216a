"""Domain types: messages, attachments, tools and the chunk event shape."""

from __future__ import annotations

from collections.abc import Callable  # noqa: TC003 - used at runtime in dataclass
from dataclasses import dataclass, field
import mimetypes
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal, TypedDict
import uuid

from pydantic import BaseModel

from parley.errors import AttachmentError, ConfigurationError

if TYPE_CHECKING:
    from parley.parts import FunctionCallPart

Role = Literal["user", "assistant", "system"]
AttachmentKind = Literal["image", "document", "text", "pdf"]
MessageKind = Literal["text", "clear"]
ToolState = Literal["invoking", "done"]

_TEXT_EXTENSIONS = frozenset(
    {".txt", ".md", ".markdown", ".csv", ".json", ".yaml", ".yml", ".xml", ".log"}
)


def _new_id() -> str:
    return uuid.uuid4().hex


def _infer_kind(name: str, mime_type: str) -> AttachmentKind:
    suffix = Path(name).suffix.lower()
    if suffix == ".pdf" or mime_type == "application/pdf":
        return "pdf"
    if mime_type.startswith("image/"):
        return "image"
    if mime_type.startswith("text/") or suffix in _TEXT_EXTENSIONS:
        return "text"
    return "document"


@dataclass(frozen=True, slots=True)
class Attachment:
    """A file attached to a message, loaded lazily by the encoder."""

    kind: AttachmentKind
    #: Original filename, used as the text prefix and the file-store identity.
    name: str
    mime_type: str
    size_bytes: int
    content_loader: Callable[[], bytes]
    #: Already-remote location; skips inline encoding and the file store.
    uri: str | None = None
    id: str = field(default_factory=_new_id)

    @classmethod
    def from_bytes(
        cls,
        data: bytes,
        *,
        name: str,
        mime_type: str | None = None,
        kind: AttachmentKind | None = None,
    ) -> Attachment:
        """Create an Attachment from in-memory bytes."""
        mt = mime_type or mimetypes.guess_type(name)[0] or "application/octet-stream"
        return cls(
            kind=kind or _infer_kind(name, mt),
            name=name,
            mime_type=mt,
            size_bytes=len(data),
            content_loader=lambda: data,
        )

    @classmethod
    def from_text(cls, text: str, *, name: str) -> Attachment:
        """Create a plain-text Attachment."""
        return cls.from_bytes(
            text.encode("utf-8"), name=name, mime_type="text/plain", kind="text"
        )

    @classmethod
    def from_file(
        cls,
        path: str | Path,
        *,
        mime_type: str | None = None,
        kind: AttachmentKind | None = None,
    ) -> Attachment:
        """Create an Attachment from a local file.

        Args:
            path: Path to the file. Must exist or ``AttachmentError`` is raised.
            mime_type: MIME type override. Auto-detected from extension when *None*.
            kind: Kind override. Inferred from extension and MIME type when *None*.
        """
        p = Path(path)
        if not p.is_file():
            raise AttachmentError(f"File not found: {p}")

        mt = mime_type or mimetypes.guess_type(str(p))[0] or "application/octet-stream"

        def loader() -> bytes:
            try:
                return p.read_bytes()
            except OSError as e:
                raise AttachmentError(f"Failed to read attachment: {p}", hint=str(e)) from e

        return cls(
            kind=kind or _infer_kind(p.name, mt),
            name=p.name,
            mime_type=mt,
            size_bytes=p.stat().st_size,
            content_loader=loader,
        )

    @classmethod
    def from_uri(
        cls,
        uri: str,
        *,
        mime_type: str,
        name: str | None = None,
        kind: AttachmentKind | None = None,
    ) -> Attachment:
        """Create an Attachment that already lives at a remote URI."""
        label = name or uri.rsplit("/", 1)[-1]

        def loader() -> bytes:
            raise AttachmentError(
                f"Attachment {label!r} is remote and has no local content",
                hint="Remote attachments are sent by reference only.",
            )

        return cls(
            kind=kind or _infer_kind(label, mime_type),
            name=label,
            mime_type=mime_type,
            size_bytes=0,
            content_loader=loader,
            uri=uri,
        )


@dataclass(frozen=True, slots=True)
class Message:
    """A caller-produced conversation message. Immutable once sent."""

    role: Role
    content: str = ""
    attachments: tuple[Attachment, ...] = ()
    #: Tool ids or server names enabled for this message; *None* enables none.
    enabled_tools: frozenset[str] | None = None
    id: str = field(default_factory=_new_id)
    index: int = 0
    #: ``"clear"`` marks a context reset: earlier messages are not sent.
    kind: MessageKind = "text"
    #: Preset scaffolding shown to the user but never sent to the model.
    is_preset: bool = False

    def __post_init__(self) -> None:
        """Validate role and normalize collection fields."""
        if self.role not in ("user", "assistant", "system"):
            raise ConfigurationError(
                f"Unknown message role: {self.role!r}",
                hint="Use 'user', 'assistant' or 'system'.",
            )
        if not isinstance(self.attachments, tuple):
            object.__setattr__(self, "attachments", tuple(self.attachments))
        if self.enabled_tools is not None and not isinstance(
            self.enabled_tools, frozenset
        ):
            object.__setattr__(self, "enabled_tools", frozenset(self.enabled_tools))


ToolInputSchema = type[BaseModel] | dict[str, Any]


@dataclass(frozen=True)
class ToolDescriptor:
    """A caller-supplied tool with a bound execution capability.

    ``execute`` receives the ``ToolInvocation`` and may be sync or async.
    """

    #: Function name declared to the model; calls are resolved by this id.
    id: str
    execute: Callable[[ToolInvocation], Any]
    description: str = ""
    input_schema: ToolInputSchema | None = None
    #: Owning tool server, usable as an enablement flag.
    server: str | None = None

    def parameters_schema(self) -> dict[str, Any] | None:
        """Return the input schema as a JSON Schema dict."""
        schema = self.input_schema
        if schema is None:
            return None
        if isinstance(schema, dict):
            return schema
        return schema.model_json_schema()


@dataclass(frozen=True, slots=True)
class ToolInvocation:
    """A model-issued call resolved to a registered tool."""

    name: str
    arguments: dict[str, Any]
    #: Disambiguates statuses for same-named calls across recursion depths.
    correlation_id: str
    depth: int
    call_id: str | None = None


@dataclass(slots=True)
class ToolStatus:
    """Progress of one tool invocation, upserted by ``id`` as it advances."""

    id: str
    tool: ToolDescriptor
    status: ToolState
    arguments: dict[str, Any] = field(default_factory=dict)
    response: dict[str, Any] | None = None


class Usage(TypedDict):
    """Token counters, zero-filled when the provider omits them."""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


class ChunkMetrics(TypedDict):
    """Timing figures stamped on every chunk of a session."""

    completion_tokens: int
    time_completion_millsec: int
    time_first_token_millsec: int


class StreamChunk(TypedDict, total=False):
    """One caller-visible partial result.

    ``text``, ``usage`` and ``metrics`` are always present. ``tool_statuses``
    holds every status seen so far in the session; consumers should upsert by
    status ``id`` rather than append.
    """

    text: str
    usage: Usage
    metrics: ChunkMetrics
    tool_statuses: list[ToolStatus]
    #: Provider grounding/search provenance, passed through opaquely.
    search_metadata: Any
    #: Raw tool calls announced by the unit, resolved or not.
    function_calls: list[FunctionCallPart]


def zero_usage() -> Usage:
    """Return a zero-filled usage record."""
    return Usage(prompt_tokens=0, completion_tokens=0, total_tokens=0)
