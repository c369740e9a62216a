"""Conversation encoding: message windowing and message-to-turn conversion."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
import logging
import mimetypes
from typing import TYPE_CHECKING

from parley.constants import (
    CONTEXT_WINDOW_PADDING,
    DEFAULT_IMAGE_MIME_TYPE,
    PDF_INLINE_LIMIT_BYTES,
)
from parley.errors import (
    APIError,
    AttachmentError,
    ConfigurationError,
    DependencyUnavailableError,
)
from parley.parts import (
    ContentPart,
    ConversationTurn,
    FileDataPart,
    InlineDataPart,
    TextPart,
)

if TYPE_CHECKING:
    from parley.providers.base import FileStore
    from parley.providers.models import FileReference
    from parley.types import Attachment, Message

logger = logging.getLogger(__name__)


def build_context(messages: Sequence[Message], context_count: int) -> list[Message]:
    """Select the messages that form the model-visible conversation.

    Keeps the trailing ``context_count + 2`` messages, drops everything up to
    the last context-clear marker, drops preset and system scaffolding, and
    then drops leading messages until the first user message.

    Raises:
        ConfigurationError: If no user message remains.
    """
    window = list(messages)[-(context_count + CONTEXT_WINDOW_PADDING) :]

    for i in range(len(window) - 1, -1, -1):
        if window[i].kind == "clear":
            window = window[i + 1 :]
            break

    visible = [m for m in window if not m.is_preset and m.role != "system"]

    for i, message in enumerate(visible):
        if message.role == "user":
            return visible[i:]

    raise ConfigurationError(
        "No user message in the conversation context",
        hint="The last context_count + 2 messages must include a user message.",
    )


def _image_mime_type(attachment: Attachment) -> str:
    if attachment.mime_type.startswith("image/"):
        return attachment.mime_type
    guessed = mimetypes.guess_type(attachment.name)[0]
    if guessed and guessed.startswith("image/"):
        return guessed
    return DEFAULT_IMAGE_MIME_TYPE


class ConversationEncoder:
    """Converts messages into request turns.

    The only side effect is the file-store round trip for large PDFs; every
    other conversion is pure. File-store calls are not retried here.
    """

    def __init__(
        self,
        file_store: FileStore,
        *,
        pdf_inline_limit_bytes: int = PDF_INLINE_LIMIT_BYTES,
    ) -> None:
        self._file_store = file_store
        self._pdf_inline_limit_bytes = pdf_inline_limit_bytes

    async def encode(self, message: Message) -> ConversationTurn:
        """Convert *message* to a turn. Text always comes first."""
        parts: list[ContentPart] = [TextPart(message.content)]
        for attachment in message.attachments:
            part = await self._encode_attachment(attachment)
            if part is not None:
                parts.append(part)
        return ConversationTurn(
            role="user" if message.role == "user" else "model",
            parts=tuple(parts),
        )

    async def encode_all(self, messages: Sequence[Message]) -> list[ConversationTurn]:
        """Encode *messages* in order."""
        return [await self.encode(m) for m in messages]

    async def _encode_attachment(self, attachment: Attachment) -> ContentPart | None:
        if attachment.uri is not None:
            return FileDataPart(uri=attachment.uri, mime_type=attachment.mime_type)

        if attachment.kind == "image":
            return InlineDataPart(
                data=attachment.content_loader(),
                mime_type=_image_mime_type(attachment),
            )

        if attachment.kind == "pdf":
            if attachment.size_bytes < self._pdf_inline_limit_bytes:
                return InlineDataPart(
                    data=attachment.content_loader(), mime_type="application/pdf"
                )
            ref = await self._resolve_remote(attachment)
            return FileDataPart(uri=ref.uri, mime_type=ref.mime_type)

        if attachment.kind in ("text", "document"):
            raw = attachment.content_loader()
            try:
                content = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise AttachmentError(
                    f"Attachment {attachment.name!r} is not UTF-8 text",
                    hint="Attach binary documents as PDFs or images.",
                ) from e
            return TextPart(f"{attachment.name}\n{content.strip()}")

        logger.debug("Skipping attachment %s of kind %s", attachment.name, attachment.kind)
        return None

    async def _resolve_remote(self, attachment: Attachment) -> FileReference:
        """Look the attachment up in the file store, uploading when absent."""
        try:
            ref = await self._file_store.lookup_file(attachment)
            if ref is not None:
                logger.debug("Reusing stored file for %s", attachment.name)
                return ref
            logger.debug(
                "Uploading %s (%d bytes) to the file store",
                attachment.name,
                attachment.size_bytes,
            )
            return await self._file_store.upload_file(attachment)
        except (asyncio.CancelledError, AttachmentError, DependencyUnavailableError):
            raise
        except APIError as e:
            if e.retryable:
                raise DependencyUnavailableError(
                    f"File store unavailable for {attachment.name!r}: {e}",
                    hint=e.hint,
                    retryable=True,
                    status_code=e.status_code,
                    retry_after_s=e.retry_after_s,
                    provider=e.provider,
                    phase=e.phase,
                ) from e
            raise
        except (ConnectionError, TimeoutError) as e:
            raise DependencyUnavailableError(
                f"File store unreachable for {attachment.name!r}: {e}",
                retryable=True,
                phase="upload",
            ) from e
