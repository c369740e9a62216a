"""Gemini provider implementation."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import io
import logging
import time
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from parley.constants import FILE_ACTIVE_POLL_INTERVAL_S, FILE_ACTIVE_TIMEOUT_S
from parley.errors import APIError, ConfigurationError
from parley.parts import (
    FileDataPart,
    FunctionCallPart,
    FunctionResponsePart,
    InlineDataPart,
    TextPart,
)
from parley.providers._errors import wrap_provider_error
from parley.providers.base import ProviderCapabilities
from parley.providers.models import FileReference, ProviderRequest, ProviderResponse

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from parley.parts import ContentPart, ConversationTurn
    from parley.types import Attachment

logger = logging.getLogger(__name__)


def is_gemma_model(model: str) -> bool:
    """Gemma models take no system instruction."""
    return "gemma" in model.lower()


def _gemma_prompt(system_instruction: str, text: str) -> str:
    return (
        f"<start_of_turn>user\n{system_instruction}<end_of_turn>\n"
        f"<start_of_turn>user\n{text}<end_of_turn>"
    )


class GeminiProvider:
    """Google Gemini API provider."""

    def __init__(self, api_key: str, *, base_url: str | None = None) -> None:
        """Create provider with an API key and optional API host."""
        self.api_key = api_key
        self.base_url = base_url
        self._client: Any = None

    def _get_client(self) -> Any:
        """Lazy-initialize the Gemini client."""
        if self._client is None:
            try:
                from google import genai
                from google.genai import types
            except ImportError as e:
                raise APIError(
                    "google-genai package not installed",
                    hint="pip install google-genai",
                ) from e

            http_options = (
                types.HttpOptions(base_url=self.base_url) if self.base_url else None
            )
            self._client = genai.Client(api_key=self.api_key, http_options=http_options)
        return self._client

    async def aclose(self) -> None:
        """Release the SDK's async HTTP resources, when it exposes a hook."""
        if self._client is None:
            return
        aclose = getattr(getattr(self._client, "aio", None), "aclose", None)
        if callable(aclose):
            await aclose()

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Return supported feature flags."""
        return ProviderCapabilities(
            streaming=True,
            uploads=True,
            tools=True,
            web_search=True,
        )

    # ------------------------------------------------------------------
    # Request conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _convert_part(part: ContentPart) -> Any:
        """Convert one neutral content part to a google-genai SDK part."""
        from google.genai import types

        if isinstance(part, TextPart):
            return types.Part(text=part.text)
        if isinstance(part, InlineDataPart):
            return types.Part(
                inline_data=types.Blob(data=part.data, mime_type=part.mime_type)
            )
        if isinstance(part, FileDataPart):
            return types.Part(
                file_data=types.FileData(file_uri=part.uri, mime_type=part.mime_type)
            )
        if isinstance(part, FunctionCallPart):
            return types.Part(
                function_call=types.FunctionCall(
                    id=part.id, name=part.name, args=dict(part.args)
                )
            )
        if isinstance(part, FunctionResponsePart):
            return types.Part(
                function_response=types.FunctionResponse(
                    id=part.id, name=part.name, response=dict(part.response)
                )
            )
        raise APIError(f"Unsupported content part: {type(part).__name__}")

    def _convert_contents(self, turns: tuple[ConversationTurn, ...]) -> list[Any]:
        from google.genai import types

        return [
            types.Content(
                role=turn.role, parts=[self._convert_part(p) for p in turn.parts]
            )
            for turn in turns
        ]

    def _prepare(self, request: ProviderRequest) -> tuple[list[Any], Any]:
        """Build SDK contents and generation config for *request*."""
        from google.genai import types

        contents = self._convert_contents(request.contents)
        gemma = is_gemma_model(request.model)

        config_kwargs: dict[str, Any] = {
            # Tool calls are executed by the session, never by the SDK.
            "automatic_function_calling": types.AutomaticFunctionCallingConfig(
                disable=True
            ),
        }
        if request.system_instruction and not gemma:
            config_kwargs["system_instruction"] = request.system_instruction
        if request.max_output_tokens is not None:
            config_kwargs["max_output_tokens"] = request.max_output_tokens
        if request.temperature is not None:
            config_kwargs["temperature"] = request.temperature
        if request.top_p is not None:
            config_kwargs["top_p"] = request.top_p
        if request.safety_settings is not None:
            config_kwargs["safety_settings"] = request.safety_settings

        tool_objs: list[Any] = []
        for t in request.tools or []:
            tool_objs.append(
                types.Tool(
                    function_declarations=[
                        types.FunctionDeclaration(
                            name=t["name"],
                            description=t.get("description", ""),
                            parameters=t.get("parameters"),
                        )
                    ]
                )
            )
        if request.enable_web_search:
            tool_objs.append(types.Tool(google_search=types.GoogleSearch()))
        if tool_objs:
            config_kwargs["tools"] = tool_objs

        config_kwargs.update(request.custom_parameters)

        try:
            config = types.GenerateContentConfig(**config_kwargs)
        except ValidationError as e:
            raise ConfigurationError(
                "Invalid Gemini generation parameters",
                hint=f"Check custom_parameters and tool schemas: {e.errors()[0]['msg']}",
            ) from e

        # Gemma has no system role: fold the prompt into the opening turn.
        if gemma and request.system_instruction and len(contents) == 1:
            first = contents[0]
            if first.parts and first.parts[0].text is not None:
                first.parts[0] = types.Part(
                    text=_gemma_prompt(request.system_instruction, first.parts[0].text)
                )

        return contents, config

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate(self, request: ProviderRequest) -> ProviderResponse:
        """Generate a full response from the Gemini model."""
        client = self._get_client()
        contents, config = self._prepare(request)

        try:
            response = await client.aio.models.generate_content(
                model=request.model,
                contents=contents,
                config=config,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e,
                provider="gemini",
                phase="generate",
                message="Gemini generate failed",
            ) from e

        if not response:
            raise APIError("Gemini returned an empty response.", provider="gemini")
        return self._parse_response(response)

    @asynccontextmanager
    async def stream(
        self, request: ProviderRequest
    ) -> AsyncIterator[AsyncIterator[ProviderResponse]]:
        """Open a Gemini response stream.

        The first unit is pulled while opening so that connection failures
        surface as setup errors, before anything reaches the caller.
        """
        client = self._get_client()
        contents, config = self._prepare(request)

        iterator: Any = None
        try:
            iterator = await client.aio.models.generate_content_stream(
                model=request.model,
                contents=contents,
                config=config,
            )
            try:
                first: Any = await iterator.__anext__()
            except StopAsyncIteration:
                first = None
        except asyncio.CancelledError:
            await self._close_iterator(iterator)
            raise
        except Exception as e:
            await self._close_iterator(iterator)
            raise wrap_provider_error(
                e,
                provider="gemini",
                phase="connect",
                message="Gemini stream open failed",
            ) from e

        units = self._iter_units(iterator, first)
        try:
            yield units
        finally:
            await units.aclose()
            await self._close_iterator(iterator)

    async def _iter_units(
        self, iterator: Any, first: Any
    ) -> AsyncIterator[ProviderResponse]:
        if first is None:
            return
        yield self._parse_response(first)
        while True:
            try:
                raw = await iterator.__anext__()
            except StopAsyncIteration:
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                raise wrap_provider_error(
                    e,
                    provider="gemini",
                    phase="stream",
                    message="Gemini stream interrupted",
                ) from e
            yield self._parse_response(raw)

    @staticmethod
    async def _close_iterator(iterator: Any) -> None:
        aclose = getattr(iterator, "aclose", None)
        if not callable(aclose):
            return
        try:
            await aclose()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Cleanup should never mask the primary failure.
            logger.warning("Gemini stream cleanup failed: %s", exc)

    def _parse_response(self, response: Any) -> ProviderResponse:
        """Parse a Gemini response or stream unit."""
        candidate: Any = None
        candidates = getattr(response, "candidates", None)
        if isinstance(candidates, (list, tuple)) and candidates:
            candidate = candidates[0]

        text_parts: list[str] = []
        content = getattr(candidate, "content", None)
        for part in getattr(content, "parts", None) or []:
            if getattr(part, "thought", False):
                continue
            part_text = getattr(part, "text", None)
            if isinstance(part_text, str):
                text_parts.append(part_text)
        if candidate is None:
            try:
                fallback = getattr(response, "text", None)
            except Exception:
                fallback = None
            if isinstance(fallback, str):
                text_parts.append(fallback)

        usage: dict[str, int] = {}
        um = getattr(response, "usage_metadata", None)
        if um is not None:
            # Gemini SDK attrs → provider-agnostic keys
            usage = {
                "prompt_tokens": getattr(um, "prompt_token_count", None) or 0,
                "completion_tokens": getattr(um, "candidates_token_count", None) or 0,
                "total_tokens": getattr(um, "total_token_count", None) or 0,
            }

        function_calls: list[FunctionCallPart] = []
        for fc in getattr(response, "function_calls", None) or []:
            args = getattr(fc, "args", None)
            call_id = getattr(fc, "id", None)
            function_calls.append(
                FunctionCallPart(
                    name=str(fc.name),
                    args=dict(args) if isinstance(args, dict) else {},
                    id=call_id if isinstance(call_id, str) else None,
                )
            )

        grounding: Any = getattr(candidate, "grounding_metadata", None)
        dump = getattr(grounding, "model_dump", None)
        if callable(dump):
            grounding = dump(mode="json", exclude_none=True)

        return ProviderResponse(
            text="".join(text_parts),
            usage=usage,
            function_calls=function_calls,
            grounding_metadata=grounding,
        )

    # ------------------------------------------------------------------
    # File store
    # ------------------------------------------------------------------

    async def lookup_file(self, attachment: Attachment) -> FileReference | None:
        """Find a previously uploaded, active file by display name and size."""
        client = self._get_client()

        try:
            pager = await client.aio.files.list()
            async for file_obj in pager:
                if getattr(file_obj, "display_name", None) != attachment.name:
                    continue
                size = getattr(file_obj, "size_bytes", None)
                if size is None or int(size) != attachment.size_bytes:
                    continue
                if self._file_state_name(file_obj) != "ACTIVE":
                    continue
                uri = getattr(file_obj, "uri", None)
                if not isinstance(uri, str) or not uri:
                    continue
                return FileReference(
                    uri=uri,
                    mime_type=getattr(file_obj, "mime_type", None) or attachment.mime_type,
                    name=getattr(file_obj, "name", None),
                )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e,
                provider="gemini",
                phase="lookup",
                message="Gemini file lookup failed",
            ) from e
        return None

    async def _wait_for_file_active(
        self,
        file_name: str,
        *,
        timeout_seconds: float = FILE_ACTIVE_TIMEOUT_S,
        poll_interval: float = FILE_ACTIVE_POLL_INTERVAL_S,
    ) -> Any:
        """Poll file status until it becomes ACTIVE or errors out."""
        client = self._get_client()
        deadline = time.monotonic() + timeout_seconds
        last_state = "STATE_UNSPECIFIED"

        while time.monotonic() < deadline:
            file_obj = await client.aio.files.get(name=file_name)
            state = self._file_state_name(file_obj)
            last_state = state

            if state == "ACTIVE":
                return file_obj
            if state == "FAILED":
                raise APIError(
                    f"File processing failed: {self._file_error_message(file_obj)}"
                )

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(poll_interval, remaining))

        raise APIError(
            "File did not become active within "
            f"{timeout_seconds}s (stuck in {last_state})"
        )

    async def upload_file(self, attachment: Attachment) -> FileReference:
        """Upload an attachment to the Gemini file store."""
        client = self._get_client()
        data = attachment.content_loader()

        try:
            result = await client.aio.files.upload(
                file=io.BytesIO(data),
                config={
                    "mime_type": attachment.mime_type,
                    "display_name": attachment.name,
                },
            )

            file_name = getattr(result, "name", None)
            if not isinstance(file_name, str) or not file_name:
                raise APIError("Gemini upload did not return a file name")

            state = self._file_state_name(result)
            if state == "FAILED":
                raise APIError(
                    f"File processing failed: {self._file_error_message(result)}"
                )
            if state != "ACTIVE":
                result = await self._wait_for_file_active(file_name)

            file_uri = getattr(result, "uri", None)
            if not isinstance(file_uri, str) or not file_uri:
                raise APIError("Gemini upload did not return a file uri")

            logger.debug("Uploaded %s as %s", attachment.name, file_name)
            return FileReference(
                uri=file_uri,
                mime_type=getattr(result, "mime_type", None) or attachment.mime_type,
                name=file_name,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e,
                provider="gemini",
                phase="upload",
                message="Gemini upload failed",
            ) from e

    @staticmethod
    def _file_state_name(file_obj: Any) -> str:
        """Extract a stable string state from Gemini file objects."""
        state = getattr(file_obj, "state", None)
        if isinstance(state, str) and state:
            return state

        for attr in ("name", "value"):
            value = getattr(state, attr, None)
            if isinstance(value, str) and value:
                return value

        return "STATE_UNSPECIFIED"

    @staticmethod
    def _file_error_message(file_obj: Any) -> str:
        """Extract a human-readable processing error message."""
        error = getattr(file_obj, "error", None)
        if isinstance(error, str) and error:
            return error

        message = getattr(error, "message", None)
        if isinstance(message, str) and message:
            return message

        return "Unknown error"
