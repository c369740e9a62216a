"""Tool registry adapter: filter, declare, resolve and invoke caller tools."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
import inspect
import logging
from typing import TYPE_CHECKING, Any

from parley.errors import ConfigurationError

if TYPE_CHECKING:
    from parley.types import ToolDescriptor, ToolInvocation

logger = logging.getLogger(__name__)

# JSON Schema keys the function-declaration format accepts.
_SCHEMA_KEYS = frozenset(
    {
        "type",
        "description",
        "enum",
        "items",
        "properties",
        "required",
        "format",
        "nullable",
    }
)


def filter_tools(
    tools: Iterable[ToolDescriptor], enabled: Iterable[str] | None
) -> list[ToolDescriptor]:
    """Narrow *tools* to those enabled for the current message.

    A tool is kept when its ``id`` or its ``server`` is in *enabled*. When
    *enabled* is None nothing is enabled.
    """
    if enabled is None:
        return []
    allowed = set(enabled)
    return [
        t
        for t in tools
        if t.id in allowed or (t.server is not None and t.server in allowed)
    ]


def _reduce_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """Inline ``$ref`` definitions and keep only declaration-safe keys."""
    defs: dict[str, Any] = {}
    for key in ("$defs", "definitions"):
        value = schema.get(key)
        if isinstance(value, dict):
            defs.update(value)

    def resolve(
        node: dict[str, Any], seen: frozenset[str]
    ) -> tuple[dict[str, Any], frozenset[str]]:
        ref = node.get("$ref")
        if not isinstance(ref, str):
            return node, seen
        name = ref.rsplit("/", 1)[-1]
        if name in seen:
            raise ConfigurationError(
                f"Recursive schema reference: {ref}",
                hint="Flatten the tool's input schema.",
            )
        if name not in defs:
            raise ConfigurationError(f"Unresolvable schema reference: {ref}")
        merged = {**defs[name], **{k: v for k, v in node.items() if k != "$ref"}}
        return resolve(merged, seen | {name})

    def walk(node: Any, seen: frozenset[str]) -> Any:
        if isinstance(node, list):
            return [walk(item, seen) for item in node]
        if not isinstance(node, dict):
            return node

        node, seen = resolve(node, seen)

        # Optional[X] from pydantic: anyOf [X, {"type": "null"}]
        variants = node.get("anyOf")
        if isinstance(variants, list):
            non_null = [
                v
                for v in variants
                if not (isinstance(v, dict) and v.get("type") == "null")
            ]
            if len(non_null) == 1 and isinstance(non_null[0], dict):
                rest = {k: v for k, v in node.items() if k != "anyOf"}
                inner, seen = resolve(non_null[0], seen)
                node = {**inner, **rest}
                if len(non_null) < len(variants):
                    node["nullable"] = True

        updated: dict[str, Any] = {}
        for key, value in node.items():
            if key not in _SCHEMA_KEYS:
                continue
            if key == "properties" and isinstance(value, dict):
                updated[key] = {name: walk(prop, seen) for name, prop in value.items()}
            elif key == "items":
                updated[key] = walk(value, seen)
            else:
                updated[key] = value
        return updated

    return walk(schema, frozenset())


def to_declarations(tools: Iterable[ToolDescriptor]) -> list[dict[str, Any]]:
    """Map tools to provider-neutral function declarations.

    Object schemas without properties omit ``parameters`` entirely.
    """
    declarations: list[dict[str, Any]] = []
    for tool in tools:
        decl: dict[str, Any] = {"name": tool.id, "description": tool.description}
        schema = tool.parameters_schema()
        if schema is not None:
            reduced = _reduce_schema(schema)
            if reduced.get("properties"):
                decl["parameters"] = reduced
        declarations.append(decl)
    return declarations


def resolve_tool(tools: Iterable[ToolDescriptor], name: str) -> ToolDescriptor | None:
    """Return the tool declared as *name*, or None."""
    for tool in tools:
        if tool.id == name:
            return tool
    return None


def failure_payload(name: str, error: BaseException | str) -> dict[str, Any]:
    """Build the result payload reported to the model for a failed call."""
    return {
        "isError": True,
        "content": [{"type": "text", "text": f"Error calling tool {name}: {error}"}],
    }


async def invoke_tool(tool: ToolDescriptor, invocation: ToolInvocation) -> dict[str, Any]:
    """Run *tool* and return its result payload.

    Synchronous executors run in a worker thread so the event loop stays free
    to notice cancellation. Failures are captured as a failure payload; only
    cancellation propagates.
    """
    try:
        if inspect.iscoroutinefunction(tool.execute):
            result = await tool.execute(invocation)
        else:
            result = await asyncio.to_thread(tool.execute, invocation)
        if inspect.isawaitable(result):
            result = await result
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.warning(
            "Tool %s failed (correlation=%s): %s",
            invocation.name,
            invocation.correlation_id,
            exc,
        )
        return failure_payload(invocation.name, exc)

    if isinstance(result, dict):
        return result
    return {"result": result}
