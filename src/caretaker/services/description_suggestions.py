"""Suggested tool descriptions for maintenance proposals.

Suggesters are injected: anything with an async ``suggest(tool, diff_slice)``
returning text works. The template suggester is the default; setting
DESCRIPTION_SERVICE_URL delegates generation to an external HTTP service.
"""

import logging
from typing import Any, Protocol

import httpx

from caretaker.config import settings
from caretaker.db import ToolDB
from caretaker.models.enums import DriftChangeKind

logger = logging.getLogger(__name__)

# Marker separating the original description from generated change notes
NOTES_MARKER = " Recent changes: "


class DescriptionSuggester(Protocol):
    """Produces a candidate description for a tool affected by schema changes."""

    async def suggest(self, tool: ToolDB, diff_slice: list[dict[str, Any]]) -> str: ...


def _relative(tool: ToolDB, field_path: str) -> str:
    prefix = f"{tool.action}."
    return field_path[len(prefix) :] if field_path.startswith(prefix) else field_path


def _describe_change(tool: ToolDB, change: dict[str, Any]) -> str:
    field = _relative(tool, change["field_path"])
    kind = change["change_kind"]
    before = change.get("before") or {}
    after = change.get("after") or {}

    if field == change["field_path"] == tool.action:
        if kind == DriftChangeKind.REMOVED:
            return "the underlying action was removed upstream"
        return "the underlying action changed upstream"
    if kind == DriftChangeKind.REMOVED:
        return f"`{field}` is no longer accepted"
    if kind == DriftChangeKind.ADDED:
        if change.get("required_after"):
            return f"`{field}` is now a required input"
        return f"`{field}` can optionally be provided"
    if kind == DriftChangeKind.TYPE_CHANGED:
        return f"`{field}` is now {after.get('type')} (was {before.get('type')})"
    if change.get("required_after"):
        return f"`{field}` is now required"
    return f"`{field}` is now optional"


class TemplateDescriptionSuggester:
    """Appends a plain-language summary of the changes to the current description."""

    async def suggest(self, tool: ToolDB, diff_slice: list[dict[str, Any]]) -> str:
        if not diff_slice:
            return ""
        base = (tool.description or f"Calls {tool.action}.").split(NOTES_MARKER)[0].rstrip()
        notes = "; ".join(_describe_change(tool, change) for change in diff_slice)
        return f"{base}{NOTES_MARKER}{notes}."


class HTTPDescriptionSuggester:
    """Asks an external text-generation service for a description.

    The service receives ``{"tool": {...}, "changes": [...]}`` and answers
    ``{"description": "..."}``.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def suggest(self, tool: ToolDB, diff_slice: list[dict[str, Any]]) -> str:
        payload = {
            "tool": {
                "id": str(tool.id),
                "name": tool.name,
                "action": tool.action,
                "description": tool.description,
                "field_refs": list(tool.field_refs or []),
            },
            "changes": diff_slice,
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(self.url, json=payload)
            response.raise_for_status()
            data = response.json()
        description = data.get("description") if isinstance(data, dict) else None
        return str(description or "")


def get_description_suggester() -> DescriptionSuggester:
    """FastAPI dependency returning the configured suggester."""
    if settings.description_service_url:
        return HTTPDescriptionSuggester(
            settings.description_service_url, settings.description_service_timeout
        )
    return TemplateDescriptionSuggester()
