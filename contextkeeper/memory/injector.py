"""Render retrieved memory as a prompt block.

Two dialects: ``xml`` (one element per item, preferred by Claude) and
``markdown`` (items grouped under a heading per type).
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Literal
from xml.sax.saxutils import escape

from pydantic import BaseModel

if TYPE_CHECKING:
    from contextkeeper.memory.models import MemoryItem
    from contextkeeper.memory.retriever import Retriever

Dialect = Literal["xml", "markdown"]

DEFAULT_MAX_TOKENS = 2000

TYPE_LABELS: dict[str, str] = {
    "conversation": "Past Conversation",
    "code": "Code Reference",
    "decision": "Previous Decision",
    "pattern": "User Preference",
    "context": "Project Context",
}

_XML_ENTITIES = {'"': "&quot;", "'": "&apos;"}


class InjectionResult(BaseModel):
    content: str
    tokens: int
    item_count: int
    breakdown: dict[str, int]


def escape_xml(text: str) -> str:
    return escape(text, _XML_ENTITIES)


def cdata(text: str) -> str:
    """Wrap *text* in CDATA, splitting any ``]]>`` across two sections."""
    return "<![CDATA[" + text.replace("]]>", "]]]]><![CDATA[>") + "]]>"


def format_as_xml(items: list[MemoryItem]) -> str:
    if not items:
        return ""

    lines = ["<memory>"]
    for item in items:
        lines.append(f'  <item type="{escape_xml(item.type)}">')
        if item.type == "code":
            lines.append(f"    <content>{cdata(item.content)}</content>")
        else:
            lines.append(f"    <content>{escape_xml(item.content)}</content>")
        if item.metadata:
            lines.append(f"    <metadata>{escape_xml(json.dumps(item.metadata))}</metadata>")
        lines.append("  </item>")
    lines.append("</memory>")
    return "\n".join(lines)


def format_as_markdown(items: list[MemoryItem]) -> str:
    if not items:
        return ""

    # dicts keep first-appearance order of types
    groups: dict[str, list[MemoryItem]] = {}
    for item in items:
        groups.setdefault(item.type, []).append(item)

    lines = ["## Relevant Context\n"]
    for memory_type, group in groups.items():
        lines.append(f"### {TYPE_LABELS.get(memory_type, 'Memory')}\n")
        for item in group:
            if memory_type == "code":
                lines.extend(["```", item.content, "```\n"])
            else:
                lines.extend([item.content, ""])
    return "\n".join(lines)


def format_item(item: MemoryItem, dialect: Dialect = "markdown") -> str:
    if dialect == "xml":
        return format_as_xml([item])
    return format_as_markdown([item])


def dialect_for(agent: str) -> Dialect:
    """Claude reads XML tags best; everything else gets markdown."""
    return "xml" if agent == "claude" else "markdown"


class Injector:
    """Builds ready-to-prepend memory blocks from a ``Retriever``."""

    def __init__(self, retriever: Retriever) -> None:
        self._retriever = retriever

    async def build_injection(  # noqa: PLR0913
        self,
        query: str,
        *,
        dialect: Dialect = "markdown",
        max_tokens: int = DEFAULT_MAX_TOKENS,
        include_conversation: bool = True,
        include_code: bool = True,
        include_decisions: bool = True,
        include_patterns: bool = True,
    ) -> InjectionResult:
        """Retrieve context for *query* and render it.

        ``tokens`` counts the retrieved item content, not the markup around it.
        """
        bundle = await self._retriever.build_context(
            query,
            max_tokens=max_tokens,
            include_conversation=include_conversation,
            include_code=include_code,
            include_decisions=include_decisions,
            include_patterns=include_patterns,
        )
        render = format_as_xml if dialect == "xml" else format_as_markdown
        content = render(bundle.items)
        return InjectionResult(
            content=content,
            tokens=bundle.total_tokens,
            item_count=len(bundle.items),
            breakdown=bundle.breakdown,
        )

    async def build_injection_for_agent(
        self,
        query: str,
        agent: str,
        *,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        include_conversation: bool = True,
        include_code: bool = True,
        include_decisions: bool = True,
        include_patterns: bool = True,
    ) -> InjectionResult:
        return await self.build_injection(
            query,
            dialect=dialect_for(agent),
            max_tokens=max_tokens,
            include_conversation=include_conversation,
            include_code=include_code,
            include_decisions=include_decisions,
            include_patterns=include_patterns,
        )
