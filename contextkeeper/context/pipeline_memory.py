"""Short-term memory for multi-step pipelines.

Each step's output is kept raw, plus (when large) a summary and key points so
later templates can reference it without blowing the target's token budget.
Contexts are immutable: every update returns a new ``MemoryContext``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from contextkeeper.config import settings
from contextkeeper.context.tokens import TRUNCATION_MARKER, estimate_tokens, truncate_for_agent

if TYPE_CHECKING:
    from contextkeeper.context.compressor import Compressor

logger = logging.getLogger(__name__)

# Key points are offered only when the budget is below this share of the summary.
KEY_POINTS_BUDGET_SHARE = 0.5
TRUNCATION_SAFETY = 0.9

_PLACEHOLDER_RE = re.compile(r"\{\{([^}]+)\}\}")


class StepResult(BaseModel):
    """What an executor reports for one finished pipeline step."""

    step_id: str
    status: str = "completed"
    content: str | None = None
    error: str | None = None
    model: str | None = None
    duration: float | None = None

    @property
    def success(self) -> bool:
        return self.status == "completed" and not self.error


class StepOutput(BaseModel):
    model_config = ConfigDict(frozen=True)

    raw: str
    summary: str
    tokens: int
    summary_tokens: int
    key_points: list[str] = Field(default_factory=list)
    timestamp: datetime


class MemoryConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    target_agent: str = Field(default_factory=lambda: settings.pipeline_target)
    summarize_threshold: int = Field(default_factory=lambda: settings.pipeline_summarize_threshold)
    max_injection_tokens: int = Field(
        default_factory=lambda: settings.pipeline_max_injection_tokens
    )
    prefer_summaries: bool = True


class MemoryContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt: str
    initial: dict[str, Any] = Field(default_factory=dict)
    steps: dict[str, StepResult] = Field(default_factory=dict)
    outputs: dict[str, str] = Field(default_factory=dict)
    memory: dict[str, StepOutput] = Field(default_factory=dict)
    config: MemoryConfig = Field(default_factory=MemoryConfig)


class StepMemoryStats(BaseModel):
    step_id: str
    raw_tokens: int
    summary_tokens: int
    key_point_count: int


class PipelineMemoryStats(BaseModel):
    total_steps: int
    total_raw_tokens: int
    total_summary_tokens: int
    compression_percent: int
    steps: list[StepMemoryStats]


def _bullets(points: list[str]) -> str:
    return "\n".join(f"- {p}" for p in points)


class PipelineMemory:
    """Records step outputs and renders templates against them within budget."""

    def __init__(self, compressor: Compressor | None = None) -> None:
        self._compressor = compressor

    def create_context(
        self,
        prompt: str,
        initial: dict[str, Any] | None = None,
        config: MemoryConfig | None = None,
    ) -> MemoryContext:
        return MemoryContext(
            prompt=prompt,
            initial=dict(initial or {}),
            config=config or MemoryConfig(),
        )

    async def record_step_result(
        self,
        ctx: MemoryContext,
        result: StepResult,
        output_as: str | None = None,
    ) -> MemoryContext:
        """Store *result* and its memory entry, returning the updated context.

        Outputs above the summarize threshold are summarized and mined for key
        points concurrently, provided the summarizer is reachable. Either half
        may fail without affecting the other.
        """
        content = result.content or ""
        tokens = estimate_tokens(content)
        summary, summary_tokens, key_points = content, tokens, []

        threshold = ctx.config.summarize_threshold
        if (
            tokens > threshold
            and self._compressor is not None
            and await self._compressor.is_available()
        ):
            compressed, extracted = await asyncio.gather(
                self._compressor.compress_to_limit(content, threshold),
                self._compressor.extract_key_points(content),
                return_exceptions=True,
            )

            if isinstance(compressed, BaseException) or compressed.method == "truncation":
                logger.warning("Step %s: summary unavailable, truncating", result.step_id)
                summary = truncate_for_agent(content, ctx.config.target_agent)
            else:
                summary = compressed.summary
            summary_tokens = estimate_tokens(summary)

            if isinstance(extracted, BaseException):
                logger.warning(
                    "Step %s: key point extraction failed: %s", result.step_id, extracted
                )
            else:
                key_points = extracted

        output = StepOutput(
            raw=content,
            summary=summary,
            tokens=tokens,
            summary_tokens=summary_tokens,
            key_points=key_points,
            timestamp=datetime.now(UTC),
        )

        outputs = ctx.outputs
        if output_as and content:
            outputs = {**ctx.outputs, output_as: content}

        return ctx.model_copy(
            update={
                "steps": {**ctx.steps, result.step_id: result},
                "outputs": outputs,
                "memory": {**ctx.memory, result.step_id: output},
            }
        )

    # -- Template injection ----------------------------------------------------

    def inject_token_safe(
        self,
        template: str,
        ctx: MemoryContext,
        target: str | None = None,
    ) -> str:
        """Fill ``{{name}}`` and ``{{step.property}}`` placeholders within budget.

        Placeholders that resolve to nothing are left exactly as written.
        """
        agent = target or ctx.config.target_agent

        def _replace(match: re.Match[str]) -> str:
            name = match.group(1).strip()
            if name == "prompt":
                return truncate_for_agent(ctx.prompt, agent)
            if "." in name:
                step_id, prop = name.split(".", 1)
                value = self._step_property(ctx, step_id, prop, agent)
                return match.group(0) if value is None else value
            if name in ctx.outputs:
                return self._named_output(ctx, ctx.outputs[name], agent)
            if name in ctx.initial:
                value = ctx.initial[name]
                text = value if isinstance(value, str) else json.dumps(value, default=str)
                return truncate_for_agent(text, agent)
            return match.group(0)

        return _PLACEHOLDER_RE.sub(_replace, template)

    def _prefers_summary(self, ctx: MemoryContext, mem: StepOutput | None) -> bool:
        return (
            mem is not None
            and mem.tokens > ctx.config.max_injection_tokens
            and ctx.config.prefer_summaries
        )

    def _step_property(  # noqa: PLR0911
        self, ctx: MemoryContext, step_id: str, prop: str, agent: str
    ) -> str | None:
        step = ctx.steps.get(step_id)
        if step is None:
            return None
        mem = ctx.memory.get(step_id)

        if prop in ("content", "raw"):
            if self._prefers_summary(ctx, mem):
                return mem.summary
            return truncate_for_agent(step.content or "", agent)
        if prop == "summary":
            return mem.summary if mem else truncate_for_agent(step.content or "", agent)
        if prop == "keyPoints":
            return _bullets(mem.key_points) if mem else ""
        if prop == "tokens":
            return str(mem.tokens if mem else 0)
        if prop == "success":
            return "true" if step.success else "false"
        if prop == "error":
            return step.error or ""
        if prop == "model":
            return step.model or ""
        if prop == "duration":
            return str(step.duration or 0)
        return None

    def _named_output(self, ctx: MemoryContext, value: str, agent: str) -> str:
        mem = next((m for m in ctx.memory.values() if m.raw == value), None)
        if self._prefers_summary(ctx, mem):
            return mem.summary
        return truncate_for_agent(value, agent)

    # -- Budgeting / housekeeping ----------------------------------------------

    def budgeted_step_output(self, ctx: MemoryContext, step_id: str, budget: int) -> str:
        """Densest representation of a step that fits *budget* tokens.

        Key points when the budget is tight, then the full summary, then the
        summary cut down with a marker. Raw output is never offered.
        """
        mem = ctx.memory.get(step_id)
        if mem is None:
            step = ctx.steps.get(step_id)
            return (step.content or "") if step else ""

        key_points = _bullets(mem.key_points)
        key_point_tokens = estimate_tokens(key_points)
        if (
            key_point_tokens > 0
            and budget < mem.summary_tokens * KEY_POINTS_BUDGET_SHARE
            and key_point_tokens <= budget
        ):
            return key_points

        if mem.summary_tokens <= budget or mem.summary_tokens == 0:
            return mem.summary

        ratio = budget / mem.summary_tokens
        target_chars = max(0, math.floor(len(mem.summary) * ratio * TRUNCATION_SAFETY))
        return mem.summary[:target_chars] + TRUNCATION_MARKER

    def stats(self, ctx: MemoryContext) -> PipelineMemoryStats:
        raw = sum(m.tokens for m in ctx.memory.values())
        summarized = sum(m.summary_tokens for m in ctx.memory.values())
        percent = math.floor((1 - summarized / raw) * 100 + 0.5) if raw > 0 else 0
        return PipelineMemoryStats(
            total_steps=len(ctx.memory),
            total_raw_tokens=raw,
            total_summary_tokens=summarized,
            compression_percent=percent,
            steps=[
                StepMemoryStats(
                    step_id=step_id,
                    raw_tokens=m.tokens,
                    summary_tokens=m.summary_tokens,
                    key_point_count=len(m.key_points),
                )
                for step_id, m in ctx.memory.items()
            ],
        )

    def clear(self, ctx: MemoryContext, step_ids: list[str] | None = None) -> MemoryContext:
        """Evict memory entries (all, or just *step_ids*). Steps and outputs stay."""
        if step_ids is None:
            return ctx.model_copy(update={"memory": {}})
        drop = set(step_ids)
        return ctx.model_copy(
            update={"memory": {k: v for k, v in ctx.memory.items() if k not in drop}}
        )
