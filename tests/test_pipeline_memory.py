"""Tests for PipelineMemory: step recording, template injection and budgeting."""

from unittest.mock import AsyncMock

import pytest

from contextkeeper.context.compressor import Compressor
from contextkeeper.context.pipeline_memory import (
    MemoryConfig,
    PipelineMemory,
    StepOutput,
    StepResult,
)
from contextkeeper.context.tokens import TRUNCATION_MARKER

BIG = "Lorem ipsum dolor sit amet. " * 400  # 11200 chars, 2800 tokens


@pytest.fixture
def pipeline(compressor: Compressor) -> PipelineMemory:
    return PipelineMemory(compressor)


def _config(**kwargs) -> MemoryConfig:
    defaults = {
        "target_agent": "ollama",
        "summarize_threshold": 2000,
        "max_injection_tokens": 4000,
        "prefer_summaries": True,
    }
    defaults.update(kwargs)
    return MemoryConfig(**defaults)


# -- create_context / record_step_result ---------------------------------------


def test_create_context_defaults(pipeline: PipelineMemory) -> None:
    ctx = pipeline.create_context("Build it", {"lang": "python"})
    assert ctx.prompt == "Build it"
    assert ctx.initial == {"lang": "python"}
    assert ctx.memory == {}
    assert ctx.config.summarize_threshold == 2000


async def test_small_output_is_stored_verbatim(pipeline: PipelineMemory, service) -> None:
    ctx = pipeline.create_context("p", config=_config())
    new_ctx = await pipeline.record_step_result(
        ctx, StepResult(step_id="plan", content="short plan"), output_as="plan_text"
    )

    mem = new_ctx.memory["plan"]
    assert mem.raw == mem.summary == "short plan"
    assert mem.key_points == []
    assert new_ctx.outputs == {"plan_text": "short plan"}
    service.generate.assert_not_awaited()


async def test_update_returns_new_context(pipeline: PipelineMemory) -> None:
    ctx = pipeline.create_context("p", config=_config())
    new_ctx = await pipeline.record_step_result(ctx, StepResult(step_id="a", content="x"))

    assert ctx.steps == {}
    assert ctx.memory == {}
    assert "a" in new_ctx.steps


async def test_empty_output_is_not_named(pipeline: PipelineMemory) -> None:
    ctx = pipeline.create_context("p", config=_config())
    new_ctx = await pipeline.record_step_result(
        ctx, StepResult(step_id="a", content=None), output_as="result"
    )
    assert new_ctx.outputs == {}
    assert new_ctx.memory["a"].raw == ""


async def test_large_output_gets_summary_and_key_points(
    pipeline: PipelineMemory, service
) -> None:
    service.generate.side_effect = ["Condensed output.", "- point one\n- point two"]
    ctx = pipeline.create_context("p", config=_config())

    new_ctx = await pipeline.record_step_result(ctx, StepResult(step_id="big", content=BIG))

    mem = new_ctx.memory["big"]
    assert mem.raw == BIG
    assert mem.tokens == 2800
    assert mem.summary == "Condensed output."
    assert mem.summary_tokens == 5
    assert mem.key_points == ["point one", "point two"]
    assert service.generate.await_count == 2


async def test_summary_failure_falls_back_to_target_truncation(
    pipeline: PipelineMemory, service
) -> None:
    service.generate.side_effect = RuntimeError("model crashed")
    ctx = pipeline.create_context("p", config=_config(target_agent="ollama"))

    new_ctx = await pipeline.record_step_result(ctx, StepResult(step_id="big", content=BIG))

    mem = new_ctx.memory["big"]
    # BIG fits the ollama window, so target truncation leaves it intact
    assert mem.summary == BIG
    assert mem.key_points == [BIG[:200] + "..."]


async def test_key_point_exception_does_not_lose_summary(service) -> None:
    compressor = Compressor(service)
    compressor.extract_key_points = AsyncMock(side_effect=RuntimeError("boom"))
    pipeline = PipelineMemory(compressor)
    ctx = pipeline.create_context("p", config=_config())

    new_ctx = await pipeline.record_step_result(ctx, StepResult(step_id="big", content=BIG))

    assert new_ctx.memory["big"].summary == "A short summary."
    assert new_ctx.memory["big"].key_points == []


async def test_unreachable_summarizer_skips_compression(pipeline: PipelineMemory, service) -> None:
    service.ping.return_value = False
    ctx = pipeline.create_context("p", config=_config())

    new_ctx = await pipeline.record_step_result(ctx, StepResult(step_id="big", content=BIG))

    assert new_ctx.memory["big"].summary == BIG
    service.generate.assert_not_awaited()


# -- inject_token_safe ---------------------------------------------------------


async def test_inject_prompt_outputs_and_initial(pipeline: PipelineMemory) -> None:
    ctx = pipeline.create_context("Ship v2", {"files": ["a.py", "b.py"], "lang": "python"})
    ctx = await pipeline.record_step_result(
        ctx, StepResult(step_id="plan", content="Do X then Y"), output_as="plan"
    )

    rendered = pipeline.inject_token_safe(
        "{{prompt}} | {{plan}} | {{ lang }} | {{files}}", ctx
    )
    assert rendered == 'Ship v2 | Do X then Y | python | ["a.py", "b.py"]'


async def test_inject_step_properties(pipeline: PipelineMemory) -> None:
    ctx = pipeline.create_context("p", config=_config())
    ctx = await pipeline.record_step_result(
        ctx,
        StepResult(step_id="s1", content="out", model="llama3.2", duration=1.5),
    )
    ctx = await pipeline.record_step_result(
        ctx, StepResult(step_id="s2", status="failed", error="exploded")
    )

    template = (
        "{{s1.content}}/{{s1.raw}}/{{s1.summary}}/{{s1.tokens}}/{{s1.success}}"
        "/{{s1.model}}/{{s1.duration}}/{{s2.success}}/{{s2.error}}"
    )
    assert pipeline.inject_token_safe(template, ctx) == (
        "out/out/out/1/true/llama3.2/1.5/false/exploded"
    )


async def test_inject_key_points_as_bullets(pipeline: PipelineMemory, service) -> None:
    service.generate.side_effect = ["Condensed.", "- alpha\n- beta"]
    ctx = pipeline.create_context("p", config=_config())
    ctx = await pipeline.record_step_result(ctx, StepResult(step_id="big", content=BIG))

    assert pipeline.inject_token_safe("{{big.keyPoints}}", ctx) == "- alpha\n- beta"


async def test_inject_prefers_summary_over_budget(pipeline: PipelineMemory, service) -> None:
    service.generate.side_effect = ["Condensed.", "- alpha"]
    ctx = pipeline.create_context("p", config=_config(max_injection_tokens=1000))
    ctx = await pipeline.record_step_result(
        ctx, StepResult(step_id="big", content=BIG), output_as="report"
    )

    assert pipeline.inject_token_safe("{{big.content}}", ctx) == "Condensed."
    assert pipeline.inject_token_safe("{{report}}", ctx) == "Condensed."


async def test_inject_truncates_to_target(pipeline: PipelineMemory) -> None:
    ctx = pipeline.create_context("x" * 30_000, config=_config())
    rendered = pipeline.inject_token_safe("{{prompt}}", ctx, target="ollama")
    assert rendered.endswith(TRUNCATION_MARKER)
    assert pipeline.inject_token_safe("{{prompt}}", ctx, target="claude") == "x" * 30_000


def test_unresolved_placeholders_pass_through(pipeline: PipelineMemory) -> None:
    ctx = pipeline.create_context("p")
    template = "{{missing}} {{ghost.content}} {{p.unknown}}"
    assert pipeline.inject_token_safe(template, ctx) == template


# -- budgeted_step_output ------------------------------------------------------


def _ctx_with_memory(pipeline: PipelineMemory, summary: str, key_points: list[str]):
    ctx = pipeline.create_context("p")
    output = StepOutput(
        raw="r" * 8000,
        summary=summary,
        tokens=2000,
        summary_tokens=len(summary) // 4,
        key_points=key_points,
        timestamp="2026-01-01T00:00:00Z",
    )
    return ctx.model_copy(
        update={
            "steps": {"s": StepResult(step_id="s", content="r" * 8000)},
            "memory": {"s": output},
        }
    )


def test_budget_prefers_key_points_when_tight(pipeline: PipelineMemory) -> None:
    ctx = _ctx_with_memory(pipeline, "s" * 400, ["one", "two"])  # 100 summary tokens
    assert pipeline.budgeted_step_output(ctx, "s", 40) == "- one\n- two"


def test_budget_uses_summary_when_it_fits(pipeline: PipelineMemory) -> None:
    ctx = _ctx_with_memory(pipeline, "s" * 400, ["one"])
    assert pipeline.budgeted_step_output(ctx, "s", 100) == "s" * 400


def test_budget_truncates_summary(pipeline: PipelineMemory) -> None:
    ctx = _ctx_with_memory(pipeline, "s" * 400, [])
    # 400 * (80 / 100) * 0.9 = 288 chars
    assert pipeline.budgeted_step_output(ctx, "s", 80) == "s" * 288 + TRUNCATION_MARKER


def test_budget_without_memory_returns_step_content(pipeline: PipelineMemory) -> None:
    ctx = pipeline.create_context("p").model_copy(
        update={"steps": {"s": StepResult(step_id="s", content="raw text")}}
    )
    assert pipeline.budgeted_step_output(ctx, "s", 10) == "raw text"
    assert pipeline.budgeted_step_output(ctx, "unknown", 10) == ""


# -- stats / clear -------------------------------------------------------------


async def test_stats_and_clear(pipeline: PipelineMemory, service) -> None:
    service.generate.side_effect = ["Condensed output.", "- a\n- b"]
    ctx = pipeline.create_context("p", config=_config())
    ctx = await pipeline.record_step_result(ctx, StepResult(step_id="big", content=BIG))
    ctx = await pipeline.record_step_result(ctx, StepResult(step_id="small", content="x" * 400))

    stats = pipeline.stats(ctx)
    assert stats.total_steps == 2
    assert stats.total_raw_tokens == 2900
    assert stats.total_summary_tokens == 105
    assert stats.compression_percent == 96
    assert [s.key_point_count for s in stats.steps] == [2, 0]

    partial = pipeline.clear(ctx, ["big"])
    assert list(partial.memory) == ["small"]
    assert "big" in partial.steps
    assert pipeline.clear(ctx).memory == {}
    assert len(ctx.memory) == 2


def test_stats_on_empty_context(pipeline: PipelineMemory) -> None:
    stats = pipeline.stats(pipeline.create_context("p"))
    assert stats.total_steps == 0
    assert stats.compression_percent == 0
