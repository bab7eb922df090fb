"""Short-lived context handling: token budgets, compression and pipeline memory."""

from contextkeeper.context.compressor import CompressionResult, Compressor, SummarizationService
from contextkeeper.context.pipeline_memory import (
    MemoryConfig,
    MemoryContext,
    PipelineMemory,
    StepOutput,
    StepResult,
)
from contextkeeper.context.tokens import (
    ContextUsage,
    TokenConfig,
    estimate_tokens,
    get_token_config,
    split_into_chunks,
    truncate_for_agent,
)

__all__ = [
    "CompressionResult",
    "Compressor",
    "ContextUsage",
    "MemoryConfig",
    "MemoryContext",
    "PipelineMemory",
    "StepOutput",
    "StepResult",
    "SummarizationService",
    "TokenConfig",
    "estimate_tokens",
    "get_token_config",
    "split_into_chunks",
    "truncate_for_agent",
]
