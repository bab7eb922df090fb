"""Tests for the Compressor: summarization, code preservation and fallbacks."""

from unittest.mock import AsyncMock

import pytest

from contextkeeper.context.compressor import (
    FALLBACK_MARKER,
    Compressor,
    extract_code_blocks,
    restore_code_blocks,
)

LONG_TEXT = "word " * 1000  # 5000 chars, 1250 tokens
CODE = "```python\nprint('hi')  # keep <exact> spacing\n```"


class TestPassthrough:
    async def test_short_text_is_returned_untouched(self, compressor, service):
        result = await compressor.compress("tiny", max_length=10)

        assert result.summary == "tiny"
        assert result.method == "passthrough"
        assert result.compression_ratio == 1
        service.generate.assert_not_awaited()

    async def test_compress_to_limit_under_limit(self, compressor, service):
        result = await compressor.compress_to_limit("tiny", 10)
        assert result.method == "passthrough"
        service.generate.assert_not_awaited()


class TestSummary:
    async def test_summarizes_long_text(self, compressor, service):
        result = await compressor.compress(LONG_TEXT, max_length=500)

        assert result.method == "summary"
        assert result.summary == "A short summary."
        assert result.original_tokens == 1250
        assert result.summary_tokens == 4
        assert result.compression_ratio == pytest.approx(1250 / 4)

    async def test_prompt_carries_length_and_format(self, compressor, service):
        await compressor.compress(LONG_TEXT, max_length=120, format="bullet")

        prompt = service.generate.await_args.args[0]
        assert "under 120 words" in prompt
        assert "bullet list" in prompt
        assert LONG_TEXT in prompt

    async def test_compress_to_limit_targets_eighty_percent(self, compressor, service):
        result = await compressor.compress_to_limit(LONG_TEXT, 100)

        assert result.method == "summary"
        assert "under 80 words" in service.generate.await_args.args[0]

    async def test_compress_if_needed_returns_text(self, compressor):
        assert await compressor.compress_if_needed(LONG_TEXT, 100) == "A short summary."
        assert await compressor.compress_if_needed("tiny", 100) == "tiny"


class TestCodePreservation:
    async def test_code_is_not_sent_and_is_restored(self, compressor, service):
        service.generate.return_value = "Intro. [CODE_BLOCK_0] Outro."
        text = LONG_TEXT + "\n" + CODE + "\n" + LONG_TEXT

        result = await compressor.compress(text, max_length=100)

        prompt = service.generate.await_args.args[0]
        assert "print('hi')" not in prompt
        assert "[CODE_BLOCK_0]" in prompt
        assert result.summary == f"Intro. {CODE} Outro."

    async def test_dropped_placeholder_still_keeps_code(self, compressor, service):
        service.generate.return_value = "The model forgot the code."
        text = LONG_TEXT + CODE

        result = await compressor.compress(text, max_length=100)

        assert result.summary.startswith("The model forgot the code.")
        assert result.summary.endswith(CODE)

    async def test_preserve_code_off_sends_code(self, compressor, service):
        await compressor.compress(LONG_TEXT + CODE, max_length=100, preserve_code=False)
        assert "print('hi')" in service.generate.await_args.args[0]

    def test_extract_and_restore_helpers(self):
        stripped, blocks = extract_code_blocks(f"a {CODE} b ```x``` c")
        assert stripped == "a [CODE_BLOCK_0] b [CODE_BLOCK_1] c"
        assert blocks == [CODE, "```x```"]
        assert restore_code_blocks(stripped, blocks) == f"a {CODE} b ```x``` c"

    def test_restore_ignores_unknown_placeholders(self):
        assert restore_code_blocks("see [CODE_BLOCK_7]", []) == "see [CODE_BLOCK_7]"


class TestFallback:
    async def test_service_error_truncates(self, compressor, service):
        service.generate.side_effect = RuntimeError("connection refused")

        result = await compressor.compress(LONG_TEXT, max_length=500)

        assert result.method == "truncation"
        assert result.summary == LONG_TEXT[:2000] + FALLBACK_MARKER
        assert result.compression_ratio == 1

    async def test_empty_response_truncates(self, compressor, service):
        service.generate.return_value = "   "
        result = await compressor.compress(LONG_TEXT, max_length=500)
        assert result.method == "truncation"

    async def test_missing_service_truncates(self, offline_compressor):
        result = await offline_compressor.compress(LONG_TEXT, max_length=10)
        assert result.method == "truncation"
        assert result.summary == LONG_TEXT[:40] + FALLBACK_MARKER


class TestKeyPoints:
    async def test_short_text_is_its_own_key_point(self, compressor, service):
        assert await compressor.extract_key_points("  one idea  ") == ["one idea"]
        service.generate.assert_not_awaited()

    async def test_bullets_are_stripped(self, compressor, service):
        service.generate.return_value = "- first\n* second\n\n• third\n"
        assert await compressor.extract_key_points(LONG_TEXT) == ["first", "second", "third"]

    async def test_failure_returns_prefix(self, compressor, service):
        service.generate.side_effect = RuntimeError("boom")
        assert await compressor.extract_key_points(LONG_TEXT) == [LONG_TEXT[:200] + "..."]

    async def test_empty_answer_returns_prefix(self, compressor, service):
        service.generate.return_value = "\n\n"
        assert await compressor.extract_key_points(LONG_TEXT) == [LONG_TEXT[:200] + "..."]


class TestIsAvailable:
    async def test_reachable(self, compressor):
        assert await compressor.is_available() is True

    async def test_probe_error_means_unavailable(self):
        svc = AsyncMock()
        svc.ping.side_effect = TimeoutError()
        assert await Compressor(svc).is_available() is False

    async def test_no_service(self, offline_compressor):
        assert await offline_compressor.is_available() is False
