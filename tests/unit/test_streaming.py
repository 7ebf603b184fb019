"""Unit tests for streaming primitives."""

import pytest

from callai.errors import PartialJSONError
from callai.streaming import (
    PartialJSONAssembler,
    StreamChunk,
    ToolCall,
    ToolCallAccumulator,
    ToolCallFragment,
    chunk_from_payload,
)


# ---------------------------------------------------------------------------
# PartialJSONAssembler
# ---------------------------------------------------------------------------

class TestPartialJSONAssembler:
    def test_split_property_names_parse_once(self):
        asm = PartialJSONAssembler()
        results = [
            asm.accumulate(chunk)
            for chunk in ['{"pop', 'ulation": 67.5, "capita', 'l": "Paris"}']
        ]

        assert results[:2] == [None, None]
        assert results[2] == {"population": 67.5, "capital": "Paris"}
        assert asm.parse_attempts == 1

    def test_braces_inside_strings_do_not_close_value(self):
        asm = PartialJSONAssembler()
        assert asm.accumulate('{"text": "a } b') is None
        assert asm.parse_attempts == 0
        assert asm.accumulate(' { c"}') == {"text": "a } b { c"}

    def test_escaped_quote_inside_string(self):
        asm = PartialJSONAssembler()
        assert asm.accumulate('{"q": "say \\"hi\\" }') is None
        assert asm.accumulate('"}') == {"q": 'say "hi" }'}

    def test_escape_split_across_chunks(self):
        asm = PartialJSONAssembler()
        assert asm.accumulate('{"path": "C:\\') is None
        assert asm.accumulate('\\dir"}') == {"path": "C:\\dir"}

    def test_nested_value_waits_for_outer_close(self):
        asm = PartialJSONAssembler()
        assert asm.accumulate('{"a": {"b": [1, 2]}') is None
        assert asm.parse_attempts == 0
        assert asm.accumulate("}") == {"a": {"b": [1, 2]}}

    def test_buffer_cleared_after_value(self):
        asm = PartialJSONAssembler()
        asm.accumulate('{"a": 1}')
        assert asm.buffer == ""
        assert asm.accumulate('{"b": 2}') == {"b": 2}

    def test_stray_closer_does_not_block_next_value(self):
        asm = PartialJSONAssembler()
        assert asm.accumulate("}") is None
        assert asm.parse_attempts == 0
        assert asm.accumulate('{"a": 1}') == {"a": 1}
        assert asm.buffer == ""

    def test_any_three_way_split_yields_same_value(self):
        text = '{"q": "say \\"hi\\" {x}", "n": [1, {"b": "]"}], "p": "C:\\\\d"}'
        expected = {"q": 'say "hi" {x}', "n": [1, {"b": "]"}], "p": "C:\\d"}
        for i in range(len(text) + 1):
            for j in range(i, len(text) + 1):
                asm = PartialJSONAssembler()
                results = [asm.accumulate(piece) for piece in (text[:i], text[i:j], text[j:])]
                values = [r for r in results if r is not None]
                assert values == [expected], (i, j)
                assert asm.parse_attempts == 1, (i, j)

    def test_overflow_raises_with_buffer(self):
        asm = PartialJSONAssembler(max_buffer_size=10)
        with pytest.raises(PartialJSONError) as exc_info:
            asm.accumulate('{"long": "abcdefghij')
        assert exc_info.value.partial_content.startswith('{"long"')

    def test_finish_empty_returns_none(self):
        assert PartialJSONAssembler().finish() is None

    def test_finish_parses_scalar(self):
        asm = PartialJSONAssembler()
        assert asm.accumulate("42") is None
        assert asm.finish() == 42

    def test_finish_malformed_raises(self):
        asm = PartialJSONAssembler()
        asm.accumulate('{"a": ')
        with pytest.raises(PartialJSONError):
            asm.finish()


# ---------------------------------------------------------------------------
# ToolCallAccumulator
# ---------------------------------------------------------------------------

class TestToolCallAccumulator:
    def test_single_tool_call_single_fragment(self):
        acc = ToolCallAccumulator()
        call = acc.feed(ToolCallFragment(index=0, call_id="c1", name="echo", arguments_delta='{"text": "hi"}'))

        assert call == ToolCall(id="c1", name="echo", arguments={"text": "hi"})
        assert acc.finalize() == [call]

    def test_arguments_accumulated_across_fragments(self):
        acc = ToolCallAccumulator()
        assert acc.feed(ToolCallFragment(index=0, call_id="c1", name="echo", arguments_delta='{"te')) is None
        call = acc.feed(ToolCallFragment(index=0, arguments_delta='xt": "hi"}'))

        assert call.arguments == {"text": "hi"}

    def test_multiple_concurrent_tool_calls(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallFragment(index=0, call_id="c1", name="foo", arguments_delta='{"a":'))
        acc.feed(ToolCallFragment(index=1, call_id="c2", name="bar", arguments_delta='{"b":'))
        acc.feed(ToolCallFragment(index=0, arguments_delta=' 1}'))
        acc.feed(ToolCallFragment(index=1, arguments_delta=' 2}'))
        result = acc.finalize()

        assert result == [
            ToolCall(id="c1", name="foo", arguments={"a": 1}),
            ToolCall(id="c2", name="bar", arguments={"b": 2}),
        ]

    def test_finalize_returns_index_order(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallFragment(index=2, call_id="c3", name="c"))
        acc.feed(ToolCallFragment(index=0, call_id="c1", name="a"))
        acc.feed(ToolCallFragment(index=1, call_id="c2", name="b"))

        assert [tc.id for tc in acc.finalize()] == ["c1", "c2", "c3"]

    def test_partial_text_holds_incomplete_arguments(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallFragment(index=0, arguments_delta='{"title": "Dune'))
        assert acc.partial_text() == '{"title": "Dune'

    def test_finalize_raises_on_truncated_arguments(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallFragment(index=0, arguments_delta='{"title": "Du'))
        with pytest.raises(PartialJSONError):
            acc.finalize()


# ---------------------------------------------------------------------------
# chunk_from_payload
# ---------------------------------------------------------------------------

class TestChunkFromPayload:
    def test_content_delta(self):
        chunk = chunk_from_payload({"choices": [{"delta": {"content": "Hel"}}]})
        assert chunk == StreamChunk(content_delta="Hel")

    def test_tool_call_fragments(self):
        chunk = chunk_from_payload({"choices": [{"delta": {"tool_calls": [
            {"index": 0, "id": "c1", "function": {"name": "f", "arguments": '{"a'}},
        ]}}]})
        assert chunk.tool_call_fragments == [
            ToolCallFragment(index=0, call_id="c1", name="f", arguments_delta='{"a'),
        ]

    def test_finish_reason(self):
        chunk = chunk_from_payload({"choices": [{"delta": {}, "finish_reason": "tool_calls"}]})
        assert chunk.finish_reason == "tool_calls"

    def test_error_payload(self):
        chunk = chunk_from_payload({"error": {"message": "overloaded", "code": 529}})
        assert chunk.error == {"message": "overloaded", "code": 529}
        assert chunk.finish_reason == "error"

    def test_finish_reason_error(self):
        chunk = chunk_from_payload({"choices": [{"finish_reason": "error", "message": {"content": "bad"}}]})
        assert chunk.error == "bad"

    def test_anthropic_input_json_delta(self):
        chunk = chunk_from_payload({
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "input_json_delta", "partial_json": '{"ti'},
        })
        assert chunk.tool_call_fragments == [ToolCallFragment(index=0, arguments_delta='{"ti')]

    def test_anthropic_text_delta(self):
        chunk = chunk_from_payload({
            "type": "content_block_delta",
            "delta": {"type": "text_delta", "text": "hi"},
        })
        assert chunk.content_delta == "hi"

    def test_message_stop_finishes(self):
        assert chunk_from_payload({"type": "message_stop"}).finish_reason == "stop"

    def test_tool_use_block_in_delta_content(self):
        chunk = chunk_from_payload({"choices": [{"delta": {"content": [
            {"type": "tool_use", "input": {"title": "Dune"}},
        ]}}]})
        assert chunk.tool_input == {"title": "Dune"}
