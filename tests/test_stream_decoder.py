"""
Unit tests for the streaming response decoder.

Tests chunk parsing, usage and id capture, malformed line handling and the
sink notification rules.
"""

import json
import logging

import pytest

from shell_ai.core.stream_decoder import (
    ChunkParseError,
    ResponseChunk,
    StreamDecoder,
    decode_stream,
)
from shell_ai.core.token_counter import UsageTally


def _chunk(content=None, chunk_id="chatcmpl-1", usage=None, choices=True):
    data = {"id": chunk_id, "object": "chat.completion.chunk", "model": "gpt-4.1-mini"}
    data["choices"] = [{"index": 0, "delta": {"content": content}}] if choices else []
    if usage is not None:
        data["usage"] = usage
    return "data: " + json.dumps(data)


class RecordingSink:
    def __init__(self):
        self.calls = []

    def __call__(self, text):
        self.calls.append(text)


class TestResponseChunk:
    """Test parsing of single chunk records."""

    def test_parse_content_chunk(self):
        chunk = ResponseChunk.from_json(
            '{"id": "abc", "choices": [{"delta": {"content": "hi"}}]}'
        )
        assert chunk.id == "abc"
        assert chunk.fragments == ["hi"]
        assert chunk.usage is None

    def test_null_content_is_empty_fragment(self):
        chunk = ResponseChunk.from_json('{"choices": [{"delta": {"role": "assistant"}}]}')
        assert chunk.fragments == [""]

    def test_parse_usage(self):
        chunk = ResponseChunk.from_json(
            '{"choices": [], "usage": '
            '{"prompt_tokens": 45, "completion_tokens": 12, "total_tokens": 57}}'
        )
        assert chunk.usage == UsageTally(45, 12, 57)
        assert not chunk.has_choices

    def test_integral_float_usage_accepted(self):
        chunk = ResponseChunk.from_json(
            '{"choices": [{"delta": {"content": "ls"}}], "usage": '
            '{"prompt_tokens": 45.0, "completion_tokens": 12.0, "total_tokens": 57.0}}'
        )
        assert chunk.usage == UsageTally(45, 12, 57)
        assert isinstance(chunk.usage.prompt_tokens, int)
        assert chunk.fragments == ["ls"]

    @pytest.mark.parametrize("payload", [
        '{"usage": {"prompt_tokens": 4.5}}',
        "{not json",
        "[1, 2, 3]",
        '"text"',
        '{"choices": "nope"}',
        '{"choices": [{"delta": {"content": 5}}]}',
        '{"usage": {"prompt_tokens": -3, "total_tokens": 1}}',
    ])
    def test_malformed_chunks_raise(self, payload):
        with pytest.raises(ChunkParseError):
            ResponseChunk.from_json(payload)


class TestStreamDecoder:
    """Test decoding of complete streams."""

    def test_accumulates_text_and_metadata(self):
        lines = [
            _chunk("Hello"),
            _chunk(", world"),
            _chunk(None, usage={"prompt_tokens": 45, "completion_tokens": 12, "total_tokens": 57},
                   choices=False),
            "data: [DONE]",
        ]
        result = decode_stream(lines)

        assert result.text == "Hello, world"
        assert result.request_id == "chatcmpl-1"
        assert result.usage == UsageTally(45, 12, 57)
        assert result.chunk_count == 3

    def test_skips_malformed_line(self, caplog):
        """Verify one bad line is skipped without failing the decode."""
        lines = [_chunk("ls -la"), "data: {this is not json", "data: [DONE]"]

        with caplog.at_level(logging.WARNING, logger="shell_ai.core.stream_decoder"):
            result = decode_stream(lines)

        assert result.text == "ls -la"
        assert "Skipping malformed stream line" in caplog.text

    def test_suppresses_first_two_line_break_fragments(self):
        """Verify the first two newline fragments are withheld from the sink."""
        sink = RecordingSink()
        lines = [_chunk("\n"), _chunk("\n\n"), _chunk("ls"), "data: [DONE]"]

        result = decode_stream(lines, sink)

        assert sink.calls == ["\n\n\nls"]
        assert result.text == "\n\n\nls"

    def test_third_fragment_forwarded_even_with_line_break(self):
        sink = RecordingSink()
        lines = [_chunk("\n"), _chunk("\n"), _chunk("a\nb"), "data: [DONE]"]

        decode_stream(lines, sink)

        assert sink.calls == ["\n\na\nb"]

    def test_suppression_is_positional(self):
        """Verify only the line-break fragments among the first two are withheld."""
        sink = RecordingSink()
        lines = [_chunk("echo"), _chunk("\nhi"), _chunk("!"), "data: [DONE]"]

        decode_stream(lines, sink)

        assert sink.calls == ["echo", "echo\nhi!"]

    def test_sink_receives_accumulated_text(self):
        sink = RecordingSink()
        decode_stream([_chunk("a"), _chunk("b"), _chunk("c")], sink)
        assert sink.calls == ["a", "ab", "abc"]

    def test_nothing_after_sentinel(self):
        """Verify lines after [DONE] are neither decoded nor forwarded."""
        sink = RecordingSink()
        lines = [_chunk("done"), "data: [DONE]", _chunk(" extra", chunk_id="other")]

        decoder = StreamDecoder(sink)
        result = decoder.decode(lines)

        assert result.text == "done"
        assert sink.calls == ["done"]
        assert decoder.feed(_chunk("late")) is False
        assert sink.calls == ["done"]

    def test_request_id_captured_once(self):
        lines = [_chunk("a", chunk_id=""), _chunk("b", chunk_id="first"),
                 _chunk("c", chunk_id="second")]
        assert decode_stream(lines).request_id == "first"

    def test_last_non_zero_usage_wins(self):
        lines = [
            _chunk("a", usage={"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2}),
            _chunk("b", usage={"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}),
            _chunk("c", usage={"prompt_tokens": 5, "completion_tokens": 7, "total_tokens": 12}),
        ]
        assert decode_stream(lines).usage == UsageTally(5, 7, 12)

    def test_float_usage_keeps_fragment(self):
        lines = [
            _chunk("ls", usage={"prompt_tokens": 45.0, "completion_tokens": 12.0,
                                "total_tokens": 57.0}),
            "data: [DONE]",
        ]
        result = decode_stream(lines)
        assert result.text == "ls"
        assert result.usage == UsageTally(45, 12, 57)

    def test_missing_usage_is_not_an_error(self):
        result = decode_stream([_chunk("hi"), "data: [DONE]"])
        assert result.usage.is_empty
        assert result.text == "hi"

    def test_stream_without_sentinel(self):
        assert decode_stream([_chunk("partial")]).text == "partial"

    def test_ignores_other_line_shapes(self):
        lines = ["", ": keep-alive", "event: message", "id: 7", _chunk("ok"), "data: [DONE]"]
        result = decode_stream(lines)
        assert result.text == "ok"
        assert result.chunk_count == 1

    def test_accepts_bytes_and_no_space_after_prefix(self):
        lines = [b'data:{"id":"x","choices":[{"delta":{"content":"hi"}}]}\n', b"data:[DONE]\n"]
        result = decode_stream(lines)
        assert result.text == "hi"
        assert result.request_id == "x"

    def test_empty_stream(self):
        result = decode_stream([])
        assert result.text == ""
        assert result.request_id == ""
        assert result.chunk_count == 0
