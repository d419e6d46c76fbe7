"""
Streaming response decoding.

Turns the line-oriented server-sent-event body of a streamed chat completion
into the final answer text, the provider's usage report and the request id.

Each line of interest looks like ``data: {json chunk}``; the stream ends with
``data: [DONE]``. Any other line shape is ignored.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional, Union

from .token_counter import UsageTally

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"

# Fragments at these positions are withheld from the sink when they contain
# a line break. Some providers open a stream with bare newlines.
SUPPRESSIBLE_FRAGMENTS = 2

StreamSink = Callable[[str], None]


class ChunkParseError(ValueError):
    """Raised when a stream line does not hold a valid response chunk."""


@dataclass(frozen=True)
class ResponseChunk:
    """One parsed ``data:`` line of a streamed completion."""
    id: str = ""
    usage: Optional[UsageTally] = None
    fragments: List[str] = field(default_factory=list)

    @property
    def has_choices(self) -> bool:
        return bool(self.fragments)

    @classmethod
    def from_json(cls, payload: str) -> "ResponseChunk":
        """Parse a chunk record.

        Args:
            payload: JSON text following the ``data:`` prefix

        Returns:
            The parsed chunk

        Raises:
            ChunkParseError: If the payload is not a well-formed chunk
        """
        try:
            raw = json.loads(payload)
        except ValueError as e:
            raise ChunkParseError(f"invalid JSON: {e}") from e
        if not isinstance(raw, dict):
            raise ChunkParseError("chunk is not a JSON object")

        chunk_id = raw.get("id") or ""
        if not isinstance(chunk_id, str):
            raise ChunkParseError("'id' must be a string")

        return cls(
            id=chunk_id,
            usage=_parse_usage(raw.get("usage")),
            fragments=_parse_fragments(raw.get("choices")),
        )


def _parse_usage(raw: Any) -> Optional[UsageTally]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ChunkParseError("'usage' must be an object")
    try:
        return UsageTally(
            prompt_tokens=_token_count(raw.get("prompt_tokens")),
            completion_tokens=_token_count(raw.get("completion_tokens")),
            total_tokens=_token_count(raw.get("total_tokens")),
        )
    except ValueError as e:
        raise ChunkParseError(f"invalid usage: {e}") from e


def _token_count(value: Any) -> Any:
    # Some providers send whole counts as JSON floats (45.0).
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value or 0


def _parse_fragments(raw: Any) -> List[str]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ChunkParseError("'choices' must be a list")

    fragments = []
    for choice in raw:
        if not isinstance(choice, dict):
            raise ChunkParseError("choice must be an object")
        delta = choice.get("delta") or {}
        if not isinstance(delta, dict):
            raise ChunkParseError("'delta' must be an object")
        content = delta.get("content") or ""
        if not isinstance(content, str):
            raise ChunkParseError("'delta.content' must be a string")
        fragments.append(content)
    return fragments


@dataclass(frozen=True)
class StreamResult:
    """Materialized outcome of one decode session."""
    text: str
    usage: UsageTally
    request_id: str
    chunk_count: int


class StreamDecoder:
    """Incremental decoder for one streamed response.

    A decoder instance holds the state of a single decode session and is not
    reused across requests.

    Args:
        sink: Called with the full accumulated text every time a fragment is
            forwarded. Never called after the terminal sentinel.
    """

    def __init__(self, sink: Optional[StreamSink] = None):
        self.sink = sink
        self.text = ""
        self.usage = UsageTally()
        self.request_id = ""
        self.chunk_count = 0
        self.fragment_count = 0
        self.done = False

    def feed(self, line: Union[str, bytes]) -> bool:
        """Process one line of the response body.

        Returns:
            False once the terminal sentinel has been seen, True otherwise
        """
        if self.done:
            return False
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")

        line = line.strip()
        if not line.startswith(DATA_PREFIX):
            return True

        payload = line[len(DATA_PREFIX):].strip()
        if payload == DONE_SENTINEL:
            self.done = True
            return False

        try:
            chunk = ResponseChunk.from_json(payload)
        except ChunkParseError as e:
            logger.warning("Skipping malformed stream line: %s", e)
            return True

        self._apply(chunk)
        return True

    def _apply(self, chunk: ResponseChunk) -> None:
        self.chunk_count += 1

        if not self.request_id and chunk.id:
            self.request_id = chunk.id

        if chunk.usage is not None and chunk.usage.total_tokens > 0:
            self.usage = chunk.usage

        if not chunk.has_choices:
            return

        content = chunk.fragments[0]
        position = self.fragment_count
        self.fragment_count += 1
        self.text += content

        if position < SUPPRESSIBLE_FRAGMENTS and "\n" in content:
            return
        if self.sink is not None:
            self.sink(self.text)

    def result(self) -> StreamResult:
        return StreamResult(
            text=self.text,
            usage=self.usage,
            request_id=self.request_id,
            chunk_count=self.chunk_count,
        )

    def decode(self, lines: Iterable[Union[str, bytes]]) -> StreamResult:
        """Consume lines until the sentinel or the end of input.

        A stream that ends without the sentinel, or without a usage report,
        still decodes successfully. Errors raised by the line iterator itself
        (transport failures) propagate to the caller.
        """
        for line in lines:
            if not self.feed(line):
                break
        return self.result()


def decode_stream(
    lines: Iterable[Union[str, bytes]],
    sink: Optional[StreamSink] = None
) -> StreamResult:
    """Decode a complete streamed response with a fresh decoder."""
    return StreamDecoder(sink).decode(lines)
