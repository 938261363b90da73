"""
Server-Sent-Events framing for the chat stream.

Wire format (one event per ``data:`` line, blank line separators):

    data: {"type":"rag_sources","sources":[...]}     side channel, optional, first
    data: {"choices":[{"delta":{"content":"..."}}]}  model tokens
    data: [DONE]                                      end of stream

The server side (``multiplex``) prepends the side-channel event to the
gateway body without touching the gateway bytes. The client side
(``StreamDecoder`` / ``decode_stream``) turns arbitrary network chunks
back into ``StreamEvent`` objects.
"""

import json
import codecs
import logging
from typing import AsyncIterable, AsyncIterator, Optional, Sequence, Union
from dataclasses import dataclass, field

from pydantic import ValidationError

from .api_models import RAGSource

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
COMMENT_PREFIX = ":"
DONE_SENTINEL = "[DONE]"
RAG_SOURCES_TYPE = "rag_sources"


# =============================================================================
# Stream events (client-visible)
# =============================================================================

@dataclass
class RAGSourcesEvent:
    sources: list[RAGSource]


@dataclass
class DeltaEvent:
    text: str


@dataclass
class DoneEvent:
    pass


@dataclass
class ErrorEvent:
    message: str
    error: Optional[BaseException] = field(default=None, compare=False)


StreamEvent = Union[RAGSourcesEvent, DeltaEvent, DoneEvent, ErrorEvent]


# =============================================================================
# Line parsing (one complete SSE line -> tagged result)
# =============================================================================

@dataclass
class DeltaChunk:
    text: str


@dataclass
class SourcesChunk:
    sources: list[RAGSource]


@dataclass
class DoneSentinel:
    pass


@dataclass
class MalformedLine:
    line: str


ParsedLine = Union[DeltaChunk, SourcesChunk, DoneSentinel, MalformedLine]


def _parse_sources(raw: list) -> list[RAGSource]:
    sources = []
    for item in raw:
        try:
            sources.append(RAGSource.model_validate(item))
        except ValidationError as e:
            logger.warning(f"Dropping malformed rag_sources entry: {e.errors()[:1]}")
    return sources


def _delta_text(payload) -> Optional[str]:
    """``choices[0].delta.content`` if every step has the expected shape."""
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) else None


def parse_sse_line(line: str) -> Optional[ParsedLine]:
    """
    Classify one complete line (without its newline).

    Returns None for lines that carry nothing: blanks, ``:`` comments,
    non-data fields, and payloads without delta text. Unknown JSON fields
    are ignored.
    """
    if line.endswith("\r"):
        line = line[:-1]
    if not line or line.startswith(COMMENT_PREFIX):
        return None
    if not line.startswith(DATA_PREFIX):
        return None

    data = line[len(DATA_PREFIX):].strip()
    if data == DONE_SENTINEL:
        return DoneSentinel()

    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        return MalformedLine(line)

    if isinstance(payload, dict) and payload.get("type") == RAG_SOURCES_TYPE and payload.get("sources"):
        raw = payload["sources"]
        return SourcesChunk(_parse_sources(raw if isinstance(raw, list) else []))

    text = _delta_text(payload)
    if text:
        return DeltaChunk(text)
    return None


def _to_event(parsed: ParsedLine) -> Optional[StreamEvent]:
    if isinstance(parsed, DeltaChunk):
        return DeltaEvent(parsed.text)
    if isinstance(parsed, SourcesChunk):
        return RAGSourcesEvent(parsed.sources)
    return None


# =============================================================================
# Server side: side-channel multiplexing
# =============================================================================

def encode_sources_event(sources: Sequence[RAGSource]) -> bytes:
    """Serialize the side-channel event as one SSE frame."""
    payload = {"type": RAG_SOURCES_TYPE, "sources": [s.to_wire() for s in sources]}
    body = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"data: {body}\n\n".encode("utf-8")


async def multiplex(
    sources: Sequence[RAGSource],
    upstream: AsyncIterable[bytes],
) -> AsyncIterator[bytes]:
    """
    Emit the sources event (if any), then the upstream body byte for byte.

    The sources frame is yielded before ``upstream`` is first read. Upstream
    chunks are neither inspected nor re-framed, so its own ``[DONE]``
    terminates the stream for the client.
    """
    try:
        if sources:
            yield encode_sources_event(sources)
        async for chunk in upstream:
            yield chunk
    finally:
        aclose = getattr(upstream, "aclose", None)
        if aclose is not None:
            await aclose()


# =============================================================================
# Client side: incremental decoding
# =============================================================================

class StreamDecoder:
    """
    Incremental SSE decoder tolerant of arbitrary chunk boundaries.

    Feed it chunks as they arrive; it returns the events completed by each
    chunk. Incomplete trailing text (including a split UTF-8 sequence) is
    kept for the next call. A complete line that does not parse as JSON is
    pushed back and retried when more data arrives. After ``[DONE]`` all
    further input is ignored.

        decoder = StreamDecoder()
        for chunk in chunks:
            for event in decoder.feed(chunk):
                ...
            if decoder.done:
                break
        else:
            events = decoder.finish()
    """

    def __init__(self):
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False

    def feed(self, chunk: Union[bytes, str]) -> list[StreamEvent]:
        if self.done:
            return []
        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        self._buffer += chunk

        events: list[StreamEvent] = []
        while True:
            newline = self._buffer.find("\n")
            if newline == -1:
                break
            line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1:]

            parsed = parse_sse_line(line)
            if parsed is None:
                continue
            if isinstance(parsed, DoneSentinel):
                self.done = True
                self._buffer = ""
                events.append(DoneEvent())
                return events
            if isinstance(parsed, MalformedLine):
                # Wait for more data before giving up on this line
                self._buffer = line + "\n" + self._buffer
                break
            event = _to_event(parsed)
            if event is not None:
                events.append(event)
        return events

    def finish(self) -> list[StreamEvent]:
        """
        End of input: one best-effort pass over what is left, then Done.

        Lines that still fail to parse are dropped silently.
        """
        if self.done:
            return []
        self._buffer += self._utf8.decode(b"", final=True)
        remaining, self._buffer = self._buffer, ""
        self.done = True

        events: list[StreamEvent] = []
        if remaining.strip():
            for raw in remaining.split("\n"):
                parsed = parse_sse_line(raw)
                if isinstance(parsed, DoneSentinel):
                    break
                if isinstance(parsed, MalformedLine):
                    logger.debug(f"Dropping unparseable stream line: {parsed.line[:120]!r}")
                    continue
                if parsed is not None:
                    events.append(_to_event(parsed))
        events.append(DoneEvent())
        return events


async def decode_stream(chunks: AsyncIterable[bytes]) -> AsyncIterator[StreamEvent]:
    """
    Decode an async byte stream into events, ending with exactly one DoneEvent.

    Reading stops as soon as ``[DONE]`` is seen. Transport errors raised by
    ``chunks`` propagate to the caller.
    """
    decoder = StreamDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
        if decoder.done:
            return
    for event in decoder.finish():
        yield event
