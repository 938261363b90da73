"""
Tests for execution/litigation_rag/streaming.py

Covers: the rag_sources side channel ahead of upstream bytes, SSE line
classification, and the incremental decoder (chunk boundaries, sentinel
termination, malformed lines, end of input).
"""

import json

import pytest

from tests.conftest import (
    DONE_FRAME,
    aiter_chunks,
    collect,
    delta_frame,
    run,
)


@pytest.fixture
def sources():
    from execution.litigation_rag.api_models import RAGSource
    return [
        RAGSource(id=1, citation="CIT vs. Lovely Exports (P) Ltd [2008] 216 CTR 195 (SC)",
                  court="Supreme Court", content="Share application money ...",
                  similarity=92, source_id="src-lovely"),
        RAGSource(id=2, citation="DCIT vs. Rohini Builders [2002] 256 ITR 360 (Guj)",
                  court="High Court", content="Initial onus discharged.",
                  similarity=85, source_id="src-rohini"),
    ]


def decode_all(chunks):
    """Feed chunks in order, finishing if the sentinel never arrived."""
    from execution.litigation_rag.streaming import StreamDecoder
    decoder = StreamDecoder()
    events = []
    for chunk in chunks:
        events.extend(decoder.feed(chunk))
        if decoder.done:
            return events
    events.extend(decoder.finish())
    return events


# ---------------------------------------------------------------------------
# Multiplexer
# ---------------------------------------------------------------------------

class TestMultiplex:
    """Side-channel event first, then upstream bytes untouched."""

    def test_sources_event_then_upstream(self, sources, upstream_chunks):
        from execution.litigation_rag.streaming import encode_sources_event, multiplex
        output = run(collect(multiplex(sources, aiter_chunks(upstream_chunks))))

        assert output[0] == encode_sources_event(sources)
        assert output[1:] == upstream_chunks

    def test_exactly_one_sources_event(self, sources, upstream_chunks):
        from execution.litigation_rag.streaming import multiplex
        output = b"".join(run(collect(multiplex(sources, aiter_chunks(upstream_chunks)))))
        assert output.count(b'"type":"rag_sources"') == 1

    def test_no_sources_is_byte_identical(self, upstream_chunks):
        from execution.litigation_rag.streaming import multiplex
        output = run(collect(multiplex([], aiter_chunks(upstream_chunks))))
        assert output == upstream_chunks

    def test_upstream_closed_when_consumer_stops(self, sources):
        from execution.litigation_rag.streaming import multiplex
        closed = []

        async def upstream():
            try:
                yield delta_frame("one")
                yield delta_frame("two")
            finally:
                closed.append(True)

        async def take_first_two():
            body = multiplex(sources, upstream())
            first = await body.__anext__()
            second = await body.__anext__()
            await body.aclose()
            return first, second

        first, second = run(take_first_two())
        assert b"rag_sources" in first
        assert second == delta_frame("one")
        assert closed == [True]

    def test_sources_frame_shape(self, sources):
        from execution.litigation_rag.streaming import encode_sources_event
        frame = encode_sources_event(sources)

        assert frame.startswith(b"data: ")
        assert frame.endswith(b"\n\n")
        payload = json.loads(frame[len(b"data: "):].decode("utf-8"))
        assert payload["type"] == "rag_sources"
        assert payload["sources"][0] == {
            "id": 1,
            "citation": "CIT vs. Lovely Exports (P) Ltd [2008] 216 CTR 195 (SC)",
            "court": "Supreme Court",
            "content": "Share application money ...",
            "similarity": 92,
            "sourceId": "src-lovely",
        }


# ---------------------------------------------------------------------------
# Line parsing
# ---------------------------------------------------------------------------

class TestParseLine:

    def test_blank_comment_and_other_fields_ignored(self):
        from execution.litigation_rag.streaming import parse_sse_line
        assert parse_sse_line("") is None
        assert parse_sse_line(": keep-alive") is None
        assert parse_sse_line("event: message") is None
        assert parse_sse_line("id: 42") is None

    def test_done_sentinel(self):
        from execution.litigation_rag.streaming import DoneSentinel, parse_sse_line
        assert isinstance(parse_sse_line("data: [DONE]"), DoneSentinel)
        assert isinstance(parse_sse_line("data:[DONE]\r"), DoneSentinel)

    def test_delta(self):
        from execution.litigation_rag.streaming import DeltaChunk, parse_sse_line
        line = delta_frame("Section 68").decode("utf-8").strip()
        assert parse_sse_line(line) == DeltaChunk("Section 68")

    def test_role_only_and_empty_deltas_ignored(self):
        from execution.litigation_rag.streaming import parse_sse_line
        assert parse_sse_line('data: {"choices":[{"delta":{"role":"assistant"}}]}') is None
        assert parse_sse_line('data: {"choices":[{"delta":{"content":""}}]}') is None
        assert parse_sse_line('data: {"choices":[]}') is None
        assert parse_sse_line('data: {"usage":{"total_tokens":12}}') is None

    def test_malformed_json(self):
        from execution.litigation_rag.streaming import MalformedLine, parse_sse_line
        assert isinstance(parse_sse_line('data: {"choices":[{"delta"'), MalformedLine)

    def test_sources_chunk(self, sources):
        from execution.litigation_rag.streaming import SourcesChunk, encode_sources_event, parse_sse_line
        line = encode_sources_event(sources).decode("utf-8").strip()
        parsed = parse_sse_line(line)
        assert isinstance(parsed, SourcesChunk)
        assert parsed.sources == sources

    def test_empty_sources_ignored(self):
        from execution.litigation_rag.streaming import parse_sse_line
        assert parse_sse_line('data: {"type":"rag_sources","sources":[]}') is None

    def test_invalid_source_entries_dropped(self):
        from execution.litigation_rag.streaming import parse_sse_line
        parsed = parse_sse_line(
            'data: {"type":"rag_sources","sources":[{"id":1,"citation":"A (SC)"},{"citation":"no id"}]}'
        )
        assert [s.id for s in parsed.sources] == [1]

    def test_null_fields_and_fractional_similarity_kept(self):
        from execution.litigation_rag.streaming import parse_sse_line
        parsed = parse_sse_line(
            'data: {"type":"rag_sources","sources":[{"id":1,"citation":"A (SC)","court":null,'
            '"content":null,"similarity":91.6,"sourceId":null}]}'
        )
        assert len(parsed.sources) == 1
        source = parsed.sources[0]
        assert source.court == "Unknown"
        assert source.content == ""
        assert source.source_id == ""
        assert source.similarity == 92


# ---------------------------------------------------------------------------
# Decoder
# ---------------------------------------------------------------------------

class TestStreamDecoder:

    def test_single_chunk(self, sources, upstream_chunks):
        from execution.litigation_rag.streaming import (
            DeltaEvent, DoneEvent, RAGSourcesEvent, encode_sources_event,
        )
        payload = encode_sources_event(sources) + b"".join(upstream_chunks)
        events = decode_all([payload])

        assert events == [
            RAGSourcesEvent(sources),
            DeltaEvent("Under Section 68, "),
            DeltaEvent("the onus lies on the assessee [1]."),
            DeltaEvent(" See ¶ 4 – “genuineness of the shareholders”."),
            DoneEvent(),
        ]

    def test_every_two_way_split_matches_single_chunk(self, sources, upstream_chunks):
        from execution.litigation_rag.streaming import encode_sources_event
        payload = encode_sources_event(sources) + b"".join(upstream_chunks)
        expected = decode_all([payload])

        for offset in range(len(payload) + 1):
            assert decode_all([payload[:offset], payload[offset:]]) == expected, offset

    def test_byte_at_a_time(self, sources, upstream_chunks):
        from execution.litigation_rag.streaming import encode_sources_event
        payload = encode_sources_event(sources) + b"".join(upstream_chunks)
        single_bytes = [payload[i:i + 1] for i in range(len(payload))]
        assert decode_all(single_bytes) == decode_all([payload])

    def test_crlf_line_endings(self):
        from execution.litigation_rag.streaming import DeltaEvent, DoneEvent
        payload = delta_frame("ok").replace(b"\n", b"\r\n") + b"data: [DONE]\r\n\r\n"
        assert decode_all([payload]) == [DeltaEvent("ok"), DoneEvent()]

    def test_nothing_processed_after_done(self):
        from execution.litigation_rag.streaming import DeltaEvent, DoneEvent, StreamDecoder
        decoder = StreamDecoder()
        events = decoder.feed(delta_frame("before") + DONE_FRAME + delta_frame("after"))

        assert events == [DeltaEvent("before"), DoneEvent()]
        assert decoder.done
        assert decoder.feed(delta_frame("later")) == []
        assert decoder.finish() == []

    def test_done_emitted_once_without_sentinel(self):
        from execution.litigation_rag.streaming import DeltaEvent, DoneEvent
        events = decode_all([delta_frame("partial answer")])
        assert events == [DeltaEvent("partial answer"), DoneEvent()]

    def test_trailing_line_without_newline_flushed(self):
        from execution.litigation_rag.streaming import DeltaEvent, DoneEvent
        payload = delta_frame("a") + delta_frame("b").rstrip(b"\n")
        assert decode_all([payload]) == [DeltaEvent("a"), DeltaEvent("b"), DoneEvent()]

    def test_malformed_line_waits_for_more_data(self):
        from execution.litigation_rag.streaming import StreamDecoder
        decoder = StreamDecoder()
        assert decoder.feed(b'data: {"choices":[{"delta"\n' + delta_frame("queued")) == []
        assert not decoder.done

    def test_malformed_line_dropped_at_end(self):
        from execution.litigation_rag.streaming import DeltaEvent, DoneEvent
        events = decode_all([b'data: {"choices":[{"delta"\n', delta_frame("recovered")])
        assert events == [DeltaEvent("recovered"), DoneEvent()]

    def test_final_pass_stops_at_sentinel(self):
        from execution.litigation_rag.streaming import DeltaEvent, DoneEvent
        events = decode_all([b"data: {broken\n" + delta_frame("kept") + DONE_FRAME + delta_frame("ignored")])
        assert events == [DeltaEvent("kept"), DoneEvent()]

    def test_final_pass_delivers_sources(self, sources):
        from execution.litigation_rag.streaming import RAGSourcesEvent, encode_sources_event
        events = decode_all([b"data: {broken\n" + encode_sources_event(sources)])
        assert events[0] == RAGSourcesEvent(sources)

    def test_split_utf8_sequence(self):
        from execution.litigation_rag.streaming import DeltaEvent
        frame = delta_frame("¶ 12")
        cut = frame.index("¶".encode("utf-8")) + 1
        events = decode_all([frame[:cut], frame[cut:]])
        assert events[0] == DeltaEvent("¶ 12")


class TestDecodeStream:

    def test_stops_reading_after_done(self):
        from execution.litigation_rag.streaming import DeltaEvent, DoneEvent, decode_stream
        pulled = []

        async def chunks():
            for chunk in [delta_frame("x"), DONE_FRAME, delta_frame("never")]:
                pulled.append(chunk)
                yield chunk

        events = run(collect(decode_stream(chunks())))
        assert events == [DeltaEvent("x"), DoneEvent()]
        assert len(pulled) == 2

    def test_transport_error_propagates(self):
        from execution.litigation_rag.streaming import DeltaEvent, decode_stream

        async def chunks():
            yield delta_frame("first")
            raise ConnectionResetError("peer closed connection")

        async def consume():
            seen = []
            with pytest.raises(ConnectionResetError):
                async for event in decode_stream(chunks()):
                    seen.append(event)
            return seen

        assert run(consume()) == [DeltaEvent("first")]
