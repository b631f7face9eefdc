"""
Tests for the chunked event stream decoder in coze_wrapper.py
"""

import json

import pytest

from coze_wrapper import StreamDecoder, StreamEmpty, decode_stream


STREAM = (
    'data: {"node_type": "Start", "content": ""}\n'
    "event: message\n"
    'data: {"node_type": "LLM", "content": "部分结果"}\n'
    "data: {not json at all\n"
    "data:\n"
    'data: {"node_type": "End", "content": "{\\"风格名称\\": \\"赛博朋克\\"}"}\n'
).encode("utf-8")

EXPECTED = '{"风格名称": "赛博朋克"}'


def decode_chunks(chunks):
    decoder = StreamDecoder()
    for chunk in chunks:
        decoder.feed(chunk)
    return decoder.finish()


class TestStreamDecoder:
    """Tests for StreamDecoder."""

    def test_unsplit_stream(self):
        assert decode_chunks([STREAM]) == EXPECTED

    def test_every_split_point_gives_same_payload(self):
        """Splitting mid-line and mid multi-byte character changes nothing."""
        for i in range(len(STREAM) + 1):
            assert decode_chunks([STREAM[:i], STREAM[i:]]) == EXPECTED, f"split at byte {i}"

    def test_byte_by_byte(self):
        chunks = [STREAM[i:i + 1] for i in range(len(STREAM))]
        assert decode_chunks(chunks) == EXPECTED

    def test_last_terminal_event_wins(self):
        stream = (
            'data: {"node_type": "End", "content": "first"}\n'
            'data: {"node_type": "End", "content": "second"}\n'
        ).encode("utf-8")
        assert decode_chunks([stream]) == "second"

    def test_terminal_event_without_content_is_ignored(self):
        stream = (
            'data: {"node_type": "End", "content": "kept"}\n'
            'data: {"node_type": "End", "content": ""}\n'
            'data: {"node_type": "End"}\n'
        ).encode("utf-8")
        assert decode_chunks([stream]) == "kept"

    def test_no_terminal_event_raises(self):
        stream = 'data: {"node_type": "LLM", "content": "x"}\n'.encode("utf-8")
        with pytest.raises(StreamEmpty):
            decode_chunks([stream])

    def test_empty_stream_raises(self):
        with pytest.raises(StreamEmpty):
            decode_chunks([])

    def test_malformed_lines_do_not_abort(self):
        stream = (
            "data: {broken\n"
            "data: [1, 2, 3]\n"
            "data: 42\n"
            'data: {"node_type": "End", "content": "ok"}\n'
        ).encode("utf-8")
        assert decode_chunks([stream]) == "ok"

    def test_lines_without_prefix_are_ignored(self):
        stream = (
            'id: 1\n'
            '{"node_type": "End", "content": "not an event"}\n'
            '   data:   {"node_type": "End", "content": "indented"}   \r\n'
        ).encode("utf-8")
        assert decode_chunks([stream]) == "indented"

    def test_final_line_without_newline(self):
        stream = 'data: {"node_type": "End", "content": "tail"}'.encode("utf-8")
        assert decode_chunks([stream]) == "tail"

    def test_feed_returns_completed_events(self):
        decoder = StreamDecoder()
        events = decoder.feed(b'data: {"node_type": "LLM", "content": "a"}\ndata: {"node_ty')
        assert [e.node_type for e in events] == ["LLM"]
        events = decoder.feed(b'pe": "End", "content": "b"}\n')
        assert len(events) == 1
        assert events[0].is_terminal
        assert decoder.event_count == 2

    def test_object_content_is_serialized(self):
        stream = ("data: " + json.dumps({"node_type": "End", "content": {"output": ["u"]}}) + "\n").encode("utf-8")
        assert json.loads(decode_chunks([stream])) == {"output": ["u"]}


class TestDecodeStream:
    """Tests for the async decode_stream helper."""

    @pytest.mark.asyncio
    async def test_async_iterator(self):
        async def chunks():
            for i in range(0, len(STREAM), 7):
                yield STREAM[i:i + 7]

        assert await decode_stream(chunks()) == EXPECTED
