"""
Unit tests for the streamed chat decoder.
"""

import json

import pytest

from ai_credit_gate.sdk.stream_decoder import StreamDecoder, extract_fragment


def _event(content: str) -> str:
    return "data: " + json.dumps({"choices": [{"delta": {"content": content}}]}, ensure_ascii=False) + "\n"


def _decode_all(chunks):
    decoder = StreamDecoder()
    fragments = []
    for chunk in chunks:
        fragments.extend(decoder.feed(chunk))
    fragments.extend(decoder.flush())
    return fragments


class TestExtractFragment:
    """Test single payload parsing."""

    def test_delta_content(self):
        """Test content is read from the first choice's delta."""
        payload = json.dumps({"choices": [{"delta": {"content": "Hi"}}]})
        assert extract_fragment(payload) == "Hi"

    def test_missing_content_is_none(self):
        """Test role-only and empty deltas produce nothing."""
        assert extract_fragment(json.dumps({"choices": [{"delta": {"role": "assistant"}}]})) is None
        assert extract_fragment(json.dumps({"choices": [{"delta": {"content": ""}}]})) is None
        assert extract_fragment(json.dumps({"choices": []})) is None

    def test_invalid_json_raises(self):
        """Test malformed payloads raise ValueError."""
        with pytest.raises(ValueError):
            extract_fragment("{not json")


class TestStreamDecoder:
    """Test incremental decoding."""

    def test_fragments_in_order(self):
        """Test each event line yields one fragment in order."""
        body = (_event("Hello") + _event(", ") + _event("world") + "data: [DONE]\n").encode()

        assert _decode_all([body]) == ["Hello", ", ", "world"]

    def test_chunk_boundaries_do_not_matter(self):
        """Test splitting the body anywhere gives the same fragments."""
        body = (_event("Grüße") + _event(" from ") + _event("日本") + "data: [DONE]\n").encode()
        expected = _decode_all([body])

        for size in (1, 2, 3, 7, 16):
            chunks = [body[i:i + size] for i in range(0, len(body), size)]
            assert _decode_all(chunks) == expected

    def test_malformed_records_skipped(self):
        """Test one bad record does not abort the stream."""
        body = (_event("a") + "data: {broken\n" + _event("b") + "data: [DONE]\n").encode()

        assert _decode_all([body]) == ["a", "b"]

    def test_non_data_lines_ignored(self):
        """Test comments, blank lines and other fields are ignored."""
        body = (": keep-alive\n\nevent: message\n" + _event("x") + "\n").encode()

        assert _decode_all([body]) == ["x"]

    def test_crlf_line_endings(self):
        """Test CRLF framed streams decode the same."""
        body = _event("a").replace("\n", "\r\n") + "data: [DONE]\r\n"

        assert _decode_all([body.encode()]) == ["a"]

    def test_done_stops_decoding(self):
        """Test nothing after the terminator is produced."""
        decoder = StreamDecoder()

        first = decoder.feed((_event("a") + "data: [DONE]\n" + _event("late")).encode())
        later = decoder.feed(_event("later").encode())

        assert first == ["a"]
        assert later == []
        assert decoder.finished

    def test_unterminated_last_line_flushed(self):
        """Test a final record without newline is decoded on flush."""
        body = _event("a") + _event("b").rstrip("\n")
        decoder = StreamDecoder()

        assert decoder.feed(body.encode()) == ["a"]
        assert decoder.flush() == ["b"]
        assert not decoder.finished
