"""
Incremental decoder for the provider's streamed chat output.

The body is a sequence of ``data: <json>`` lines ending with ``data: [DONE]``.
Reads may split lines (and UTF-8 characters) anywhere, so the decoder keeps
the unfinished tail between calls.
"""

import codecs
import json
from typing import List, Optional

import structlog

logger = structlog.get_logger()

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


def extract_fragment(payload: str) -> Optional[str]:
    """Return ``choices[0].delta.content`` from one event payload.

    Raises:
        ValueError: If the payload is not valid JSON
    """
    parsed = json.loads(payload)
    try:
        content = parsed["choices"][0]["delta"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
    return content if isinstance(content, str) and content else None


class StreamDecoder:
    """Turns raw byte chunks into text fragments."""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.finished = False

    def feed(self, chunk: bytes) -> List[str]:
        """Consume one chunk and return the fragments it completed."""
        if self.finished:
            return []
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return self._decode_lines(lines)

    def flush(self) -> List[str]:
        """Decode whatever is left once the transport is exhausted."""
        if self.finished:
            return []
        self._buffer += self._decoder.decode(b"", final=True)
        lines, self._buffer = [self._buffer], ""
        return self._decode_lines(lines)

    def _decode_lines(self, lines: List[str]) -> List[str]:
        fragments = []
        for line in lines:
            line = line.rstrip("\r")
            if not line.startswith(DATA_PREFIX):
                continue
            payload = line[len(DATA_PREFIX):]
            if payload == DONE_SENTINEL:
                self.finished = True
                break
            try:
                fragment = extract_fragment(payload)
            except ValueError:
                logger.debug("stream_record_malformed", payload=payload[:200])
                continue
            if fragment is not None:
                fragments.append(fragment)
        return fragments
