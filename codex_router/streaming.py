from __future__ import annotations

import json
from typing import Any, AsyncIterable


def extract_stream_text(parsed: Any) -> str | None:
    if isinstance(parsed, str):
        return parsed
    if not isinstance(parsed, dict):
        return None

    for key in ("content", "text"):
        value = parsed.get(key)
        if isinstance(value, str) and value:
            return value

    choices = parsed.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0]
        if isinstance(first, dict):
            delta = first.get("delta")
            if isinstance(delta, dict):
                value = delta.get("content")
                if isinstance(value, str) and value:
                    return value
    return None


class StreamingOutputDecoder:
    """Accumulates text from a byte stream of mixed JSON lines and plain text.

    Chunks may split lines (and multi-byte characters) anywhere; a line is only
    parsed once its terminating newline has arrived, or when the stream is
    finished. Lines that are not valid JSON are kept verbatim.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._encoding = encoding
        self._pending = bytearray()
        self._parts: list[str] = []
        self._finished = False

    def feed(self, chunk: bytes) -> None:
        if self._finished:
            raise RuntimeError("Decoder already finished.")
        if not chunk:
            return
        self._pending.extend(chunk)
        while True:
            newline_at = self._pending.find(b"\n")
            if newline_at < 0:
                break
            line = bytes(self._pending[:newline_at])
            del self._pending[: newline_at + 1]
            self._consume_line(line)

    def finish(self) -> str:
        if not self._finished:
            self._finished = True
            if self._pending:
                line = bytes(self._pending)
                self._pending.clear()
                self._consume_line(line)
        return self.text

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def _consume_line(self, raw_line: bytes) -> None:
        line = raw_line.decode(self._encoding, errors="replace")
        if line.endswith("\r"):
            line = line[:-1]
        if not line.strip():
            return
        try:
            parsed = json.loads(line)
        except ValueError:
            self._parts.append(line + "\n")
            return
        extracted = extract_stream_text(parsed)
        if extracted:
            self._parts.append(extracted)


async def decode_stream(chunks: AsyncIterable[bytes]) -> str:
    decoder = StreamingOutputDecoder()
    async for chunk in chunks:
        decoder.feed(chunk)
    return decoder.finish()
