"""Decoder for the event-stream body returned by the chat backend.

The body is UTF-8 text made of records separated by a blank line. Inside a
record only lines starting with ``data: `` carry a payload, which is a JSON
object with a ``type`` discriminator:

    data: {"type": "content", "data": "Hel"}

    data: {"type": "sources_info", "data": {"documents_retrieved_count": 3, "retrieval_time_ms": 120}}

    data: {"type": "done"}

Records may arrive split across any number of chunks.
"""

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

from pydantic import ValidationError

from app.llm.chat.errors import FrameParseError
from app.llm.chat.models import ErrorFrame, StreamFrame, stream_frame_adapter

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
RECORD_SEPARATOR = "\n\n"


def parse_payload(payload: str) -> StreamFrame:
    """Parse the JSON text of one ``data:`` line into a frame.

    Raises:
        FrameParseError: If the payload is not valid JSON or not a known frame.
    """
    try:
        obj = json.loads(payload)
    except json.JSONDecodeError as e:
        raise FrameParseError(f"Invalid JSON in stream record: {e}") from e

    if not isinstance(obj, dict):
        raise FrameParseError(f"Stream record is not an object: {payload[:100]}")

    # Any record carrying an error is an error, whatever its type (e.g. done)
    if obj.get("type") == "error" or obj.get("error"):
        message = obj.get("error") or obj.get("detail") or "Unknown streaming error"
        return ErrorFrame(error=str(message))

    try:
        return stream_frame_adapter.validate_python(obj)
    except ValidationError as e:
        raise FrameParseError(f"Unrecognized stream record: {e}") from e


class StreamDecoder:
    """Incremental decoder from raw byte chunks to stream frames.

    One decoder is used per response; it keeps the undecoded tail of the
    previous chunk until the record it belongs to is complete.
    """

    def __init__(self) -> None:
        self._text = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        # A trailing \r may be the first half of a \r\n split across chunks
        self._carry = ""
        self.skipped_records = 0

    def feed(self, chunk: bytes) -> list[StreamFrame]:
        """Add a chunk and return the frames of every record it completes."""
        text = self._carry + self._text.decode(chunk)
        self._carry = ""
        if text.endswith("\r"):
            text, self._carry = text[:-1], "\r"

        # Only the new text can complete a separator
        start = max(len(self._buffer) - len(RECORD_SEPARATOR) + 1, 0)
        self._buffer += text.replace("\r\n", "\n")

        frames: list[StreamFrame] = []
        while True:
            end = self._buffer.find(RECORD_SEPARATOR, start)
            if end == -1:
                break
            record = self._buffer[:end]
            self._buffer = self._buffer[end + len(RECORD_SEPARATOR):]
            start = 0
            frames.extend(self._parse_record(record))
        return frames

    def flush(self) -> list[StreamFrame]:
        """Decode whatever remains once the transport has ended."""
        tail = self._carry + self._text.decode(b"", final=True)
        self._carry = ""
        record, self._buffer = self._buffer + tail.replace("\r\n", "\n"), ""
        if not record.strip():
            return []
        return self._parse_record(record)

    async def decode(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[StreamFrame]:
        """Yield frames lazily from an async sequence of chunks."""
        async for chunk in chunks:
            for frame in self.feed(chunk):
                yield frame
        for frame in self.flush():
            yield frame

    def _parse_record(self, record: str) -> list[StreamFrame]:
        frames: list[StreamFrame] = []
        for line in record.split("\n"):
            line = line.strip()
            if not line.startswith(DATA_PREFIX):
                continue
            payload = line[len(DATA_PREFIX):]
            try:
                frames.append(parse_payload(payload))
            except FrameParseError as e:
                self.skipped_records += 1
                logger.warning(f"Skipping stream record: {e} (record: {_preview(payload)})")
        return frames


def _preview(value: Any, limit: int = 200) -> str:
    text = str(value)
    return text if len(text) <= limit else text[:limit] + "..."
