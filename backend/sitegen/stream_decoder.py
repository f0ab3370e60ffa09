"""
Decode the AI provider's SSE byte stream into typed generation events.

Frames look like `data: <json>\n\n`. Events are yielded in exactly the order
they arrive; the only buffering is what it takes to assemble a whole frame.
"""

import asyncio
import codecs
import json
import logging
from typing import AsyncIterator, Optional

from pydantic import ValidationError

from sitegen.errors import StreamError
from sitegen.models import CompleteEvent, ErrorEvent, StreamEvent, stream_event_adapter

logger = logging.getLogger(__name__)

# Frame types older provider builds emit under a different name
_TYPE_ALIASES = {"stream": "text-delta"}


def parse_frame(frame: str) -> Optional[StreamEvent]:
    """
    Turn one SSE frame into an event.

    Returns None for frames that carry no data (comments, heartbeats) and for
    malformed payloads, which are logged and skipped.
    """
    data_lines = []
    for line in frame.split("\n"):
        if not line or line.startswith(":"):
            continue
        if line.startswith("data:"):
            value = line[5:]
            if value.startswith(" "):
                value = value[1:]
            data_lines.append(value)
    if not data_lines:
        return None

    payload = "\n".join(data_lines)
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        logger.warning("[stream] Skipping non-JSON frame (%s): %r", e, payload[:200])
        return None
    if not isinstance(data, dict):
        logger.warning("[stream] Skipping non-object frame: %r", payload[:200])
        return None

    event_type = _TYPE_ALIASES.get(data.get("type"), data.get("type"))
    data["type"] = event_type
    if event_type == "text-delta" and "delta" not in data and "text" in data:
        data["delta"] = data.pop("text")

    try:
        return stream_event_adapter.validate_python(data)
    except ValidationError as e:
        logger.warning("[stream] Skipping unrecognised frame type=%r: %s",
                       event_type, e.errors()[0].get("msg") if e.errors() else e)
        return None


async def decode_stream(
    source: AsyncIterator[bytes],
    abort: Optional[asyncio.Event] = None,
    read_timeout: Optional[float] = None,
) -> AsyncIterator[StreamEvent]:
    """
    Yield events from a raw byte stream until `complete`, `error`, or the
    upstream closes.

    Setting `abort` stops consumption within one read and closes the source.
    A read that takes longer than `read_timeout` seconds raises StreamError.
    """
    iterator = source.__aiter__()
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""

    try:
        while True:
            if abort is not None and abort.is_set():
                logger.info("[stream] Aborted by caller")
                return
            try:
                if read_timeout:
                    chunk = await asyncio.wait_for(iterator.__anext__(), timeout=read_timeout)
                else:
                    chunk = await iterator.__anext__()
            except StopAsyncIteration:
                break
            except asyncio.TimeoutError:
                raise StreamError(f"AI stream read timed out after {read_timeout}s")

            if abort is not None and abort.is_set():
                logger.info("[stream] Aborted by caller")
                return

            buffer += decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
            buffer = buffer.replace("\r\n", "\n")

            while "\n\n" in buffer:
                frame, buffer = buffer.split("\n\n", 1)
                event = parse_frame(frame)
                if event is None:
                    continue
                yield event
                if isinstance(event, (CompleteEvent, ErrorEvent)):
                    return

        # Upstream closed; decode whatever frame was left without a blank line
        buffer += decoder.decode(b"", final=True)
        tail = buffer.replace("\r\n", "\n").strip("\n")
        if tail:
            event = parse_frame(tail)
            if event is not None:
                yield event
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except Exception as e:
                logger.debug("[stream] Closing upstream failed: %s", e)
