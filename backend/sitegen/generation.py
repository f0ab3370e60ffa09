"""
Generation pipeline: provider stream -> decoder -> file parser -> tracker.

Events are handled one at a time, each fully applied to the tracker before
the next frame is read.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

import httpx

from sitegen.errors import StreamError
from sitegen.file_parser import IncrementalFileParser
from sitegen.models import (
    CompleteEvent,
    ErrorEvent,
    GeneratedFile,
    GenerationRequest,
    TextDeltaEvent,
    ThinkingEvent,
    ToolCallEvent,
)
from sitegen.progress import GenerationTracker
from sitegen.stream_decoder import decode_stream

logger = logging.getLogger(__name__)

# Tool names the model uses to ask for npm packages
INSTALL_TOOL_NAMES = ("install_packages", "installPackages", "install_package")


@dataclass
class GenerationResult:
    generated_code: str = ""
    explanation: str = ""
    files: list[GeneratedFile] = field(default_factory=list)
    packages: list[str] = field(default_factory=list)
    error: Optional[str] = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled


def packages_from_tool_call(event: ToolCallEvent) -> list[str]:
    """Package names requested through an install tool call."""
    if event.name not in INSTALL_TOOL_NAMES:
        return []
    args = event.args or {}
    raw = args.get("packages")
    if raw is None and args.get("package"):
        raw = [args["package"]]
    if isinstance(raw, str):
        raw = [p for p in raw.replace(",", " ").split() if p]
    return [p.strip() for p in (raw or []) if isinstance(p, str) and p.strip()]


async def run_generation(
    source: AsyncIterator[bytes],
    tracker: GenerationTracker,
    abort: Optional[asyncio.Event] = None,
    read_timeout: Optional[float] = None,
) -> GenerationResult:
    """
    Consume one provider stream and drive `tracker` through the generation.

    Never raises for stream problems: failures end up in `tracker` and in
    the returned result, with whatever files were parsed so far.
    """
    parser = IncrementalFileParser(listener=tracker)
    packages: list[str] = []

    def _result(**kwargs) -> GenerationResult:
        return GenerationResult(
            generated_code=kwargs.pop("generated_code", parser.buffer),
            files=[f.model_copy() for f in parser.files],
            packages=list(packages),
            **kwargs,
        )

    try:
        async for event in decode_stream(source, abort=abort, read_timeout=read_timeout):
            if isinstance(event, ThinkingEvent):
                tracker.on_thinking(event.text)

            elif isinstance(event, TextDeltaEvent):
                tracker.on_stream_start()
                parser.feed(event.delta)
                tracker.on_text(event.delta, parser.position)

            elif isinstance(event, ToolCallEvent):
                for pkg in packages_from_tool_call(event):
                    if pkg not in packages:
                        packages.append(pkg)
                logger.info("[generation] Tool call %s -> packages %s", event.name, packages)

            elif isinstance(event, CompleteEvent):
                code = event.generated_code or parser.buffer
                if code != parser.buffer and code.startswith(parser.buffer):
                    # Provider sent the tail only in the final frame
                    rest = code[len(parser.buffer):]
                    tracker.on_stream_start()
                    parser.feed(rest)
                    tracker.on_text(rest, parser.position)
                elif code != parser.buffer:
                    logger.warning("[generation] Final code differs from streamed text; "
                                   "files will be re-parsed at apply time")
                explanation = event.explanation or parser.explanation
                tracker.on_complete(code, explanation)
                return _result(generated_code=code, explanation=explanation)

            elif isinstance(event, ErrorEvent):
                tracker.on_error(event.error)
                return _result(error=event.error)

    except StreamError as e:
        logger.warning("[generation] Stream failed: %s", e)
        tracker.on_error(str(e))
        return _result(error=str(e))
    except (httpx.HTTPError, OSError) as e:
        message = f"Connection to AI provider lost: {e}"
        logger.warning("[generation] %s", message)
        tracker.on_error(message)
        return _result(error=message)

    if abort is not None and abort.is_set():
        tracker.cancel()
        return _result(cancelled=True)

    message = "AI stream ended before generation completed"
    tracker.on_error(message)
    return _result(error=message)


async def remote_generation_stream(
    url: str,
    request: GenerationRequest,
    timeout: float = 120.0,
) -> AsyncIterator[bytes]:
    """POST a generation request to a provider proxy and yield the raw SSE body."""
    try:
        async with httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0)) as client:
            async with client.stream(
                "POST", url, json=request.model_dump(by_alias=True),
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise StreamError(
                        f"AI provider returned HTTP {response.status_code}: {body[:300]}"
                    )
                async for chunk in response.aiter_bytes():
                    yield chunk
    except httpx.HTTPError as e:
        raise StreamError(f"AI provider unreachable: {e}") from e
