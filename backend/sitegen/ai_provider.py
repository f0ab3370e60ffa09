"""
AI provider proxy. Streams an Anthropic completion as generation frames.

Frames (one `data: <json>\n\n` each):
  {type: "thinking", text}
  {type: "text-delta", delta}
  {type: "tool-call", name, args}
  {type: "complete", generatedCode, explanation}
  {type: "error", error}
"""

import json
import logging
import os
import re
from typing import AsyncGenerator

import anthropic

from sitegen.config import get_settings
from sitegen.models import GenerationRequest
from sitegen.sse_utils import sse_event

logger = logging.getLogger(__name__)


def _get_client():
    """Get an async Anthropic client."""
    api_key = os.getenv("ANTHROPIC_API_KEY")
    if not api_key:
        api_key = get_settings().anthropic_api_key
    return anthropic.AsyncAnthropic(api_key=api_key)


GENERATE_SYSTEM_PROMPT = """You are an expert React developer. You build Vite + React + Tailwind CSS apps that run inside a live sandbox.

## Output Format
Write every file as a tagged block:
<file path="src/App.jsx">
...complete file content...
</file>

- One <file> block per file, complete contents, no markdown fences inside or around the blocks.
- Paths are relative to the project root (src/..., public/..., index.html). Never use absolute paths or "..".
- Never write a literal "</file>" inside file content.
- You may add a short summary inside <explanation>...</explanation> before the files.

## Required Structure
- `src/App.jsx` imports and renders every section component in visual order.
- `src/components/*.jsx`: one component per major section (Header, Hero, Features, Footer, ...).
- `src/index.css` starts with the Tailwind directives.

## Packages
React, react-dom and Tailwind are already installed. If a file imports any other npm
package, call the `install_packages` tool with the package names after writing all files."""

EDIT_SYSTEM_ADDENDUM = """

## Edit Mode
The project already exists. Only output the files that need to change, each one complete.
Do not re-emit files that stay the same."""

GENERATE_TOOLS = [
    {
        "name": "install_packages",
        "description": "Install npm packages into the sandbox before the generated files are applied.",
        "input_schema": {
            "type": "object",
            "properties": {
                "packages": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["packages"],
        },
    },
]

_EXPLANATION_RE = re.compile(r"<explanation>(.*?)</explanation>", re.DOTALL)


def _build_user_content(request: GenerationRequest) -> str:
    context = request.context or {}
    parts = []

    scraped = context.get("scrapedWebsites") or context.get("scraped_websites") or []
    for site in scraped[-3:]:
        content = site.get("content")
        if not isinstance(content, str):
            content = json.dumps(content, default=str)
        parts.append(f"SCRAPED WEBSITE {site.get('url', '')}:\n{content[:15000]}")

    files = context.get("files") or {}
    if files:
        listing = "\n".join(
            f"--- {fp} ---\n{content[:3000]}" for fp, content in files.items()
        )
        parts.append(f"Current files in the project:\n{listing[:20000]}")

    applied = context.get("appliedFiles") or []
    if applied:
        parts.append("Previously applied files: " + ", ".join(applied))

    parts.append(f"User request: {request.prompt}")
    return "\n\n".join(parts)


async def stream_generation(request: GenerationRequest) -> AsyncGenerator[str, None]:
    """Run one completion and yield SSE frames in arrival order."""
    settings = get_settings()
    model = request.model or settings.default_model
    system = GENERATE_SYSTEM_PROMPT + (EDIT_SYSTEM_ADDENDUM if request.is_edit else "")
    text = ""

    try:
        client = _get_client()
        async with client.messages.stream(
            model=model,
            max_tokens=settings.max_tokens,
            system=system,
            messages=[{"role": "user", "content": _build_user_content(request)}],
            tools=GENERATE_TOOLS,
        ) as stream:
            async for event in stream:
                if event.type == "text":
                    text += event.text
                    yield sse_event("text-delta", {"delta": event.text})
                elif event.type == "thinking":
                    yield sse_event("thinking", {"text": event.thinking})
            response = await stream.get_final_message()

        for block in response.content:
            if block.type == "tool_use":
                yield sse_event("tool-call", {"name": block.name, "args": block.input})

        if getattr(response, "stop_reason", None) == "max_tokens":
            logger.warning("[ai-provider] Output truncated (max_tokens reached)")

        m = _EXPLANATION_RE.search(text)
        explanation = m.group(1).strip() if m else ""
        yield sse_event("complete", {"generatedCode": text, "explanation": explanation})

    except Exception as e:
        logger.warning("[ai-provider] Generation failed: %s", e)
        yield sse_event("error", {"error": str(e)})


async def stream_generation_bytes(request: GenerationRequest) -> AsyncGenerator[bytes, None]:
    """Same frames as bytes, so the in-process path reads like an HTTP body."""
    async for frame in stream_generation(request):
        yield frame.encode("utf-8")
