import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from sitegen.ai_provider import stream_generation, stream_generation_bytes
from sitegen.apply_engine import ApplyRequest, CodeApplicationEngine
from sitegen.config import get_settings
from sitegen.conversation import ConversationSession, find_session, get_session
from sitegen.errors import NoActiveSandbox, NoPriorGeneration
from sitegen.generation import remote_generation_stream, run_generation
from sitegen.models import ApplyEvent, CamelModel, GenerationProgress, GenerationRequest, SandboxRef
from sitegen.progress import GenerationTracker
from sitegen.sandbox import SandboxProvider, get_sandbox_provider
from sitegen.sse_utils import SSE_HEADERS, sse_event

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("[startup] model=%s provider=%s", settings.default_model,
                settings.generation_stream_url or "in-process")
    yield


app = FastAPI(title="Sitegen API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

GenerationSource = Callable[[GenerationRequest], AsyncIterator[bytes]]


def get_provider_factory() -> Callable[[SandboxRef], SandboxProvider]:
    return get_sandbox_provider


def get_generation_source() -> GenerationSource:
    """Remote provider proxy when configured, else the in-process Anthropic stream."""
    url = get_settings().generation_stream_url
    if url:
        timeout = get_settings().stream_read_timeout_s
        return lambda request: remote_generation_stream(url, request, timeout)
    return stream_generation_bytes


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class ApplyAIRequest(CamelModel):
    response: str
    is_edit: bool = False
    packages: list[str] = []
    sandbox_id: str


class ScrapeRequest(BaseModel):
    url: str
    content: Any = None


class SessionGenerateRequest(CamelModel):
    prompt: str
    model: Optional[str] = None
    is_edit: Optional[bool] = None


class SessionApplyRequest(CamelModel):
    code: Optional[str] = None
    is_edit: Optional[bool] = None
    packages: list[str] = []


def _event_stream(gen):
    return StreamingResponse(gen, media_type="text/event-stream", headers=SSE_HEADERS)


def _progress_payload(progress: GenerationProgress) -> dict:
    # streamedCode grows with every delta; clients rebuild it from the files
    return progress.model_dump(by_alias=True, mode="json", exclude={"streamed_code"})


BUSY_DETAIL = "A generation or apply is already running for this session"


def _ensure_idle(session: ConversationSession):
    """Refuse a second generate/apply while one is running on this session."""
    if session.busy:
        raise HTTPException(status_code=409, detail=BUSY_DETAIL)


async def _exclusive(session: ConversationSession, body: AsyncIterator[str]):
    """
    Stream `body` while holding the session lock.

    The lock is taken when the response body starts, not in the handler, so
    a client that disconnects before streaming begins never leaves it held.
    """
    try:
        if session.busy:
            yield sse_event("error", {"error": BUSY_DETAIL})
            return
        async with session.lock:
            async for chunk in body:
                yield chunk
    finally:
        await body.aclose()


async def _apply_events(
    session: Optional[ConversationSession],
    events: AsyncIterator[ApplyEvent],
    abort: asyncio.Event,
):
    try:
        async for event in events:
            if session is not None:
                if event.type == "error":
                    session.add_chat_message(f"Failed to apply code: {event.error}", "error")
                elif event.type == "warning" and event.message:
                    session.add_chat_message(event.message, "system")
            yield sse_event(event.type, event.payload())
    finally:
        abort.set()
        await events.aclose()


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/")
def root():
    return {"message": "Sitegen backend is running"}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/api/ai/generate")
async def ai_generate(request: GenerationRequest):
    """Stream one AI completion as generation frames."""
    if not request.prompt.strip():
        raise HTTPException(status_code=400, detail="prompt is required")
    return _event_stream(stream_generation(request))


@app.post("/api/ai/apply")
async def ai_apply(request: ApplyAIRequest, provider_factory=Depends(get_provider_factory)):
    """Apply generated code to a sandbox without any session bookkeeping."""
    if not request.response.strip():
        raise HTTPException(status_code=400, detail="response is required")
    if not request.sandbox_id:
        raise HTTPException(status_code=400, detail="sandboxId is required")

    engine = CodeApplicationEngine(provider_factory, get_settings())
    abort = asyncio.Event()
    apply_request = ApplyRequest(
        code=request.response,
        sandbox=SandboxRef(sandbox_id=request.sandbox_id),
        is_edit=request.is_edit,
        packages=request.packages,
        abort=abort,
    )
    return _event_stream(_apply_events(None, engine.apply(apply_request), abort))


@app.post("/sessions/{session_id}/sandbox")
async def attach_sandbox(session_id: str, sandbox: SandboxRef, provider_factory=Depends(get_provider_factory)):
    session = get_session(session_id, provider_factory)
    if not sandbox.sandbox_id:
        raise HTTPException(status_code=400, detail="sandboxId is required")
    session.attach_sandbox(sandbox)
    return {"sandbox": sandbox.dump()}


@app.post("/sessions/{session_id}/scrape")
async def record_scrape(session_id: str, request: ScrapeRequest):
    url = request.url.strip()
    if not url:
        raise HTTPException(status_code=400, detail="url is required")
    if not url.startswith(("http://", "https://")):
        url = "https://" + url
    session = get_session(session_id)
    session.record_scrape(url, request.content)
    session.add_chat_message(f"Scraped {url}", "system", {"scrapedUrl": url})
    return {"scrapedWebsites": len(session.context.scraped_websites)}


@app.post("/sessions/{session_id}/generate")
async def session_generate(
    session_id: str,
    request: SessionGenerateRequest,
    source: GenerationSource = Depends(get_generation_source),
):
    """Run one generation for a session, streaming progress snapshots."""
    prompt = request.prompt.strip()
    if not prompt:
        raise HTTPException(status_code=400, detail="prompt is required")

    session = get_session(session_id)
    _ensure_idle(session)

    is_edit = session.is_edit if request.is_edit is None else request.is_edit
    gen_request = GenerationRequest(
        prompt=prompt,
        model=request.model,
        context=session.generation_context(),
        is_edit=is_edit,
    )
    session.add_chat_message(prompt, "user")

    async def event_stream():
        tracker = GenerationTracker(is_edit=is_edit)
        session.last_progress = tracker.snapshot()
        queue: asyncio.Queue = asyncio.Queue()
        tracker.subscribe(queue.put_nowait)
        abort = asyncio.Event()

        task = asyncio.create_task(run_generation(
            source(gen_request), tracker, abort=abort,
            read_timeout=get_settings().stream_read_timeout_s,
        ))
        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    snapshot = getter.result()
                    session.last_progress = snapshot
                    yield sse_event("progress", _progress_payload(snapshot))
                    continue
                getter.cancel()
                break

            while not queue.empty():
                snapshot = queue.get_nowait()
                session.last_progress = snapshot
                yield sse_event("progress", _progress_payload(snapshot))

            result = task.result()
            if result.ok:
                session.record_generation(result.generated_code, result.files, result.packages)
                session.add_chat_message(
                    result.explanation or f"Generated {len(result.files)} file(s)",
                    "ai",
                    {"appliedFiles": [f.path for f in result.files if f.completed]},
                )
                yield sse_event("complete", {
                    "generatedCode": result.generated_code,
                    "explanation": result.explanation,
                    "files": [f.dump() for f in result.files],
                    "packages": result.packages,
                    "isEdit": is_edit,
                })
            elif result.error:
                session.add_chat_message(f"Error: {result.error}", "error")
                yield sse_event("error", {"error": result.error})
        finally:
            abort.set()
            if not task.done():
                task.cancel()

    return _event_stream(_exclusive(session, event_stream()))


@app.post("/sessions/{session_id}/apply")
async def session_apply(
    session_id: str,
    request: SessionApplyRequest,
    provider_factory=Depends(get_provider_factory),
):
    """Apply the given code, or the session's last generation, to its sandbox."""
    session = get_session(session_id, provider_factory)
    code = request.code or session.context.last_generated_code
    if not code:
        raise HTTPException(status_code=400, detail=str(NoPriorGeneration()))
    if session.sandbox is None:
        session.add_chat_message(str(NoActiveSandbox()), "system")
        raise HTTPException(status_code=400, detail=str(NoActiveSandbox()))

    _ensure_idle(session)
    abort = asyncio.Event()
    reuse_parsed = request.code is None and bool(session.last_files)
    packages = list(request.packages)
    if request.code is None:
        packages += [p for p in session.last_packages if p not in packages]
    apply_request = session.build_apply_request(
        code,
        is_edit=request.is_edit,
        packages=packages,
        files=session.last_files if reuse_parsed else None,
        abort=abort,
    )
    events = session.engine.apply(apply_request)
    return _event_stream(_exclusive(session, _apply_events(session, events, abort)))


@app.post("/sessions/{session_id}/reapply")
async def session_reapply(session_id: str, provider_factory=Depends(get_provider_factory)):
    session = get_session(session_id, provider_factory)
    _ensure_idle(session)
    abort = asyncio.Event()
    try:
        events = session.reapply_last(abort=abort)
    except (NoPriorGeneration, NoActiveSandbox) as e:
        session.add_chat_message(str(e), "system")
        raise HTTPException(status_code=400, detail=str(e))
    return _event_stream(_exclusive(session, _apply_events(session, events, abort)))


@app.get("/sessions/{session_id}")
async def session_state(session_id: str):
    session = find_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session.state()
