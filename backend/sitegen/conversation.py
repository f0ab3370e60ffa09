"""
Session-scoped conversation context.

A session accumulates scraped sites, the last generation and the history of
applied code. `appliedCode` is the only signal for edit mode: once anything
has been applied, every later generation and apply is an edit.

Sessions live in a module-level dict for the life of the process; nothing is
persisted.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Optional

from sitegen.apply_engine import ApplyRequest, CodeApplicationEngine, RefreshScheduler
from sitegen.config import Settings, get_settings
from sitegen.errors import NoActiveSandbox, NoPriorGeneration
from sitegen.models import (
    AppliedCode,
    ApplyEvent,
    ChatMessage,
    ChatMessageType,
    ConversationContext,
    GeneratedComponent,
    GeneratedFile,
    GenerationProgress,
    PreviewRefresh,
    SandboxRef,
    ScrapedWebsite,
)
from sitegen.observers import SnapshotPublisher
from sitegen.path_utils import component_name
from sitegen.sandbox import SandboxProvider

logger = logging.getLogger(__name__)


class ConversationSession:
    def __init__(
        self,
        session_id: str,
        provider_factory: Optional[Callable[[SandboxRef], SandboxProvider]] = None,
        settings: Optional[Settings] = None,
    ):
        self.session_id = session_id
        self.settings = settings or get_settings()
        self.context = ConversationContext()
        self.chat_messages: list[ChatMessage] = [
            ChatMessage(content="Welcome! Paste a URL or describe the site you want to build.", type="system"),
        ]
        self.sandbox: Optional[SandboxRef] = None
        self.last_progress: Optional[GenerationProgress] = None
        self.last_files: list[GeneratedFile] = []
        self.last_packages: list[str] = []
        self.preview = PreviewRefresh()
        self._preview_publisher: SnapshotPublisher[PreviewRefresh] = SnapshotPublisher()
        self.lock = asyncio.Lock()

        if provider_factory is None:
            self.engine = CodeApplicationEngine(settings=self.settings)
        else:
            self.engine = CodeApplicationEngine(provider_factory, self.settings)
        self.refresh = RefreshScheduler(self._on_refresh)

    @property
    def busy(self) -> bool:
        return self.lock.locked()

    @property
    def is_edit(self) -> bool:
        return len(self.context.applied_code) > 0

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    def add_chat_message(self, content: str, type: ChatMessageType, metadata: Optional[dict[str, Any]] = None):
        # Skip duplicate consecutive system messages
        if type == "system" and self.chat_messages:
            last = self.chat_messages[-1]
            if last.type == "system" and last.content == content:
                return
        self.chat_messages.append(ChatMessage(content=content, type=type, metadata=metadata))
        overflow = len(self.chat_messages) - self.settings.max_chat_messages
        if overflow > 0:
            del self.chat_messages[:overflow]

    # ------------------------------------------------------------------
    # Context updates
    # ------------------------------------------------------------------

    def attach_sandbox(self, sandbox: SandboxRef):
        self.sandbox = sandbox
        # A new sandbox starts from the base template
        self.context.installed_packages = []
        self.add_chat_message(f"Sandbox ready: {sandbox.url or sandbox.sandbox_id}", "system")

    def record_scrape(self, url: str, content: Any):
        self.context.scraped_websites.append(ScrapedWebsite(url=url, content=content))
        if not self.context.current_project:
            self.context.current_project = url

    def record_generation(
        self,
        code: str,
        files: Optional[list[GeneratedFile]] = None,
        packages: Optional[list[str]] = None,
    ):
        """Remember the latest successful generation for apply and reapply."""
        self.context.last_generated_code = code
        self.last_files = [f.model_copy() for f in (files or [])]
        self.last_packages = list(packages or [])
        if files is not None:
            self.context.generated_components = [
                GeneratedComponent(name=component_name(f.path), path=f.path, content=f.content)
                for f in files if f.completed
            ]

    def record_applied(self, files: list[str], installed_packages: Optional[list[str]] = None):
        self.context.applied_code.append(AppliedCode(files=list(files)))
        for pkg in installed_packages or []:
            if pkg not in self.context.installed_packages:
                self.context.installed_packages.append(pkg)

    def generation_context(self) -> dict[str, Any]:
        """Context payload sent along with a generation request."""
        ctx: dict[str, Any] = {
            "scrapedWebsites": [s.dump() for s in self.context.scraped_websites],
            "appliedFiles": [p for entry in self.context.applied_code for p in entry.files],
        }
        if self.context.generated_components:
            ctx["files"] = {c.path: c.content for c in self.context.generated_components}
        if self.context.current_project:
            ctx["currentProject"] = self.context.current_project
        return ctx

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def _on_applied(self, event: ApplyEvent):
        self.record_applied(event.files or [], event.packages_installed)
        self.add_chat_message(
            f"Applied {len(event.files or [])} file(s)",
            "file-update",
            {"files": event.files or [], "packagesInstalled": event.packages_installed or []},
        )

    def subscribe_refresh(self, callback: Callable[[PreviewRefresh], None]) -> Callable[[], None]:
        """Get a PreviewRefresh each time the debounced post-apply refresh fires."""
        return self._preview_publisher.subscribe(callback)

    def _on_refresh(self):
        self.preview.count += 1
        self.preview.last_refresh_at = datetime.now(timezone.utc)
        self.preview.sandbox_url = self.sandbox.url if self.sandbox else ""
        logger.info("[session %s] Preview refresh #%d", self.session_id, self.preview.count)
        self._preview_publisher.publish(self.preview)

    def build_apply_request(
        self,
        code: str,
        is_edit: Optional[bool] = None,
        packages: Optional[list[str]] = None,
        files: Optional[list[GeneratedFile]] = None,
        abort: Optional[asyncio.Event] = None,
    ) -> ApplyRequest:
        if self.sandbox is None:
            raise NoActiveSandbox()
        return ApplyRequest(
            code=code,
            sandbox=self.sandbox,
            is_edit=self.is_edit if is_edit is None else is_edit,
            packages=list(packages or []),
            files=files,
            installed_packages=list(self.context.installed_packages),
            abort=abort,
            refresh=self.refresh,
            on_complete=self._on_applied,
        )

    def reapply_last(
        self,
        engine: Optional[CodeApplicationEngine] = None,
        abort: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[ApplyEvent]:
        """
        Re-run the apply for the last generation.

        Raises NoPriorGeneration or NoActiveSandbox before anything starts.
        Edit mode is decided here, from the applied history at call time.
        """
        code = self.context.last_generated_code
        if not code:
            raise NoPriorGeneration()
        if self.sandbox is None:
            raise NoActiveSandbox()

        self.add_chat_message("Re-applying last generation...", "system")
        request = self.build_apply_request(
            code,
            is_edit=self.is_edit,
            packages=self.last_packages,
            abort=abort,
        )
        return (engine or self.engine).apply(request)

    def state(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "context": self.context.dump(),
            "chatMessages": [m.dump() for m in self.chat_messages],
            "sandbox": self.sandbox.dump() if self.sandbox else None,
            "generationProgress": self.last_progress.dump() if self.last_progress else None,
            "codeApplicationState": self.engine.snapshot().dump(),
            "previewRefresh": self.preview.dump(),
            "isEdit": self.is_edit,
            "busy": self.busy,
        }


_sessions: dict[str, ConversationSession] = {}


def get_session(
    session_id: str,
    provider_factory: Optional[Callable[[SandboxRef], SandboxProvider]] = None,
) -> ConversationSession:
    """Return the session for `session_id`, creating it on first use."""
    session = _sessions.get(session_id)
    if session is None:
        session = ConversationSession(session_id, provider_factory)
        _sessions[session_id] = session
        logger.info("[session %s] Created", session_id)
    elif provider_factory is not None:
        session.engine.provider_factory = provider_factory
    return session


def find_session(session_id: str) -> Optional[ConversationSession]:
    return _sessions.get(session_id)


def clear_sessions():
    _sessions.clear()
