"""
Data model for generation, application and session state.

Fields are snake_case in Python and serialise with the camelCase names the
frontend already consumes (isGenerating, lastProcessedPosition, ...).
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

class GeneratedFile(CamelModel):
    path: str
    content: str = ""
    type: str = "default"
    completed: bool = False


class ComponentInfo(CamelModel):
    name: str
    path: str
    completed: bool = False


class GenerationProgress(CamelModel):
    is_generating: bool = False
    is_streaming: bool = False
    is_thinking: bool = False
    status: str = ""
    thinking_text: Optional[str] = None
    thinking_duration: Optional[int] = None
    components: list[ComponentInfo] = Field(default_factory=list)
    current_component: int = 0
    streamed_code: str = ""
    files: list[GeneratedFile] = Field(default_factory=list)
    current_file: Optional[GeneratedFile] = None
    last_processed_position: int = 0
    is_edit: bool = False
    explanation: str = ""
    error: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

ApplyStage = Literal["analyzing", "installing", "applying", "complete"]


class CodeApplicationState(CamelModel):
    stage: Optional[ApplyStage] = None
    packages: list[str] = Field(default_factory=list)
    installed_packages: list[str] = Field(default_factory=list)
    failed_packages: list[str] = Field(default_factory=list)
    files_generated: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ApplyEvent(CamelModel):
    """One frame of the apply stream."""

    type: Literal[
        "start", "step", "package-progress", "file-progress",
        "warning", "complete", "error",
    ]
    message: Optional[str] = None
    stage: Optional[ApplyStage] = None
    packages: Optional[list[str]] = None
    package: Optional[str] = None
    status: Optional[str] = None
    installed_packages: Optional[list[str]] = None
    files_created: Optional[int] = None
    current: Optional[int] = None
    total: Optional[int] = None
    file_name: Optional[str] = None
    generated_code: Optional[str] = None
    files: Optional[list[str]] = None
    packages_installed: Optional[list[str]] = None
    refresh_delay: Optional[int] = None
    is_edit: Optional[bool] = None
    error: Optional[str] = None

    def payload(self) -> dict:
        data = self.model_dump(by_alias=True, exclude_none=True, mode="json")
        data.pop("type", None)
        return data


# ---------------------------------------------------------------------------
# Stream events (decoded from the AI provider stream)
# ---------------------------------------------------------------------------

class ThinkingEvent(CamelModel):
    type: Literal["thinking"] = "thinking"
    text: str = ""


class TextDeltaEvent(CamelModel):
    type: Literal["text-delta"] = "text-delta"
    delta: str = ""


class ToolCallEvent(CamelModel):
    type: Literal["tool-call"] = "tool-call"
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class CompleteEvent(CamelModel):
    type: Literal["complete"] = "complete"
    generated_code: str = ""
    explanation: str = ""


class ErrorEvent(CamelModel):
    type: Literal["error"] = "error"
    error: str = "Unknown error"


StreamEvent = Annotated[
    Union[ThinkingEvent, TextDeltaEvent, ToolCallEvent, CompleteEvent, ErrorEvent],
    Field(discriminator="type"),
]

stream_event_adapter = TypeAdapter(StreamEvent)


class GenerationRequest(CamelModel):
    """Body sent to the AI provider proxy."""

    prompt: str
    model: Optional[str] = None
    context: Optional[dict[str, Any]] = None
    is_edit: bool = False


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class SandboxRef(CamelModel):
    sandbox_id: str
    url: str = ""
    project_root: Optional[str] = None


class PreviewRefresh(CamelModel):
    """Signal that the sandbox preview should reload."""

    count: int = 0
    last_refresh_at: Optional[datetime] = None
    sandbox_url: str = ""


class ScrapedWebsite(CamelModel):
    url: str
    content: Any = None
    timestamp: datetime = Field(default_factory=_now)


class GeneratedComponent(CamelModel):
    name: str
    path: str
    content: str


class AppliedCode(CamelModel):
    files: list[str]
    timestamp: datetime = Field(default_factory=_now)


class ConversationContext(CamelModel):
    scraped_websites: list[ScrapedWebsite] = Field(default_factory=list)
    generated_components: list[GeneratedComponent] = Field(default_factory=list)
    applied_code: list[AppliedCode] = Field(default_factory=list)
    current_project: str = ""
    last_generated_code: Optional[str] = None
    installed_packages: list[str] = Field(default_factory=list)


ChatMessageType = Literal["user", "ai", "system", "file-update", "command", "error"]


class ChatMessage(CamelModel):
    content: str
    type: ChatMessageType
    timestamp: datetime = Field(default_factory=_now)
    metadata: Optional[dict[str, Any]] = None
