"""
Generation progress tracker.

Owns one GenerationProgress value for one generation request. The stream
loop and the file parser push events in; the UI layer only ever sees deep
copies through `subscribe()`.

Lifecycle: idle -> thinking? -> streaming -> (file events)* -> complete | error.
Once terminal, every further event raises GenerationClosedError; a new
generation always gets a new tracker.
"""

import logging
import time
from typing import Callable, Optional

from sitegen.errors import GenerationClosedError
from sitegen.models import ComponentInfo, GeneratedFile, GenerationProgress
from sitegen.observers import SnapshotPublisher
from sitegen.path_utils import component_name

logger = logging.getLogger(__name__)


class GenerationTracker:
    def __init__(self, is_edit: bool = False):
        self.progress = GenerationProgress(
            is_generating=True,
            is_edit=is_edit,
            status="Starting generation...",
        )
        self._publisher: SnapshotPublisher[GenerationProgress] = SnapshotPublisher()
        self._closed = False
        self._thinking_started: Optional[float] = None

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def subscribe(self, callback: Callable[[GenerationProgress], None]) -> Callable[[], None]:
        return self._publisher.subscribe(callback)

    def snapshot(self) -> GenerationProgress:
        return self.progress.model_copy(deep=True)

    @property
    def closed(self) -> bool:
        return self._closed

    def _changed(self):
        self._publisher.publish(self.progress)

    def _check_open(self, event: str):
        if self._closed:
            raise GenerationClosedError(f"Generation already finished; rejected {event}")

    # ------------------------------------------------------------------
    # Stream events
    # ------------------------------------------------------------------

    def on_thinking(self, text: str):
        self._check_open("thinking")
        p = self.progress
        if self._thinking_started is None:
            self._thinking_started = time.monotonic()
        p.is_thinking = True
        p.thinking_text = (p.thinking_text or "") + text
        p.status = "Thinking..."
        self._changed()

    def on_stream_start(self):
        """First code/text delta arrived; thinking (if any) is over."""
        self._check_open("stream start")
        p = self.progress
        if p.is_streaming:
            return
        if p.is_thinking and self._thinking_started is not None:
            p.thinking_duration = round(time.monotonic() - self._thinking_started)
        p.is_thinking = False
        p.is_streaming = True
        p.status = "Generating code..."
        self._changed()

    def on_text(self, delta: str, position: int):
        """Record raw output and the parser's cursor after it consumed `delta`."""
        self._check_open("text")
        p = self.progress
        p.streamed_code += delta
        if position < p.last_processed_position:
            raise ValueError(
                f"Parser cursor moved backwards ({p.last_processed_position} -> {position})"
            )
        p.last_processed_position = position
        self._changed()

    # ------------------------------------------------------------------
    # Parser listener
    # ------------------------------------------------------------------

    def _index_of(self, path: str) -> Optional[int]:
        for i, f in enumerate(self.progress.files):
            if f.path == path:
                return i
        return None

    def _store(self, file: GeneratedFile) -> GeneratedFile:
        """Keep a private copy so no file object is shared outside this tracker."""
        p = self.progress
        copy = file.model_copy()
        idx = self._index_of(file.path)
        if idx is None:
            p.files.append(copy)
            p.components.append(ComponentInfo(
                name=component_name(file.path), path=file.path, completed=copy.completed,
            ))
        else:
            p.files[idx] = copy
            p.components[idx] = ComponentInfo(
                name=component_name(file.path), path=file.path, completed=copy.completed,
            )
        p.current_component = sum(1 for c in p.components if c.completed)
        return copy

    def on_file_opened(self, file: GeneratedFile):
        self._check_open("file opened")
        copy = self._store(file)
        self.progress.current_file = copy
        self.progress.status = f"Generating {file.path}..."
        self._changed()

    def on_file_updated(self, file: GeneratedFile):
        self._check_open("file updated")
        copy = self._store(file)
        self.progress.current_file = copy
        self._changed()

    def on_file_closed(self, file: GeneratedFile):
        self._check_open("file closed")
        p = self.progress
        copy = self._store(file)
        if p.current_file is not None and p.current_file.path == copy.path:
            p.current_file = None
        p.status = f"Completed {file.path} ({p.current_component}/{len(p.components)})"
        self._changed()

    def on_warning(self, message: str):
        self._check_open("warning")
        self.progress.warnings.append(message)
        self._changed()

    # ------------------------------------------------------------------
    # Terminal events
    # ------------------------------------------------------------------

    def on_complete(self, generated_code: str, explanation: str = ""):
        self._check_open("complete")
        p = self.progress
        p.is_generating = False
        p.is_streaming = False
        p.is_thinking = False
        p.current_file = None
        if generated_code:
            p.streamed_code = generated_code
        p.explanation = explanation
        p.status = f"Generated {len(p.files)} file(s)"
        self._closed = True
        self._changed()

    def on_error(self, error: str):
        """Mark the generation failed. Files parsed so far stay visible."""
        self._check_open("error")
        p = self.progress
        p.is_generating = False
        p.is_streaming = False
        p.is_thinking = False
        p.current_file = None
        p.error = error
        p.status = f"Error: {error}"
        self._closed = True
        logger.info("[progress] Generation failed with %d file(s) kept: %s", len(p.files), error)
        self._changed()

    def cancel(self):
        """Stop accepting events and leave the partial state as it is."""
        if self._closed:
            return
        p = self.progress
        p.is_generating = False
        p.is_streaming = False
        p.is_thinking = False
        p.status = "Cancelled"
        self._closed = True
        self._changed()
