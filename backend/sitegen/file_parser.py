"""
Incremental parser for `<file path="...">...</file>` blocks in a growing
model response.

The scanner keeps a cursor and a two-state machine (seeking a tag / inside a
file) so closed regions are never scanned again. While a file is still open
the cursor stays on its opening tag, which is the only region that gets
revisited as more text arrives.

Known gap: the format has no escaping, so a literal `</file>` inside
generated content closes the block early.
"""

import logging
import re
from typing import Optional, Protocol

from sitegen.errors import ParseTolerance, PathRejected
from sitegen.models import GeneratedFile
from sitegen.path_utils import file_type, validate_path

logger = logging.getLogger(__name__)

OPEN_MARKER = "<file"
CLOSE_TAG = "</file>"

# path may sit anywhere among the tag's attributes
_OPEN_TAG_RE = re.compile(r'<file\s(?:[^>]*?\s)?path\s*=\s*"([^"]*)"[^>]*>')
# Everything an opening tag can look like before its final ">"
# Complete attributes, then at most one that is still arriving
_OPEN_TAG_PREFIX_RE = re.compile(
    r'<file(?:\s+[^\s=>"]+(?:\s*=\s*"[^"]*")?)*'
    r'(?:\s+[^\s=>"]+(?:\s*=\s*(?:"[^"]*)?)?)?\s*'
)
_EXPLANATION_RE = re.compile(r"<explanation>(.*?)</explanation>", re.DOTALL)

SEEKING = "seeking"
IN_FILE = "in_file"


class ParserListener(Protocol):
    def on_file_opened(self, file: GeneratedFile) -> None: ...
    def on_file_updated(self, file: GeneratedFile) -> None: ...
    def on_file_closed(self, file: GeneratedFile) -> None: ...
    def on_warning(self, message: str) -> None: ...


class IncrementalFileParser:
    def __init__(self, listener: Optional[ParserListener] = None):
        self.listener = listener
        self.buffer = ""
        self.position = 0
        self.state = SEEKING
        self.files: list[GeneratedFile] = []
        self.warnings: list[str] = []
        self._index_by_path: dict[str, int] = {}

        # Open-file bookkeeping
        self._current: Optional[GeneratedFile] = None
        self._rejected_path: Optional[str] = None
        self._content_start = 0
        self._close_search_from = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def feed(self, delta: str) -> None:
        """Append a chunk of model output and scan as far as possible."""
        if not delta:
            return
        self.buffer += delta
        self._scan()

    @property
    def current_file(self) -> Optional[GeneratedFile]:
        return self._current

    @property
    def completed_files(self) -> list[GeneratedFile]:
        return [f for f in self.files if f.completed]

    @property
    def explanation(self) -> str:
        m = _EXPLANATION_RE.search(self.buffer)
        return m.group(1).strip() if m else ""

    # ------------------------------------------------------------------
    # Scanner
    # ------------------------------------------------------------------

    def _scan(self):
        while True:
            if self.state == SEEKING:
                if not self._seek_tag():
                    return
            else:
                if not self._consume_file():
                    return

    def _seek_tag(self) -> bool:
        """Find the next opening tag. Returns False when more input is needed."""
        buf = self.buffer
        i = buf.find(OPEN_MARKER, self.position)
        if i == -1:
            # Keep room for a marker split across chunks
            self._advance(len(buf) - (len(OPEN_MARKER) - 1))
            return False

        after = i + len(OPEN_MARKER)
        if after < len(buf) and not (buf[after].isspace() or buf[after] == ">"):
            # "<filename>" and friends are plain text
            self._advance(after)
            return True

        m = _OPEN_TAG_RE.match(buf, i)
        if m:
            self._advance(i)
            self._open_file(m.group(1), m.end())
            return True

        if _OPEN_TAG_PREFIX_RE.fullmatch(buf, i):
            # Tag still arriving
            self._advance(i)
            return False

        end = buf.find(">", i)
        snippet = buf[i:end + 1] if end != -1 else buf[i:i + 80]
        self._warn(ParseTolerance(f"Skipping malformed file tag: {snippet[:80]!r}"))
        # Resync on the next "<file"
        self._advance(after)
        return True

    def _open_file(self, raw_path: str, content_start: int):
        self.state = IN_FILE
        self._content_start = content_start
        self._close_search_from = content_start
        self._current = None
        self._rejected_path = None

        try:
            path = validate_path(raw_path)
        except PathRejected as e:
            self._rejected_path = raw_path
            self._warn(e)
            return

        file = GeneratedFile(path=path, type=file_type(path), completed=False)
        if path in self._index_by_path:
            # Last write wins, first-seen position is kept
            self.files[self._index_by_path[path]] = file
        else:
            self._index_by_path[path] = len(self.files)
            self.files.append(file)
        self._current = file
        self._notify("on_file_opened", file)

    def _consume_file(self) -> bool:
        """Look for the closing tag of the open file. Returns False when more input is needed."""
        buf = self.buffer
        j = buf.find(CLOSE_TAG, self._close_search_from)
        if j == -1:
            self._close_search_from = max(
                self._content_start, len(buf) - (len(CLOSE_TAG) - 1)
            )
            if self._current is not None:
                partial = _hold_back_partial_close(buf[self._content_start:]).lstrip("\r\n")
                if partial != self._current.content:
                    self._current.content = partial
                    self._notify("on_file_updated", self._current)
            return False

        if self._current is not None:
            self._current.content = buf[self._content_start:j].strip()
            self._current.completed = True
            self._notify("on_file_closed", self._current)
        elif self._rejected_path is not None:
            logger.info("[parser] Dropped content of rejected path %r", self._rejected_path)

        self._current = None
        self._rejected_path = None
        self.state = SEEKING
        self._advance(j + len(CLOSE_TAG))
        return True

    # ------------------------------------------------------------------

    def _advance(self, pos: int):
        if pos > self.position:
            self.position = pos

    def _warn(self, error: Exception):
        message = str(error)
        logger.warning("[parser] %s", message)
        self.warnings.append(message)
        if self.listener is not None:
            self.listener.on_warning(message)

    def _notify(self, method: str, file: GeneratedFile):
        if self.listener is not None:
            getattr(self.listener, method)(file)


def _hold_back_partial_close(text: str) -> str:
    """Drop a trailing prefix of "</file>" that may finish in the next chunk."""
    for k in range(min(len(CLOSE_TAG) - 1, len(text)), 0, -1):
        if text.endswith(CLOSE_TAG[:k]):
            return text[:-k]
    return text


def parse_generated_files(text: str) -> IncrementalFileParser:
    """Run the scanner over a complete response and return the finished parser."""
    parser = IncrementalFileParser()
    parser.feed(text)
    return parser
