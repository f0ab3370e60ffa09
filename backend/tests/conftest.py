"""
Sitegen - Test Configuration and Fixtures
"""
import os
import json
from typing import AsyncGenerator, Iterable

import pytest
from httpx import AsyncClient, ASGITransport

# Set testing environment
os.environ['ANTHROPIC_API_KEY'] = 'test-api-key'
os.environ['DAYTONA_API_KEY'] = 'test-daytona-key'
os.environ['GENERATION_STREAM_URL'] = ''

from sitegen.apply_engine import CodeApplicationEngine
from sitegen.config import Settings
from sitegen.errors import WriteFailure
from sitegen.sandbox import PackageInstallResult


def sse_frame(event_type: str, **data) -> bytes:
    """One provider frame, encoded the way the AI proxy sends it"""
    return f"data: {json.dumps({'type': event_type, **data})}\n\n".encode('utf-8')


async def byte_stream(chunks: Iterable) -> AsyncGenerator[bytes, None]:
    for chunk in chunks:
        yield chunk.encode('utf-8') if isinstance(chunk, str) else chunk


class FakeSandbox:
    """In-memory SandboxProvider that records every call"""

    def __init__(self, failed_packages=(), fail_write_on=None, fail_restart=False):
        self.failed_packages = set(failed_packages)
        self.fail_write_on = fail_write_on
        self.fail_restart = fail_restart
        self.install_calls: list[list[str]] = []
        self.write_attempts: list[str] = []
        self.writes: dict[str, str] = {}
        self.restarts = 0

    async def install_packages(self, names):
        self.install_calls.append(list(names))
        for name in names:
            if name in self.failed_packages:
                yield PackageInstallResult(package=name, status='failed', message='404 Not Found')
            else:
                yield PackageInstallResult(package=name, status='installed')

    async def write_file(self, path, content):
        self.write_attempts.append(path)
        if path == self.fail_write_on:
            raise WriteFailure(path, 'disk full')
        self.writes[path] = content

    async def restart(self):
        self.restarts += 1
        if self.fail_restart:
            raise RuntimeError('vite did not start')


@pytest.fixture
def settings() -> Settings:
    return Settings(
        anthropic_api_key='test-api-key',
        daytona_api_key='test-daytona-key',
        stream_read_timeout_s=5,
        install_timeout_s=5,
        write_timeout_s=5,
    )


@pytest.fixture
def sandbox() -> FakeSandbox:
    return FakeSandbox()


@pytest.fixture
def make_sandbox():
    return FakeSandbox


@pytest.fixture
def engine(sandbox: FakeSandbox, settings: Settings) -> CodeApplicationEngine:
    return CodeApplicationEngine(lambda ref: sandbox, settings)


@pytest.fixture
def frame():
    return sse_frame


@pytest.fixture
def stream():
    return byte_stream


@pytest.fixture
def generation_frames() -> list:
    """Frames the fake AI provider sends for the next generate request"""
    return []


@pytest.fixture
async def client(sandbox: FakeSandbox, generation_frames: list) -> AsyncGenerator[AsyncClient, None]:
    """Test client with the sandbox and the AI provider replaced by fakes"""
    from sitegen.conversation import clear_sessions
    from sitegen.main import app, get_generation_source, get_provider_factory

    clear_sessions()
    app.dependency_overrides[get_provider_factory] = lambda: (lambda ref: sandbox)
    app.dependency_overrides[get_generation_source] = lambda: (lambda request: byte_stream(list(generation_frames)))

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url='http://test') as ac:
        yield ac

    app.dependency_overrides.clear()
    clear_sessions()


def read_sse(body: str) -> list[dict]:
    """Decode a whole SSE response body into its JSON payloads"""
    events = []
    for block in body.split('\n\n'):
        block = block.strip()
        if block.startswith('data: '):
            events.append(json.loads(block[len('data: '):]))
    return events


@pytest.fixture
def parse_sse():
    return read_sse
