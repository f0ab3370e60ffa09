"""
Tests for the session-scoped conversation context
"""
import asyncio

import pytest

from sitegen.conversation import ConversationSession, clear_sessions, find_session, get_session
from sitegen.errors import NoActiveSandbox, NoPriorGeneration
from sitegen.models import GeneratedFile, SandboxRef


class RecordingEngine:
    """Captures apply requests instead of running them"""

    def __init__(self):
        self.requests = []

    async def apply(self, request):
        self.requests.append(request)
        yield None


@pytest.fixture
def session(sandbox, settings) -> ConversationSession:
    return ConversationSession('s1', lambda ref: sandbox, settings)


async def drain(events):
    return [e async for e in events]


class TestContext:

    def test_edit_mode_follows_applied_history(self, session):
        assert session.is_edit is False
        session.record_applied(['src/App.jsx'])
        assert session.is_edit is True

    def test_record_generation_overwrites_last_code(self, session):
        session.record_generation('first')
        session.record_generation('second', [
            GeneratedFile(path='src/components/Hero.jsx', content='hero', completed=True),
            GeneratedFile(path='src/half.jsx', content='h', completed=False),
        ])
        assert session.context.last_generated_code == 'second'
        assert [(c.name, c.path) for c in session.context.generated_components] == [
            ('Hero', 'src/components/Hero.jsx'),
        ]

    def test_record_applied_grows_installed_packages(self, session):
        session.record_applied(['a.js'], ['lodash'])
        session.record_applied(['b.js'], ['lodash', 'clsx'])
        assert [entry.files for entry in session.context.applied_code] == [['a.js'], ['b.js']]
        assert session.context.installed_packages == ['lodash', 'clsx']

    def test_scrape_sets_current_project(self, session):
        session.record_scrape('https://example.com', {'title': 'Example'})
        session.record_scrape('https://other.com', 'text')
        assert [s.url for s in session.context.scraped_websites] == ['https://example.com', 'https://other.com']
        assert session.context.current_project == 'https://example.com'

    def test_generation_context_uses_wire_names(self, session):
        session.record_scrape('https://example.com', 'page')
        session.record_applied(['src/App.jsx'])
        session.record_generation('x', [GeneratedFile(path='src/App.jsx', content='app', completed=True)])
        ctx = session.generation_context()
        assert ctx['scrapedWebsites'][0]['url'] == 'https://example.com'
        assert ctx['appliedFiles'] == ['src/App.jsx']
        assert ctx['files'] == {'src/App.jsx': 'app'}


class TestChat:

    def test_consecutive_system_duplicates_collapse(self, session):
        start = len(session.chat_messages)
        session.add_chat_message('Sandbox ready', 'system')
        session.add_chat_message('Sandbox ready', 'system')
        session.add_chat_message('hello', 'user')
        session.add_chat_message('hello', 'user')
        assert len(session.chat_messages) == start + 3

    def test_history_is_capped(self, session):
        session.settings.max_chat_messages = 5
        for i in range(10):
            session.add_chat_message(f'msg {i}', 'user')
        assert len(session.chat_messages) == 5
        assert session.chat_messages[-1].content == 'msg 9'


class TestReapply:

    def test_requires_prior_generation(self, session):
        session.attach_sandbox(SandboxRef(sandbox_id='sb-1'))
        with pytest.raises(NoPriorGeneration):
            session.reapply_last(RecordingEngine())

    def test_requires_sandbox(self, session):
        session.record_generation('<file path="a.js">1</file>')
        with pytest.raises(NoActiveSandbox):
            session.reapply_last(RecordingEngine())

    async def test_twice_sends_identical_request(self, session):
        engine = RecordingEngine()
        session.attach_sandbox(SandboxRef(sandbox_id='sb-1'))
        session.record_generation('<file path="a.js">1</file>', packages=['lodash'])
        session.record_applied(['a.js'])

        await drain(session.reapply_last(engine))
        await drain(session.reapply_last(engine))

        first, second = engine.requests
        assert first.code == second.code == '<file path="a.js">1</file>'
        assert first.is_edit is True and second.is_edit is True
        assert first.packages == second.packages == ['lodash']

    async def test_is_edit_is_decided_at_call_time(self, session):
        engine = RecordingEngine()
        session.attach_sandbox(SandboxRef(sandbox_id='sb-1'))
        session.record_generation('<file path="a.js">1</file>')
        await drain(session.reapply_last(engine))
        session.record_applied(['a.js'])
        await drain(session.reapply_last(engine))
        assert [r.is_edit for r in engine.requests] == [False, True]

    async def test_completed_apply_is_recorded(self, session, sandbox):
        session.attach_sandbox(SandboxRef(sandbox_id='sb-1'))
        session.record_generation('<file path="src/App.jsx">import x from "clsx";</file>')

        events = await drain(session.reapply_last())

        assert events[-1].type == 'complete'
        assert sandbox.writes == {'src/App.jsx': 'import x from "clsx";'}
        assert [entry.files for entry in session.context.applied_code] == [['src/App.jsx']]
        assert session.context.installed_packages == ['clsx']
        assert session.is_edit is True
        assert session.chat_messages[-1].type == 'file-update'
        session.refresh.cancel()


class TestPreviewRefresh:

    async def test_fires_after_advertised_delay(self, session):
        session.settings.default_refresh_delay_ms = 30
        session.attach_sandbox(SandboxRef(sandbox_id='sb-1', url='https://preview'))
        session.record_generation('<file path="a.js">1</file>')
        received = []
        session.subscribe_refresh(received.append)

        events = await drain(session.reapply_last())

        assert events[-1].refresh_delay == 30
        assert received == []
        assert session.state()['previewRefresh']['count'] == 0

        await asyncio.sleep(0.1)

        assert [r.count for r in received] == [1]
        assert received[0].sandbox_url == 'https://preview'
        state = session.state()['previewRefresh']
        assert state['count'] == 1
        assert state['lastRefreshAt'] is not None

    async def test_back_to_back_applies_refresh_once(self, session):
        session.settings.default_refresh_delay_ms = 30
        session.attach_sandbox(SandboxRef(sandbox_id='sb-1'))
        session.record_generation('<file path="a.js">1</file>')
        received = []
        unsubscribe = session.subscribe_refresh(received.append)

        await drain(session.reapply_last())
        await drain(session.reapply_last())
        await asyncio.sleep(0.1)

        assert [r.count for r in received] == [1]
        unsubscribe()
        await drain(session.reapply_last())
        await asyncio.sleep(0.1)
        assert len(received) == 1
        assert session.preview.count == 2


class TestRegistry:

    def test_get_session_creates_once(self):
        clear_sessions()
        assert find_session('abc') is None
        first = get_session('abc')
        assert get_session('abc') is first
        assert find_session('abc') is first
        clear_sessions()
        assert find_session('abc') is None
