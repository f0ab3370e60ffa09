"""
Tests for CodeApplicationEngine

Stage order, install failures as warnings, write failures as fatal, network
timeouts and the debounced refresh.
"""
import asyncio

import pytest

from sitegen.apply_engine import ApplyRequest, CodeApplicationEngine, RefreshScheduler
from sitegen.errors import SandboxUnavailable
from sitegen.models import GeneratedFile, SandboxRef
from sitegen.sandbox import PackageInstallResult

THREE_FILES = (
    '<file path="src/App.jsx">import Hero from "./components/Hero";</file>'
    '<file path="src/components/Hero.jsx">export default () => null;</file>'
    '<file path="src/index.css">@tailwind base;</file>'
)

SANDBOX = SandboxRef(sandbox_id='sb-123', url='https://5173-sb-123.example.dev')

STAGE_ORDER = ['analyzing', 'installing', 'applying', 'complete']


async def run(engine, **kwargs):
    kwargs.setdefault('sandbox', SANDBOX)
    request = ApplyRequest(**kwargs)
    return [event async for event in engine.apply(request)]


def observed_stages(engine):
    stages = []
    engine.subscribe(lambda s: stages.append(s.stage))
    return stages


def assert_forward_only(stages):
    seen = [s for s in stages if s is not None]
    deduped = [s for i, s in enumerate(seen) if i == 0 or seen[i - 1] != s]
    indices = [STAGE_ORDER.index(s) for s in deduped]
    assert indices == sorted(set(indices)), deduped


class TestStages:

    async def test_no_packages_skips_installing(self, engine, sandbox):
        stages = observed_stages(engine)
        events = await run(engine, code=THREE_FILES)

        assert_forward_only(stages)
        assert 'installing' not in stages
        assert stages[-1] is None
        assert engine.state.stage is None
        assert [e.type for e in events][0] == 'start'
        assert events[-1].type == 'complete'
        assert list(sandbox.writes) == ['src/App.jsx', 'src/components/Hero.jsx', 'src/index.css']
        assert sandbox.install_calls == []

    async def test_detected_and_explicit_packages_are_installed(self, engine, sandbox):
        stages = observed_stages(engine)
        code = '<file path="src/App.jsx">import { motion } from "framer-motion";</file>'
        events = await run(engine, code=code, packages=['lodash'])

        assert_forward_only(stages)
        assert 'installing' in stages
        assert sandbox.install_calls == [['lodash', 'framer-motion']]
        progress = [e for e in events if e.type == 'package-progress']
        assert [e.installed_packages for e in progress] == [['lodash'], ['lodash', 'framer-motion']]
        assert sandbox.restarts == 1
        done = events[-1]
        assert done.packages_installed == ['lodash', 'framer-motion']
        assert done.refresh_delay == engine.settings.package_install_refresh_delay_ms

    async def test_preinstalled_and_session_packages_are_skipped(self, engine, sandbox):
        code = (
            '<file path="src/App.jsx">import x from "tailwindcss"; import y from "axios";</file>'
        )
        events = await run(engine, code=code, installed_packages=['axios'])
        assert sandbox.install_calls == []
        assert events[-1].refresh_delay == engine.settings.default_refresh_delay_ms

    async def test_install_failure_is_a_warning(self, settings, make_sandbox):
        sandbox = make_sandbox(failed_packages={'lodash'})
        engine = CodeApplicationEngine(lambda ref: sandbox, settings)
        stages = observed_stages(engine)

        events = await run(engine, code=THREE_FILES, packages=['lodash'])

        assert 'applying' in stages and 'complete' in stages
        warnings = [e.message for e in events if e.type == 'warning']
        assert any('lodash' in w for w in warnings)
        assert engine.state.failed_packages == ['lodash']
        assert len(sandbox.writes) == 3
        assert events[-1].type == 'complete'
        assert events[-1].packages_installed == []
        # Nothing installed, so no restart
        assert sandbox.restarts == 0

    async def test_write_failure_stops_the_run(self, settings, make_sandbox):
        sandbox = make_sandbox(fail_write_on='src/components/Hero.jsx')
        engine = CodeApplicationEngine(lambda ref: sandbox, settings)
        stages = observed_stages(engine)
        completed = []

        events = await run(engine, code=THREE_FILES, on_complete=completed.append)

        assert events[-1].type == 'error'
        assert 'src/components/Hero.jsx' in events[-1].error
        assert 'complete' not in stages
        assert stages[-1] is None
        assert engine.state.stage is None
        assert list(sandbox.writes) == ['src/App.jsx']
        assert 'src/index.css' not in sandbox.write_attempts
        assert completed == []

    async def test_failed_restart_is_a_warning(self, settings, make_sandbox):
        sandbox = make_sandbox(fail_restart=True)
        engine = CodeApplicationEngine(lambda ref: sandbox, settings)
        events = await run(engine, code=THREE_FILES, packages=['lodash'])
        assert any('restart' in (e.message or '').lower() for e in events if e.type == 'warning')
        assert events[-1].type == 'complete'

    async def test_unreachable_sandbox_is_fatal(self, settings):
        class Unreachable:
            def install_packages(self, names):
                raise SandboxUnavailable('sandbox sb-123 is stopped')

            async def write_file(self, path, content):
                raise SandboxUnavailable('sandbox sb-123 is stopped')

            async def restart(self):
                pass

        engine = CodeApplicationEngine(lambda ref: Unreachable(), settings)
        events = await run(engine, code=THREE_FILES)
        assert events[-1].type == 'error'
        assert 'stopped' in events[-1].error
        assert engine.state.stage is None


class TestFileSelection:

    async def test_incomplete_files_are_not_written(self, engine, sandbox):
        events = await run(engine, code='<file path="a.js">1</file><file path="b.js">2')
        assert list(sandbox.writes) == ['a.js']
        assert any('b.js' in e.message for e in events if e.type == 'warning')

    async def test_pre_parsed_files_are_used(self, engine, sandbox):
        files = [GeneratedFile(path='src/only.js', content='x', type='javascript', completed=True)]
        await run(engine, code=THREE_FILES, files=files)
        assert list(sandbox.writes) == ['src/only.js']

    async def test_escaping_paths_never_reach_the_sandbox(self, engine, sandbox):
        files = [
            GeneratedFile(path='../../etc/passwd', content='x', completed=True),
            GeneratedFile(path='ok.js', content='y', completed=True),
        ]
        await run(engine, code='', files=files)
        assert list(sandbox.writes) == ['ok.js']
        assert sandbox.write_attempts == ['ok.js']

    async def test_file_progress_counts(self, engine):
        events = await run(engine, code=THREE_FILES)
        progress = [(e.current, e.total, e.file_name) for e in events if e.type == 'file-progress']
        assert progress == [
            (1, 3, 'src/App.jsx'),
            (2, 3, 'src/components/Hero.jsx'),
            (3, 3, 'src/index.css'),
        ]
        assert engine.state.files_generated == ['src/App.jsx', 'src/components/Hero.jsx', 'src/index.css']


class TestCompletion:

    async def test_complete_event_payload(self, engine):
        completed = []
        events = await run(engine, code=THREE_FILES, is_edit=True, on_complete=completed.append)
        done = events[-1]
        assert done.generated_code == THREE_FILES
        assert done.is_edit is True
        assert done.files == ['src/App.jsx', 'src/components/Hero.jsx', 'src/index.css']
        assert completed == [done]
        payload = done.payload()
        assert 'type' not in payload
        assert payload['refreshDelay'] == engine.settings.default_refresh_delay_ms
        assert payload['packagesInstalled'] == []

    async def test_abort_stops_quietly(self, engine, sandbox):
        abort = asyncio.Event()
        events = []
        async for event in engine.apply(ApplyRequest(code=THREE_FILES, sandbox=SANDBOX, abort=abort)):
            events.append(event)
            if event.type == 'file-progress':
                abort.set()
        assert events[-1].type == 'step'
        assert list(sandbox.writes) == ['src/App.jsx']
        assert engine.state.stage is None

    async def test_refresh_is_scheduled(self, engine):
        fired = []
        scheduler = RefreshScheduler(lambda: fired.append(True))
        engine.settings.default_refresh_delay_ms = 10
        await run(engine, code=THREE_FILES, refresh=scheduler)
        assert scheduler.pending
        await asyncio.sleep(0.05)
        assert fired == [True]


class TestRefreshScheduler:

    async def test_new_schedule_replaces_pending(self):
        fired = []
        scheduler = RefreshScheduler(lambda: fired.append(True))
        scheduler.schedule(30)
        scheduler.schedule(30)
        await asyncio.sleep(0.08)
        assert fired == [True]
        assert not scheduler.pending

    async def test_cancel(self):
        fired = []
        scheduler = RefreshScheduler(lambda: fired.append(True))
        scheduler.schedule(10)
        scheduler.cancel()
        await asyncio.sleep(0.03)
        assert fired == []


class SlowSandbox:
    """Provider whose installs or writes never finish in time"""

    def __init__(self, slow_install=False, slow_write=False):
        self.slow_install = slow_install
        self.slow_write = slow_write
        self.writes = []

    async def install_packages(self, names):
        for name in names:
            if self.slow_install and name != names[0]:
                await asyncio.sleep(1)
            yield PackageInstallResult(package=name, status='installed')

    async def write_file(self, path, content):
        if self.slow_write:
            await asyncio.sleep(1)
        self.writes.append(path)

    async def restart(self):
        pass


class BrokenInstallSandbox(SlowSandbox):
    """Install stream that dies after the first package"""

    async def install_packages(self, names):
        yield PackageInstallResult(package=names[0], status='installed')
        raise RuntimeError('exec connection dropped')


class TestTimeoutsAndProviderErrors:

    async def test_install_timeout_marks_remaining_packages_failed(self, settings):
        settings.install_timeout_s = 0.05
        sandbox = SlowSandbox(slow_install=True)
        engine = CodeApplicationEngine(lambda ref: sandbox, settings)

        events = await run(engine, code=THREE_FILES, packages=['lodash', 'clsx', 'zod'])

        progress = [(e.package, e.status) for e in events if e.type == 'package-progress']
        assert progress == [('lodash', 'installed'), ('clsx', 'failed'), ('zod', 'failed')]
        assert engine.state.failed_packages == ['clsx', 'zod']
        assert any(e.type == 'warning' and 'clsx' in e.message for e in events)
        assert events[-1].type == 'complete'
        assert len(sandbox.writes) == 3

    async def test_write_timeout_is_fatal(self, settings):
        settings.write_timeout_s = 0.05
        sandbox = SlowSandbox(slow_write=True)
        engine = CodeApplicationEngine(lambda ref: sandbox, settings)
        stages = observed_stages(engine)

        events = await run(engine, code=THREE_FILES)

        assert events[-1].type == 'error'
        assert 'src/App.jsx' in events[-1].error
        assert 'timed out' in events[-1].error
        assert 'complete' not in stages
        assert engine.state.stage is None
        assert sandbox.writes == []

    async def test_install_stream_error_is_a_warning(self, settings):
        sandbox = BrokenInstallSandbox()
        engine = CodeApplicationEngine(lambda ref: sandbox, settings)
        stages = observed_stages(engine)

        events = await run(engine, code=THREE_FILES, packages=['lodash', 'clsx'])

        progress = [(e.package, e.status) for e in events if e.type == 'package-progress']
        assert progress == [('lodash', 'installed'), ('clsx', 'failed')]
        assert 'applying' in stages
        assert events[-1].type == 'complete'
        assert events[-1].packages_installed == ['lodash']
        assert sandbox.writes == ['src/App.jsx', 'src/components/Hero.jsx', 'src/index.css']
