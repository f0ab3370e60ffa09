"""
Code application engine.

Takes the final generated text of one generation and pushes it into a
sandbox in four forward-only stages:

    analyzing -> installing (skipped when nothing to install) -> applying -> complete

Every stage change is published as a CodeApplicationState snapshot and
streamed as ApplyEvent frames. Install failures are warnings; a write
failure or an unreachable sandbox ends the run. Either way the stage is back
to None (idle) when `apply()` returns. Files written before a failure are
kept, and nothing is ever deleted from the sandbox: with `is_edit` only the
files present in the generated text are overwritten.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Optional

from sitegen.config import Settings, get_settings
from sitegen.errors import InstallFailure, PathRejected, SandboxUnavailable, SitegenError, WriteFailure
from sitegen.file_parser import parse_generated_files
from sitegen.models import ApplyEvent, ApplyStage, CodeApplicationState, GeneratedFile, SandboxRef
from sitegen.observers import SnapshotPublisher
from sitegen.package_detector import detect_packages
from sitegen.path_utils import validate_path
from sitegen.sandbox import PackageInstallResult, SandboxProvider, get_sandbox_provider

logger = logging.getLogger(__name__)


class RefreshScheduler:
    """Debounced preview refresh. A new schedule replaces the pending one."""

    def __init__(self, callback: Callable[[], None]):
        self.callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self, delay_ms: int):
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(delay_ms / 1000, self._fire)

    def cancel(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self):
        self._handle = None
        try:
            self.callback()
        except Exception as e:
            logger.warning("[apply] Refresh callback failed: %s", e)


@dataclass
class ApplyRequest:
    """Everything one apply run needs. Nothing is read from shared state."""

    code: str
    sandbox: SandboxRef
    is_edit: bool = False
    packages: list[str] = field(default_factory=list)
    # Already-parsed files; when None the code is parsed again
    files: Optional[list[GeneratedFile]] = None
    # Packages known to be present in the sandbox already
    installed_packages: list[str] = field(default_factory=list)
    abort: Optional[asyncio.Event] = None
    refresh: Optional[RefreshScheduler] = None
    # Called with the `complete` event before it is yielded
    on_complete: Optional[Callable[[ApplyEvent], None]] = None

    @property
    def aborted(self) -> bool:
        return self.abort is not None and self.abort.is_set()


def _dedupe(names: list[str]) -> list[str]:
    out = []
    for n in names:
        n = n.strip()
        if n and n not in out:
            out.append(n)
    return out


class CodeApplicationEngine:
    def __init__(
        self,
        provider_factory: Callable[[SandboxRef], SandboxProvider] = get_sandbox_provider,
        settings: Optional[Settings] = None,
    ):
        self.provider_factory = provider_factory
        self.settings = settings or get_settings()
        self.state = CodeApplicationState()
        self._publisher: SnapshotPublisher[CodeApplicationState] = SnapshotPublisher()

    def subscribe(self, callback: Callable[[CodeApplicationState], None]) -> Callable[[], None]:
        return self._publisher.subscribe(callback)

    def snapshot(self) -> CodeApplicationState:
        return self.state.model_copy(deep=True)

    def _changed(self):
        self._publisher.publish(self.state)

    def _set_stage(self, stage: Optional[ApplyStage]):
        if self.state.stage == stage:
            return
        self.state.stage = stage
        self._changed()

    def _warn(self, message: str) -> ApplyEvent:
        logger.warning("[apply] %s", message)
        self.state.warnings.append(message)
        self._changed()
        return ApplyEvent(type="warning", message=message)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _analyze(self, request: ApplyRequest) -> tuple[list[GeneratedFile], list[str], list[str]]:
        """Return (files to write, packages to install, warnings)."""
        warnings: list[str] = []
        if request.files is None:
            parser = parse_generated_files(request.code)
            files = parser.files
            warnings.extend(parser.warnings)
        else:
            files = request.files

        ready = []
        for f in files:
            if f.completed:
                ready.append(f)
            else:
                warnings.append(f"Skipping incomplete file {f.path}")

        detected = detect_packages(ready, request.code)
        wanted = _dedupe(list(request.packages) + detected)
        present = set(self.settings.preinstalled_packages) | set(request.installed_packages)
        to_install = [p for p in wanted if p not in present]
        if detected:
            logger.info("[apply] Detected packages from imports: %s", detected)
        return ready, to_install, warnings

    async def _install(self, provider: SandboxProvider, names: list[str]) -> AsyncIterator[PackageInstallResult]:
        """Per-package results, each read bounded by the install timeout."""
        timeout = self.settings.install_timeout_s
        it = provider.install_packages(names).__aiter__()
        reported: set[str] = set()
        try:
            while True:
                failure = None
                try:
                    result = await asyncio.wait_for(it.__anext__(), timeout=timeout)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    logger.warning("[apply] Package install timed out after %ss", timeout)
                    failure = "install timed out"
                except SitegenError:
                    raise
                except Exception as e:
                    logger.warning("[apply] Package install stream failed: %s", e)
                    failure = str(e) or type(e).__name__
                if failure is not None:
                    for name in names:
                        if name not in reported:
                            yield PackageInstallResult(package=name, status="failed", message=failure)
                    break
                reported.add(result.package)
                yield result
        finally:
            aclose = getattr(it, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _write(self, provider: SandboxProvider, path: str, content: str):
        try:
            await asyncio.wait_for(
                provider.write_file(path, content), timeout=self.settings.write_timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise WriteFailure(path, f"timed out after {self.settings.write_timeout_s}s") from e
        except SitegenError:
            raise
        except Exception as e:
            raise WriteFailure(path, str(e)) from e

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def apply(self, request: ApplyRequest) -> AsyncIterator[ApplyEvent]:
        """
        Run one apply and stream its events.

        Never raises for pipeline failures: they end the stream with an
        `error` event. On abort the stream simply stops.
        """
        self.state = CodeApplicationState()
        self._changed()
        settings = self.settings

        try:
            provider = self.provider_factory(request.sandbox)
            yield ApplyEvent(type="start", message="Starting code application...")

            # -- analyzing --
            self._set_stage("analyzing")
            yield ApplyEvent(type="step", stage="analyzing", message="Analyzing generated code...")
            files, to_install, warnings = self._analyze(request)
            for message in warnings:
                yield self._warn(message)
            self.state.packages = to_install
            self._changed()
            if request.aborted:
                return

            # -- installing --
            installed: list[str] = []
            if to_install:
                self._set_stage("installing")
                yield ApplyEvent(
                    type="step", stage="installing", packages=list(to_install),
                    message=f"Installing {len(to_install)} package(s)...",
                )
                failed: list[str] = []
                async for result in self._install(provider, to_install):
                    if result.status == "installed":
                        if result.package not in installed:
                            installed.append(result.package)
                        self.state.installed_packages = list(installed)
                    else:
                        failed.append(result.package)
                        self.state.failed_packages = list(failed)
                    self._changed()
                    yield ApplyEvent(
                        type="package-progress", package=result.package, status=result.status,
                        installed_packages=list(installed), message=result.message or None,
                    )
                    if request.aborted:
                        return

                if failed:
                    yield self._warn(str(InstallFailure(failed)))

                if installed and settings.restart_after_install:
                    yield ApplyEvent(type="step", stage="installing", message="Restarting dev server...")
                    try:
                        await asyncio.wait_for(provider.restart(), timeout=settings.install_timeout_s)
                    except SandboxUnavailable:
                        raise
                    except Exception as e:
                        yield self._warn(f"Dev server restart failed: {e}")
                if request.aborted:
                    return

            # -- applying --
            self._set_stage("applying")
            yield ApplyEvent(
                type="step", stage="applying", files_created=0,
                message=f"Writing {len(files)} file(s)...",
            )
            total = len(files)
            for i, f in enumerate(files, 1):
                if request.aborted:
                    return
                try:
                    path = validate_path(f.path)
                except PathRejected as e:
                    yield self._warn(str(e))
                    continue
                yield ApplyEvent(type="file-progress", current=i, total=total, file_name=path)
                await self._write(provider, path, f.content)
                self.state.files_generated.append(path)
                self._changed()
                yield ApplyEvent(
                    type="step", stage="applying", files_created=len(self.state.files_generated),
                    message=f"Wrote {path}",
                )

            # -- complete --
            self._set_stage("complete")
            refresh_delay = (
                settings.package_install_refresh_delay_ms if installed
                else settings.default_refresh_delay_ms
            )
            done = ApplyEvent(
                type="complete",
                message=f"Applied {len(self.state.files_generated)} file(s)",
                generated_code=request.code,
                files=list(self.state.files_generated),
                packages_installed=list(installed),
                refresh_delay=refresh_delay,
                is_edit=request.is_edit,
            )
            if request.on_complete is not None:
                request.on_complete(done)
            if request.refresh is not None:
                request.refresh.schedule(refresh_delay)
            logger.info(
                "[apply] Complete in %s: %d file(s), %d package(s)",
                request.sandbox.sandbox_id[:12], len(done.files), len(installed),
            )
            yield done

        except SitegenError as e:
            logger.warning("[apply] Apply failed: %s", e)
            yield ApplyEvent(type="error", error=str(e))
        except Exception as e:
            logger.exception("[apply] Unexpected failure")
            yield ApplyEvent(type="error", error=str(e))
        finally:
            self._set_stage(None)
