"""
Sandbox provider contract and its Daytona implementation.

The apply engine only needs three calls: install packages (streamed per
package), write a file, restart the dev server. The Daytona SDK is
synchronous, so every call runs in a worker thread.
"""

import asyncio
import logging
import shlex
import time
from typing import AsyncIterator, Literal, Optional, Protocol

from daytona import Daytona, DaytonaConfig

from sitegen.config import Settings, get_settings
from sitegen.errors import SandboxUnavailable, WriteFailure
from sitegen.models import CamelModel, SandboxRef
from sitegen.path_utils import join_project_path

logger = logging.getLogger(__name__)


class PackageInstallResult(CamelModel):
    package: str
    status: Literal["installed", "failed"]
    message: str = ""


class SandboxProvider(Protocol):
    def install_packages(self, names: list[str]) -> AsyncIterator[PackageInstallResult]: ...
    async def write_file(self, path: str, content: str) -> None: ...
    async def restart(self) -> None: ...


def _get_api_key():
    settings = get_settings()
    api_key = settings.daytona_api_key
    if not api_key:
        raise RuntimeError("DAYTONA_API_KEY not set")
    return api_key


def get_daytona_client() -> Daytona:
    """Get a configured Daytona client."""
    return Daytona(DaytonaConfig(api_key=_get_api_key()))


_TRANSIENT_KEYWORDS = (
    "timeout", "connection", "unavailable", "not running", "not ready",
    "refused", "reset", "broken pipe", "eof", "busy", "temporary",
)


def _is_transient(err: Exception) -> bool:
    msg = str(err).lower()
    return any(kw in msg for kw in _TRANSIENT_KEYWORDS)


class DaytonaSandbox:
    """SandboxProvider backed by a running Daytona sandbox."""

    def __init__(self, ref: SandboxRef, settings: Optional[Settings] = None, connect_retries: int = 3):
        self.ref = ref
        self.settings = settings or get_settings()
        self.project_root = ref.project_root or self.settings.project_root
        self.connect_retries = connect_retries
        self._sandbox = None

    def _connect(self):
        """Fetch the sandbox handle, retrying transient connection errors."""
        if self._sandbox is not None:
            return self._sandbox
        last_err: Optional[Exception] = None
        for attempt in range(self.connect_retries):
            try:
                self._sandbox = get_daytona_client().get(self.ref.sandbox_id)
                return self._sandbox
            except Exception as e:
                last_err = e
                if attempt < self.connect_retries - 1 and _is_transient(e):
                    wait = 2 * (attempt + 1)
                    logger.info("[sandbox] Connect failed (%s), retrying in %ss", e, wait)
                    time.sleep(wait)
                else:
                    break
        raise SandboxUnavailable(f"Sandbox {self.ref.sandbox_id} unreachable: {last_err}")

    def _install_command(self, name: str) -> str:
        flags = " --legacy-peer-deps" if self.settings.use_legacy_peer_deps else ""
        return f"cd {shlex.quote(self.project_root)} && npm install {shlex.quote(name)}{flags} 2>&1"

    async def install_packages(self, names: list[str]) -> AsyncIterator[PackageInstallResult]:
        for name in names:
            def _install(pkg=name):
                sb = self._connect()
                result = sb.process.exec(
                    self._install_command(pkg),
                    timeout=int(self.settings.install_timeout_s),
                )
                return result.exit_code, (result.result or "")

            try:
                exit_code, output = await asyncio.to_thread(_install)
            except SandboxUnavailable:
                raise
            except Exception as e:
                # One bad exec only fails this package
                logger.warning("[sandbox] npm install %s raised: %s", name, e)
                yield PackageInstallResult(package=name, status="failed", message=str(e)[:300])
                continue
            if exit_code == 0:
                logger.info("[sandbox] Installed %s", name)
                yield PackageInstallResult(package=name, status="installed")
            else:
                tail = output.strip().splitlines()[-1:] or [""]
                logger.warning("[sandbox] npm install %s exited %s: %s", name, exit_code, tail[0])
                yield PackageInstallResult(package=name, status="failed", message=tail[0][:300])

    async def write_file(self, path: str, content: str) -> None:
        full_path = join_project_path(self.project_root, path)
        dir_path = full_path.rsplit("/", 1)[0]

        def _upload():
            sb = self._connect()
            sb.process.exec(f"mkdir -p {shlex.quote(dir_path)}", timeout=5)
            sb.fs.upload_file(content.encode("utf-8"), full_path)

        try:
            await asyncio.to_thread(_upload)
        except SandboxUnavailable:
            raise
        except Exception as e:
            raise WriteFailure(path, str(e)) from e

    async def restart(self) -> None:
        """Kill the running dev server and start it again."""
        root = shlex.quote(self.project_root)
        log_file = f"{self.project_root}/server.log"

        def _restart():
            sb = self._connect()
            sb.process.exec("pkill -f vite || true", timeout=5)
            time.sleep(1)
            sb.process.exec(f"> {shlex.quote(log_file)}", timeout=5)
            start_cmd = (
                f"cd {root} && nohup npm run dev -- --host 0.0.0.0 "
                f"--port {self.settings.dev_server_port} > {shlex.quote(log_file)} 2>&1 &"
            )
            sb.process.exec(start_cmd, timeout=10)

        await asyncio.to_thread(_restart)
        logger.info("[sandbox] Dev server restarted in %s", self.ref.sandbox_id[:12])


def get_sandbox_provider(ref: SandboxRef) -> SandboxProvider:
    return DaytonaSandbox(ref)
