"""
Error taxonomy for the generate/apply pipeline.

Every error is recovered at the boundary of the loop that raised it (stream
loop, parse loop, apply loop, HTTP route) and turned into a state update plus
a user-visible message.
"""


class SitegenError(Exception):
    """Base class for all pipeline errors."""


class StreamError(SitegenError):
    """Upstream AI stream failed, timed out, or sent an error frame."""


class ParseTolerance(SitegenError):
    """Malformed or unresolvable file tag. Logged and skipped, never fatal."""


class PathRejected(SitegenError):
    """A generated file path tried to escape the project root."""

    def __init__(self, path: str, reason: str = "path escapes project root"):
        self.path = path
        self.reason = reason
        super().__init__(f"Rejected path {path!r}: {reason}")


class InstallFailure(SitegenError):
    """One or more packages failed to install. Apply continues."""

    def __init__(self, packages: list[str], message: str = ""):
        self.packages = list(packages)
        super().__init__(message or f"Failed to install: {', '.join(packages)}")


class WriteFailure(SitegenError):
    """A sandbox file write failed. Fatal to the current apply run."""

    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"Failed to write {path}: {message}")


class SandboxUnavailable(SitegenError):
    """The sandbox could not be reached at all."""


class NoPriorGeneration(SitegenError):
    """Reapply requested but nothing has been generated yet."""

    def __init__(self, message: str = "No previous generation to re-apply"):
        super().__init__(message)


class NoActiveSandbox(SitegenError):
    """Reapply requested but the session has no sandbox attached."""

    def __init__(self, message: str = "Please create a sandbox first"):
        super().__init__(message)


class GenerationClosedError(SitegenError):
    """An event arrived for a generation that already completed, failed or was cancelled."""
