"""Error taxonomy for the sandbox core."""


class SandboxError(Exception):
    """Base class for all sandbox errors."""


class VcsError(SandboxError):
    """Clone or worktree operation failed."""


class GitError(VcsError):
    """A git subprocess exited with a non-zero status."""

    def __init__(self, message: str, command: list[str] | None = None, stderr: str = ""):
        super().__init__(message)
        self.command = command or []
        self.stderr = stderr


class EngineError(SandboxError):
    """Container, network or image operation failed."""


class ContainerNotFoundError(EngineError):
    """The container engine has no such container."""


class BuildError(SandboxError):
    """Image build failed. Carries the last error line from the build log."""

    def __init__(self, message: str, log_line: str = ""):
        super().__init__(message)
        self.log_line = log_line


class NotFoundError(SandboxError):
    """A session, project or port lookup found nothing."""


class ValidationError(SandboxError):
    """Malformed input, rejected before any side effect."""
