"""Typed failures raised by the assembly engine."""


class AssemblyError(Exception):
    """Base class for every engine failure."""

    retryable = False


class ConfigError(AssemblyError, ValueError):
    """Engine configuration or section list is invalid."""


# --- Process executor ---

class ProcessError(AssemblyError):
    """An external toolchain invocation did not complete successfully."""

    def __init__(self, message: str, args: list[str] | None = None):
        super().__init__(message)
        self.command = list(args or [])


class ProcessTimeout(ProcessError):
    """The child exceeded its timeout and was killed."""

    retryable = True

    def __init__(self, args: list[str], timeout: float):
        super().__init__(f"{_program(args)} timed out after {timeout:g}s", args)
        self.timeout = timeout


class ProcessExecutionFailure(ProcessError):
    """The child exited with a non-zero status."""

    def __init__(self, args: list[str], returncode: int, stderr: str = ""):
        tail = _tail(stderr)
        message = f"{_program(args)} exited with status {returncode}"
        if tail:
            message = f"{message}: {tail}"
        super().__init__(message, args)
        self.returncode = returncode
        self.stderr = stderr


class ProcessCancelled(ProcessError):
    """The run was cancelled while (or before) the child was running."""

    def __init__(self, args: list[str] | None = None):
        super().__init__("toolchain invocation cancelled", args)


# --- Prober ---

class ProbeFailure(AssemblyError):
    """The prober could not obtain or parse structural media info."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"cannot probe {path}: {reason}")
        self.path = path


class NoAudioStream(ProbeFailure):
    """The file has no audio stream."""

    def __init__(self, path: str):
        super().__init__(path, "no audio stream found")


class LoudnessParseFailure(ProbeFailure):
    """The loudness statistics block was missing or malformed."""

    def __init__(self, path: str, reason: str):
        super().__init__(path, f"loudness statistics unusable ({reason})")


# --- Normalizer / mixer / assembler ---

class NormalizationError(AssemblyError):
    """Normalization of one element failed and no fallback was allowed."""

    def __init__(self, element_id: str, cause: Exception):
        super().__init__(f"normalization failed for {element_id}: {cause}")
        self.element_id = element_id
        self.retryable = getattr(cause, "retryable", False)


class ConcatenationError(AssemblyError):
    """Segments could not be joined."""


class MixError(AssemblyError):
    """Tracks could not be mixed, crossfaded, fitted or encoded."""


class AssemblyFailed(AssemblyError):
    """Terminal failure of one assembly run, tagged with the failing stage."""

    def __init__(self, stage, cause: Exception):
        name = getattr(stage, "value", stage)
        super().__init__(f"assembly failed during {name}: {cause}")
        self.stage = stage
        self.cause = cause
        self.retryable = getattr(cause, "retryable", False)


def _program(args: list[str]) -> str:
    return args[0] if args else "process"


def _tail(text: str, lines: int = 5) -> str:
    """Last few non-empty lines of toolchain output."""
    kept = [line for line in (text or "").splitlines() if line.strip()]
    return " | ".join(kept[-lines:])
