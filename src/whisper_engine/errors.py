"""Error taxonomy for the Whisper engine.

Every error raised across the public surface derives from
:class:`WhisperEngineError` and carries a coarse :class:`ErrorKind` plus an
optional cause string. Configuration and load errors leave the engine
unloaded; runtime and resource errors affect a single request only.
"""

from enum import Enum


class ErrorKind(Enum):
    CONFIGURATION = "configuration"
    LOAD = "load"
    RUNTIME = "runtime"
    RESOURCE = "resource"


class WhisperEngineError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind = ErrorKind.RUNTIME

    def __init__(self, message: str, cause: str | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} ({self.cause})"
        return self.message


# Configuration


class ConfigurationError(WhisperEngineError):
    kind = ErrorKind.CONFIGURATION


class VocabularyError(ConfigurationError):
    """Vocabulary assets are missing or malformed."""


class TokenizerNotLoadedError(ConfigurationError):
    def __init__(self, message: str = "tokenizer vocabulary not loaded", cause: str | None = None):
        super().__init__(message, cause)


# Load


class LoadError(WhisperEngineError):
    kind = ErrorKind.LOAD


class CheckpointError(LoadError):
    """A checkpoint file is missing, unreadable, or in an unknown format."""


class WeightBindingError(LoadError):
    """Checkpoint tensors do not match the parameter tree one-to-one."""

    def __init__(
        self,
        message: str,
        missing: list[str] | None = None,
        unused: list[str] | None = None,
        mismatched: list[str] | None = None,
    ):
        self.missing = sorted(missing or [])
        self.unused = sorted(unused or [])
        self.mismatched = sorted(mismatched or [])
        parts = []
        for label, names in (
            ("missing", self.missing),
            ("unused", self.unused),
            ("shape mismatch", self.mismatched),
        ):
            if names:
                shown = ", ".join(names[:5])
                more = f" (+{len(names) - 5} more)" if len(names) > 5 else ""
                parts.append(f"{label}: {shown}{more}")
        super().__init__(message, "; ".join(parts) or None)


# Runtime


class TranscriptionError(WhisperEngineError):
    kind = ErrorKind.RUNTIME


class AudioDecodeError(TranscriptionError):
    """Audio input could not be decoded into samples."""


class UnsupportedChannelLayoutError(AudioDecodeError):
    pass


class ModelNotLoadedError(TranscriptionError):
    def __init__(self, message: str = "model not loaded", cause: str | None = None):
        super().__init__(message, cause)


class TranscriptionCancelledError(TranscriptionError):
    def __init__(self, message: str = "transcription cancelled", cause: str | None = None):
        super().__init__(message, cause)


# Resource


class ResourceError(WhisperEngineError):
    """Tensor allocation failed."""

    kind = ErrorKind.RESOURCE
