"""
Transcode error taxonomy and stage results.

Pipeline stages return a Result instead of raising, so the orchestrator can
decide per error class whether to record, discard or ignore a failure.
"""
from dataclasses import dataclass
from typing import Any, Optional

# Error text stored on a job is capped so encoder logs can't bloat the table
MAX_ERROR_LENGTH = 64 * 1024


class TranscodeError(Exception):
    """Base class for every failure the engine knows how to record"""

    code = 'transcode-error'
    # Whether the failure is written into the job's durable error state
    recordable = True

    def __init__(self, message):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return self.message

    def error_text(self):
        text = self.message
        if len(text) > MAX_ERROR_LENGTH:
            text = text[:MAX_ERROR_LENGTH]
        return text


class ConfigurationError(TranscodeError):
    """Unknown variant key, codec or container combination"""

    code = 'configuration'


class SourceUnavailable(TranscodeError):
    """The source asset or its local file can't be found"""

    code = 'source-unavailable'


class SizeLimitExceeded(TranscodeError):
    """Estimated output size is over a configured limit"""

    code = 'size-limit'

    def __init__(self, estimated_kib, limit_kib, hard):
        kind = 'hard' if hard else 'soft'
        super().__init__(
            f'estimated file size {estimated_kib} KiB over {kind} limit {limit_kib} KiB'
        )
        self.estimated_kib = estimated_kib
        self.limit_kib = limit_kib
        self.hard = hard


class SandboxExecutionFailure(TranscodeError):
    """The sandboxed encoder exited non-zero or left no usable output"""

    code = 'sandbox-failure'

    def __init__(self, message, exit_code=None, output='', timed_out=False):
        if exit_code is not None:
            message = f'{message}\n\nExitcode: {exit_code}'
        if timed_out:
            message = f'{message}\nTimed out'
        if output:
            message = f'{message}\n\n{output}'
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output
        self.timed_out = timed_out


class AlreadyStarted(TranscodeError):
    """Another attempt has claimed the job; this one is a no-op"""

    code = 'already-started'
    recordable = False

    def __init__(self, message='transcode job has already started'):
        super().__init__(message)


class RaceDetected(TranscodeError):
    """The fencing token changed while this attempt was running"""

    code = 'race-detected'
    recordable = False

    def __init__(self, message='transcode restarted, removed, or completed while in progress'):
        super().__init__(message)


class PublicationFailure(TranscodeError):
    """Importing a derivative into durable storage failed"""

    code = 'publication-failure'


@dataclass(frozen=True)
class Result:
    """Value-or-error returned by each pipeline stage"""

    value: Any = None
    error: Optional[TranscodeError] = None

    @classmethod
    def ok(cls, value=None):
        return cls(value=value)

    @classmethod
    def fail(cls, error):
        return cls(error=error)

    @property
    def is_ok(self):
        return self.error is None
