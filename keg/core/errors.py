"""
Error hierarchy for install runs.

Every fatal error carries the manifest name and, when a specific
install step failed, its index, so the CLI can print something
actionable. ``SmokeTestFailure`` is the one non-fatal kind: it is
reported on the install report but never raised out of an install.
"""

from __future__ import annotations


class KegError(Exception):
    """Base class for all keg errors."""

    exit_code = 1

    def __init__(
        self,
        message: str,
        *,
        manifest_name: str | None = None,
        step_index: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.manifest_name = manifest_name
        self.step_index = step_index

    def __str__(self) -> str:
        prefix = ""
        if self.manifest_name:
            prefix = f"{self.manifest_name}: "
        if self.step_index is not None:
            prefix += f"step {self.step_index}: "
        return f"{prefix}{self.message}"

    def with_context(
        self,
        *,
        manifest_name: str | None = None,
        step_index: int | None = None,
    ) -> KegError:
        """Fill in context fields that are still unset. Returns self."""
        if self.manifest_name is None:
            self.manifest_name = manifest_name
        if self.step_index is None:
            self.step_index = step_index
        return self


class ParseError(KegError):
    """Manifest is missing required fields or is malformed."""

    exit_code = 2

    def __init__(self, message: str, *, line: int | None = None, **kwargs):
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message, **kwargs)
        self.line = line


class NetworkError(KegError):
    """Artifact could not be retrieved."""

    exit_code = 3

    def __init__(
        self,
        message: str,
        *,
        transient: bool = False,
        status: int | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.transient = transient
        self.status = status


class DigestMismatchError(KegError):
    """Retrieved bytes do not match the declared digest."""

    exit_code = 4

    def __init__(self, url: str, algorithm: str, expected: str, actual: str, **kwargs):
        super().__init__(
            f"{algorithm} mismatch for {url}: expected {expected}, got {actual}",
            **kwargs,
        )
        self.url = url
        self.algorithm = algorithm
        self.expected = expected
        self.actual = actual


class ExtractionError(KegError):
    """Archive is corrupt or contains unsafe entries."""

    exit_code = 5


class InstallError(KegError):
    """A filesystem operation failed while placing files."""

    exit_code = 6


class LockError(KegError):
    """Another run holds the destination lock."""

    exit_code = 7


class SmokeTestFailure(KegError):
    """Post-install smoke command exited non-zero."""

    exit_code = 8

    def __init__(self, message: str, *, returncode: int, **kwargs):
        super().__init__(message, **kwargs)
        self.returncode = returncode


class NotInstalledError(KegError):
    """No receipt exists for the requested package."""

    exit_code = 9
