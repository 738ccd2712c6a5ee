"""Error types raised while resolving composition metadata."""

from __future__ import annotations


class ResolverError(Exception):
    """Base class for every failure surfaced by a resolution."""


class ProvisionError(ResolverError):
    """The browser sandbox or the content server could not be started."""


class ServerStartError(ProvisionError):
    """The content server failed to bind or the bundle could not be served."""


class InvalidTimeoutError(ResolverError, ValueError):
    def __init__(self, timeout_in_milliseconds: object):
        self.timeout_in_milliseconds = timeout_in_milliseconds
        super().__init__(
            f"timeoutInMilliseconds must be a positive finite number, got {timeout_in_milliseconds!r}"
        )


class InjectionError(ResolverError):
    """Props/env could not be pushed into the page after all attempts."""

    def __init__(self, message: str, attempts: int):
        self.attempts = attempts
        super().__init__(message)


class SandboxError(ResolverError):
    """An error that originated inside the page.

    Keeps the message, error name and stack reported by the browser so the
    failure stays debuggable on this side of the process boundary.
    """

    def __init__(self, message: str, *, name: str | None = None, stack: str | None = None):
        self.message = message
        self.name = name
        self.stack = stack
        super().__init__(message)

    def __str__(self) -> str:
        if self.stack and self.message not in self.stack:
            return f"{self.message}\n{self.stack}"
        return self.stack or self.message


class NotReadyError(SandboxError):
    """The bundle reported a load failure instead of becoming ready."""


class RemoteInvocationError(SandboxError):
    """The remote entry point raised or returned malformed data."""

    def __init__(self, message: str, *, entry_point: str, name: str | None = None, stack: str | None = None):
        self.entry_point = entry_point
        super().__init__(message, name=name, stack=stack)


class OutOfBandError(SandboxError):
    """An uncaught exception the page reported outside the call/response path."""
