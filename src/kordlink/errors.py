"""Exception taxonomy for the connection supervisor.

Only :class:`CredentialResolutionError` is allowed to abort startup; every
other error is caught at its own boundary and turned into a logged message
plus a fallback (empty store, failure-counter increment, skip-and-continue).
"""

from __future__ import annotations

from typing import Literal, TypeAlias

from kordlink.types import DisconnectReason

ReportFailureKind: TypeAlias = Literal["status", "unreachable", "request"]


class KordlinkError(Exception):
    """Base class for kordlink errors."""


class CredentialResolutionError(KordlinkError):
    """Session credentials could not be resolved from the configured source."""


class StoreLoadError(KordlinkError):
    """The store snapshot file exists but could not be parsed."""


class HeartbeatReportError(KordlinkError):
    """A heartbeat report did not reach (or was rejected by) the monitor.

    ``kind`` separates the three failure classes for logging only:
    the monitor answered with an error status, the monitor could not be
    reached, or the request could not be built locally.
    """

    def __init__(
        self,
        kind: ReportFailureKind,
        message: str = "",
        *,
        status: int | None = None,
    ) -> None:
        super().__init__(message or kind)
        self.kind = kind
        self.status = status
        self.message = message


class ConnectionClosedError(KordlinkError):
    """Describes why the transport closed; drives reconnect-vs-terminate."""

    def __init__(self, status_code: int | None, reason: str = "") -> None:
        super().__init__(reason or f"connection closed (status={status_code})")
        self.status_code = status_code
        self.reason = reason

    @property
    def is_logged_out(self) -> bool:
        return self.status_code == DisconnectReason.LOGGED_OUT


class ShutdownStepError(KordlinkError):
    """A graceful-shutdown step failed; logged, never aborts the sequence."""

    def __init__(self, step: str, cause: BaseException | None = None) -> None:
        super().__init__(f"shutdown step {step!r} failed: {cause!r}")
        self.step = step
        self.cause = cause
