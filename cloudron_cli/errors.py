"""Error hierarchy shared by every command.

Transport failures, unexpected HTTP statuses and asynchronous domain failures
(installation, build) are distinct types so callers never have to inspect
whether an error carries a status code or only a message.
"""

from __future__ import annotations


class CloudronError(Exception):
    """Base class for every error the CLI reports to the user."""


class TransportError(CloudronError):
    """DNS, connect, TLS or socket failure. Never retried automatically."""

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class StatusError(CloudronError):
    """The server answered with a status the caller does not accept."""

    status_code: int
    body: str

    def __init__(self, message: str, *, status_code: int, body: str = "") -> None:
        detail = f"{message} ({status_code})"
        if body:
            detail = f"{detail}: {body}"
        super().__init__(detail)
        self.status_code = status_code
        self.body = body


class AuthenticationError(StatusError):
    """The request was rejected again after re-authenticating."""


class DomainError(CloudronError):
    """An asynchronous server-side operation reported failure."""


class InstallError(DomainError):
    """Installation, update, backup or restore ended in the error state."""


class BuildError(DomainError):
    """The build service reported a failed or unreadable build."""


class ExecError(CloudronError):
    """Local precondition for a remote exec session is not met."""


class NotLoggedInError(CloudronError):
    def __init__(self) -> None:
        super().__init__("Not setup yet. Please use the login command first.")


class CloudronNotFoundError(CloudronError):
    def __init__(self, host: str) -> None:
        super().__init__(f"Cloudron not found at {host}")
        self.host = host


class ManifestNotFoundError(CloudronError):
    def __init__(self) -> None:
        super().__init__("No CloudronManifest.json found")


class UnknownVersionError(CloudronError):
    def __init__(self, version: str) -> None:
        super().__init__("Unknown version")
        self.version = version
