"""walletsession exception hierarchy.

All walletsession exceptions inherit from WalletSessionException. The
authentication errors additionally carry an ``ErrorKind`` so they can be
converted into the structured ``SessionError`` published on the session.
"""

from __future__ import annotations

from typing import Any, ClassVar

from .types import ErrorKind, SessionError


class WalletSessionException(Exception):
    """Base exception for all walletsession errors."""

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize walletsession exception.

        Parameters
        ----------
        message : str
            Human-readable error message.
        **context : Any
            Additional context (provider, status_code, key, etc.).
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Format exception with context."""
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx})"
        return self.message


class ConfigurationError(WalletSessionException):
    """Configuration is missing or invalid."""


class SessionStateError(WalletSessionException):
    """A session transition would violate a session invariant.

    This is a programming error: the orchestrator never produces such a
    state, so it is raised rather than published.
    """


class TokenStorageError(WalletSessionException):
    """Every storage backend failed to persist or clear the credential."""


class AuthenticationError(WalletSessionException):
    """Base exception for authentication failures.

    Parameters
    ----------
    message : str
        Human-readable error message.
    provider : str, optional
        Name of the credential provider involved.
    **context : Any
        Additional context.
    """

    kind: ClassVar[ErrorKind] = ErrorKind.CONNECTION

    def __init__(self, message: str, provider: str | None = None, **context: Any) -> None:
        """Initialize authentication error."""
        super().__init__(message, provider=provider, **context)
        self.provider = provider

    def to_session_error(self) -> SessionError:
        """Convert to the structured error published on the session."""
        return SessionError(kind=self.kind, message=self.message)


class ProviderInitError(AuthenticationError):
    """Provider configuration is missing or invalid.

    Fatal to that provider only.
    """

    kind = ErrorKind.PROVIDER_INIT


class WalletConnectionError(AuthenticationError):
    """The user cancelled or the wallet/provider is unreachable."""

    kind = ErrorKind.CONNECTION


class SigningError(AuthenticationError):
    """A signature was refused or no connection is active."""

    kind = ErrorKind.SIGNING


class BackendVerificationError(AuthenticationError):
    """The backend rejected the credential."""

    kind = ErrorKind.BACKEND_VERIFICATION

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        status_code: int | None = None,
        **context: Any,
    ) -> None:
        """Initialize backend verification error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        provider : str, optional
            Name of the credential provider involved.
        status_code : int, optional
            HTTP status returned by the backend.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, status_code=status_code, **context)
        self.status_code = status_code


class NetworkError(AuthenticationError):
    """Transient transport failure. The caller decides whether to retry."""

    kind = ErrorKind.NETWORK


class RedirectReconciliationError(AuthenticationError):
    """An out-of-band redirect login could not be completed."""

    kind = ErrorKind.REDIRECT_RECONCILIATION
