"""Type definitions shared across walletsession.

Session, provider, cache and redirect types used by the orchestrator
and its collaborators.
"""

from __future__ import annotations

import time

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Error categories surfaced to the UI for branching."""

    PROVIDER_INIT = "provider_init"
    CONNECTION = "connection"
    SIGNING = "signing"
    BACKEND_VERIFICATION = "backend_verification"
    NETWORK = "network"
    REDIRECT_RECONCILIATION = "redirect_reconciliation"


class SessionStatus(str, Enum):
    """Lifecycle status of the session.

    ``CONNECTED`` is the one modelled intermediate state: the wallet is
    reachable but the backend has not verified a credential yet.
    """

    INITIALIZING = "initializing"
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"


class ExecutionContext(str, Enum):
    """Execution context that determines which provider is used."""

    HOST_EMBEDDED = "host_embedded"
    INJECTED_WALLET = "injected_wallet"
    MOBILE_BROWSER = "mobile_browser"
    STANDARD = "standard"


class ProviderLifecycle(str, Enum):
    """Lifecycle of a provider instance owned by the orchestrator."""

    CREATED = "created"
    LIVE = "live"
    DISPOSED = "disposed"


class RedirectAttemptState(str, Enum):
    """Shared per-scope redirect attempt flag."""

    IDLE = "idle"
    HANDLING = "handling"
    HANDLED = "handled"


class ReconcilerState(str, Enum):
    """State of a single RedirectReconciler observer."""

    IDLE = "idle"
    DETECTING = "detecting"
    HANDLING = "handling"
    HANDLED = "handled"


@dataclass(frozen=True)
class SessionError:
    """Last recoverable failure exposed on the session.

    Attributes
    ----------
    kind : ErrorKind
        Error category for UI branching.
    message : str
        Single human-readable message.
    """

    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class SessionUser:
    """Backend-verified user record.

    Attributes
    ----------
    id : str
        Backend user identifier.
    display_address : str
        Wallet address shown to the user.
    email : str or None
        Email, when known to the backend or the provider.
    display_name : str or None
        Display name (social profile handle, etc.).
    source_provider : str
        Name of the provider that produced the credential.
    extra : dict[str, Any]
        Remaining backend and provider-only fields.
    """

    id: str
    display_address: str
    source_provider: str
    email: str | None = None
    display_name: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Session:
    """Immutable snapshot of the session published to observers.

    Attributes
    ----------
    status : SessionStatus
        Lifecycle status.
    user : SessionUser or None
        Present only after backend verification.
    credential : str or None
        Opaque bearer token. Never logged, hidden from ``repr``.
    address : str or None
        Address reported by the connected provider.
    is_connected : bool
        The provider reports a reachable wallet.
    is_authenticated : bool
        The backend verified the credential.
    is_initializing : bool
        The orchestrator is still booting.
    active_provider_name : str or None
        Name of the live provider variant.
    error : SessionError or None
        Last recoverable failure.
    """

    status: SessionStatus = SessionStatus.DISCONNECTED
    user: SessionUser | None = None
    credential: str | None = field(default=None, repr=False)
    address: str | None = None
    is_connected: bool = False
    is_authenticated: bool = False
    is_initializing: bool = False
    active_provider_name: str | None = None
    error: SessionError | None = None

    def __post_init__(self) -> None:
        """Enforce the session invariants."""
        from .exceptions import SessionStateError

        if self.is_authenticated and not self.is_connected:
            msg = "Session cannot be authenticated without a connected provider"
            raise SessionStateError(msg, status=self.status.value)
        if self.user is not None and not self.is_authenticated:
            msg = "Session cannot carry a user before backend verification"
            raise SessionStateError(msg, status=self.status.value)

    @classmethod
    def initializing(cls) -> Session:
        """Session created on orchestrator boot."""
        return cls(status=SessionStatus.INITIALIZING, is_initializing=True)


@dataclass(frozen=True)
class ProviderCapabilities:
    """What a provider supports. Consumers branch on these, never on names.

    Attributes
    ----------
    can_sign : bool
        Can sign arbitrary messages.
    can_transact : bool
        Can send transactions.
    can_switch_accounts : bool
        Lets the user switch accounts.
    is_authentication_only : bool
        Provides identity only, no wallet operations.
    """

    can_sign: bool = True
    can_transact: bool = True
    can_switch_accounts: bool = False
    is_authentication_only: bool = False


@dataclass
class ConnectResult:
    """Result of a provider ``connect`` call.

    Attributes
    ----------
    success : bool
        Whether the provider connected.
    address : str or None
        Connected wallet address.
    credential : str or None
        Native identity token, when the provider issues one.
    error : SessionError or None
        Structured failure when ``success`` is False.
    profile : dict[str, Any]
        Provider-only profile fields (email, handle, ...).
    pending : bool
        The login continues out of band (full-page redirect) and completes
        through redirect reconciliation.
    """

    success: bool
    address: str | None = None
    credential: str | None = field(default=None, repr=False)
    error: SessionError | None = None
    profile: dict[str, Any] = field(default_factory=dict)
    pending: bool = False

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> ConnectResult:
        """Build a failed result."""
        return cls(success=False, error=SessionError(kind=kind, message=message))


@dataclass
class LoginResult:
    """Result of a backend login or identity check."""

    success: bool
    user: SessionUser | None = None
    error: SessionError | None = None


@dataclass
class CachedResource:
    """Payload stored by the ResourceCache with its version tag and owner."""

    payload: Any
    version_tag: str
    owner_id: int | None = None


@dataclass(frozen=True)
class TokenMetadata:
    """Unverified description of a credential, safe to log.

    Attributes
    ----------
    kind : str
        ``"jwt"``, ``"challenge"`` or ``"opaque"``.
    subject : str or None
        JWT ``sub`` claim.
    issuer : str or None
        JWT ``iss`` claim.
    address : str or None
        Wallet address embedded in a challenge credential.
    expires_at : float or None
        JWT ``exp`` claim as a Unix timestamp.
    """

    kind: str
    subject: str | None = None
    issuer: str | None = None
    address: str | None = None
    expires_at: float | None = None

    @property
    def is_expired(self) -> bool:
        """Check if the token carries an expiry in the past."""
        if self.expires_at is None:
            return False
        return time.time() > self.expires_at


@dataclass
class HostContext:
    """Wallet supplied by a host application the app is embedded in.

    Attributes
    ----------
    address : str
        Address the host already connected.
    token : str or None
        Verifiable token issued by the host, if any.
    wallet : Any
        Optional ``WalletClient`` the host exposes for signing.
    profile : dict[str, Any]
        Host user profile fields (fid, username, ...).
    """

    address: str
    token: str | None = field(default=None, repr=False)
    wallet: Any = None
    profile: dict[str, Any] = field(default_factory=dict)
