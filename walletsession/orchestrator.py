"""AuthOrchestrator: the single owner of the session.

Selects one credential provider for the execution context, drives the
connect → credential → backend login sequence, and publishes immutable
Session snapshots to subscribers. Every state change goes through
``_transition``.
"""

# pylint: disable=logging-too-many-args,too-many-instance-attributes

from __future__ import annotations

import dataclasses
import logging

from typing import TYPE_CHECKING, Any

from .backend import BackendSessionClient
from .challenge import synthesize_credential
from .config import get_settings
from .exceptions import AuthenticationError, SigningError, TokenStorageError
from .providers import create_provider, detect_execution_context, select_provider_name
from .redirect import get_pending_redirect_attempts
from .resource_cache import ResourceCache
from .token_store import create_token_store
from .types import (
    ErrorKind,
    ExecutionContext,
    ProviderLifecycle,
    Session,
    SessionError,
    SessionStatus,
)


if TYPE_CHECKING:
    from collections.abc import Callable

    import httpx

    from .config import WalletSessionSettings
    from .providers import CredentialProvider
    from .token_store import TokenStore
    from .types import HostContext
    from .wallet import RpcSigner, WalletClient


logger = logging.getLogger("walletsession.orchestrator")


class AuthOrchestrator:
    """Coordinates provider, backend, token store and resource cache.

    Parameters
    ----------
    settings : WalletSessionSettings, optional
        Configuration (defaults to :func:`get_settings`).
    backend : BackendSessionClient, optional
        Backend client (built from settings when omitted).
    token_store : TokenStore, optional
        Credential store (built from ``storage`` settings when omitted).
    cache : ResourceCache, optional
        Cache for the provider-derived signer.
    provider_factory : callable, optional
        ``factory(context) -> CredentialProvider``. Must return a new
        instance on every call.
    context_detector : callable, optional
        ``detector() -> ExecutionContext``.
    host : HostContext, optional
        Host wallet, when embedded in a host application.
    wallet_client : WalletClient, optional
        Injected or bridged wallet.
    is_mobile : bool
        Running in a mobile browser.
    """

    def __init__(
        self,
        settings: WalletSessionSettings | None = None,
        *,
        backend: BackendSessionClient | None = None,
        token_store: TokenStore | None = None,
        cache: ResourceCache | None = None,
        provider_factory: Callable[[ExecutionContext], CredentialProvider] | None = None,
        context_detector: Callable[[], ExecutionContext] | None = None,
        host: HostContext | None = None,
        wallet_client: WalletClient | None = None,
        is_mobile: bool = False,
    ) -> None:
        """Initialize the orchestrator."""
        self.settings = settings or get_settings()
        self.token_store = token_store or create_token_store(self.settings.storage)
        self.backend = backend or BackendSessionClient(self.token_store, self.settings.backend)
        self.backend.on_unauthorized = self._on_unauthorized
        self.cache = cache or ResourceCache()
        self._host = host
        self._wallet_client = wallet_client
        self._provider_factory = provider_factory or self._default_provider_factory
        self._context_detector = context_detector or (
            lambda: detect_execution_context(self.settings, host, wallet_client, is_mobile)
        )

        self._session = Session.initializing()
        self._listeners: list[Callable[[Session], Any]] = []
        self._provider: CredentialProvider | None = None
        self._context: ExecutionContext | None = None
        self._attempt = 0

    def _default_provider_factory(self, context: ExecutionContext) -> CredentialProvider:
        return create_provider(
            select_provider_name(context),
            self.settings,
            host=self._host,
            wallet_client=self._wallet_client,
            pending_store=self.token_store.session,
        )

    # ── Observation ──────────────────────────────────────────────────

    @property
    def provider(self) -> CredentialProvider | None:
        """The live provider instance."""
        return self._provider

    @property
    def context(self) -> ExecutionContext | None:
        """The execution context chosen at start."""
        return self._context

    def get_session(self) -> Session:
        """Current session snapshot."""
        return self._session

    def subscribe(self, listener: Callable[[Session], Any]) -> Callable[[], None]:
        """Register a listener for session snapshots.

        Returns
        -------
        callable
            Removes the listener when called.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _transition(self, *, notify: bool = True, **changes: Any) -> Session:
        """Publish a new session built from the current one.

        With ``notify=False`` the snapshot is swapped in and listeners are
        told later through :meth:`_notify`.
        """
        session = dataclasses.replace(self._session, **changes)
        self._session = session
        if notify:
            self._notify(session)
        return session

    def _notify(self, session: Session) -> None:
        logger.debug(
            "Session -> %s (provider=%s, error=%s)",
            session.status.value,
            session.active_provider_name,
            session.error.kind.value if session.error else None,
        )
        for listener in list(self._listeners):
            try:
                listener(session)
            except Exception:
                logger.exception("Session listener failed")

    def _reset(
        self, error: SessionError | None = None, *, notify: bool = True, **changes: Any
    ) -> Session:
        """Publish an empty disconnected session.

        The active provider name is kept unless ``changes`` override it.
        """
        return self._transition(
            notify=notify,
            status=SessionStatus.DISCONNECTED,
            user=None,
            credential=None,
            address=None,
            is_connected=False,
            is_authenticated=False,
            is_initializing=False,
            error=error,
            **changes,
        )

    def report_error(self, error: SessionError) -> Session:
        """Attach a recoverable error to the current session."""
        return self._transition(error=error)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def _bind_provider(self, context: ExecutionContext) -> CredentialProvider:
        """Create and initialize a fresh provider instance for ``context``."""
        self._context = context
        provider = self._provider_factory(context)
        self._provider = provider
        await provider.initialize()
        return provider

    async def start(self) -> Session:
        """Pick the provider and restore a previous session when possible.

        The session is restored as authenticated only when the backend
        accepts the stored credential and the provider reports the same
        connected address.
        """
        self._transition(
            status=SessionStatus.INITIALIZING,
            is_initializing=True,
            error=None,
        )
        context = self._context_detector()
        try:
            provider = await self._bind_provider(context)
        except AuthenticationError as exc:
            logger.error("Provider for %s failed to initialize: %s", context.value, exc)
            return self._reset(error=exc.to_session_error())
        self._transition(active_provider_name=provider.name)

        result = await self.backend.check_existing_session(source_provider=provider.name)
        address = await provider.get_address() if provider.is_connected else None

        if result.success and result.user is not None and address:
            if result.user.display_address.lower() == address.lower():
                logger.info("Restored session for %s", address)
                return self._transition(
                    status=SessionStatus.AUTHENTICATED,
                    user=result.user,
                    credential=await self.token_store.get_token(),
                    address=address,
                    is_connected=True,
                    is_authenticated=True,
                    is_initializing=False,
                    error=None,
                )
            logger.info("Stored session belongs to another address, not restoring")

        if address:
            return self._transition(
                status=SessionStatus.CONNECTED,
                address=address,
                is_connected=True,
                is_initializing=False,
                error=result.error,
            )
        return self._reset(error=result.error)

    async def _live_provider(self) -> CredentialProvider:
        """The live provider, replacing a disposed one with a new instance."""
        provider = self._provider
        if provider is None or provider.lifecycle is ProviderLifecycle.DISPOSED:
            context = self._context or self._context_detector()
            provider = await self._bind_provider(context)
            self._transition(active_provider_name=provider.name)
        return provider

    async def connect(self, hint: str | None = None) -> Session:
        """Connect the provider and log in to the backend.

        A no-op when already authenticated. On failure the prior session
        is kept and only its ``error`` is replaced. When attempts overlap,
        the last one started wins.

        Parameters
        ----------
        hint : str, optional
            Login hint passed to the provider.

        Returns
        -------
        Session
            The resulting session.
        """
        if self._session.is_authenticated:
            return self._session

        self._attempt += 1
        attempt = self._attempt
        prior = self._session
        self._transition(status=SessionStatus.CONNECTING, is_initializing=False, error=None)

        try:
            provider = await self._live_provider()
        except AuthenticationError as exc:
            return self._fail(prior, exc.to_session_error(), attempt)

        try:
            result = await provider.connect(hint)
        except AuthenticationError as exc:
            return self._fail(prior, exc.to_session_error(), attempt)
        if attempt != self._attempt:
            return self._session
        if result.pending:
            logger.info("Login continues out of band for %s", provider.name)
            get_pending_redirect_attempts().release(self.settings.redirect.scope)
            return self._session
        if not result.success or not result.address:
            error = result.error or SessionError(ErrorKind.CONNECTION, "Connection failed")
            return self._fail(prior, error, attempt)

        self._transition(
            status=SessionStatus.CONNECTED,
            address=result.address,
            is_connected=True,
        )
        return await self._login(provider, result.address, result.credential, result.profile, prior, attempt)

    async def complete_redirect_login(self) -> Session:
        """Log in with a provider that reconnected after a redirect."""
        if self._session.is_authenticated:
            return self._session
        self._attempt += 1
        attempt = self._attempt
        prior = self._session

        provider = self._provider
        address = await provider.get_address() if provider is not None else None
        if provider is None or not provider.is_connected or not address:
            error = SessionError(ErrorKind.REDIRECT_RECONCILIATION, "No connected wallet")
            return self._fail(prior, error, attempt)

        self._transition(
            status=SessionStatus.CONNECTED,
            address=address,
            is_connected=True,
            error=None,
        )
        return await self._login(
            provider, address, await provider.get_token(), provider.get_profile(), prior, attempt
        )

    async def _login(
        self,
        provider: CredentialProvider,
        address: str,
        credential: str | None,
        profile: dict[str, Any],
        prior: Session,
        attempt: int,
    ) -> Session:
        """Obtain a credential if needed, verify it and publish the session."""
        if credential is None:
            if provider.get_capabilities().is_authentication_only:
                error = SessionError(
                    ErrorKind.CONNECTION,
                    "Provider issued no credential and cannot sign a challenge",
                )
                return self._fail(prior, error, attempt)
            try:
                credential = await synthesize_credential(provider, address)
            except SigningError as exc:
                return self._fail(prior, exc.to_session_error(), attempt)

        login = await self.backend.login(
            credential,
            address,
            provider_profile=profile,
            source_provider=provider.name,
        )
        if attempt != self._attempt:
            return self._session
        if not login.success or login.user is None:
            error = login.error or SessionError(ErrorKind.BACKEND_VERIFICATION, "Login failed")
            return self._fail(prior, error, attempt)

        await self.token_store.set_token(credential)
        if attempt != self._attempt:
            await self._discard_credential(credential)
            return self._session

        # Cache rebind and publish happen with no suspension point between them.
        self.cache.invalidate()
        self._provider = provider
        logger.info("Authenticated %s via %s", address, provider.name)
        return self._transition(
            status=SessionStatus.AUTHENTICATED,
            user=login.user,
            credential=credential,
            address=address,
            is_connected=True,
            is_authenticated=True,
            is_initializing=False,
            active_provider_name=provider.name,
            error=None,
        )

    def _fail(self, prior: Session, error: SessionError, attempt: int) -> Session:
        """Restore ``prior`` with ``error`` unless a newer attempt started."""
        if attempt != self._attempt:
            return self._session
        logger.info("Connect failed (%s): %s", error.kind.value, error.message)
        self._session = prior
        return self._transition(error=error)

    async def _discard_credential(self, credential: str) -> None:
        """Remove ``credential`` from the store if a stale login wrote it."""
        if await self.token_store.get_token() != credential:
            return
        logger.info("Login was superseded while storing its credential, discarding it")
        await self._clear_token()

    async def _clear_token(self) -> None:
        try:
            await self.token_store.clear_token()
        except TokenStorageError as exc:
            logger.error("Clearing stored credential failed: %s", exc)

    async def disconnect(self) -> Session:
        """End the session everywhere.

        The session, token store and cache are cleared before the provider
        and backend are contacted, so a failure there cannot leave
        credentials behind. Listeners see the empty session only once the
        store and cache are empty too.
        """
        self._attempt += 1
        credential = self._session.credential
        provider = self._provider

        session = self._reset(notify=False, active_provider_name=None)
        await self._clear_token()
        self.cache.invalidate()
        get_pending_redirect_attempts().release(self.settings.redirect.scope)
        if self._session is session:
            self._notify(session)

        if provider is not None:
            await provider.disconnect()
        await self.backend.logout(credential)
        logger.info("Disconnected")
        return session

    async def switch_provider(self, context: ExecutionContext | str | None = None) -> Session:
        """Replace the provider with a new instance and connect it.

        Parameters
        ----------
        context : ExecutionContext or str, optional
            Context to switch to (defaults to re-detecting it).
        """
        await self.disconnect()
        new_context = ExecutionContext(context) if context else self._context_detector()
        try:
            provider = await self._bind_provider(new_context)
        except AuthenticationError as exc:
            return self._reset(error=exc.to_session_error())
        self._transition(active_provider_name=provider.name)
        return await self.connect()

    # ── Operations ───────────────────────────────────────────────────

    async def _on_unauthorized(self) -> None:
        """Backend rejected the session: drop it locally, keep the wallet."""
        if not self._session.is_authenticated:
            return
        logger.info("Backend session expired, resetting")
        await self._clear_token()
        self.cache.invalidate()
        self._transition(
            status=SessionStatus.CONNECTED if self._session.is_connected else SessionStatus.DISCONNECTED,
            user=None,
            credential=None,
            is_authenticated=False,
            error=SessionError(ErrorKind.BACKEND_VERIFICATION, "Session expired"),
        )

    async def authenticated_fetch(self, path: str, method: str = "GET", **kwargs: Any) -> httpx.Response:
        """Backend request with the session credential. A 401 resets the session."""
        return await self.backend.authenticated_fetch(path, method, **kwargs)

    async def sign_message(self, message: str) -> str:
        """Sign with the active provider.

        Raises
        ------
        SigningError
            If no provider is connected or it cannot sign.
        """
        provider = self._provider
        if provider is None or not provider.is_connected:
            msg = "No connected provider"
            raise SigningError(msg)
        if not provider.get_capabilities().can_sign:
            msg = "Active provider cannot sign"
            raise SigningError(msg, provider=provider.name)
        return await provider.sign(message)

    def get_signer(self) -> RpcSigner:
        """The RPC-capable signer for the active provider, cached per version.

        Raises
        ------
        SigningError
            If no provider is connected.
        """
        provider = self._provider
        if provider is None or not self._session.is_connected:
            msg = "No connected provider"
            raise SigningError(msg)
        return self.cache.get(provider.create_signer, self.settings.schema_version, owner=provider)

    async def close(self) -> None:
        """Release HTTP clients."""
        if self._provider is not None:
            await self._provider.close()
        await self.backend.close()

    async def __aenter__(self) -> AuthOrchestrator:
        """Start on context entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        """Close on context exit."""
        await self.close()
