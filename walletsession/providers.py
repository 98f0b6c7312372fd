"""Credential provider abstractions.

Defines the CredentialProvider ABC, the four provider variants (social
login, external wallet, deep-link wallet, host wallet) and the selection
logic that picks exactly one of them for an execution context.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import secrets
import time
import webbrowser

from abc import ABC, abstractmethod
from base64 import urlsafe_b64encode
from typing import TYPE_CHECKING, Any, ClassVar
from urllib.parse import quote, urlencode

import httpx

from .callback_server import RedirectCaptureServer
from .config import get_settings
from .exceptions import NetworkError, ProviderInitError, SigningError, WalletConnectionError
from .token_store import MemoryStorage
from .types import (
    ConnectResult,
    ErrorKind,
    ExecutionContext,
    ProviderCapabilities,
    ProviderLifecycle,
)
from .wallet import UNRECOGNIZED_CHAIN, RpcSigner, WalletClient, WalletRpcError


if TYPE_CHECKING:
    from collections.abc import Callable

    from .config import WalletSessionSettings
    from .token_store import StorageBackend
    from .types import HostContext


logger = logging.getLogger("walletsession.providers")

_PENDING_FIELDS = frozenset({"state", "verifier", "redirect_uri"})


class CredentialProvider(ABC):
    """Abstract base class for credential providers.

    A provider instance is owned by exactly one orchestrator and moves
    through ``created -> live -> disposed``. A disposed instance is never
    reused; switching providers always builds a new instance.

    Parameters
    ----------
    settings : WalletSessionSettings, optional
        Configuration (defaults to :func:`get_settings`).
    """

    name: ClassVar[str] = "provider"

    def __init__(self, settings: WalletSessionSettings | None = None) -> None:
        """Initialize the provider."""
        self.settings = settings or get_settings()
        self.lifecycle = ProviderLifecycle.CREATED
        self._address: str | None = None
        self._token: str | None = None
        self._profile: dict[str, Any] = {}

    # ── Lifecycle ────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Prepare the provider without user interaction.

        Idempotent. May restore a previous wallet connection.

        Raises
        ------
        ProviderInitError
            If required configuration is missing or the provider was disposed.
        """
        if self.lifecycle is ProviderLifecycle.LIVE:
            return
        if self.lifecycle is ProviderLifecycle.DISPOSED:
            msg = "Provider instance was disposed"
            raise ProviderInitError(msg, provider=self.name)
        await self._initialize()
        self.lifecycle = ProviderLifecycle.LIVE
        logger.debug("Provider %s initialized", self.name)

    @abstractmethod
    async def _initialize(self) -> None:
        """Variant-specific initialization."""

    @abstractmethod
    async def connect(self, hint: str | None = None) -> ConnectResult:
        """Run the interactive connection flow.

        User-facing failures (cancellation, rejection, timeouts) are
        returned as a failed :class:`ConnectResult`, never raised.

        Parameters
        ----------
        hint : str, optional
            Login hint (e.g. an email for social login).

        Returns
        -------
        ConnectResult
            Address, native credential and profile on success.
        """

    async def disconnect(self) -> None:
        """Revoke the connection and release local handles.

        Local handles are always cleared, even when revocation fails, and
        the instance is disposed.
        """
        try:
            await self._revoke()
        except Exception as exc:
            logger.warning("Provider %s revoke failed: %s", self.name, exc)
        finally:
            self._address = None
            self._token = None
            self._profile = {}
            self.lifecycle = ProviderLifecycle.DISPOSED
            await self.close()
        logger.debug("Provider %s disconnected", self.name)

    async def _revoke(self) -> None:
        """Variant-specific remote revocation. Default: nothing to revoke."""

    async def close(self) -> None:
        """Release transport resources."""

    # ── Operations ───────────────────────────────────────────────────

    @abstractmethod
    async def sign(self, message: str) -> str:
        """Sign a message with the connected address.

        Raises
        ------
        SigningError
            If no connection is active or the signature is refused.
        """

    async def get_address(self) -> str | None:
        """Connected address, or None."""
        return self._address

    async def get_token(self) -> str | None:
        """Native identity token, or None when the provider issues none."""
        return self._token

    def get_profile(self) -> dict[str, Any]:
        """Provider-only profile fields (email, handle, ...)."""
        return dict(self._profile)

    @abstractmethod
    def get_capabilities(self) -> ProviderCapabilities:
        """What this provider supports."""

    @property
    def is_connected(self) -> bool:
        """True when a live connection with an address exists."""
        return self.lifecycle is ProviderLifecycle.LIVE and self._address is not None

    async def resume_redirect(self, params: dict[str, str]) -> None:  # noqa: ARG002
        """Finish a login that completed through a full-page redirect.

        Parameters
        ----------
        params : dict[str, str]
            Query parameters of the page the redirect landed on.
        """
        return

    def create_signer(self) -> RpcSigner:
        """Build the RPC-capable signer for the current connection.

        Raises
        ------
        SigningError
            If the provider is not connected or cannot sign.
        """
        wallet = self._signer_wallet()
        if wallet is None or self._address is None:
            msg = "No connected wallet to build a signer from"
            raise SigningError(msg, provider=self.name)
        network = self.settings.network
        return RpcSigner(wallet, self._address, network.rpc_url, network.chain_id)

    def _signer_wallet(self) -> WalletClient | None:
        """Wallet the signer routes write calls to."""
        return None

    def _require_connected(self) -> str:
        if not self.is_connected or self._address is None:
            msg = "No active connection"
            raise SigningError(msg, provider=self.name)
        return self._address


class _WalletBackedProvider(CredentialProvider):
    """Shared behaviour for providers that drive a ``WalletClient``."""

    def __init__(
        self,
        wallet_client: WalletClient | None,
        settings: WalletSessionSettings | None = None,
    ) -> None:
        super().__init__(settings)
        self.wallet = wallet_client

    def _require_wallet(self) -> WalletClient:
        if self.wallet is None:
            msg = "No wallet client available"
            raise ProviderInitError(msg, provider=self.name)
        return self.wallet

    async def _read_accounts(self) -> list[str]:
        """Non-interactive account query."""
        accounts = await self._require_wallet().request("eth_accounts")
        return list(accounts or [])

    async def sign(self, message: str) -> str:
        """Sign via ``personal_sign``."""
        address = self._require_connected()
        try:
            return await self._require_wallet().request("personal_sign", [message, address])
        except WalletRpcError as exc:
            reason = "User rejected the signature" if exc.is_user_rejection else exc.message
            raise SigningError(reason, provider=self.name, code=exc.code) from exc
        except NetworkError as exc:
            raise SigningError(exc.message, provider=self.name) from exc

    def _signer_wallet(self) -> WalletClient | None:
        return self.wallet

    async def close(self) -> None:
        """Close the wallet transport."""
        if self.wallet is not None:
            await self.wallet.close()


class ExternalWalletProvider(_WalletBackedProvider):
    """Injected (browser-extension style) wallet.

    Parameters
    ----------
    wallet_client : WalletClient
        The injected wallet.
    settings : WalletSessionSettings, optional
        Configuration.
    """

    name = "external"

    async def _initialize(self) -> None:
        self._require_wallet()
        try:
            accounts = await self._read_accounts()
        except (WalletRpcError, NetworkError) as exc:
            logger.warning("Could not read existing wallet accounts: %s", exc)
            return
        if accounts:
            self._address = accounts[0]
            logger.debug("Restored external wallet connection for %s", self._address)

    async def connect(self, hint: str | None = None) -> ConnectResult:  # noqa: ARG002
        """Request accounts from the wallet and validate the network."""
        await self.initialize()
        wallet = self._require_wallet()
        try:
            accounts = await wallet.request("eth_requestAccounts")
        except WalletRpcError as exc:
            reason = "User rejected the connection" if exc.is_user_rejection else exc.message
            return ConnectResult.failure(ErrorKind.CONNECTION, reason)
        except NetworkError as exc:
            return ConnectResult.failure(ErrorKind.CONNECTION, f"Wallet unreachable: {exc.message}")

        if not accounts:
            return ConnectResult.failure(ErrorKind.CONNECTION, "Wallet returned no accounts")

        try:
            await self._ensure_chain(wallet)
        except WalletConnectionError as exc:
            return ConnectResult.failure(ErrorKind.CONNECTION, exc.message)

        self._address = accounts[0]
        return ConnectResult(success=True, address=self._address)

    async def _ensure_chain(self, wallet: WalletClient) -> None:
        """Switch the wallet to the configured chain when it differs."""
        network = self.settings.network
        try:
            current = int(await wallet.request("eth_chainId"), 16)
        except (WalletRpcError, NetworkError, TypeError, ValueError) as exc:
            msg = f"Could not read the wallet network: {exc}"
            raise WalletConnectionError(msg, provider=self.name) from exc
        if current == network.chain_id:
            return

        logger.info("Switching wallet from chain %s to %s", current, network.chain_id)
        target = hex(network.chain_id)
        try:
            await wallet.request("wallet_switchEthereumChain", [{"chainId": target}])
        except WalletRpcError as exc:
            if exc.code != UNRECOGNIZED_CHAIN:
                msg = f"Wrong network: switch to {network.chain_name} in your wallet"
                raise WalletConnectionError(msg, provider=self.name, chain_id=current) from exc
            try:
                await wallet.request(
                    "wallet_addEthereumChain",
                    [{"chainId": target, "chainName": network.chain_name, "rpcUrls": [network.rpc_url]}],
                )
            except WalletRpcError as add_exc:
                msg = f"Wrong network: add {network.chain_name} to your wallet"
                raise WalletConnectionError(msg, provider=self.name, chain_id=current) from add_exc

    def get_capabilities(self) -> ProviderCapabilities:
        """External wallets sign, transact and let the user switch accounts."""
        return ProviderCapabilities(can_switch_accounts=True)


class DeepLinkWalletProvider(_WalletBackedProvider):
    """Mobile wallet app reached through a deep link.

    The wallet app completes the pairing out of band; the provider polls
    the wallet bridge for accounts until the connect timeout expires.

    Parameters
    ----------
    wallet_client : WalletClient
        Bridge to the paired wallet app.
    settings : WalletSessionSettings, optional
        Configuration.
    opener : callable, optional
        Opens the deep link (default ``webbrowser.open``).
    sleep : callable, optional
        Async sleep used between polls.
    """

    name = "deeplink"

    def __init__(
        self,
        wallet_client: WalletClient | None,
        settings: WalletSessionSettings | None = None,
        opener: Callable[[str], Any] | None = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the deep-link provider."""
        super().__init__(wallet_client, settings)
        self.opener = opener or webbrowser.open
        self._sleep = sleep
        self._clock = clock

    async def _initialize(self) -> None:
        self._require_wallet()
        if not self.settings.deep_link.wallet_link:
            msg = "deep_link.wallet_link is not configured"
            raise ProviderInitError(msg, provider=self.name)

    def build_link(self) -> str:
        """Deep link opening the wallet app with the pairing URI."""
        cfg = self.settings.deep_link
        if not cfg.pairing_uri:
            return cfg.wallet_link
        return f"{cfg.wallet_link}?uri={quote(cfg.pairing_uri, safe='')}"

    async def connect(self, hint: str | None = None) -> ConnectResult:  # noqa: ARG002
        """Open the wallet app and wait for it to expose an account."""
        await self.initialize()
        cfg = self.settings.deep_link
        self.opener(self.build_link())

        deadline = self._clock() + cfg.connect_timeout_seconds
        while True:
            try:
                accounts = await self._read_accounts()
            except WalletRpcError as exc:
                if exc.is_user_rejection:
                    return ConnectResult.failure(ErrorKind.CONNECTION, "User rejected the connection")
                accounts = []
            except NetworkError as exc:
                logger.debug("Wallet bridge not ready: %s", exc)
                accounts = []
            if accounts:
                self._address = accounts[0]
                return ConnectResult(success=True, address=self._address)
            if self._clock() >= deadline:
                return ConnectResult.failure(
                    ErrorKind.CONNECTION, "Timed out waiting for the wallet app"
                )
            await self._sleep(cfg.poll_interval_seconds)

    def get_capabilities(self) -> ProviderCapabilities:
        """Deep-linked wallets sign and transact."""
        return ProviderCapabilities()


class HostWalletProvider(CredentialProvider):
    """Wallet supplied by the host application the session is embedded in.

    The host has already connected the user; this provider never shows its
    own connect UI.

    Parameters
    ----------
    host : HostContext
        Address, optional token and optional wallet from the host.
    settings : WalletSessionSettings, optional
        Configuration.
    """

    name = "host"

    def __init__(
        self,
        host: HostContext | None,
        settings: WalletSessionSettings | None = None,
    ) -> None:
        """Initialize the host provider."""
        super().__init__(settings)
        self.host = host

    async def _initialize(self) -> None:
        if self.host is None:
            msg = "No host context available"
            raise ProviderInitError(msg, provider=self.name)
        if self.host.address:
            self._address = self.host.address
            self._token = self.host.token
            self._profile = dict(self.host.profile)

    async def connect(self, hint: str | None = None) -> ConnectResult:  # noqa: ARG002
        """Adopt the host's connected address."""
        await self.initialize()
        if self._address is None:
            return ConnectResult.failure(ErrorKind.CONNECTION, "Host has no connected wallet")
        return ConnectResult(
            success=True,
            address=self._address,
            credential=self._token,
            profile=self.get_profile(),
        )

    async def sign(self, message: str) -> str:
        """Sign through the wallet the host exposes."""
        address = self._require_connected()
        wallet = self._signer_wallet()
        if wallet is None:
            msg = "Host does not expose signing"
            raise SigningError(msg, provider=self.name)
        try:
            return await wallet.request("personal_sign", [message, address])
        except WalletRpcError as exc:
            raise SigningError(exc.message, provider=self.name, code=exc.code) from exc

    def _signer_wallet(self) -> WalletClient | None:
        return self.host.wallet if self.host is not None else None

    def get_capabilities(self) -> ProviderCapabilities:
        """Without a host wallet the provider only proves identity."""
        has_wallet = self._signer_wallet() is not None
        return ProviderCapabilities(
            can_sign=has_wallet,
            can_transact=has_wallet,
            is_authentication_only=not has_wallet,
        )


class EmbeddedWalletClient(WalletClient):
    """WalletClient view of the social-login embedded wallet.

    Signing goes through the provider; everything else is forwarded to the
    wallet API's JSON-RPC endpoint.
    """

    def __init__(self, provider: SocialLoginProvider) -> None:
        """Initialize the embedded wallet view."""
        self.provider = provider

    async def request(self, method: str, params: list[Any] | None = None) -> Any:
        """Serve a wallet request through the wallet API."""
        if method == "personal_sign":
            return await self.provider.sign(params[0] if params else "")
        if method in {"eth_accounts", "eth_requestAccounts"}:
            address = await self.provider.get_address()
            return [address] if address else []
        if method == "eth_chainId":
            return hex(self.provider.settings.network.chain_id)
        return await self.provider.wallet_rpc(method, params)


class SocialLoginProvider(CredentialProvider):
    """Social login backed by an embedded wallet.

    Runs an OAuth2 authorization-code flow with PKCE against the identity
    service, then reads the embedded wallet address with the issued ID
    token. Without ``social.redirect_uri`` the redirect is captured on a
    localhost server; with it, the flow continues through a full-page
    redirect and completes in :meth:`resume_redirect`.

    Parameters
    ----------
    settings : WalletSessionSettings, optional
        Configuration.
    opener : callable, optional
        Opens the authorize URL (default ``webbrowser.open``).
    http_client : httpx.AsyncClient, optional
        Client for identity and wallet API calls.
    pending_store : StorageBackend, optional
        Tab-scoped storage holding the state and PKCE verifier of an
        attempt across the redirect (default: process memory).
    """

    name = "social"
    pending_key = "social_login_pending"

    def __init__(
        self,
        settings: WalletSessionSettings | None = None,
        opener: Callable[[str], Any] | None = None,
        http_client: httpx.AsyncClient | None = None,
        pending_store: StorageBackend | None = None,
    ) -> None:
        """Initialize the social login provider."""
        super().__init__(settings)
        self.opener = opener or webbrowser.open
        self._http_client = http_client
        self.pending_store = pending_store or MemoryStorage()
        self._pending: dict[str, str] | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=30.0)
        return self._http_client

    async def close(self) -> None:
        """Close the shared HTTP client."""
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

    async def _initialize(self) -> None:
        cfg = self.settings.social
        missing = [
            field
            for field in ("client_id", "authorize_url", "token_url", "wallet_url")
            if not getattr(cfg, field)
        ]
        if missing:
            msg = f"Social login is not configured: missing {', '.join(missing)}"
            raise ProviderInitError(msg, provider=self.name)

    # ── Authorization ────────────────────────────────────────────────

    @staticmethod
    def _pkce_pair() -> tuple[str, str]:
        """Return a PKCE (verifier, S256 challenge) pair."""
        verifier = secrets.token_urlsafe(64)
        digest = hashlib.sha256(verifier.encode("ascii")).digest()
        return verifier, urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")

    def build_authorize_url(self, redirect_uri: str, hint: str | None = None) -> str:
        """Start an authorization attempt and return its URL.

        The PKCE verifier and state are kept until the redirect arrives.
        """
        cfg = self.settings.social
        verifier, challenge = self._pkce_pair()
        state = secrets.token_urlsafe(32)
        self._pending = {"state": state, "verifier": verifier, "redirect_uri": redirect_uri}
        params = {
            "response_type": "code",
            "client_id": cfg.client_id,
            "redirect_uri": redirect_uri,
            "scope": cfg.scopes,
            "state": state,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
        }
        if hint:
            params["login_hint"] = hint
        return f"{cfg.authorize_url}?{urlencode(params)}"

    async def _begin_authorization(self, redirect_uri: str, hint: str | None) -> str:
        """Build the authorize URL and save the attempt for the redirect."""
        url = self.build_authorize_url(redirect_uri, hint)
        try:
            await self.pending_store.set(self.pending_key, json.dumps(self._pending))
        except Exception as exc:
            msg = f"Login state could not be saved: {exc}"
            raise WalletConnectionError(msg, provider=self.name) from exc
        return url

    async def _take_pending(self) -> dict[str, str] | None:
        """Return the saved attempt and forget it. An attempt is used once."""
        pending, self._pending = self._pending, None
        try:
            saved = await self.pending_store.get(self.pending_key)
            await self.pending_store.delete(self.pending_key)
        except Exception as exc:
            logger.warning("Saved login state unavailable: %s", exc)
            saved = None
        if pending is None and saved:
            try:
                pending = json.loads(saved)
            except ValueError:
                logger.warning("Discarding malformed saved login state")
        if not isinstance(pending, dict) or not _PENDING_FIELDS <= pending.keys():
            return None
        return pending

    async def connect(self, hint: str | None = None) -> ConnectResult:
        """Run the social login flow."""
        await self.initialize()
        cfg = self.settings.social
        if cfg.redirect_uri:
            self.opener(await self._begin_authorization(cfg.redirect_uri, hint))
            logger.info("Social login continues through redirect to %s", cfg.redirect_uri)
            return ConnectResult(success=False, pending=True)

        server = RedirectCaptureServer()
        loop = asyncio.get_running_loop()
        try:
            redirect_uri = await loop.run_in_executor(None, server.start)
            self.opener(await self._begin_authorization(redirect_uri, hint))
            params = await loop.run_in_executor(None, server.wait, cfg.auth_timeout_seconds)
        finally:
            await loop.run_in_executor(None, server.stop)

        if params is None:
            await self._take_pending()
            return ConnectResult.failure(ErrorKind.CONNECTION, "Social login timed out")
        try:
            await self.resume_redirect(params)
        except WalletConnectionError as exc:
            return ConnectResult.failure(ErrorKind.CONNECTION, exc.message)
        except NetworkError as exc:
            return ConnectResult.failure(ErrorKind.NETWORK, exc.message)
        return ConnectResult(
            success=True,
            address=self._address,
            credential=self._token,
            profile=self.get_profile(),
        )

    async def resume_redirect(self, params: dict[str, str]) -> None:
        """Exchange the redirect's authorization code and load the wallet.

        Raises
        ------
        WalletConnectionError
            If the identity service reported an error, no login is in
            progress or the state does not match.
        NetworkError
            If the identity service or wallet API is unreachable.
        """
        await self.initialize()
        code_key, state_key = self.settings.redirect.markers
        pending = await self._take_pending()
        if "error" in params:
            msg = params.get("error_description") or params["error"]
            raise WalletConnectionError(msg, provider=self.name)
        code = params.get(code_key)
        if not code:
            msg = "Redirect carries no authorization code"
            raise WalletConnectionError(msg, provider=self.name)

        if pending is None:
            msg = "No login in progress for this redirect"
            raise WalletConnectionError(msg, provider=self.name)
        if params.get(state_key) != pending["state"]:
            msg = "Login state mismatch (possible CSRF attack)"
            raise WalletConnectionError(msg, provider=self.name)

        token = await self._exchange_code(code, pending["redirect_uri"], pending["verifier"])
        wallet = await self._fetch_wallet(token)
        address = wallet.pop("address", None)
        if not address:
            msg = "Wallet API returned no address"
            raise WalletConnectionError(msg, provider=self.name)
        self._token = token
        self._address = address
        self._profile = wallet
        logger.info("Social login connected wallet %s", address)

    async def _exchange_code(self, code: str, redirect_uri: str, verifier: str) -> str:
        cfg = self.settings.social
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": cfg.client_id,
            "code_verifier": verifier,
        }
        if cfg.client_secret:
            data["client_secret"] = cfg.client_secret
        client = await self._get_client()
        try:
            resp = await client.post(cfg.token_url, data=data)
        except httpx.HTTPError as exc:
            msg = f"Identity service unreachable: {exc}"
            raise NetworkError(msg, provider=self.name) from exc
        if resp.status_code != 200:
            msg = f"Code exchange failed: {resp.status_code}"
            raise WalletConnectionError(msg, provider=self.name, status_code=resp.status_code)
        body = resp.json()
        token = body.get("id_token") or body.get("access_token")
        if not token:
            msg = "Identity service issued no token"
            raise WalletConnectionError(msg, provider=self.name)
        return token

    async def _fetch_wallet(self, token: str) -> dict[str, Any]:
        client = await self._get_client()
        try:
            resp = await client.get(
                self.settings.social.wallet_url,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            msg = f"Wallet API unreachable: {exc}"
            raise NetworkError(msg, provider=self.name) from exc
        if resp.status_code != 200:
            msg = f"Wallet API rejected the token: {resp.status_code}"
            raise WalletConnectionError(msg, provider=self.name, status_code=resp.status_code)
        return dict(resp.json())

    # ── Wallet operations ────────────────────────────────────────────

    async def sign(self, message: str) -> str:
        """Sign through the embedded wallet API."""
        address = self._require_connected()
        client = await self._get_client()
        try:
            resp = await client.post(
                f"{self.settings.social.wallet_url.rstrip('/')}/sign",
                json={"address": address, "message": message},
                headers={"Authorization": f"Bearer {self._token}"},
            )
        except httpx.HTTPError as exc:
            msg = f"Wallet API unreachable: {exc}"
            raise SigningError(msg, provider=self.name) from exc
        if resp.status_code != 200:
            msg = f"Signature refused: {resp.status_code}"
            raise SigningError(msg, provider=self.name, status_code=resp.status_code)
        return resp.json()["signature"]

    async def wallet_rpc(self, method: str, params: list[Any] | None = None) -> Any:
        """Forward a JSON-RPC call to the embedded wallet."""
        self._require_connected()
        client = await self._get_client()
        try:
            resp = await client.post(
                f"{self.settings.social.wallet_url.rstrip('/')}/rpc",
                json={"jsonrpc": "2.0", "id": 1, "method": method, "params": params or []},
                headers={"Authorization": f"Bearer {self._token}"},
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            msg = f"Wallet API request {method} failed: {exc}"
            raise NetworkError(msg, provider=self.name) from exc
        body = resp.json()
        if body.get("error"):
            error = body["error"]
            raise WalletRpcError(int(error.get("code", -32000)), str(error.get("message", "")))
        return body.get("result")

    async def _revoke(self) -> None:
        await self._take_pending()
        if self._token is None:
            return
        client = await self._get_client()
        await client.post(
            f"{self.settings.social.wallet_url.rstrip('/')}/logout",
            headers={"Authorization": f"Bearer {self._token}"},
        )

    def _signer_wallet(self) -> WalletClient | None:
        return EmbeddedWalletClient(self)

    def get_capabilities(self) -> ProviderCapabilities:
        """Social login wallets sign and transact, without account switching."""
        return ProviderCapabilities()


# ── Selection ────────────────────────────────────────────────────────

PROVIDER_FOR_CONTEXT: dict[ExecutionContext, str] = {
    ExecutionContext.HOST_EMBEDDED: HostWalletProvider.name,
    ExecutionContext.INJECTED_WALLET: ExternalWalletProvider.name,
    ExecutionContext.MOBILE_BROWSER: DeepLinkWalletProvider.name,
    ExecutionContext.STANDARD: SocialLoginProvider.name,
}


def detect_execution_context(
    settings: WalletSessionSettings | None = None,
    host: HostContext | None = None,
    wallet_client: WalletClient | None = None,
    is_mobile: bool = False,
) -> ExecutionContext:
    """Derive the single execution context the session runs in.

    An explicit ``context`` setting wins; then a host context, a mobile
    environment and an injected wallet, in that order.
    """
    settings = settings or get_settings()
    if settings.context:
        return ExecutionContext(settings.context)
    if host is not None:
        return ExecutionContext.HOST_EMBEDDED
    if is_mobile:
        return ExecutionContext.MOBILE_BROWSER
    if wallet_client is not None:
        return ExecutionContext.INJECTED_WALLET
    return ExecutionContext.STANDARD


def select_provider_name(context: ExecutionContext | str) -> str:
    """Name of the provider variant serving ``context``."""
    return PROVIDER_FOR_CONTEXT[ExecutionContext(context)]


def create_provider(
    name: str,
    settings: WalletSessionSettings | None = None,
    *,
    host: HostContext | None = None,
    wallet_client: WalletClient | None = None,
    opener: Callable[[str], Any] | None = None,
    http_client: httpx.AsyncClient | None = None,
    pending_store: StorageBackend | None = None,
) -> CredentialProvider:
    """Build a fresh provider instance by name.

    ``pending_store`` only applies to the social provider.

    Raises
    ------
    ProviderInitError
        If ``name`` is not a known provider.
    """
    settings = settings or get_settings()
    if name == SocialLoginProvider.name:
        return SocialLoginProvider(
            settings, opener=opener, http_client=http_client, pending_store=pending_store
        )
    if name == ExternalWalletProvider.name:
        return ExternalWalletProvider(wallet_client, settings)
    if name == DeepLinkWalletProvider.name:
        return DeepLinkWalletProvider(wallet_client, settings, opener=opener)
    if name == HostWalletProvider.name:
        return HostWalletProvider(host, settings)
    msg = f"Unknown provider: {name}"
    raise ProviderInitError(msg, provider=name)
