"""Unit tests for credential providers and provider selection."""

# pylint: disable=redefined-outer-name,protected-access

from __future__ import annotations

import asyncio
import threading

from typing import Any
from urllib.parse import parse_qs, urlparse
from urllib.request import urlopen

import httpx
import pytest

from tests.fakes import ADDRESS, FakeWallet, IdentityService
from walletsession.config import WalletSessionSettings
from walletsession.exceptions import ProviderInitError, SigningError, WalletConnectionError
from walletsession.providers import (
    DeepLinkWalletProvider,
    EmbeddedWalletClient,
    ExternalWalletProvider,
    HostWalletProvider,
    SocialLoginProvider,
    create_provider,
    detect_execution_context,
    select_provider_name,
)
from walletsession.token_store import MemoryStorage, StorageBackend
from walletsession.types import ErrorKind, ExecutionContext, HostContext, ProviderLifecycle


# ── Selection ───────────────────────────────────────────────────────


class TestSelection:
    """Tests for execution context detection and provider selection."""

    @pytest.mark.parametrize(
        ("context", "name"),
        [
            (ExecutionContext.HOST_EMBEDDED, "host"),
            (ExecutionContext.INJECTED_WALLET, "external"),
            (ExecutionContext.MOBILE_BROWSER, "deeplink"),
            (ExecutionContext.STANDARD, "social"),
        ],
    )
    def test_one_provider_per_context(self, context: ExecutionContext, name: str) -> None:
        """Each context maps to exactly one provider."""
        assert select_provider_name(context) == name
        assert select_provider_name(context.value) == name

    def test_detect_prefers_host(self, settings: WalletSessionSettings) -> None:
        """A host context wins over everything else."""
        host = HostContext(address=ADDRESS)
        context = detect_execution_context(settings, host=host, wallet_client=FakeWallet(), is_mobile=True)
        assert context is ExecutionContext.HOST_EMBEDDED

    def test_detect_mobile_and_injected(self, settings: WalletSessionSettings) -> None:
        """Mobile beats an injected wallet; a wallet alone means injected."""
        assert detect_execution_context(settings, wallet_client=FakeWallet(), is_mobile=True) is (
            ExecutionContext.MOBILE_BROWSER
        )
        assert detect_execution_context(settings, wallet_client=FakeWallet()) is (
            ExecutionContext.INJECTED_WALLET
        )
        assert detect_execution_context(settings) is ExecutionContext.STANDARD

    def test_detect_honours_setting(self) -> None:
        """An explicit context setting overrides detection."""
        settings = WalletSessionSettings(context="injected_wallet")
        assert detect_execution_context(settings, host=HostContext(address=ADDRESS)) is (
            ExecutionContext.INJECTED_WALLET
        )

    def test_create_provider_builds_new_instances(self, settings: WalletSessionSettings) -> None:
        """Every call returns a fresh instance."""
        wallet = FakeWallet()
        first = create_provider("external", settings, wallet_client=wallet)
        second = create_provider("external", settings, wallet_client=wallet)
        assert isinstance(first, ExternalWalletProvider)
        assert first is not second
        assert first.lifecycle is ProviderLifecycle.CREATED

    def test_create_unknown_provider(self, settings: WalletSessionSettings) -> None:
        """Unknown provider names are an init error."""
        with pytest.raises(ProviderInitError, match="Unknown provider"):
            create_provider("magic", settings)


# ── External wallet ─────────────────────────────────────────────────


class TestExternalWalletProvider:
    """Tests for ExternalWalletProvider."""

    def test_initialize_requires_wallet(self, settings: WalletSessionSettings) -> None:
        """No injected wallet is an init error."""
        provider = ExternalWalletProvider(None, settings)
        with pytest.raises(ProviderInitError):
            asyncio.run(provider.initialize())

    def test_initialize_restores_without_prompting(self, settings: WalletSessionSettings) -> None:
        """Initialize reads existing accounts but never requests them."""
        wallet = FakeWallet(preconnected=True)
        provider = ExternalWalletProvider(wallet, settings)

        asyncio.run(provider.initialize())

        assert provider.is_connected
        assert asyncio.run(provider.get_address()) == ADDRESS
        assert "eth_requestAccounts" not in wallet.methods()

    def test_initialize_is_idempotent(self, settings: WalletSessionSettings) -> None:
        """A second initialize does not touch the wallet."""
        wallet = FakeWallet()
        provider = ExternalWalletProvider(wallet, settings)

        async def run() -> None:
            await provider.initialize()
            await provider.initialize()

        asyncio.run(run())
        assert wallet.methods() == ["eth_accounts"]

    def test_connect(self, settings: WalletSessionSettings) -> None:
        """Connect requests accounts and issues no token."""
        provider = ExternalWalletProvider(FakeWallet(), settings)

        result = asyncio.run(provider.connect())

        assert result.success
        assert result.address == ADDRESS
        assert result.credential is None
        assert provider.is_connected

    def test_connect_rejected(self, settings: WalletSessionSettings) -> None:
        """A user rejection is returned, not raised."""
        provider = ExternalWalletProvider(FakeWallet(reject_connect=True), settings)

        result = asyncio.run(provider.connect())

        assert not result.success
        assert result.error.kind is ErrorKind.CONNECTION
        assert "rejected" in result.error.message
        assert not provider.is_connected

    def test_connect_switches_chain(self, settings: WalletSessionSettings) -> None:
        """A wallet on another chain is asked to switch."""
        wallet = FakeWallet(chain_id=1)
        provider = ExternalWalletProvider(wallet, settings)

        result = asyncio.run(provider.connect())

        assert result.success
        assert wallet.chain_id == settings.network.chain_id
        assert "wallet_switchEthereumChain" in wallet.methods()

    def test_connect_adds_unknown_chain(self, settings: WalletSessionSettings) -> None:
        """A wallet that does not know the chain is asked to add it."""
        wallet = FakeWallet(chain_id=1, unknown_chain=True)
        provider = ExternalWalletProvider(wallet, settings)

        result = asyncio.run(provider.connect())

        assert result.success
        add_params = dict(wallet.calls)["wallet_addEthereumChain"][0]
        assert add_params["chainId"] == hex(settings.network.chain_id)
        assert add_params["rpcUrls"] == [settings.network.rpc_url]

    def test_connect_wrong_network(self, settings: WalletSessionSettings) -> None:
        """Refusing to switch networks fails the connection."""
        provider = ExternalWalletProvider(FakeWallet(chain_id=1, reject_switch=True), settings)

        result = asyncio.run(provider.connect())

        assert not result.success
        assert result.error.kind is ErrorKind.CONNECTION
        assert "Wrong network" in result.error.message
        assert not provider.is_connected

    def test_sign(self, settings: WalletSessionSettings) -> None:
        """Signing uses personal_sign with the connected address."""
        wallet = FakeWallet()
        provider = ExternalWalletProvider(wallet, settings)

        async def run() -> str:
            await provider.connect()
            return await provider.sign("hello")

        assert asyncio.run(run()) == "0xsig0005"
        assert wallet.calls[-1] == ("personal_sign", ["hello", ADDRESS])

    def test_sign_rejected(self, settings: WalletSessionSettings) -> None:
        """A refused signature raises SigningError."""
        provider = ExternalWalletProvider(FakeWallet(reject_sign=True), settings)

        async def run() -> str:
            await provider.connect()
            return await provider.sign("hello")

        with pytest.raises(SigningError, match="rejected"):
            asyncio.run(run())

    def test_sign_without_connection(self, settings: WalletSessionSettings) -> None:
        """Signing before connecting raises SigningError."""
        provider = ExternalWalletProvider(FakeWallet(), settings)
        with pytest.raises(SigningError, match="No active connection"):
            asyncio.run(provider.sign("hello"))

    def test_disconnect_disposes(self, settings: WalletSessionSettings) -> None:
        """Disconnect clears handles and the instance cannot be revived."""
        wallet = FakeWallet()
        provider = ExternalWalletProvider(wallet, settings)

        async def run() -> None:
            await provider.connect()
            await provider.disconnect()

        asyncio.run(run())

        assert not provider.is_connected
        assert asyncio.run(provider.get_address()) is None
        assert provider.lifecycle is ProviderLifecycle.DISPOSED
        assert wallet.closed
        with pytest.raises(ProviderInitError, match="disposed"):
            asyncio.run(provider.initialize())

    def test_capabilities(self, settings: WalletSessionSettings) -> None:
        """External wallets can switch accounts."""
        caps = ExternalWalletProvider(FakeWallet(), settings).get_capabilities()
        assert caps.can_sign
        assert caps.can_transact
        assert caps.can_switch_accounts
        assert not caps.is_authentication_only

    def test_create_signer(self, settings: WalletSessionSettings) -> None:
        """The signer routes to the provider's wallet and configured RPC."""
        wallet = FakeWallet()
        provider = ExternalWalletProvider(wallet, settings)
        asyncio.run(provider.connect())

        signer = provider.create_signer()

        assert signer.wallet is wallet
        assert signer.address == ADDRESS
        assert signer.chain_id == settings.network.chain_id
        assert signer.rpc_url == settings.network.rpc_url


# ── Deep link ───────────────────────────────────────────────────────


class _PairingWallet(FakeWallet):
    """Wallet that exposes accounts after a number of polls."""

    def __init__(self, polls_until_paired: int) -> None:
        super().__init__()
        self.polls_until_paired = polls_until_paired

    async def request(self, method: str, params: list[Any] | None = None) -> Any:
        if method == "eth_accounts":
            self.polls_until_paired -= 1
            self.preconnected = self.polls_until_paired <= 0
        return await super().request(method, params)


class TestDeepLinkWalletProvider:
    """Tests for DeepLinkWalletProvider."""

    def test_requires_wallet_link(self) -> None:
        """A missing deep link base URL is an init error."""
        provider = DeepLinkWalletProvider(FakeWallet(), WalletSessionSettings())
        with pytest.raises(ProviderInitError, match="wallet_link"):
            asyncio.run(provider.initialize())

    def test_opens_link_and_polls(self, settings: WalletSessionSettings) -> None:
        """Connect opens the deep link and waits for the pairing."""
        settings.deep_link.pairing_uri = "wc:abc@2?relay=irn"
        opened: list[str] = []
        wallet = _PairingWallet(polls_until_paired=3)
        provider = DeepLinkWalletProvider(wallet, settings, opener=opened.append)

        result = asyncio.run(provider.connect())

        assert result.success
        assert result.address == ADDRESS
        assert opened == ["https://wallet.example.com/wc?uri=wc%3Aabc%402%3Frelay%3Dirn"]
        assert wallet.methods().count("eth_accounts") == 3

    def test_times_out(self, settings: WalletSessionSettings) -> None:
        """A wallet that never pairs fails after the timeout."""
        now = [0.0]

        async def fake_sleep(delay: float) -> None:
            now[0] += delay

        provider = DeepLinkWalletProvider(
            FakeWallet(),
            settings,
            opener=lambda url: None,
            sleep=fake_sleep,
            clock=lambda: now[0],
        )
        settings.deep_link.poll_interval_seconds = 10.0

        result = asyncio.run(provider.connect())

        assert not result.success
        assert result.error.kind is ErrorKind.CONNECTION
        assert "Timed out" in result.error.message
        assert now[0] >= settings.deep_link.connect_timeout_seconds


# ── Host wallet ─────────────────────────────────────────────────────


class TestHostWalletProvider:
    """Tests for HostWalletProvider."""

    def test_requires_host(self, settings: WalletSessionSettings) -> None:
        """Without a host context the provider cannot start."""
        with pytest.raises(ProviderInitError):
            asyncio.run(HostWalletProvider(None, settings).initialize())

    def test_adopts_host_address_and_token(self, settings: WalletSessionSettings) -> None:
        """The host's address, token and profile are used as-is."""
        host = HostContext(address=ADDRESS, token="host-token", profile={"fid": 42})
        provider = HostWalletProvider(host, settings)

        result = asyncio.run(provider.connect())

        assert result.success
        assert result.address == ADDRESS
        assert result.credential == "host-token"
        assert result.profile == {"fid": 42}

    def test_host_without_address(self, settings: WalletSessionSettings) -> None:
        """A host that has not connected a wallet fails the connection."""
        provider = HostWalletProvider(HostContext(address=""), settings)

        result = asyncio.run(provider.connect())

        assert not result.success
        assert result.error.kind is ErrorKind.CONNECTION

    def test_authentication_only_without_wallet(self, settings: WalletSessionSettings) -> None:
        """Without a host wallet the provider cannot sign."""
        provider = HostWalletProvider(HostContext(address=ADDRESS, token="t"), settings)
        asyncio.run(provider.connect())

        caps = provider.get_capabilities()
        assert caps.is_authentication_only
        assert not caps.can_sign
        with pytest.raises(SigningError, match="does not expose signing"):
            asyncio.run(provider.sign("hello"))

    def test_signs_through_host_wallet(self, settings: WalletSessionSettings) -> None:
        """A host wallet enables signing."""
        wallet = FakeWallet()
        provider = HostWalletProvider(HostContext(address=ADDRESS, wallet=wallet), settings)

        async def run() -> str:
            await provider.connect()
            return await provider.sign("hi")

        assert asyncio.run(run()) == "0xsig0002"
        assert not provider.get_capabilities().is_authentication_only


# ── Social login ────────────────────────────────────────────────────


@pytest.fixture()
def identity() -> IdentityService:
    """Fake identity service."""
    return IdentityService()


def _social(
    settings: WalletSessionSettings,
    identity: IdentityService,
    opener: Any,
    pending_store: StorageBackend | None = None,
) -> SocialLoginProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(identity))
    return SocialLoginProvider(settings, opener=opener, http_client=client, pending_store=pending_store)


class TestSocialLoginProvider:
    """Tests for SocialLoginProvider."""

    def test_requires_configuration(self) -> None:
        """Missing identity service configuration is an init error."""
        provider = SocialLoginProvider(WalletSessionSettings())
        with pytest.raises(ProviderInitError, match="client_id"):
            asyncio.run(provider.initialize())

    def test_authorize_url_uses_pkce(self, settings: WalletSessionSettings, identity: IdentityService) -> None:
        """The authorize URL carries an S256 challenge and the login hint."""
        provider = _social(settings, identity, None)
        url = provider.build_authorize_url("https://app.example.com/login", hint="user@example.com")
        params = parse_qs(urlparse(url).query)

        assert url.startswith("https://id.example.com/authorize?")
        assert params["client_id"] == ["client-123"]
        assert params["code_challenge_method"] == ["S256"]
        assert params["login_hint"] == ["user@example.com"]
        assert params["state"] == [provider._pending["state"]]

    def test_redirect_mode_connect_is_pending(
        self, settings: WalletSessionSettings, identity: IdentityService
    ) -> None:
        """With a redirect URI configured the login continues out of band."""
        settings.social.redirect_uri = "https://app.example.com/login"
        opened: list[str] = []
        provider = _social(settings, identity, opened.append)

        result = asyncio.run(provider.connect())

        assert result.pending
        assert not result.success
        assert result.error is None
        assert len(opened) == 1
        assert "redirect_uri=https%3A%2F%2Fapp.example.com%2Flogin" in opened[0]

    def test_resume_redirect_exchanges_code(
        self, settings: WalletSessionSettings, identity: IdentityService
    ) -> None:
        """The redirect's code is exchanged with the PKCE verifier."""
        settings.social.redirect_uri = "https://app.example.com/login"
        provider = _social(settings, identity, lambda url: None)

        async def run() -> None:
            await provider.connect()
            state = provider._pending["state"]
            verifier = provider._pending["verifier"]
            await provider.resume_redirect({"code": "auth-code", "state": state})
            assert identity.token_form()["code_verifier"] == [verifier]

        asyncio.run(run())

        form = identity.token_form()
        assert form["code"] == ["auth-code"]
        assert form["grant_type"] == ["authorization_code"]
        assert provider.is_connected
        assert asyncio.run(provider.get_token()) == "id-token-1"
        assert provider.get_profile() == {"email": "user@example.com"}

    def test_resume_redirect_state_mismatch(
        self, settings: WalletSessionSettings, identity: IdentityService
    ) -> None:
        """A forged state is refused."""
        settings.social.redirect_uri = "https://app.example.com/login"
        provider = _social(settings, identity, lambda url: None)

        async def run() -> None:
            await provider.connect()
            await provider.resume_redirect({"code": "auth-code", "state": "forged"})

        with pytest.raises(WalletConnectionError, match="state mismatch"):
            asyncio.run(run())
        assert not provider.is_connected
        assert identity.token_requests() == []

    def test_resume_redirect_error(self, settings: WalletSessionSettings, identity: IdentityService) -> None:
        """An error from the identity service is raised."""
        provider = _social(settings, identity, None)
        with pytest.raises(WalletConnectionError, match="access_denied"):
            asyncio.run(provider.resume_redirect({"error": "access_denied"}))

    def test_resume_redirect_without_login_in_progress(
        self, settings: WalletSessionSettings, identity: IdentityService
    ) -> None:
        """A redirect nobody started is refused before any code exchange."""
        settings.social.redirect_uri = "https://app.example.com/login"
        provider = _social(settings, identity, None, pending_store=MemoryStorage())

        with pytest.raises(WalletConnectionError, match="No login in progress"):
            asyncio.run(provider.resume_redirect({"code": "foreign-code", "state": "forged"}))

        assert not provider.is_connected
        assert identity.token_requests() == []

    def test_resume_redirect_after_reload(
        self, settings: WalletSessionSettings, identity: IdentityService
    ) -> None:
        """A new instance completes the attempt saved by the one that started it."""
        settings.social.redirect_uri = "https://app.example.com/login"
        store = MemoryStorage()
        opened: list[str] = []
        before = _social(settings, identity, opened.append, pending_store=store)
        asyncio.run(before.connect())
        state = parse_qs(urlparse(opened[0]).query)["state"][0]
        verifier = before._pending["verifier"]

        after = _social(settings, identity, None, pending_store=store)
        asyncio.run(after.resume_redirect({"code": "auth-code", "state": state}))

        form = identity.token_form()
        assert form["code_verifier"] == [verifier]
        assert form["redirect_uri"] == ["https://app.example.com/login"]
        assert after.is_connected
        assert asyncio.run(after.get_address()) == ADDRESS
        assert asyncio.run(store.get(SocialLoginProvider.pending_key)) is None

    def test_saved_attempt_is_used_once(
        self, settings: WalletSessionSettings, identity: IdentityService
    ) -> None:
        """Replaying a completed redirect is refused."""
        settings.social.redirect_uri = "https://app.example.com/login"
        store = MemoryStorage()
        provider = _social(settings, identity, lambda url: None, pending_store=store)

        async def run() -> None:
            await provider.connect()
            params = {"code": "auth-code", "state": provider._pending["state"]}
            await provider.resume_redirect(params)
            await _social(settings, identity, None, pending_store=store).resume_redirect(params)

        with pytest.raises(WalletConnectionError, match="No login in progress"):
            asyncio.run(run())
        assert len(identity.token_requests()) == 1

    def test_reload_with_forged_state(
        self, settings: WalletSessionSettings, identity: IdentityService
    ) -> None:
        """A saved attempt does not accept another attempt's state."""
        settings.social.redirect_uri = "https://app.example.com/login"
        store = MemoryStorage()
        asyncio.run(_social(settings, identity, lambda url: None, pending_store=store).connect())

        after = _social(settings, identity, None, pending_store=store)
        with pytest.raises(WalletConnectionError, match="state mismatch"):
            asyncio.run(after.resume_redirect({"code": "auth-code", "state": "forged"}))

        assert identity.token_requests() == []
        assert asyncio.run(store.get(SocialLoginProvider.pending_key)) is None

    def test_disconnect_drops_saved_attempt(
        self, settings: WalletSessionSettings, identity: IdentityService
    ) -> None:
        """An attempt abandoned by disconnect cannot be completed later."""
        settings.social.redirect_uri = "https://app.example.com/login"
        store = MemoryStorage()
        provider = _social(settings, identity, lambda url: None, pending_store=store)

        async def run() -> None:
            await provider.connect()
            await provider.disconnect()

        asyncio.run(run())

        assert asyncio.run(store.get(SocialLoginProvider.pending_key)) is None
        assert provider.lifecycle is ProviderLifecycle.DISPOSED

    def test_native_connect_captures_redirect(
        self, settings: WalletSessionSettings, identity: IdentityService
    ) -> None:
        """Without a redirect URI the localhost capture server completes the login."""

        def browser(url: str) -> None:
            params = parse_qs(urlparse(url).query)
            callback = f"{params['redirect_uri'][0]}?code=native-code&state={params['state'][0]}"
            threading.Thread(target=lambda: urlopen(callback, timeout=5).read(), daemon=True).start()

        provider = _social(settings, identity, browser)

        result = asyncio.run(provider.connect())

        assert result.success
        assert result.address == ADDRESS
        assert result.credential == "id-token-1"
        assert result.profile == {"email": "user@example.com"}
        assert identity.token_form()["code"] == ["native-code"]

    def test_native_connect_timeout(self, settings: WalletSessionSettings, identity: IdentityService) -> None:
        """A browser that never comes back times out."""
        settings.social.auth_timeout_seconds = 0.2
        provider = _social(settings, identity, lambda url: None)

        result = asyncio.run(provider.connect())

        assert not result.success
        assert result.error.kind is ErrorKind.CONNECTION
        assert "timed out" in result.error.message

    def test_sign_and_wallet_rpc(self, settings: WalletSessionSettings, identity: IdentityService) -> None:
        """Signing and RPC calls go through the embedded wallet API."""
        settings.social.redirect_uri = "https://app.example.com/login"
        provider = _social(settings, identity, lambda url: None)

        async def run() -> tuple[str, Any, Any]:
            await provider.connect()
            await provider.resume_redirect({"code": "c", "state": provider._pending["state"]})
            signature = await provider.sign("hello")
            signer = provider.create_signer()
            chain = await signer.wallet.request("eth_chainId")
            block = await signer.wallet.request("eth_blockNumber")
            return signature, chain, block

        signature, chain, block = asyncio.run(run())

        assert signature == "0xsocial-hello"
        assert chain == hex(settings.network.chain_id)
        assert block == "0x10"
        assert isinstance(provider.create_signer().wallet, EmbeddedWalletClient)
