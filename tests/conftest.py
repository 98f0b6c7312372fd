"""Pytest configuration and fixtures."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import os

from typing import TYPE_CHECKING, Any

import pytest

from tests.fakes import BackendRecorder, FakeProvider, mock_client
from walletsession.backend import BackendSessionClient
from walletsession.config import WalletSessionSettings, clear_settings
from walletsession.orchestrator import AuthOrchestrator
from walletsession.providers import select_provider_name
from walletsession.redirect import reset_pending_redirect_attempts
from walletsession.resource_cache import ResourceCache
from walletsession.token_store import MemoryStorage, TokenStore
from walletsession.types import ExecutionContext


if TYPE_CHECKING:
    from collections.abc import Callable, Generator
    from pathlib import Path


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Keep user config, env vars and shared state out of every test."""
    for key in list(os.environ):
        if key.startswith("WALLETSESSION_"):
            monkeypatch.delenv(key)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("APPDATA", str(tmp_path))
    monkeypatch.chdir(tmp_path)
    clear_settings()
    reset_pending_redirect_attempts()
    yield
    clear_settings()
    reset_pending_redirect_attempts()


@pytest.fixture()
def settings() -> WalletSessionSettings:
    """Settings pointing at fake endpoints, with in-memory storage."""
    return WalletSessionSettings(
        social={
            "client_id": "client-123",
            "authorize_url": "https://id.example.com/authorize",
            "token_url": "https://id.example.com/token",
            "wallet_url": "https://wallet.example.com/v1/wallet",
        },
        backend={"base_url": "http://backend.test"},
        storage={"durable_backend": "memory"},
        redirect={"retry_delays": [0.0, 0.0]},
        deep_link={"wallet_link": "https://wallet.example.com/wc", "poll_interval_seconds": 0.01},
    )


@pytest.fixture()
def token_store() -> TokenStore:
    """TokenStore over two in-memory scopes."""
    return TokenStore(durable=MemoryStorage(), session=MemoryStorage())


@pytest.fixture()
def recorder() -> BackendRecorder:
    """Recording backend."""
    return BackendRecorder()


@pytest.fixture()
def backend(
    settings: WalletSessionSettings,
    token_store: TokenStore,
    recorder: BackendRecorder,
) -> BackendSessionClient:
    """Backend client talking to the recording backend."""
    return BackendSessionClient(
        token_store,
        settings.backend,
        http_client=mock_client(recorder, settings.backend.base_url),
    )


@pytest.fixture()
def make_orchestrator(
    settings: WalletSessionSettings,
    token_store: TokenStore,
    backend: BackendSessionClient,
) -> Callable[..., AuthOrchestrator]:
    """Build an orchestrator whose provider factory hands out FakeProviders.

    Every factory call builds a new provider from ``provider_kwargs``;
    the instances are collected on ``orchestrator.created``.
    """

    def _make(
        context: ExecutionContext = ExecutionContext.STANDARD,
        **provider_kwargs: Any,
    ) -> AuthOrchestrator:
        created: list[FakeProvider] = []

        def factory(ctx: ExecutionContext) -> FakeProvider:
            kwargs = dict(provider_kwargs)
            kwargs.setdefault("name", select_provider_name(ctx))
            provider = FakeProvider(settings, **kwargs)
            created.append(provider)
            return provider

        orchestrator = AuthOrchestrator(
            settings,
            backend=backend,
            token_store=token_store,
            cache=ResourceCache(),
            provider_factory=factory,
            context_detector=lambda: context,
        )
        orchestrator.created = created  # type: ignore[attr-defined]
        return orchestrator

    return _make
