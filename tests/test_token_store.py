"""Unit tests for credential storage backends and the TokenStore."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import asyncio
import json
import os
import sys

from typing import TYPE_CHECKING
from unittest.mock import patch

import pytest

from walletsession.config import StorageSettings
from walletsession.exceptions import TokenStorageError
from walletsession.token_store import (
    FileStorage,
    MemoryStorage,
    StorageBackend,
    TokenStore,
    create_token_store,
    get_storage_backend,
)


if TYPE_CHECKING:
    from pathlib import Path


class BrokenStorage(StorageBackend):
    """Scope that fails every operation."""

    name = "broken"

    async def get(self, key: str) -> str | None:
        raise OSError("storage unavailable")

    async def set(self, key: str, value: str) -> None:
        raise OSError("storage unavailable")

    async def delete(self, key: str) -> None:
        raise OSError("storage unavailable")


class UndeletableStorage(MemoryStorage):
    """Scope that reads and writes but refuses deletes."""

    name = "undeletable"

    async def delete(self, key: str) -> None:
        raise OSError("delete refused")


# ── Fixtures ────────────────────────────────────────────────────────


@pytest.fixture()
def durable() -> MemoryStorage:
    """Durable scope stand-in."""
    return MemoryStorage()


@pytest.fixture()
def session_scope() -> MemoryStorage:
    """Tab scope stand-in."""
    return MemoryStorage()


@pytest.fixture()
def store(durable: MemoryStorage, session_scope: MemoryStorage) -> TokenStore:
    """TokenStore over two memory scopes."""
    return TokenStore(durable=durable, session=session_scope)


# ── MemoryStorage ───────────────────────────────────────────────────


class TestMemoryStorage:
    """Tests for MemoryStorage."""

    def test_set_get_delete(self) -> None:
        """Values can be written, read and removed."""
        storage = MemoryStorage()

        async def run() -> tuple[str | None, str | None]:
            await storage.set("k", "v")
            before = await storage.get("k")
            await storage.delete("k")
            await storage.delete("k")
            return before, await storage.get("k")

        assert asyncio.run(run()) == ("v", None)


# ── FileStorage ─────────────────────────────────────────────────────


class TestFileStorage:
    """Tests for FileStorage."""

    def test_persists_across_instances(self, tmp_path: Path) -> None:
        """A new instance reads what an earlier one wrote."""
        path = tmp_path / "nested" / "storage.json"
        asyncio.run(FileStorage(path).set("auth_token", "tok"))

        assert asyncio.run(FileStorage(path).get("auth_token")) == "tok"
        assert json.loads(path.read_text(encoding="utf-8")) == {"auth_token": "tok"}

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_file_is_private(self, tmp_path: Path) -> None:
        """The storage file is readable by the owner only."""
        path = tmp_path / "storage.json"
        asyncio.run(FileStorage(path).set("auth_token", "tok"))
        assert os.stat(path).st_mode & 0o777 == 0o600

    def test_missing_and_corrupt_files(self, tmp_path: Path) -> None:
        """Missing or corrupt files read as empty."""
        path = tmp_path / "storage.json"
        storage = FileStorage(path)
        assert asyncio.run(storage.get("auth_token")) is None

        path.write_text("{not json", encoding="utf-8")
        assert asyncio.run(storage.get("auth_token")) is None

    def test_delete_keeps_other_keys(self, tmp_path: Path) -> None:
        """Deleting one key leaves the rest of the file."""
        storage = FileStorage(tmp_path / "storage.json")

        async def run() -> None:
            await storage.set("a", "1")
            await storage.set("b", "2")
            await storage.delete("a")

        asyncio.run(run())
        assert asyncio.run(storage.get("a")) is None
        assert asyncio.run(storage.get("b")) == "2"


# ── Factory ─────────────────────────────────────────────────────────


class TestFactory:
    """Tests for get_storage_backend and create_token_store."""

    def test_backends(self, tmp_path: Path) -> None:
        """Known names build the matching backend."""
        assert isinstance(get_storage_backend("memory"), MemoryStorage)
        file_backend = get_storage_backend("file", path=tmp_path / "s.json")
        assert isinstance(file_backend, FileStorage)
        assert file_backend.path == tmp_path / "s.json"

    def test_unknown_backend(self) -> None:
        """Unknown names raise ValueError."""
        with pytest.raises(ValueError, match="Unknown storage backend"):
            get_storage_backend("redis")

    def test_keyring_backend_without_package(self) -> None:
        """The keyring backend explains how to install its extra."""
        with (
            patch.dict(sys.modules, {"keyring": None}),
            pytest.raises(ImportError, match=r"walletsession\[keyring\]"),
        ):
            get_storage_backend("keyring")

    def test_create_from_settings(self, tmp_path: Path) -> None:
        """Settings choose the durable scope and the key."""
        settings = StorageSettings(
            durable_backend="file",
            file_path=str(tmp_path / "tokens.json"),
            token_key="session_token",
        )

        store = create_token_store(settings)

        assert isinstance(store.durable, FileStorage)
        assert isinstance(store.session, MemoryStorage)
        assert store.key == "session_token"


# ── TokenStore ──────────────────────────────────────────────────────


class TestTokenStore:
    """Tests for TokenStore."""

    def test_writes_both_scopes(
        self, store: TokenStore, durable: MemoryStorage, session_scope: MemoryStorage
    ) -> None:
        """set_token mirrors into both scopes."""
        asyncio.run(store.set_token("tok"))
        assert asyncio.run(durable.get("auth_token")) == "tok"
        assert asyncio.run(session_scope.get("auth_token")) == "tok"

    def test_reads_durable_first(
        self, store: TokenStore, durable: MemoryStorage, session_scope: MemoryStorage
    ) -> None:
        """The durable scope wins when both hold a value."""
        asyncio.run(durable.set("auth_token", "durable"))
        asyncio.run(session_scope.set("auth_token", "tab"))
        assert asyncio.run(store.get_token()) == "durable"

    def test_falls_back_to_tab_scope(
        self, store: TokenStore, durable: MemoryStorage
    ) -> None:
        """A durable scope cleared externally falls back to the tab scope."""
        asyncio.run(store.set_token("tok"))
        asyncio.run(durable.delete("auth_token"))
        assert asyncio.run(store.get_token()) == "tok"

    def test_clear_removes_both(
        self, store: TokenStore, durable: MemoryStorage, session_scope: MemoryStorage
    ) -> None:
        """clear_token empties both scopes even if one was already empty."""
        asyncio.run(session_scope.set("auth_token", "tok"))
        asyncio.run(store.clear_token())
        assert asyncio.run(durable.get("auth_token")) is None
        assert asyncio.run(session_scope.get("auth_token")) is None
        assert asyncio.run(store.get_token()) is None

    def test_one_broken_scope_is_tolerated(self, session_scope: MemoryStorage) -> None:
        """Reads and writes skip a failing scope."""
        store = TokenStore(durable=BrokenStorage(), session=session_scope)

        asyncio.run(store.set_token("tok"))
        assert asyncio.run(store.get_token()) == "tok"

    def test_partial_clear_raises(self, session_scope: MemoryStorage) -> None:
        """A scope that keeps the credential fails the clear after the other is cleared."""
        durable = UndeletableStorage()
        store = TokenStore(durable=durable, session=session_scope)
        asyncio.run(store.set_token("tok"))

        with pytest.raises(TokenStorageError, match="every storage scope"):
            asyncio.run(store.clear_token())

        assert asyncio.run(session_scope.get("auth_token")) is None
        assert asyncio.run(durable.get("auth_token")) == "tok"

    def test_all_scopes_broken(self) -> None:
        """Failing every scope raises TokenStorageError."""
        store = TokenStore(durable=BrokenStorage(), session=BrokenStorage())

        with pytest.raises(TokenStorageError, match="persisted"):
            asyncio.run(store.set_token("tok"))
        with pytest.raises(TokenStorageError, match="cleared"):
            asyncio.run(store.clear_token())
        assert asyncio.run(store.get_token()) is None
