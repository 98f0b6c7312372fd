"""Credential persistence across two storage scopes.

Provides the StorageBackend ABC, in-memory, JSON-file and OS keyring
backends, and the TokenStore that mirrors the credential into a durable
scope and a tab-scoped one.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import tempfile

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from .challenge import inspect_token
from .exceptions import TokenStorageError


logger = logging.getLogger("walletsession.storage")


class StorageBackend(ABC):
    """Abstract key/value storage scope.

    All methods are async to support both local and OS-backed stores.
    """

    name: str = "storage"

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Read a value.

        Parameters
        ----------
        key : str
            Storage key.

        Returns
        -------
        str or None
            The stored value, or None if absent.
        """

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Write a value.

        Parameters
        ----------
        key : str
            Storage key.
        value : str
            Value to store.
        """

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete a value. Deleting a missing key is not an error.

        Parameters
        ----------
        key : str
            Storage key.
        """


class MemoryStorage(StorageBackend):
    """In-memory storage living as long as the process (the "tab")."""

    name = "memory"

    def __init__(self) -> None:
        """Initialize the memory storage."""
        self._values: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> str | None:
        """Read a value from memory."""
        async with self._lock:
            return self._values.get(key)

    async def set(self, key: str, value: str) -> None:
        """Write a value to memory."""
        async with self._lock:
            self._values[key] = value

    async def delete(self, key: str) -> None:
        """Delete a value from memory."""
        async with self._lock:
            self._values.pop(key, None)


class FileStorage(StorageBackend):
    """Durable storage in a JSON file readable only by the current user.

    Parameters
    ----------
    path : str or Path
        Location of the JSON file (``~`` is expanded).
    """

    name = "file"

    def __init__(self, path: str | Path = "~/.config/walletsession/storage.json") -> None:
        """Initialize the file storage."""
        self._path = Path(path).expanduser()
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        """Path of the backing file."""
        return self._path

    def _read_all(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Discarding corrupt storage file %s", self._path)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".storage-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self._path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise

    async def get(self, key: str) -> str | None:
        """Read a value from the file."""
        loop = asyncio.get_running_loop()
        async with self._lock:
            data = await loop.run_in_executor(None, self._read_all)
        return data.get(key)

    async def set(self, key: str, value: str) -> None:
        """Write a value to the file."""
        loop = asyncio.get_running_loop()
        async with self._lock:
            data = await loop.run_in_executor(None, self._read_all)
            data[key] = value
            await loop.run_in_executor(None, self._write_all, data)

    async def delete(self, key: str) -> None:
        """Delete a value from the file."""
        loop = asyncio.get_running_loop()
        async with self._lock:
            data = await loop.run_in_executor(None, self._read_all)
            if key in data:
                del data[key]
                await loop.run_in_executor(None, self._write_all, data)


class KeyringStorage(StorageBackend):
    """OS keyring-backed durable storage.

    Requires the ``keyring`` package: ``pip install walletsession[keyring]``

    Parameters
    ----------
    service_name : str
        Service name for keyring entries (default "walletsession").
    """

    name = "keyring"

    def __init__(self, service_name: str = "walletsession") -> None:
        """Initialize the keyring storage."""
        try:
            import keyring as _keyring
        except ImportError:
            msg = "Install keyring for OS credential storage: pip install walletsession[keyring]"
            raise ImportError(msg) from None
        self._service_name = service_name
        self._keyring = _keyring

    async def get(self, key: str) -> str | None:
        """Read a value from the OS keyring."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._keyring.get_password, self._service_name, key)

    async def set(self, key: str, value: str) -> None:
        """Write a value to the OS keyring."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._keyring.set_password, self._service_name, key, value)

    async def delete(self, key: str) -> None:
        """Delete a value from the OS keyring."""
        from keyring.errors import PasswordDeleteError

        loop = asyncio.get_running_loop()
        with contextlib.suppress(PasswordDeleteError):
            await loop.run_in_executor(
                None, self._keyring.delete_password, self._service_name, key
            )


def get_storage_backend(backend: str = "memory", **kwargs: Any) -> StorageBackend:
    """Factory function for storage backends.

    Parameters
    ----------
    backend : str
        Storage backend: "memory", "file", or "keyring".
    **kwargs : Any
        ``path`` for the file backend, ``service_name`` for keyring.

    Returns
    -------
    StorageBackend
        A new storage backend instance.
    """
    if backend == "memory":
        return MemoryStorage()
    if backend == "file":
        return FileStorage(path=kwargs.get("path", "~/.config/walletsession/storage.json"))
    if backend == "keyring":
        return KeyringStorage(service_name=kwargs.get("service_name", "walletsession"))
    msg = f"Unknown storage backend: {backend}"
    raise ValueError(msg)


class TokenStore:
    """Mirrors the session credential into a durable and a tab-scoped store.

    The session degrades gracefully when one scope is unavailable or cleared
    externally: reads fall back to the other scope, and writes or clears
    that fail on one scope are logged and skipped. ``TokenStorageError`` is
    raised only when every scope fails.

    Parameters
    ----------
    durable : StorageBackend
        Scope surviving restarts (file or keyring).
    session : StorageBackend
        Scope living as long as the process.
    key : str
        Key the credential is stored under (default ``"auth_token"``).
    """

    def __init__(
        self,
        durable: StorageBackend,
        session: StorageBackend,
        key: str = "auth_token",
    ) -> None:
        """Initialize the token store."""
        self.durable = durable
        self.session = session
        self.key = key

    @property
    def _scopes(self) -> tuple[StorageBackend, StorageBackend]:
        return (self.durable, self.session)

    async def set_token(self, token: str) -> None:
        """Write the credential to both scopes.

        Raises
        ------
        TokenStorageError
            If neither scope accepted the write.
        """
        failures = 0
        for scope in self._scopes:
            try:
                await scope.set(self.key, token)
            except Exception as exc:
                failures += 1
                logger.warning("Token write to %s storage failed: %s", scope.name, exc)
        if failures == len(self._scopes):
            msg = "Credential could not be persisted to any storage scope"
            raise TokenStorageError(msg, key=self.key)
        logger.debug("Stored %s credential", inspect_token(token).kind)

    async def get_token(self) -> str | None:
        """Read the credential, durable scope first.

        Returns
        -------
        str or None
            The credential, or None if neither scope holds one.
        """
        for scope in self._scopes:
            try:
                value = await scope.get(self.key)
            except Exception as exc:
                logger.warning("Token read from %s storage failed: %s", scope.name, exc)
                continue
            if value:
                return value
        return None

    async def clear_token(self) -> None:
        """Delete the credential from both scopes unconditionally.

        Both scopes are cleared even if one already reads as empty, and a
        failing scope does not stop the other from being cleared.

        Raises
        ------
        TokenStorageError
            If any scope could not be cleared.
        """
        failures = 0
        for scope in self._scopes:
            try:
                await scope.delete(self.key)
            except Exception as exc:
                failures += 1
                logger.warning("Token clear on %s storage failed: %s", scope.name, exc)
        if failures:
            msg = "Credential could not be cleared from every storage scope"
            raise TokenStorageError(msg, key=self.key)
        logger.debug("Cleared credential from all storage scopes")


def create_token_store(settings: Any) -> TokenStore:
    """Build the TokenStore described by the ``storage`` settings section.

    Parameters
    ----------
    settings : StorageSettings
        The storage configuration.

    Returns
    -------
    TokenStore
        Durable scope from settings, in-memory tab scope.
    """
    durable = get_storage_backend(
        settings.durable_backend,
        path=settings.file_path,
        service_name=settings.keyring_service,
    )
    return TokenStore(durable=durable, session=MemoryStorage(), key=settings.token_key)
