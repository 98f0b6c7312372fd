"""Client for the backend that verifies credentials and issues sessions."""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from typing import TYPE_CHECKING, Any

import httpx

from .challenge import inspect_token
from .config import get_settings
from .exceptions import NetworkError, TokenStorageError
from .log import redact_sensitive_data
from .types import ErrorKind, LoginResult, SessionError, SessionUser


if TYPE_CHECKING:
    from collections.abc import Callable

    from .config import BackendSettings
    from .token_store import TokenStore


logger = logging.getLogger("walletsession.backend")

# Backend fields mapped onto SessionUser attributes.
_USER_FIELDS = {
    "id": ("userId", "id"),
    "display_address": ("walletAddress", "address"),
    "email": ("email",),
    "display_name": ("displayName", "name"),
}


def build_user(
    data: dict[str, Any],
    claimed_address: str,
    source_provider: str,
    provider_profile: dict[str, Any] | None = None,
) -> SessionUser:
    """Build the session user from a backend record.

    Provider-only profile fields are merged in; on a shared key the
    backend value wins.

    Parameters
    ----------
    data : dict
        Backend user record.
    claimed_address : str
        Address the provider reported.
    source_provider : str
        Name of the provider that produced the credential.
    provider_profile : dict, optional
        Profile fields only the provider knows.
    """
    merged = {**(provider_profile or {}), **data}
    values: dict[str, Any] = {}
    for attr, keys in _USER_FIELDS.items():
        values[attr] = next((merged[k] for k in keys if merged.get(k)), None)
    consumed = {k for keys in _USER_FIELDS.values() for k in keys}
    return SessionUser(
        id=str(values["id"] or claimed_address),
        display_address=values["display_address"] or claimed_address,
        email=values["email"],
        display_name=values["display_name"],
        source_provider=source_provider,
        extra={k: v for k, v in merged.items() if k not in consumed},
    )


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return f"Login failed with status {resp.status_code}"


class BackendSessionClient:
    """Verifies credentials with the backend and wraps authenticated requests.

    Cookies set by the backend are kept in the client's jar and sent on
    every subsequent request.

    Parameters
    ----------
    token_store : TokenStore
        Where the verified credential is persisted.
    settings : BackendSettings, optional
        Backend configuration (defaults to ``get_settings().backend``).
    http_client : httpx.AsyncClient, optional
        Preconfigured client (tests inject a mock transport).
    on_unauthorized : callable, optional
        Invoked once for each 401 response from :meth:`authenticated_fetch`.
    """

    def __init__(
        self,
        token_store: TokenStore,
        settings: BackendSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
        on_unauthorized: Callable[[], Any] | None = None,
    ) -> None:
        """Initialize the backend client."""
        self.token_store = token_store
        self.settings = settings or get_settings().backend
        self._http_client = http_client
        self.on_unauthorized = on_unauthorized

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                base_url=self.settings.base_url,
                timeout=self.settings.timeout_seconds,
            )
        return self._http_client

    async def close(self) -> None:
        """Close the shared HTTP client."""
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

    async def login(
        self,
        credential: str,
        claimed_address: str,
        *,
        provider_profile: dict[str, Any] | None = None,
        source_provider: str = "",
    ) -> LoginResult:
        """Exchange a credential for a backend session.

        Nothing is persisted here. The caller stores the credential once it
        knows the login is still current.

        Parameters
        ----------
        credential : str
            Native identity token or challenge credential.
        claimed_address : str
            Address the provider reported.
        provider_profile : dict, optional
            Provider-only profile fields merged into the user.
        source_provider : str
            Name of the provider that produced the credential.

        Returns
        -------
        LoginResult
            The verified user, or a ``backend_verification`` / ``network`` error.
        """
        logger.debug(
            "Logging in %s with %s credential",
            claimed_address,
            inspect_token(credential).kind,
        )
        client = await self._get_client()
        try:
            resp = await client.post(
                self.settings.login_path,
                json={"credential": credential, "address": claimed_address},
                headers={"Authorization": f"Bearer {credential}"},
            )
        except httpx.HTTPError as exc:
            logger.warning("Backend login request failed: %s", exc)
            return LoginResult(
                success=False,
                error=SessionError(ErrorKind.NETWORK, f"Backend unreachable: {exc}"),
            )

        if resp.status_code >= 500:
            return LoginResult(
                success=False,
                error=SessionError(ErrorKind.NETWORK, _error_message(resp)),
            )
        if resp.status_code >= 400:
            logger.info("Backend rejected credential: %s", resp.status_code)
            return LoginResult(
                success=False,
                error=SessionError(ErrorKind.BACKEND_VERIFICATION, _error_message(resp)),
            )

        data = resp.json()
        logger.debug("Backend login response: %s", redact_sensitive_data(data))
        user = build_user(data, claimed_address, source_provider, provider_profile)
        return LoginResult(success=True, user=user)

    async def check_existing_session(self, source_provider: str = "") -> LoginResult:
        """Ask the backend who the stored credential belongs to.

        Locally expired tokens and tokens the backend answers with 401 are
        cleared from the store. Never touches a provider.

        Returns
        -------
        LoginResult
            The user when the stored session is still valid.
        """
        token = await self.token_store.get_token()
        if token is None:
            return LoginResult(success=False)
        if inspect_token(token).is_expired:
            logger.info("Stored credential expired, clearing")
            await self._clear_stored_token()
            return LoginResult(success=False)

        client = await self._get_client()
        try:
            resp = await client.get(
                self.settings.identity_path,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            logger.warning("Identity check failed: %s", exc)
            return LoginResult(
                success=False,
                error=SessionError(ErrorKind.NETWORK, f"Backend unreachable: {exc}"),
            )

        if resp.status_code == 401:
            logger.info("Stored credential rejected by backend, clearing")
            await self._clear_stored_token()
            return LoginResult(success=False)
        if resp.status_code != 200:
            return LoginResult(
                success=False,
                error=SessionError(ErrorKind.NETWORK, _error_message(resp)),
            )

        data = resp.json()
        claimed = data.get("walletAddress") or data.get("address") or ""
        return LoginResult(success=True, user=build_user(data, claimed, source_provider))

    async def _clear_stored_token(self) -> None:
        try:
            await self.token_store.clear_token()
        except TokenStorageError as exc:
            logger.error("Stale credential could not be cleared: %s", exc)

    async def logout(self, credential: str | None = None) -> None:
        """End the backend session. Failures are logged, never raised."""
        headers = {"Authorization": f"Bearer {credential}"} if credential else {}
        client = await self._get_client()
        try:
            resp = await client.post(self.settings.logout_path, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("Backend logout failed: %s", exc)
        else:
            if not resp.is_success:
                logger.warning("Backend logout returned %s", resp.status_code)
        finally:
            client.cookies.clear()

    async def authenticated_fetch(
        self,
        path: str,
        method: str = "GET",
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request carrying the stored credential.

        A 401 response triggers ``on_unauthorized`` once and is returned
        to the caller unchanged; the request is not retried.

        Raises
        ------
        NetworkError
            If the request could not be sent.
        """
        headers = dict(kwargs.pop("headers", None) or {})
        token = await self.token_store.get_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        client = await self._get_client()
        try:
            resp = await client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            msg = f"Request to {path} failed: {exc}"
            raise NetworkError(msg, path=path) from exc

        if resp.status_code == 401 and self.on_unauthorized is not None:
            logger.info("Backend session expired on %s %s", method, path)
            result = self.on_unauthorized()
            if hasattr(result, "__await__"):
                await result
        return resp
