"""Wallet client abstraction and the RPC-capable signer resource.

Wallet runtimes (browser extensions bridged into Python, local signer
daemons, host applications) are reached through a minimal EIP-1193 style
``request(method, params)`` interface.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import itertools
import logging

from abc import ABC, abstractmethod
from typing import Any

import httpx

from .exceptions import NetworkError


logger = logging.getLogger("walletsession.wallet")

USER_REJECTED_REQUEST = 4001
UNRECOGNIZED_CHAIN = 4902

# Methods only the wallet can serve; everything else goes to the public RPC.
WALLET_METHODS = frozenset(
    {
        "personal_sign",
        "eth_sign",
        "eth_signTypedData_v4",
        "eth_sendTransaction",
        "eth_signTransaction",
        "eth_accounts",
        "eth_requestAccounts",
        "eth_chainId",
        "wallet_switchEthereumChain",
        "wallet_addEthereumChain",
    }
)


class WalletRpcError(Exception):
    """Error returned by a wallet for a request.

    Parameters
    ----------
    code : int
        EIP-1193 / JSON-RPC error code.
    message : str
        Wallet-provided message.
    """

    def __init__(self, code: int, message: str) -> None:
        """Initialize wallet RPC error."""
        super().__init__(f"{message} (code {code})")
        self.code = code
        self.message = message

    @property
    def is_user_rejection(self) -> bool:
        """True when the user declined the request in the wallet."""
        return self.code == USER_REJECTED_REQUEST


class WalletClient(ABC):
    """Abstract wallet runtime."""

    @abstractmethod
    async def request(self, method: str, params: list[Any] | None = None) -> Any:
        """Send a request to the wallet.

        Parameters
        ----------
        method : str
            RPC method name (``eth_requestAccounts``, ``personal_sign``, ...).
        params : list, optional
            Positional parameters.

        Returns
        -------
        Any
            The wallet's result.

        Raises
        ------
        WalletRpcError
            If the wallet rejects the request.
        """

    async def close(self) -> None:
        """Release transport resources."""


class JsonRpcWalletClient(WalletClient):
    """Wallet reachable over HTTP JSON-RPC (local signer daemon, bridge).

    Parameters
    ----------
    url : str
        JSON-RPC endpoint of the wallet.
    timeout : float
        Request timeout in seconds.
    http_client : httpx.AsyncClient, optional
        Preconfigured client (tests inject a mock transport).
    """

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the JSON-RPC wallet client."""
        self.url = url
        self.timeout = timeout
        self._http_client = http_client
        self._ids = itertools.count(1)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def request(self, method: str, params: list[Any] | None = None) -> Any:
        """Send a JSON-RPC request to the wallet."""
        return await _json_rpc(await self._get_client(), self.url, method, params, next(self._ids))

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None


async def _json_rpc(
    client: httpx.AsyncClient,
    url: str,
    method: str,
    params: list[Any] | None,
    request_id: int,
) -> Any:
    """POST one JSON-RPC call and unwrap the result."""
    body = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or []}
    try:
        resp = await client.post(url, json=body)
        resp.raise_for_status()
        raw = resp.json()
    except httpx.HTTPStatusError as exc:
        msg = f"RPC request {method} failed: {exc.response.status_code}"
        raise NetworkError(msg, url=url) from exc
    except httpx.HTTPError as exc:
        msg = f"RPC request {method} failed: {exc}"
        raise NetworkError(msg, url=url) from exc

    error = raw.get("error")
    if error:
        raise WalletRpcError(int(error.get("code", -32000)), str(error.get("message", "")))
    return raw.get("result")


class RpcSigner:
    """Provider-derived resource routing calls between wallet and public RPC.

    Signing, sending and account/chain management go to the wallet; reads
    (balances, calls, receipts) go to the public RPC endpoint, which wallet
    transports such as mobile bridges often do not serve.

    Parameters
    ----------
    wallet : WalletClient
        The connected wallet.
    address : str
        The connected address.
    rpc_url : str
        Public JSON-RPC endpoint for reads.
    chain_id : int
        Chain the signer operates on.
    http_client : httpx.AsyncClient, optional
        Client for read calls.
    """

    def __init__(
        self,
        wallet: WalletClient,
        address: str,
        rpc_url: str,
        chain_id: int,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the signer."""
        self.wallet = wallet
        self.address = address
        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self._http_client = http_client
        self._ids = itertools.count(1)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=30.0)
        return self._http_client

    async def request(self, method: str, params: list[Any] | None = None) -> Any:
        """Route a request to the wallet or the read endpoint."""
        if method in WALLET_METHODS:
            logger.debug("Routing %s to wallet", method)
            return await self.wallet.request(method, params)
        logger.debug("Routing %s to %s", method, self.rpc_url)
        return await _json_rpc(
            await self._get_client(), self.rpc_url, method, params, next(self._ids)
        )

    async def sign_message(self, message: str) -> str:
        """Sign a message with the connected address."""
        return await self.request("personal_sign", [message, self.address])

    async def send_transaction(self, tx: dict[str, Any]) -> str:
        """Send a transaction from the connected address, returning its hash."""
        return await self.request("eth_sendTransaction", [{"from": self.address, **tx}])

    async def call(self, tx: dict[str, Any], block: str = "latest") -> str:
        """Execute a read-only call."""
        return await self.request("eth_call", [tx, block])

    async def get_balance(self, address: str | None = None) -> int:
        """Native balance in wei."""
        result = await self.request("eth_getBalance", [address or self.address, "latest"])
        return int(result, 16)

    async def close(self) -> None:
        """Close the read client."""
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None
