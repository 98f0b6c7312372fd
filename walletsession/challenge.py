"""Challenge-response credential synthesis.

Wallets that do not issue an identity token prove control of an address
by signing a nonce-bearing challenge. The signed challenge is packaged as
base64url JSON and handed to the backend as the credential.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import secrets
import time

from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from .types import TokenMetadata


if TYPE_CHECKING:
    from collections.abc import Callable

    from .providers import CredentialProvider


logger = logging.getLogger("walletsession.challenge")

CHALLENGE_FIELDS = ("address", "message", "signature", "timestamp", "nonce")


def generate_nonce(length: int = 16) -> str:
    """Generate a hex nonce from ``length`` random bytes."""
    return secrets.token_hex(length)


def build_challenge_message(address: str, timestamp: int, nonce: str) -> str:
    """Build the message the wallet is asked to sign.

    Parameters
    ----------
    address : str
        The address claiming ownership.
    timestamp : int
        Milliseconds since the epoch.
    nonce : str
        Random single-use value.

    Returns
    -------
    str
        The challenge message.
    """
    return f"Authenticate wallet {address} at {timestamp} with nonce {nonce}"


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


@dataclass(frozen=True)
class ChallengeCredential:
    """A signed challenge packaged as a credential.

    Attributes
    ----------
    address : str
        The claimed address.
    message : str
        The exact message that was signed.
    signature : str
        The wallet's signature over ``message``.
    timestamp : int
        Milliseconds since the epoch when the challenge was built.
    nonce : str
        The random nonce embedded in ``message``.
    """

    address: str
    message: str
    signature: str
    timestamp: int
    nonce: str

    def encode(self) -> str:
        """Encode as base64url JSON containing exactly the five fields."""
        payload = json.dumps(asdict(self), separators=(",", ":"), sort_keys=True)
        return _b64url_encode(payload.encode("utf-8"))

    @classmethod
    def decode(cls, token: str) -> ChallengeCredential:
        """Decode a credential produced by :meth:`encode`.

        Raises
        ------
        ValueError
            If the token is not a challenge credential.
        """
        try:
            obj = json.loads(_b64url_decode(token))
        except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
            msg = "Not a challenge credential"
            raise ValueError(msg) from exc
        if not isinstance(obj, dict) or set(obj) != set(CHALLENGE_FIELDS):
            msg = "Not a challenge credential"
            raise ValueError(msg)
        return cls(
            address=obj["address"],
            message=obj["message"],
            signature=obj["signature"],
            timestamp=int(obj["timestamp"]),
            nonce=obj["nonce"],
        )


async def synthesize_credential(
    provider: CredentialProvider,
    address: str,
    *,
    clock: Callable[[], float] = time.time,
    nonce_factory: Callable[[], str] = generate_nonce,
) -> str:
    """Have the provider sign a fresh challenge and package it.

    Parameters
    ----------
    provider : CredentialProvider
        A connected provider able to sign.
    address : str
        The address the provider reported.
    clock : callable, optional
        Time source in seconds (injectable for tests).
    nonce_factory : callable, optional
        Nonce source (injectable for tests).

    Returns
    -------
    str
        The encoded challenge credential.

    Raises
    ------
    SigningError
        If the wallet refuses to sign.
    """
    timestamp = int(clock() * 1000)
    nonce = nonce_factory()
    message = build_challenge_message(address, timestamp, nonce)
    signature = await provider.sign(message)
    logger.debug("Challenge signed by %s for %s", provider.name, address)
    return ChallengeCredential(
        address=address,
        message=message,
        signature=signature,
        timestamp=timestamp,
        nonce=nonce,
    ).encode()


def _decode_jwt_payload(token: str) -> dict[str, Any] | None:
    """Decode the (unverified) payload segment of a JWT."""
    parts = token.split(".")
    if len(parts) != 3:
        return None
    try:
        payload = json.loads(_b64url_decode(parts[1]))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


def inspect_token(token: str) -> TokenMetadata:
    """Describe a credential without verifying it.

    The result is safe to log; the token itself never is.

    Parameters
    ----------
    token : str
        The credential.

    Returns
    -------
    TokenMetadata
        Kind plus any claims that could be read.
    """
    payload = _decode_jwt_payload(token)
    if payload is not None:
        exp = payload.get("exp")
        return TokenMetadata(
            kind="jwt",
            subject=payload.get("sub"),
            issuer=payload.get("iss"),
            expires_at=float(exp) if isinstance(exp, (int, float)) else None,
        )
    try:
        challenge = ChallengeCredential.decode(token)
    except ValueError:
        return TokenMetadata(kind="opaque")
    return TokenMetadata(kind="challenge", address=challenge.address)
