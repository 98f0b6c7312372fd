"""Version-tagged cache of provider-derived resources.

A resource built from a provider connection (e.g. an RPC-capable signer)
is reused for the whole session, but never outlives a schema version change
or the provider instance it was built from.
"""

from __future__ import annotations

import logging
import threading

from typing import TYPE_CHECKING, Any, TypeVar

from .types import CachedResource


if TYPE_CHECKING:
    from collections.abc import Callable


logger = logging.getLogger("walletsession.cache")

T = TypeVar("T")


class ResourceCache:
    """Single-slot cache keyed by version tag and owning provider instance.

    Payload, version tag and owner are always written and cleared together.
    """

    def __init__(self) -> None:
        """Initialize an empty cache."""
        self._entry: CachedResource | None = None
        self._lock = threading.Lock()
        self._build_count = 0

    @staticmethod
    def _owner_id(owner: Any) -> int | None:
        return None if owner is None else id(owner)

    @property
    def version(self) -> str | None:
        """Version tag of the cached payload, or None when empty."""
        entry = self._entry
        return entry.version_tag if entry is not None else None

    @property
    def is_empty(self) -> bool:
        """True when nothing is cached."""
        return self._entry is None

    @property
    def build_count(self) -> int:
        """Number of times a payload has been built."""
        return self._build_count

    def is_fresh(self, expected_version: str, owner: Any = None) -> bool:
        """Check whether the cached payload may be served.

        Parameters
        ----------
        expected_version : str
            The current schema version.
        owner : Any, optional
            The provider instance the payload must belong to.
        """
        entry = self._entry
        return (
            entry is not None
            and entry.version_tag == expected_version
            and entry.owner_id == self._owner_id(owner)
        )

    def get(self, build_fn: Callable[[], T], expected_version: str, owner: Any = None) -> T:
        """Return the cached payload, rebuilding it when stale.

        Parameters
        ----------
        build_fn : callable
            Synchronous factory for the payload.
        expected_version : str
            The current schema version.
        owner : Any, optional
            The provider instance the payload belongs to.

        Returns
        -------
        T
            The fresh payload.
        """
        with self._lock:
            if self.is_fresh(expected_version, owner):
                return self._entry.payload  # type: ignore[union-attr]

            stale = self.version
            payload = build_fn()
            self._entry = CachedResource(
                payload=payload,
                version_tag=expected_version,
                owner_id=self._owner_id(owner),
            )
            self._build_count += 1
            logger.debug("Rebuilt cached resource (version %s -> %s)", stale, expected_version)
            return payload

    def invalidate(self) -> None:
        """Drop the payload, version tag and owner together."""
        with self._lock:
            if self._entry is not None:
                logger.debug("Invalidated cached resource (version %s)", self._entry.version_tag)
            self._entry = None
