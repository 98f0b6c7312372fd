"""Redirect reconciliation.

A full-page redirect login lands back on the page with marker query
parameters. Several observers (page, components, background tasks) may
see the same page concurrently; exactly one of them completes the login.
The per-scope attempt flag lives in a process-wide registry, which is the
only shared mutable state in walletsession.
"""

# pylint: disable=logging-too-many-args,global-statement

from __future__ import annotations

import asyncio
import logging
import threading

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from .config import get_settings
from .exceptions import AuthenticationError, RedirectReconciliationError
from .types import ErrorKind, ReconcilerState, RedirectAttemptState, SessionError


if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from .orchestrator import AuthOrchestrator


logger = logging.getLogger("walletsession.redirect")


class PageLocation:
    """The current page URL, replaceable in place.

    Parameters
    ----------
    href : str
        The full URL.
    """

    def __init__(self, href: str) -> None:
        """Initialize the location."""
        self.href = href

    def query_params(self) -> dict[str, str]:
        """Query parameters of the current URL (first value wins)."""
        params: dict[str, str] = {}
        for key, value in parse_qsl(urlparse(self.href).query, keep_blank_values=True):
            params.setdefault(key, value)
        return params

    def has_any(self, markers: Iterable[str]) -> bool:
        """True when any marker parameter is present."""
        params = self.query_params()
        return any(marker in params for marker in markers)

    def strip(self, markers: Iterable[str]) -> None:
        """Remove the marker parameters from the URL without navigating."""
        drop = set(markers)
        parsed = urlparse(self.href)
        kept = [
            (k, v)
            for k, v in parse_qsl(parsed.query, keep_blank_values=True)
            if k not in drop
        ]
        self.href = urlunparse(parsed._replace(query=urlencode(kept)))

    def __repr__(self) -> str:
        """Show the URL without its query, which may carry a code."""
        parsed = urlparse(self.href)
        return f"PageLocation({urlunparse(parsed._replace(query=''))!r})"


class PendingRedirectAttempts:
    """Per-scope redirect attempt flags with one external retry.

    All transitions are synchronous and guarded by a lock, so the check
    and the set of the flag cannot be separated by a suspension point.
    """

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._lock = threading.Lock()
        self._states: dict[str, RedirectAttemptState] = {}
        self._failures: dict[str, int] = {}
        self._retried: set[str] = set()

    def state(self, scope: str) -> RedirectAttemptState:
        """Current flag for ``scope``."""
        with self._lock:
            return self._states.get(scope, RedirectAttemptState.IDLE)

    def failures(self, scope: str) -> int:
        """Number of failed attempts recorded for ``scope``."""
        with self._lock:
            return self._failures.get(scope, 0)

    def try_begin(self, scope: str) -> bool:
        """Claim the attempt for ``scope``. Only the first caller wins."""
        with self._lock:
            if self._states.get(scope, RedirectAttemptState.IDLE) is not RedirectAttemptState.IDLE:
                return False
            self._states[scope] = RedirectAttemptState.HANDLING
            return True

    def mark_handled(self, scope: str) -> None:
        """Record a completed attempt."""
        with self._lock:
            self._states[scope] = RedirectAttemptState.HANDLED

    def mark_failed(self, scope: str) -> None:
        """Record a failed attempt.

        The flag stays set, so other observers do not retry on their own.
        """
        with self._lock:
            self._states[scope] = RedirectAttemptState.HANDLED
            self._failures[scope] = self._failures.get(scope, 0) + 1

    def allow_retry(self, scope: str) -> bool:
        """Claim the single retry permitted after a failure."""
        with self._lock:
            if (
                scope in self._retried
                or not self._failures.get(scope)
                or self._states.get(scope) is RedirectAttemptState.HANDLING
            ):
                return False
            self._retried.add(scope)
            self._states[scope] = RedirectAttemptState.HANDLING
            return True

    def release(self, scope: str) -> bool:
        """Return a successfully handled ``scope`` to idle.

        Scopes with a recorded failure stay locked.

        Returns
        -------
        bool
            True when the scope was released.
        """
        with self._lock:
            if (
                self._states.get(scope) is not RedirectAttemptState.HANDLED
                or self._failures.get(scope)
            ):
                return False
            del self._states[scope]
            self._retried.discard(scope)
            return True

    def reset(self, scope: str | None = None) -> None:
        """Forget ``scope`` (or every scope)."""
        with self._lock:
            if scope is None:
                self._states.clear()
                self._failures.clear()
                self._retried.clear()
                return
            self._states.pop(scope, None)
            self._failures.pop(scope, None)
            self._retried.discard(scope)


_attempts_instance: PendingRedirectAttempts | None = None
_attempts_lock = threading.Lock()


def get_pending_redirect_attempts() -> PendingRedirectAttempts:
    """Return the process-wide attempt registry."""
    global _attempts_instance
    with _attempts_lock:
        if _attempts_instance is None:
            _attempts_instance = PendingRedirectAttempts()
        return _attempts_instance


def reset_pending_redirect_attempts() -> None:
    """Drop the process-wide registry (e.g. between tests)."""
    global _attempts_instance
    with _attempts_lock:
        _attempts_instance = None


@dataclass(frozen=True)
class RetrySchedule:
    """Delays (seconds) between connection checks after a redirect."""

    delays: tuple[float, ...] = (0.0, 0.5, 1.5)

    def __post_init__(self) -> None:
        """Validate the delays."""
        if not self.delays or any(d < 0 for d in self.delays):
            msg = "RetrySchedule needs at least one non-negative delay"
            raise ValueError(msg)

    def __iter__(self) -> Any:
        """Iterate over the delays."""
        return iter(self.delays)


class RedirectReconciler:
    """Completes a redirect login, at most once per scope.

    Parameters
    ----------
    orchestrator : AuthOrchestrator
        Owner of the session and the live provider.
    location : PageLocation
        The page the redirect landed on.
    markers : tuple[str, str], optional
        Query parameters marking a completed redirect.
    schedule : RetrySchedule, optional
        Delays between provider connection checks.
    scope : str, optional
        Attempt scope (one per tab).
    attempts : PendingRedirectAttempts, optional
        Attempt registry (defaults to the process-wide one).
    sleep : callable, optional
        Async sleep used by the schedule.
    """

    def __init__(
        self,
        orchestrator: AuthOrchestrator,
        location: PageLocation,
        *,
        markers: Iterable[str] | None = None,
        schedule: RetrySchedule | None = None,
        scope: str | None = None,
        attempts: PendingRedirectAttempts | None = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        """Initialize the reconciler."""
        cfg = orchestrator.settings.redirect if orchestrator.settings else get_settings().redirect
        self.orchestrator = orchestrator
        self.location = location
        self.markers = tuple(markers or cfg.markers)
        self.schedule = schedule or RetrySchedule(tuple(cfg.retry_delays))
        self.scope = scope or cfg.scope
        self.attempts = attempts or get_pending_redirect_attempts()
        self._sleep = sleep
        self._state = ReconcilerState.IDLE
        self._params: dict[str, str] | None = None

    @property
    def state(self) -> ReconcilerState:
        """Current observer state."""
        return self._state

    async def mount(self) -> ReconcilerState:
        """Inspect the page and complete the login if this observer wins.

        Returns
        -------
        ReconcilerState
            ``handled`` on success, ``idle`` otherwise.
        """
        self._state = ReconcilerState.DETECTING
        if not self.location.has_any(self.markers):
            self._state = ReconcilerState.IDLE
            return self._state
        if not self.attempts.try_begin(self.scope):
            logger.debug("Redirect in scope %s already claimed", self.scope)
            self._state = ReconcilerState.IDLE
            return self._state

        self._params = self.location.query_params()
        return await self._handle()

    async def retry(self) -> ReconcilerState:
        """Retry a failed reconciliation. Permitted once per scope."""
        if self._params is None or not self.attempts.allow_retry(self.scope):
            logger.info("Redirect retry refused for scope %s", self.scope)
            return self._state
        return await self._handle()

    async def _handle(self) -> ReconcilerState:
        self._state = ReconcilerState.HANDLING
        try:
            await self._reconcile(self._params or {})
        except AuthenticationError as exc:
            logger.warning("Redirect reconciliation failed: %s", exc.message)
            self.attempts.mark_failed(self.scope)
            self.orchestrator.report_error(
                SessionError(ErrorKind.REDIRECT_RECONCILIATION, exc.message)
            )
            self._state = ReconcilerState.IDLE
        else:
            self.attempts.mark_handled(self.scope)
            self._state = ReconcilerState.HANDLED
        finally:
            self.location.strip(self.markers)
        return self._state

    async def _reconcile(self, params: dict[str, str]) -> None:
        provider = self.orchestrator.provider
        if provider is None:
            msg = "No provider to resume the redirect with"
            raise RedirectReconciliationError(msg)

        await provider.resume_redirect(params)
        for delay in self.schedule:
            await self._sleep(delay)
            if provider.is_connected and await provider.get_address():
                break
        else:
            msg = "Wallet did not reconnect after the redirect"
            raise RedirectReconciliationError(msg, provider=provider.name)

        session = await self.orchestrator.complete_redirect_login()
        if not session.is_authenticated:
            msg = session.error.message if session.error else "Redirect login failed"
            raise RedirectReconciliationError(msg, provider=provider.name)
