"""
Authentication & Session State.

Provides an injectable ``SessionManager`` that holds the in-memory session
(``SessionSnapshot``) for the lifetime of one application run.

Usage::

    from dentalization.auth import SessionManager

    session = SessionManager()
    session.subscribe(lambda snap: print(snap.is_authenticated))
    session.set_authenticated(user)
    snapshot = session.snapshot()
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Optional

from dentalization.models.auth_models import AuthErrorCode, SessionSnapshot
from dentalization.models.user import UserRecord

SessionListener = Callable[[SessionSnapshot], None]


class InvalidSessionTransition(ValueError):
    """Raised when a mutation would leave the session in a bug state."""


class SessionManager:
    """Injectable holder for the authoritative session state.

    Each instance maintains its own state, eliminating the need for
    module-level globals.  Pass a single ``SessionManager`` through the
    dependency-injection layer so every component shares the same session.

    Every mutation produces a new frozen ``SessionSnapshot``; transitions
    that would set ``is_stale`` without ``is_authenticated``, or
    ``is_authenticated`` without a user, are rejected with
    ``InvalidSessionTransition``.
    """

    def __init__(self) -> None:
        self._lock: threading.RLock = threading.RLock()
        self._state: SessionSnapshot = SessionSnapshot()
        self._listeners: list[SessionListener] = []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> SessionSnapshot:
        """Return the current immutable session view."""
        with self._lock:
            return self._state

    @property
    def is_authenticated(self) -> bool:
        """``True`` when a user is currently logged in."""
        with self._lock:
            return self._state.is_authenticated

    @property
    def is_initializing(self) -> bool:
        with self._lock:
            return self._state.is_initializing

    def get_current_user(self) -> UserRecord:
        """Return the authenticated user.

        Raises:
            RuntimeError: If no user is currently authenticated.
        """
        with self._lock:
            if not self._state.is_authenticated or self._state.user is None:
                raise RuntimeError(
                    "No user is currently authenticated. Login required."
                )
            return self._state.user

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def begin_loading(self) -> None:
        """Enter the pending state and clear the previous error."""
        self._apply(is_loading=True, error=None, error_code=None)

    def set_authenticated(self, user: UserRecord, *, stale: bool = False) -> None:
        """Record *user* as the authenticated session user."""
        self._apply(
            is_authenticated=True,
            is_loading=False,
            is_stale=stale,
            user=user,
            error=None,
            error_code=None,
        )

    def set_unauthenticated(
        self,
        error: Optional[str] = None,
        error_code: Optional[AuthErrorCode] = None,
    ) -> None:
        """Drop the user and every authenticated flag, optionally with an error."""
        self._apply(
            is_authenticated=False,
            is_loading=False,
            is_stale=False,
            user=None,
            error=error,
            error_code=error_code,
        )

    def set_error(self, error: str, error_code: Optional[AuthErrorCode] = None) -> None:
        """Surface an error without changing the authentication status."""
        self._apply(is_loading=False, error=error, error_code=error_code)

    def finish_initializing(self) -> None:
        """Flip ``is_initializing`` to ``False``.  Later calls are no-ops."""
        with self._lock:
            if not self._state.is_initializing:
                return
            self._apply(is_initializing=False)

    def set_biometric(self, *, available: bool, enabled: bool) -> None:
        self._apply(biometric_available=available, biometric_enabled=enabled and available)

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register *listener* for every new snapshot; returns an unsubscribe callable."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _apply(self, **changes: Any) -> None:
        with self._lock:
            candidate = self._state.model_copy(update=changes)
            if candidate.is_stale and not candidate.is_authenticated:
                raise InvalidSessionTransition(
                    "is_stale cannot be set on an unauthenticated session."
                )
            if candidate.is_authenticated and candidate.user is None:
                raise InvalidSessionTransition(
                    "An authenticated session requires a user record."
                )
            self._state = candidate
            listeners = list(self._listeners)

        for listener in listeners:
            listener(candidate)
