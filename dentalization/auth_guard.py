"""
Authentication Guard Decorator.

Provides a factory that produces a decorator for gating async service
calls behind an authenticated session.

Usage::

    from dentalization.auth import SessionManager
    from dentalization.auth_guard import require_auth

    session = SessionManager()
    auth_guard = require_auth(session)

    @auth_guard
    async def list_appointments() -> list[dict]:
        ...
"""

from __future__ import annotations

from functools import wraps
from typing import Awaitable, Callable, ParamSpec, TypeVar

from dentalization.auth import SessionManager
from dentalization.exceptions import DentalizationError

P = ParamSpec("P")
R = TypeVar("R")


class AuthenticationError(DentalizationError):
    """Raised when a guarded call is made without an active session."""


def require_auth(
    session: SessionManager,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    """Return a decorator that enforces authentication via *session*.

    The returned decorator checks ``session.is_authenticated`` before every
    await of the wrapped coroutine function.  If no user is logged in, an
    :class:`AuthenticationError` is raised and the coroutine never runs.

    Args:
        session: The injectable ``SessionManager`` that holds the
            current session state.

    Returns:
        A decorator suitable for wrapping async service-layer callables.
    """

    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            if not session.is_authenticated:
                raise AuthenticationError(
                    "Authentication required. Please log in before "
                    "performing this action."
                )
            return await func(*args, **kwargs)

        return wrapper

    return decorator
