"""
client/guard.py -- Access Guard for protected views.

The rule is the same one the server enforces in auth.dependencies.require_roles:
a user may enter a view when they hold at least one of its required roles.

Decision order:
  1. No authenticated session   -> redirect to sign-in (silently).
  2. Roles intersect             -> allow.
  3. Otherwise                   -> redirect to the landing view and notify,
                                    once per navigation attempt.

The guard decides before the view loads anything. load_if_allowed() is the
helper screens use so a denied view never issues its data request.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from enum import Enum
from typing import Optional, TypeVar

from client.messages import Messages
from client.session import Session
from client.ui import Navigator, Notifier

logger = logging.getLogger("sessiongate.client.guard")

T = TypeVar("T")


class GuardDecision(str, Enum):
    ALLOW = "allow"
    REDIRECT_SIGN_IN = "redirect_sign_in"
    REDIRECT_LANDING = "redirect_landing"


def allow(current_roles: Iterable[str], required_roles: Iterable[str]) -> bool:
    """True when the two role sets share at least one role."""
    return bool(set(current_roles) & set(required_roles))


class AccessGuard:
    def __init__(
        self,
        notifier: Notifier,
        navigator: Navigator,
        messages: Optional[Messages] = None,
        sign_in_path: str = "/auth/signin",
        landing_path: str = "/dashboard",
    ) -> None:
        self.notifier = notifier
        self.navigator = navigator
        self.messages = messages or Messages()
        self.sign_in_path = sign_in_path
        self.landing_path = landing_path
        # (navigation attempt, attempt created by its landing redirect) of the last denial.
        self._last_denied: tuple[int, int] | None = None

    @classmethod
    def for_client(cls, client) -> "AccessGuard":
        """Build a guard sharing a Session Client's UI hooks and paths."""
        return cls(
            client.notifier,
            client.navigator,
            messages=client.messages,
            sign_in_path=client.sign_in_path,
            landing_path=client.landing_path,
        )

    def check(
        self,
        session: Session,
        required_roles: Iterable[str],
        attempt_id: Optional[int] = None,
    ) -> GuardDecision:
        """Decide whether the current navigation attempt may enter the view.

        attempt_id identifies the navigation attempt; re-rendering the same
        attempt must pass the same id. Defaults to the navigator's current one.
        """
        attempt = self.navigator.attempt if attempt_id is None else attempt_id
        if not session.is_authenticated:
            self.navigator.navigate(self.sign_in_path, replace=True)
            return GuardDecision.REDIRECT_SIGN_IN

        required = tuple(required_roles)
        if not required or allow(session.roles, required):
            return GuardDecision.ALLOW

        # A re-render after our own redirect carries the redirect's attempt id.
        if self._last_denied is not None and attempt in self._last_denied:
            attempt = self._last_denied[0]
        else:
            logger.info("Denied roles=%s required=%s (attempt %d)", list(session.roles), list(required), attempt)
            self.notifier.error(self.messages.get("guard.denied"))
        redirect = self.navigator.navigate(self.landing_path, replace=True)
        self._last_denied = (attempt, redirect)
        return GuardDecision.REDIRECT_LANDING

    async def load_if_allowed(
        self,
        session: Session,
        required_roles: Iterable[str],
        loader: Callable[[], Awaitable[T]],
        attempt_id: Optional[int] = None,
    ) -> Optional[T]:
        """Run the view's loader only when check() allows entry."""
        if self.check(session, required_roles, attempt_id) is not GuardDecision.ALLOW:
            return None
        return await loader()
