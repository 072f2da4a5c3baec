"""Identity provider contract.

The drive core never authenticates anyone itself. It consumes the current
user from an IdentityProvider and reacts to sign-in / sign-out.
"""
import inspect
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, Union

from clouddrive.schemas.user import CurrentUser

logger = logging.getLogger(__name__)

AuthListener = Callable[[Optional[CurrentUser]], Union[None, Awaitable[None]]]


class IdentityProvider(ABC):
    """Supplies the authenticated user and notifies on changes."""

    @abstractmethod
    def current_user(self) -> Optional[CurrentUser]:
        pass

    @abstractmethod
    def on_auth_change(self, callback: AuthListener) -> Callable[[], None]:
        """Register a listener. Returns a function that unregisters it."""
        pass

    @abstractmethod
    async def sign_out(self) -> None:
        pass


class StaticIdentityProvider(IdentityProvider):
    """In-process provider. The hosting app calls ``sign_in`` after its own auth."""

    def __init__(self, user: Optional[CurrentUser] = None):
        self._user = user
        self._listeners: list[AuthListener] = []

    def current_user(self) -> Optional[CurrentUser]:
        return self._user

    def on_auth_change(self, callback: AuthListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    async def sign_in(self, user: CurrentUser) -> None:
        logger.info("User signed in: %s", user.id)
        self._user = user
        await self._notify()

    async def sign_out(self) -> None:
        if self._user is None:
            return
        logger.info("User signed out: %s", self._user.id)
        self._user = None
        await self._notify()

    async def _notify(self) -> None:
        for listener in list(self._listeners):
            result = listener(self._user)
            if inspect.isawaitable(result):
                await result
