"""
Session providers consumed by the sync engine. A session answers three questions: is it valid, can it be refreshed, and
which user does it belong to.
"""

from __future__ import annotations

import datetime
import logging
from abc import ABC, abstractmethod
from typing import Callable

import keyring

from remindsync import helpers, settings
from remindsync.errors import AuthenticationError


class Session(ABC):
    """
    The session/auth provider interface.
    """

    @abstractmethod
    def is_valid(self) -> bool:
        """
        :return: True if remote calls may be made with this session right now.
        """

    @abstractmethod
    def refresh(self) -> bool:
        """
        Try to renew the session.

        :return: True if the session is valid after the refresh.
        """

    @abstractmethod
    def current_user(self) -> str:
        """
        :return: the id of the user owning this session.
        """


class GuestSession(Session):
    """
    A guest session is always valid.
    """

    def __init__(self, user_id: str = 'guest'):
        self.user_id: str = user_id

    def is_valid(self) -> bool:
        return True

    def refresh(self) -> bool:
        return True

    def current_user(self) -> str:
        return self.user_id


#: A token refresher returns a new token and its expiry, or raises :py:class:`AuthenticationError`.
TokenRefresher = Callable[[str], tuple[str, datetime.datetime]]


class TokenSession(Session):
    """
    A session backed by a bearer token with an expiry. An expired token is renewed through the refresher callable.
    """

    def __init__(self, user_id: str, token: str | None, expires_at: datetime.datetime | None,
                 refresher: TokenRefresher | None = None, clock: Callable[[], datetime.datetime] = helpers.now):
        """
        :param user_id: the id of the user owning the token.
        :param token: the current token, or None if there is none.
        :param expires_at: when the token expires. None means it never expires.
        :param refresher: callable taking the current token and returning a new token with its expiry.
        :param clock: callable returning the current aware datetime.
        """
        self.user_id: str = user_id
        self.token: str | None = token
        self.expires_at: datetime.datetime | None = expires_at
        self.refresher: TokenRefresher | None = refresher
        self.clock = clock

    def is_valid(self) -> bool:
        if not self.token:
            return False
        return self.expires_at is None or self.expires_at > self.clock()

    def refresh(self) -> bool:
        if self.refresher is None or not self.token:
            return False
        try:
            self.token, self.expires_at = self.refresher(self.token)
        except AuthenticationError as e:
            logging.warning('Session refresh for {} failed: {}'.format(self.user_id, e))
            return False
        self.store_token()
        return self.is_valid()

    def store_token(self) -> None:
        pass

    def current_user(self) -> str:
        return self.user_id


class KeyringSession(TokenSession):
    """
    A token session whose token is persisted in the system keyring, so it survives restarts.
    """

    def __init__(self, user_id: str, expires_at: datetime.datetime | None = None,
                 refresher: TokenRefresher | None = None, clock: Callable[[], datetime.datetime] = helpers.now):
        token = keyring.get_password(settings.KEYRING_SERVICE, settings.KEYRING_SESSION_TOKEN)
        super().__init__(user_id, token, expires_at, refresher, clock)

    def store_token(self) -> None:
        keyring.set_password(settings.KEYRING_SERVICE, settings.KEYRING_SESSION_TOKEN, self.token)
