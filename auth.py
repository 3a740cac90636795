# auth.py
from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from sessions import Session

logger = logging.getLogger(__name__)

SESSION_USER_KEY = "user_id"


@dataclass(frozen=True)
class User:
    id: int
    username: str
    role: str = "member"
    email: str = ""
    email_verified: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class AuthenticationService(Protocol):
    def current_user(self) -> Optional[User]: ...


class UserDirectory:
    """
    In-memory user lookup.

    Stands in for the user repository; the CMS's real storage layer plugs
    in here. Passwords are compared in constant time but are not hashed.
    """

    def __init__(self) -> None:
        self._users: dict[int, User] = {}
        self._passwords: dict[str, str] = {}

    def add(self, user: User, password: Optional[str] = None) -> User:
        self._users[user.id] = user
        if password:
            self._passwords[user.username] = password
        return user

    def get(self, user_id: object) -> Optional[User]:
        if isinstance(user_id, bool) or not isinstance(user_id, int):
            return None
        return self._users.get(user_id)

    def find_by_username(self, username: str) -> Optional[User]:
        for user in self._users.values():
            if user.username == username:
                return user
        return None

    def check_password(self, username: str, password: str) -> Optional[User]:
        expected = self._passwords.get(username)
        if not expected or not password:
            return None
        if not hmac.compare_digest(expected.encode("utf-8"), password.encode("utf-8")):
            return None
        return self.find_by_username(username)


class SessionAuthentication:
    """Resolves the current user from the `user_id` stored in the session."""

    def __init__(self, session: Session, users: UserDirectory):
        self._session = session
        self._users = users

    def current_user(self) -> Optional[User]:
        user_id = self._session.get(SESSION_USER_KEY)
        if user_id is None:
            return None
        user = self._users.get(user_id)
        if user is None:
            # stale session pointing at a removed user
            logger.warning(f"Session references unknown user id {user_id!r}")
        return user

    def is_authenticated(self) -> bool:
        return self.current_user() is not None

    def login(self, user: User) -> None:
        # New session on login: drops any pre-login CSRF token (fixation).
        self._session.regenerate()
        self._session.set(SESSION_USER_KEY, user.id)

    def logout(self) -> None:
        self._session.regenerate()
