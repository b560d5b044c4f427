import threading
from enum import Enum
from typing import Optional, Protocol, runtime_checkable


class Role(str, Enum):
    """Application roles"""
    USER = "user"
    ADMIN = "admin"


@runtime_checkable
class SessionContext(Protocol):
    """Read-only view of who is acting; used for ledger attribution and admin checks."""

    def current_username(self) -> Optional[str]:
        ...

    def current_role_is_admin(self) -> bool:
        ...


class UserSession:
    """
    Login state for one UI process.

    Credential checks happen before ``login`` is called; this object only
    records the outcome.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._username: Optional[str] = None
        self._role: Optional[Role] = None

    def login(self, username: str, role: Role = Role.USER) -> None:
        if not username or not username.strip():
            raise ValueError("username cannot be empty")
        with self._lock:
            self._username = username
            self._role = Role(role)

    def logout(self) -> None:
        with self._lock:
            self._username = None
            self._role = None

    @property
    def is_logged_in(self) -> bool:
        with self._lock:
            return self._username is not None

    @property
    def role(self) -> Optional[Role]:
        with self._lock:
            return self._role

    def current_username(self) -> Optional[str]:
        with self._lock:
            return self._username

    def current_role_is_admin(self) -> bool:
        with self._lock:
            return self._username is not None and self._role == Role.ADMIN
