from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from .room_constants import DEFAULT_DISPLAY_NAME


@dataclass(frozen=True)
class CurrentUser:
    uid: str
    display_name: str | None = None
    photo_url: str | None = None

    @property
    def profile_name(self) -> str:
        return (self.display_name or "").strip() or DEFAULT_DISPLAY_NAME


class IdentityProvider(Protocol):
    def current_user(self) -> CurrentUser | None: ...


class StaticIdentity:
    """Identity holder for a single request, connection or test."""

    def __init__(self, user: CurrentUser | None = None) -> None:
        self._user = user

    def current_user(self) -> CurrentUser | None:
        return self._user


def _normalized_header(value: str | None, max_length: int) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        return None
    return normalized[:max_length]


def identity_from_headers(
    user_id: str | None,
    display_name: str | None = None,
    photo_url: str | None = None,
) -> StaticIdentity:
    uid = _normalized_header(user_id, 128)
    if uid is None:
        return StaticIdentity()
    return StaticIdentity(
        CurrentUser(
            uid=uid,
            display_name=_normalized_header(display_name, 80),
            photo_url=_normalized_header(photo_url, 500),
        )
    )
