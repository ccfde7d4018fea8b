"""Models for the authenticated session."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

# Basic "something@something.tld" check, no full RFC parsing
EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"


class SessionState(str, Enum):
    """Lifecycle of the auth session."""

    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"


class AuthEvent(str, Enum):
    """Events published by the auth session manager."""

    LOGIN_SUCCEEDED = "login_succeeded"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    TOKEN_REFRESHED = "token_refreshed"
    REFRESH_FAILED = "refresh_failed"
    AUTHENTICATION_REQUIRED = "authentication_required"


class LoginInput(BaseModel):
    """Request model for login, validated before any network call."""

    email: str = Field(..., min_length=1, pattern=EMAIL_PATTERN)
    password: str = Field(..., min_length=6)


def mask_secret(value: str | None, visible: int = 6) -> str:
    """Render a secret for logs: short prefix only."""
    if not value:
        return "<none>"
    if len(value) <= visible:
        return "***"
    return f"{value[:visible]}***"


@dataclass
class Credential:
    """Access credential issued by the remote authority."""

    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    expires_at: datetime
    token_type: str = "Bearer"

    @classmethod
    def issued(
        cls,
        access_token: str,
        refresh_token: str,
        expires_in: int,
        now: datetime,
        token_type: str = "Bearer",
    ) -> Credential:
        """Build a credential from a relative lifetime."""
        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=now + timedelta(seconds=expires_in),
            token_type=token_type,
        )

    def is_usable(self, now: datetime, buffer_seconds: float) -> bool:
        """True while the token expires later than now + buffer."""
        return self.expires_at > now + timedelta(seconds=buffer_seconds)

    def remaining_seconds(self, now: datetime) -> int:
        return max(0, int((self.expires_at - now).total_seconds()))

    @property
    def authorization_header(self) -> str:
        return f"{self.token_type} {self.access_token}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the secure store."""
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresAt": self.expires_at.isoformat(),
            "tokenType": self.token_type,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Credential:
        return cls(
            access_token=data["accessToken"],
            refresh_token=data["refreshToken"],
            expires_at=datetime.fromisoformat(data["expiresAt"]),
            token_type=data.get("tokenType", "Bearer"),
        )

    def masked(self) -> dict[str, str]:
        return {
            "access_token": mask_secret(self.access_token),
            "refresh_token": mask_secret(self.refresh_token),
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass
class AuthSnapshot:
    """Read-only view of the auth state."""

    state: SessionState = SessionState.UNAUTHENTICATED
    is_authenticated: bool = False
    identity: dict[str, Any] | None = None
    credential: Credential | None = None
    last_refresh_at: datetime | None = None
