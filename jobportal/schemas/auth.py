from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, model_validator


class AuthEvent(str, Enum):
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


class User(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    email: str | None = None
    role: str | None = None

    @model_validator(mode="before")
    @classmethod
    def resolve_role(cls, data: Any) -> Any:
        if not isinstance(data, dict) or data.get("role"):
            return data
        resolved = dict(data)
        for key in ("app_metadata", "user_metadata"):
            metadata = data.get(key)
            if isinstance(metadata, dict):
                role = metadata.get("role")
                if isinstance(role, str) and role:
                    resolved["role"] = role
                    break
        return resolved


class Session(BaseModel):
    """Token pair issued by the auth service together with its user."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    access_token: str
    refresh_token: str | None = None
    token_type: str = "bearer"
    expires_in: int | None = None
    expires_at: int | None = None
    user: User

    @model_validator(mode="before")
    @classmethod
    def derive_expires_at(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("expires_at") is None and data.get("expires_in"):
            data = {**data, "expires_at": int(time.time()) + int(data["expires_in"])}
        return data

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        current = time.time() if now is None else now
        return self.expires_at <= current


class SessionState(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: User | None = None
    session: Session | None = None
    loading: bool = True
