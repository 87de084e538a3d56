from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

import jwt


class AuthStatus(str, Enum):
    logged_out = "logged_out"
    logging_in = "logging_in"
    logged_in = "logged_in"
    token_expiring = "token_expiring"


@dataclass(frozen=True, slots=True)
class ClientRef:
    id: str
    title: str = ""

    @classmethod
    def from_payload(cls, payload: Any) -> "ClientRef | None":
        if not isinstance(payload, dict) or payload.get("id") in (None, ""):
            return None
        return cls(id=str(payload["id"]), title=str(payload.get("title") or ""))


@dataclass(slots=True)
class SessionState:
    token: str | None = None
    refresh_token: str | None = None
    client_id: str | None = None
    clients: list[ClientRef] = field(default_factory=list)
    user: dict[str, Any] | None = None
    status: AuthStatus = AuthStatus.logged_out
    error: str | None = None
    expires_at: datetime | None = None

    @property
    def is_logged_in(self) -> bool:
        return self.status in {AuthStatus.logged_in, AuthStatus.token_expiring} and bool(self.token)

    @property
    def is_refreshing(self) -> bool:
        return self.status is AuthStatus.token_expiring

    def snapshot(self) -> "SessionState":
        return replace(self, clients=list(self.clients), user=copy.deepcopy(self.user))

    def to_persisted(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "refreshToken": self.refresh_token,
            "clientId": self.client_id,
            "clients": [{"id": client.id, "title": client.title} for client in self.clients],
            "user": copy.deepcopy(self.user),
        }

    @classmethod
    def from_persisted(cls, payload: dict[str, Any] | None) -> "SessionState":
        if not payload:
            return cls()

        token = payload.get("token") or None
        clients = [
            client
            for client in (ClientRef.from_payload(item) for item in payload.get("clients") or [])
            if client is not None
        ]
        client_id = payload.get("clientId")
        return cls(
            token=token,
            refresh_token=payload.get("refreshToken") or None,
            client_id=str(client_id) if client_id not in (None, "") else None,
            clients=clients,
            user=payload.get("user") if isinstance(payload.get("user"), dict) else None,
            status=AuthStatus.logged_in if token else AuthStatus.logged_out,
            expires_at=token_expiry(token),
        )


class SessionStore(Protocol):
    def load(self, env_id: str) -> SessionState | None: ...

    def save(self, env_id: str, session: SessionState) -> None: ...

    def clear(self, env_id: str) -> None: ...


class InMemorySessionStore:
    def __init__(self) -> None:
        self._sessions: dict[str, dict[str, Any]] = {}

    def load(self, env_id: str) -> SessionState | None:
        payload = self._sessions.get(env_id)
        if payload is None:
            return None
        return SessionState.from_persisted(copy.deepcopy(payload))

    def save(self, env_id: str, session: SessionState) -> None:
        self._sessions[env_id] = session.to_persisted()

    def clear(self, env_id: str) -> None:
        self._sessions.pop(env_id, None)


def token_expiry(token: str | None) -> datetime | None:
    """Read the ``exp`` claim of a JWT access token without verifying it."""

    if not token:
        return None
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        return None

    exp = claims.get("exp")
    if not isinstance(exp, (int, float)) or isinstance(exp, bool):
        return None
    return datetime.fromtimestamp(exp, tz=UTC)
