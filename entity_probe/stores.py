from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from entity_probe import models
from entity_probe.session import SessionState


DEFAULT_HISTORY_LIMIT = 100


class SqlSessionStore:
    """SessionStore keyed by environment id."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    def load(self, env_id: str) -> SessionState | None:
        with self.session_factory() as db:
            record = db.get(models.AuthSessionRecord, env_id)
            if record is None:
                return None
            return SessionState.from_persisted(
                {
                    "token": record.token,
                    "refreshToken": record.refresh_token,
                    "clientId": record.client_id,
                    "clients": record.clients or [],
                    "user": record.user,
                }
            )

    def save(self, env_id: str, session: SessionState) -> None:
        payload = session.to_persisted()
        with self.session_factory() as db:
            record = db.get(models.AuthSessionRecord, env_id)
            if record is None:
                record = models.AuthSessionRecord(env_id=env_id)
                db.add(record)
            record.token = payload["token"]
            record.refresh_token = payload["refreshToken"]
            record.client_id = payload["clientId"]
            record.clients = payload["clients"]
            record.user = payload["user"]
            db.commit()

    def clear(self, env_id: str) -> None:
        with self.session_factory() as db:
            db.execute(delete(models.AuthSessionRecord).where(models.AuthSessionRecord.env_id == env_id))
            db.commit()


@dataclass(frozen=True, slots=True)
class HistoryRecord:
    method: str
    url: str
    body: Any
    status: int
    timestamp: datetime

    @property
    def favorite_name(self) -> str:
        return f"{self.method} {self.url.split('?', 1)[0].rsplit('/', 1)[-1]}"


class HistoryRecorder(Protocol):
    def record(self, env_id: str, entry: HistoryRecord) -> None: ...


def _to_record(row: models.HistoryEntry | models.FavoriteEntry, *, status: int = 0) -> HistoryRecord:
    return HistoryRecord(
        method=row.method,
        url=row.url,
        body=row.body,
        status=getattr(row, "status", status),
        timestamp=row.timestamp,
    )


class SqlHistoryStore:
    def __init__(self, session_factory: Callable[[], Session], *, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        self.session_factory = session_factory
        self.limit = limit

    def record(self, env_id: str, entry: HistoryRecord) -> None:
        with self.session_factory() as db:
            db.add(
                models.HistoryEntry(
                    env_id=env_id,
                    method=entry.method,
                    url=entry.url,
                    body=entry.body,
                    status=entry.status,
                    timestamp=entry.timestamp,
                )
            )
            db.flush()
            stale_ids = db.scalars(
                select(models.HistoryEntry.id)
                .where(models.HistoryEntry.env_id == env_id)
                .order_by(models.HistoryEntry.timestamp.desc(), models.HistoryEntry.id.desc())
                .offset(self.limit)
            ).all()
            if stale_ids:
                db.execute(delete(models.HistoryEntry).where(models.HistoryEntry.id.in_(stale_ids)))
            db.commit()

    def list_entries(self, env_id: str) -> list[HistoryRecord]:
        with self.session_factory() as db:
            rows = db.scalars(
                select(models.HistoryEntry)
                .where(models.HistoryEntry.env_id == env_id)
                .order_by(models.HistoryEntry.timestamp.desc(), models.HistoryEntry.id.desc())
                .limit(self.limit)
            ).all()
            return [_to_record(row) for row in rows]

    def clear(self, env_id: str) -> None:
        with self.session_factory() as db:
            db.execute(delete(models.HistoryEntry).where(models.HistoryEntry.env_id == env_id))
            db.commit()


class SqlFavoriteStore:
    """Favorites are global, not per environment."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    def toggle(self, entry: HistoryRecord) -> bool:
        with self.session_factory() as db:
            existing = db.scalar(
                select(models.FavoriteEntry).where(
                    models.FavoriteEntry.method == entry.method,
                    models.FavoriteEntry.url == entry.url,
                )
            )
            if existing is not None:
                db.delete(existing)
                db.commit()
                return False

            db.add(
                models.FavoriteEntry(
                    name=entry.favorite_name,
                    method=entry.method,
                    url=entry.url,
                    body=entry.body,
                    timestamp=datetime.now(UTC),
                )
            )
            db.commit()
            return True

    def list_entries(self) -> list[tuple[str, HistoryRecord]]:
        with self.session_factory() as db:
            rows = db.scalars(
                select(models.FavoriteEntry).order_by(
                    models.FavoriteEntry.timestamp.desc(),
                    models.FavoriteEntry.id.desc(),
                )
            ).all()
            return [(row.name, _to_record(row)) for row in rows]
