from __future__ import annotations

import json
import secrets
import time
from collections.abc import Callable, Iterable
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from entity_probe import models


def generate_environment_id() -> str:
    return f"env_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


class EnvironmentConfig(BaseModel):
    id: str = Field(default_factory=generate_environment_id, min_length=1, max_length=64)
    name: str = ""
    url: str = ""
    username: str = ""
    password: str = ""

    model_config = {"from_attributes": True}

    def exported(self) -> dict[str, str]:
        return {"id": self.id, "name": self.name, "url": self.url, "username": self.username}


class EnvironmentUpdate(BaseModel):
    name: str | None = None
    url: str | None = None
    username: str | None = None
    password: str | None = None


class EnvironmentRegistry:
    """Saved API environments; exactly one is active while any exist."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    @staticmethod
    def _ordered(db: Session) -> list[models.EnvironmentRecord]:
        return list(
            db.scalars(
                select(models.EnvironmentRecord).order_by(
                    models.EnvironmentRecord.position,
                    models.EnvironmentRecord.created_at,
                )
            ).all()
        )

    @staticmethod
    def _next_position(db: Session) -> int:
        current = db.scalar(select(func.max(models.EnvironmentRecord.position)))
        return (current if current is not None else -1) + 1

    def list_environments(self) -> list[EnvironmentConfig]:
        with self.session_factory() as db:
            return [EnvironmentConfig.model_validate(record) for record in self._ordered(db)]

    def get(self, env_id: str) -> EnvironmentConfig | None:
        with self.session_factory() as db:
            record = db.get(models.EnvironmentRecord, env_id)
            return EnvironmentConfig.model_validate(record) if record is not None else None

    def get_active(self) -> EnvironmentConfig | None:
        with self.session_factory() as db:
            record = db.scalar(
                select(models.EnvironmentRecord).where(models.EnvironmentRecord.is_active.is_(True))
            )
            return EnvironmentConfig.model_validate(record) if record is not None else None

    def add(self, env: EnvironmentConfig) -> EnvironmentConfig:
        with self.session_factory() as db:
            has_active = db.scalar(
                select(func.count())
                .select_from(models.EnvironmentRecord)
                .where(models.EnvironmentRecord.is_active.is_(True))
            )
            record = models.EnvironmentRecord(
                **env.model_dump(),
                is_active=not has_active,
                position=self._next_position(db),
            )
            db.add(record)
            db.commit()
            db.refresh(record)
            return EnvironmentConfig.model_validate(record)

    def update(self, env_id: str, updates: EnvironmentUpdate) -> EnvironmentConfig | None:
        with self.session_factory() as db:
            record = db.get(models.EnvironmentRecord, env_id)
            if record is None:
                return None
            for key, value in updates.model_dump(exclude_none=True).items():
                setattr(record, key, value)
            db.commit()
            db.refresh(record)
            return EnvironmentConfig.model_validate(record)

    def delete(self, env_id: str) -> bool:
        with self.session_factory() as db:
            record = db.get(models.EnvironmentRecord, env_id)
            if record is None:
                return False
            was_active = record.is_active
            db.delete(record)
            db.flush()
            if was_active:
                remaining = self._ordered(db)
                if remaining:
                    remaining[0].is_active = True
            db.commit()
            return True

    def set_active(self, env_id: str) -> EnvironmentConfig | None:
        with self.session_factory() as db:
            target = db.get(models.EnvironmentRecord, env_id)
            if target is None:
                return None
            for record in self._ordered(db):
                record.is_active = record.id == env_id
            db.commit()
            db.refresh(target)
            return EnvironmentConfig.model_validate(target)

    def import_environments(self, entries: Iterable[dict[str, Any]]) -> list[EnvironmentConfig]:
        existing_ids = {env.id for env in self.list_environments()}
        imported: list[EnvironmentConfig] = []
        for entry in entries:
            data = {key: value for key, value in entry.items() if value is not None}
            if not data.get("id"):
                data.pop("id", None)
            env = EnvironmentConfig.model_validate(data)
            if env.id in existing_ids:
                continue
            existing_ids.add(env.id)
            imported.append(self.add(env))
        return imported

    def import_json(self, raw: str) -> list[EnvironmentConfig]:
        data = json.loads(raw)
        if not isinstance(data, list):
            raise ValueError("Invalid format: expected an array")
        return self.import_environments(item for item in data if isinstance(item, dict))

    def export_json(self) -> str:
        return json.dumps([env.exported() for env in self.list_environments()], indent=2)
