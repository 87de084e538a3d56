from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import httpx

from entity_probe.schema_graph import SchemaIndex, build_index


logger = logging.getLogger("entity_probe.schema")


class SchemaLoadError(RuntimeError):
    """Raised when the entity definition document cannot be loaded."""

    def __init__(self, detail: str, *, source: str) -> None:
        self.detail = detail
        self.source = source
        super().__init__(f"Failed to load entity definitions: {detail}")


def _ensure_mapping(payload: Any, *, source: str) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise SchemaLoadError(
            f"expected a JSON object, got {type(payload).__name__}",
            source=source,
        )
    return payload


class SchemaSource:
    """Async httpx adapter that fetches the entity definition document."""

    def __init__(
        self,
        *,
        url: str,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        resolved_url = url.strip()
        if not resolved_url:
            raise ValueError("Schema URL cannot be empty")

        self.url = resolved_url
        self._client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "SchemaSource":
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
        await self.aclose()

    async def fetch(self) -> Mapping[str, Any]:
        try:
            response = await self._client.get(self.url)
        except httpx.HTTPError as exc:
            logger.warning("schema_fetch_failed url=%s error=%s", self.url, exc)
            raise SchemaLoadError(str(exc) or type(exc).__name__, source=self.url) from exc

        if not response.is_success:
            logger.warning("schema_fetch_failed url=%s status=%s", self.url, response.status_code)
            raise SchemaLoadError(f"HTTP {response.status_code}", source=self.url)

        try:
            payload = response.json()
        except ValueError as exc:
            raise SchemaLoadError("response is not valid JSON", source=self.url) from exc
        return _ensure_mapping(payload, source=self.url)

    async def load(self) -> SchemaIndex:
        index = build_index(await self.fetch())
        logger.info("schema_loaded url=%s entities=%s", self.url, len(index))
        return index


def load_schema_file(path: str | Path) -> SchemaIndex:
    file_path = Path(path)
    try:
        payload = json.loads(file_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise SchemaLoadError(str(exc), source=str(file_path)) from exc
    except ValueError as exc:
        raise SchemaLoadError("file is not valid JSON", source=str(file_path)) from exc

    index = build_index(_ensure_mapping(payload, source=str(file_path)))
    logger.info("schema_loaded path=%s entities=%s", file_path, len(index))
    return index
