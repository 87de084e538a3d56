from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

import httpx
from sqlalchemy.orm import Session

from entity_probe.auth_manager import AuthError, AuthManager, NotAuthenticatedError
from entity_probe.config import Settings
from entity_probe.dispatch import DispatchTransportError, ProxyDispatcher
from entity_probe.environments import EnvironmentConfig
from entity_probe.query_builder import (
    DEFAULT_API_PREFIX,
    MODE_TABLE,
    ExecutionInputError,
    PageInfo,
    RequestDescriptor,
    RequestInput,
    build_request,
    ensure_executable,
    preview_headers,
    render_curl,
    unknown_operators,
)
from entity_probe.schema_graph import EntityDefinition, SchemaIndex
from entity_probe.schema_source import SchemaSource
from entity_probe.stores import HistoryRecord, HistoryRecorder, SqlHistoryStore, SqlSessionStore


logger = logging.getLogger("entity_probe.workbench")

PREVIEW_BASE_URL = "https://your-api.example.com"


class UnknownOperatorError(ExecutionInputError):
    def __init__(self, operators: list[str]) -> None:
        self.operators = operators
        super().__init__(f"Unknown filter operators: {', '.join(operators)}")


@dataclass(frozen=True, slots=True)
class RequestPreview:
    descriptor: RequestDescriptor
    absolute_url: str
    headers: dict[str, str]
    curl: str


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    status: int
    status_text: str
    data: Any
    headers: dict[str, str]
    duration_ms: float
    size: int
    request: RequestDescriptor
    timestamp: datetime
    pagination: PageInfo | None = None
    is_error: bool = False

    def history_record(self) -> HistoryRecord:
        return HistoryRecord(
            method=self.request.method,
            url=self.request.url,
            body=self.request.body,
            status=self.status,
            timestamp=self.timestamp,
        )


def _response_data(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _payload_size(data: Any) -> int:
    try:
        return len(json.dumps(data))
    except (TypeError, ValueError):
        return len(str(data))


class Workbench:
    """Builds, previews and executes requests against one environment."""

    def __init__(
        self,
        *,
        schema: SchemaIndex,
        auth: AuthManager,
        history: HistoryRecorder | None = None,
        api_prefix: str = DEFAULT_API_PREFIX,
    ) -> None:
        self.schema = schema
        self.auth = auth
        self.history = history
        self.api_prefix = api_prefix

    async def aclose(self) -> None:
        await self.auth.aclose()

    async def __aenter__(self) -> "Workbench":
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
        await self.aclose()

    def entity(self, name_or_key: str) -> EntityDefinition | None:
        return self.schema.get_entity(name_or_key)

    def build(
        self,
        entity: EntityDefinition,
        request_input: RequestInput,
        *,
        limit: int | None = None,
        offset: int | None = None,
    ) -> RequestDescriptor:
        return build_request(entity, request_input, api_prefix=self.api_prefix, limit=limit, offset=offset)

    def preview(self, entity: EntityDefinition, request_input: RequestInput) -> RequestPreview:
        descriptor = self.build(entity, request_input)
        base_url = self.auth.environment.url or PREVIEW_BASE_URL
        client_id = self.auth.state.client_id
        return RequestPreview(
            descriptor=descriptor,
            absolute_url=descriptor.absolute_url(base_url),
            headers=preview_headers(descriptor, client_id=client_id),
            curl=render_curl(descriptor, base_url=base_url, client_id=client_id),
        )

    async def execute(
        self,
        entity: EntityDefinition,
        request_input: RequestInput,
        *,
        limit: int | None = None,
        offset: int | None = None,
    ) -> ExecutionResult:
        if not self.auth.state.is_logged_in:
            raise NotAuthenticatedError("Not logged in")

        descriptor = ensure_executable(self.build(entity, request_input, limit=limit, offset=offset))
        unknown = unknown_operators(request_input.filters) if MODE_TABLE[descriptor.mode].needs_filters else []
        if unknown:
            raise UnknownOperatorError(unknown)

        started = time.perf_counter()
        try:
            response = await self.auth.dispatch(descriptor)
        except (AuthError, DispatchTransportError) as exc:
            result = self._error_result(descriptor, exc, started)
        else:
            result = self._success_result(descriptor, response, started)

        logger.info(
            "request_executed method=%s path=%s status=%s duration_ms=%.2f",
            descriptor.method,
            descriptor.path,
            result.status,
            result.duration_ms,
        )
        if self.history is not None:
            self.history.record(self.auth.env_id, result.history_record())
        return result

    async def go_to_page(
        self,
        entity: EntityDefinition,
        request_input: RequestInput,
        offset: int,
    ) -> tuple[RequestInput, ExecutionResult]:
        updated = replace(request_input, offset=max(0, offset))
        result = await self.execute(entity, updated, offset=updated.offset)
        return updated, result

    def _success_result(
        self,
        descriptor: RequestDescriptor,
        response: httpx.Response,
        started: float,
    ) -> ExecutionResult:
        data = _response_data(response)
        pagination = None
        if MODE_TABLE[descriptor.mode].paginated:
            pagination = PageInfo.from_result(
                limit=descriptor.limit,
                offset=descriptor.offset,
                result_count=len(data) if isinstance(data, list) else None,
            )
        return ExecutionResult(
            status=response.status_code,
            status_text=response.reason_phrase,
            data=data,
            headers=dict(response.headers),
            duration_ms=(time.perf_counter() - started) * 1000.0,
            size=_payload_size(data),
            request=descriptor,
            timestamp=datetime.now(UTC),
            pagination=pagination,
            is_error=not response.is_success,
        )

    def _error_result(self, descriptor: RequestDescriptor, exc: Exception, started: float) -> ExecutionResult:
        message = getattr(exc, "detail", None) or str(exc)
        data = {"error": message}
        return ExecutionResult(
            status=0,
            status_text=message,
            data=data,
            headers={},
            duration_ms=(time.perf_counter() - started) * 1000.0,
            size=_payload_size(data),
            request=descriptor,
            timestamp=datetime.now(UTC),
            is_error=True,
        )


async def open_workbench(
    settings: Settings,
    environment: EnvironmentConfig,
    *,
    session_factory: Callable[[], Session],
    schema_transport: httpx.AsyncBaseTransport | None = None,
    proxy_transport: httpx.AsyncBaseTransport | None = None,
) -> Workbench:
    """
    Load the schema and wire a workbench for ``environment``.

    Raises ``SchemaLoadError`` when the schema cannot be loaded; no proxy
    client or session is created in that case.
    """

    async with SchemaSource(
        url=settings.schema_url,
        timeout=settings.schema_timeout_sec,
        transport=schema_transport,
    ) as source:
        schema = await source.load()

    dispatcher = ProxyDispatcher(
        proxy_base_url=settings.proxy_base_url,
        prefix=settings.normalized_proxy_prefix(),
        timeout=settings.proxy_timeout_sec,
        transport=proxy_transport,
    )
    auth = AuthManager(
        environment=environment,
        dispatcher=dispatcher,
        store=SqlSessionStore(session_factory),
        api_prefix=settings.api_prefix,
        clients_page_size=settings.clients_page_size,
    )
    restored = auth.restore()
    logger.info(
        "workbench_opened env_id=%s entities=%s restored=%s",
        environment.id,
        len(schema),
        restored.is_logged_in,
    )
    return Workbench(
        schema=schema,
        auth=auth,
        history=SqlHistoryStore(session_factory, limit=settings.history_limit),
        api_prefix=settings.api_prefix,
    )
