from __future__ import annotations

from pathlib import Path

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from entity_probe import models  # noqa: F401
from entity_probe.auth_manager import AuthManager, NotAuthenticatedError
from entity_probe.config import Settings
from entity_probe.db import Base
from entity_probe.dispatch import ProxyDispatcher
from entity_probe.environments import EnvironmentConfig
from entity_probe.proxy import create_app
from entity_probe.query_builder import FilterClause, MissingEntityIdError, RequestInput, RequestMode
from entity_probe.schema_graph import build_index
from entity_probe.schema_source import SchemaLoadError
from entity_probe.session import AuthStatus, InMemorySessionStore, SessionState
from entity_probe.stores import HistoryRecord, SqlHistoryStore, SqlSessionStore
from entity_probe.workbench import UnknownOperatorError, Workbench, open_workbench


ENVIRONMENT = EnvironmentConfig(
    id="env_shop",
    name="Shop",
    url="https://shop.example.test",
    username="admin",
    password="secret",
)

SCHEMA_DOCUMENT = {
    "Acme\\ShopBundle\\Entity\\Product": {
        "className": "Product",
        "bundle": "ShopBundle",
        "columns": [
            {"property": "id", "type": "integer", "isPrimaryKey": True},
            {"property": "title", "type": "string"},
        ],
        "relations": [],
    }
}

SCHEMA = build_index(SCHEMA_DOCUMENT)


class ShopApi:
    """Stands in for the remote entity API behind the proxy."""

    def __init__(self, *, product_count: int = 10) -> None:
        self.requests: list[httpx.Request] = []
        self.product_count = product_count
        self.accept_tokens = {"tok-1"}
        self.refresh_status = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/api/v1/login":
            return httpx.Response(200, json={"token": "tok-1", "refresh_token": "ref-1"})
        if path == "/api/v1/token/refresh":
            if self.refresh_status != 200:
                return httpx.Response(self.refresh_status, json={"code": 401, "message": "Invalid refresh token"})
            return httpx.Response(200, json={"token": "tok-2"})
        if request.headers.get("authorization", "").removeprefix("Bearer ") not in self.accept_tokens:
            return httpx.Response(401, json={"code": 401, "message": "Expired JWT Token"})
        if path == "/api/v1/entity/client":
            return httpx.Response(200, json=[{"id": 3, "title": "Main"}])
        if path == "/api/v1/activeuser":
            return httpx.Response(200, json={"id": 1})
        if path == "/api/v1/entity/product/404":
            return httpx.Response(404, json={"error": "Entity not found"})
        if request.method == "DELETE":
            return httpx.Response(204)
        if path in {"/api/v1/entity/product", "/api/v1/searchentity/product"}:
            return httpx.Response(200, json=[{"id": index} for index in range(self.product_count)])
        return httpx.Response(404)


class ListRecorder:
    def __init__(self) -> None:
        self.entries: list[tuple[str, HistoryRecord]] = []

    def record(self, env_id: str, entry: HistoryRecord) -> None:
        self.entries.append((env_id, entry))


def _workbench(
    api: ShopApi,
    *,
    store: InMemorySessionStore | None = None,
    dispatcher: ProxyDispatcher | None = None,
) -> tuple[Workbench, ListRecorder]:
    if dispatcher is None:
        proxy_app = create_app(Settings(), upstream_transport=httpx.MockTransport(api))
        dispatcher = ProxyDispatcher(proxy_base_url="http://proxy.test", transport=httpx.ASGITransport(app=proxy_app))
    auth = AuthManager(environment=ENVIRONMENT, dispatcher=dispatcher, store=store or InMemorySessionStore())
    recorder = ListRecorder()
    return Workbench(schema=SCHEMA, auth=auth, history=recorder), recorder


async def _logged_in(api: ShopApi) -> tuple[Workbench, ListRecorder]:
    workbench, recorder = _workbench(api)
    await workbench.auth.login()
    api.requests.clear()
    return workbench, recorder


def _product():
    return SCHEMA.get_entity("Product")


def test_preview_renders_request_without_login() -> None:
    workbench, _ = _workbench(ShopApi())

    preview = workbench.preview(workbench.entity("Product"), RequestInput(selected_fields=("id",), limit=10))

    assert preview.absolute_url == "https://shop.example.test/api/v1/entity/product?fields%5B%5D=id&limit=10"
    assert preview.headers == {"Authorization": "Bearer <token>", "Content-Type": "application/json"}
    assert preview.curl.startswith("curl -X GET")
    assert preview.descriptor.method == "GET"


@pytest.mark.asyncio
async def test_execute_requires_login() -> None:
    workbench, recorder = _workbench(ShopApi())

    with pytest.raises(NotAuthenticatedError):
        await workbench.execute(_product(), RequestInput())
    assert recorder.entries == []


@pytest.mark.asyncio
async def test_execute_list_through_proxy() -> None:
    api = ShopApi()
    workbench, recorder = await _logged_in(api)

    result = await workbench.execute(_product(), RequestInput(selected_fields=("id",), limit=10))

    assert result.status == 200
    assert result.status_text == "OK"
    assert not result.is_error
    assert len(result.data) == 10
    assert result.size > 0
    assert result.duration_ms >= 0
    assert result.pagination is not None
    assert result.pagination.has_next
    assert not result.pagination.has_prev

    upstream = api.requests[0]
    assert str(upstream.url) == "https://shop.example.test/api/v1/entity/product?fields%5B%5D=id&limit=10"
    assert upstream.headers["authorization"] == "Bearer tok-1"
    assert upstream.headers["x-client-id"] == "3"
    assert "x-target-url" not in upstream.headers

    env_id, entry = recorder.entries[0]
    assert env_id == "env_shop"
    assert entry.method == "GET"
    assert entry.url == "/api/v1/entity/product?fields%5B%5D=id&limit=10"
    assert entry.status == 200


@pytest.mark.asyncio
async def test_go_to_page_moves_offset() -> None:
    api = ShopApi(product_count=4)
    workbench, _ = await _logged_in(api)

    updated, result = await workbench.go_to_page(_product(), RequestInput(limit=10, offset=0), 10)

    assert updated.offset == 10
    assert api.requests[0].url.params["offset"] == "10"
    assert result.pagination.current_page == 2
    assert result.pagination.has_prev
    assert not result.pagination.has_next
    assert (result.pagination.showing_from, result.pagination.showing_to) == (11, 14)


@pytest.mark.asyncio
async def test_execute_rejects_missing_id_and_unknown_operators() -> None:
    api = ShopApi()
    workbench, recorder = await _logged_in(api)

    with pytest.raises(MissingEntityIdError):
        await workbench.execute(_product(), RequestInput(mode=RequestMode.update, raw_body="{}"))

    with pytest.raises(UnknownOperatorError) as error:
        await workbench.execute(
            _product(),
            RequestInput(mode=RequestMode.search, filters=(FilterClause(field="id", operator="LIKE", value="1"),)),
        )

    assert error.value.operators == ["LIKE"]
    assert api.requests == []
    assert recorder.entries == []


@pytest.mark.asyncio
async def test_server_errors_become_error_results() -> None:
    api = ShopApi()
    workbench, recorder = await _logged_in(api)

    result = await workbench.execute(_product(), RequestInput(mode=RequestMode.single, entity_id="404"))

    assert result.is_error
    assert result.status == 404
    assert result.data == {"error": "Entity not found"}
    assert result.pagination is None
    assert recorder.entries[0][1].status == 404


@pytest.mark.asyncio
async def test_delete_with_empty_response() -> None:
    api = ShopApi()
    workbench, _ = await _logged_in(api)

    result = await workbench.execute(_product(), RequestInput(mode=RequestMode.delete, entity_id="7"))

    assert result.status == 204
    assert result.data is None
    assert not result.is_error
    assert "content-type" not in api.requests[0].headers


@pytest.mark.asyncio
async def test_expired_token_is_refreshed_transparently() -> None:
    api = ShopApi()
    workbench, recorder = await _logged_in(api)
    api.accept_tokens = {"tok-2"}

    result = await workbench.execute(_product(), RequestInput())

    assert result.status == 200
    assert workbench.auth.state.token == "tok-2"
    assert len(recorder.entries) == 1


@pytest.mark.asyncio
async def test_failed_refresh_becomes_error_result_and_logs_out() -> None:
    api = ShopApi()
    workbench, recorder = await _logged_in(api)
    api.accept_tokens = set()
    api.refresh_status = 401

    result = await workbench.execute(_product(), RequestInput())

    assert result.is_error
    assert result.status == 0
    assert result.data == {"error": "Session expired. Please log in again."}
    assert workbench.auth.state.status is AuthStatus.logged_out
    assert recorder.entries[0][1].status == 0


@pytest.mark.asyncio
async def test_unreachable_proxy_becomes_error_result() -> None:
    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Connection refused", request=request)

    store = InMemorySessionStore()
    store.save(ENVIRONMENT.id, SessionState(token="tok-1", status=AuthStatus.logged_in))
    dispatcher = ProxyDispatcher(proxy_base_url="http://proxy.test", transport=httpx.MockTransport(unreachable))
    workbench, recorder = _workbench(ShopApi(), store=store, dispatcher=dispatcher)
    workbench.auth.restore()

    result = await workbench.execute(_product(), RequestInput())

    assert result.is_error
    assert result.status == 0
    assert result.status_text == "Connection refused"
    assert result.headers == {}
    assert len(recorder.entries) == 1


@pytest.fixture()
def session_factory(tmp_path: Path):
    db_path = tmp_path / "test_workbench.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    yield testing_session_local
    engine.dispose()


SCHEMA_URL = "https://docs.example.test/entities.json"


@pytest.mark.asyncio
async def test_open_workbench_loads_schema_and_restores_session(session_factory) -> None:
    schema_requests: list[httpx.Request] = []

    def docs(request: httpx.Request) -> httpx.Response:
        schema_requests.append(request)
        return httpx.Response(200, json=SCHEMA_DOCUMENT)

    api = ShopApi()
    SqlSessionStore(session_factory).save(
        ENVIRONMENT.id,
        SessionState(token="tok-1", refresh_token="ref-1", client_id="3", status=AuthStatus.logged_in),
    )
    settings = Settings(schema_url=SCHEMA_URL, history_limit=5)
    proxy_app = create_app(settings, upstream_transport=httpx.MockTransport(api))

    async with await open_workbench(
        settings,
        ENVIRONMENT,
        session_factory=session_factory,
        schema_transport=httpx.MockTransport(docs),
        proxy_transport=httpx.ASGITransport(app=proxy_app),
    ) as workbench:
        assert str(schema_requests[0].url) == SCHEMA_URL
        assert workbench.entity("Product") is not None
        assert workbench.auth.state.is_logged_in
        assert workbench.auth.state.client_id == "3"

        result = await workbench.execute(workbench.entity("Product"), RequestInput(limit=10))

    assert result.status == 200
    assert api.requests[0].headers["x-client-id"] == "3"
    assert workbench.history.limit == 5
    entries = SqlHistoryStore(session_factory).list_entries(ENVIRONMENT.id)
    assert [(entry.method, entry.url, entry.status) for entry in entries] == [
        ("GET", "/api/v1/entity/product?limit=10", 200)
    ]


@pytest.mark.asyncio
async def test_open_workbench_fails_when_schema_cannot_load(session_factory) -> None:
    api = ShopApi()
    proxy_app = create_app(Settings(), upstream_transport=httpx.MockTransport(api))

    with pytest.raises(SchemaLoadError, match="HTTP 503"):
        await open_workbench(
            Settings(schema_url=SCHEMA_URL),
            ENVIRONMENT,
            session_factory=session_factory,
            schema_transport=httpx.MockTransport(lambda request: httpx.Response(503)),
            proxy_transport=httpx.ASGITransport(app=proxy_app),
        )

    assert api.requests == []
