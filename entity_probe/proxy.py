from __future__ import annotations

import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from entity_probe.config import Settings, get_settings
from entity_probe.http_auth import TARGET_URL_HEADER, extract_bearer_token

logger = logging.getLogger("entity_probe.proxy")

MISSING_TARGET_MESSAGE = f"Missing {TARGET_URL_HEADER} header"
INVALID_TARGET_MESSAGE = f"Invalid {TARGET_URL_HEADER} header value"
DISALLOWED_TARGET_MESSAGE = "Target host not allowed"
ALLOWED_TARGET_SCHEMES = {"http", "https"}
PROXIED_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

_HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}
_STRIPPED_REQUEST_HEADERS = _HOP_BY_HOP_HEADERS | {"host", "content-length", TARGET_URL_HEADER.lower()}
_STRIPPED_RESPONSE_HEADERS = _HOP_BY_HOP_HEADERS | {"content-length", "content-encoding"}


class ProxyTargetError(ValueError):
    """Raised when the routing header is missing, malformed or not allowed."""

    def __init__(self, *, status_code: int, error: str) -> None:
        self.status_code = status_code
        self.error = error
        super().__init__(error)


def validate_target_url(value: str | None, *, allowed_hosts: set[str] | frozenset[str] = frozenset()) -> httpx.URL:
    if value is None or value == "":
        raise ProxyTargetError(status_code=400, error=MISSING_TARGET_MESSAGE)

    try:
        url = httpx.URL(value.strip())
    except (httpx.InvalidURL, TypeError, ValueError) as exc:
        raise ProxyTargetError(status_code=400, error=INVALID_TARGET_MESSAGE) from exc

    if url.scheme not in ALLOWED_TARGET_SCHEMES or not url.host:
        raise ProxyTargetError(status_code=400, error=INVALID_TARGET_MESSAGE)

    if allowed_hosts and url.host.lower() not in allowed_hosts:
        raise ProxyTargetError(status_code=403, error=DISALLOWED_TARGET_MESSAGE)
    return url


def build_upstream_url(target: httpx.URL, path: str, query: str = "") -> str:
    base = f"{target.scheme}://{target.netloc.decode('ascii')}{target.path}".rstrip("/")
    suffix = path if path.startswith("/") else f"/{path}"
    if suffix == "/":
        suffix = ""
    return f"{base}{suffix}?{query}" if query else f"{base}{suffix}"


def strip_routing_prefix(raw_path: str, prefix: str) -> str:
    if prefix and raw_path.startswith(prefix):
        return raw_path[len(prefix):] or "/"
    return raw_path


def forwardable_request_headers(headers: list[tuple[str, str]]) -> list[tuple[str, str]]:
    return [(name, value) for name, value in headers if name.lower() not in _STRIPPED_REQUEST_HEADERS]


def _validate_runtime_configuration(settings: Settings) -> None:
    safety_errors = settings.production_safety_errors()
    if not safety_errors:
        return

    for error in safety_errors:
        logger.error("unsafe_production_config error=%s", error)
    raise RuntimeError("Unsafe production configuration; see logs for details")


def _new_upstream_client(app: FastAPI) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=app.state.settings.proxy_timeout_sec,
        transport=app.state.upstream_transport,
        follow_redirects=False,
    )


@asynccontextmanager
async def _upstream_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    shared = getattr(app.state, "upstream_client", None)
    if shared is not None:
        yield shared
        return

    # Served without a lifespan: the client lives for this request only.
    async with _new_upstream_client(app) as client:
        yield client


def create_app(
    settings: Settings | None = None,
    *,
    upstream_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    resolved_settings = settings if settings is not None else get_settings()
    prefix = resolved_settings.normalized_proxy_prefix()
    allowed_hosts = frozenset(resolved_settings.parsed_proxy_allowed_hosts())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logging.basicConfig(
            level=resolved_settings.log_level.upper(),
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
        _validate_runtime_configuration(resolved_settings)
        app.state.upstream_client = _new_upstream_client(app)
        logger.info("proxy_startup_complete prefix=%s", prefix or "/")
        try:
            yield
        finally:
            client = getattr(app.state, "upstream_client", None)
            if client is not None:
                await client.aclose()
            app.state.upstream_client = None

    app = FastAPI(
        title="Entity Probe Proxy",
        version="0.1.0",
        description="Routes API calls to the environment named in the X-Target-Url header.",
        lifespan=lifespan,
    )
    app.state.settings = resolved_settings
    app.state.upstream_transport = upstream_transport
    app.state.upstream_client = None

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", "").strip() or uuid.uuid4().hex
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000.0
            logger.exception(
                "request_failed method=%s path=%s request_id=%s duration_ms=%.2f",
                request.method,
                request.url.path,
                request_id,
                duration_ms,
            )
            raise

        duration_ms = (time.perf_counter() - start) * 1000.0
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_completed method=%s path=%s status=%s request_id=%s duration_ms=%.2f",
            request.method,
            request.url.path,
            response.status_code,
            request_id,
            duration_ms,
        )
        return response

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.api_route(f"{prefix}/{{path:path}}", methods=PROXIED_METHODS, include_in_schema=False)
    async def proxy(request: Request, path: str) -> Response:
        try:
            target = validate_target_url(request.headers.get(TARGET_URL_HEADER), allowed_hosts=allowed_hosts)
        except ProxyTargetError as exc:
            logger.warning("proxy_target_rejected status=%s error=%s", exc.status_code, exc.error)
            return JSONResponse(status_code=exc.status_code, content={"error": exc.error})

        raw_path = request.scope.get("raw_path")
        request_path = raw_path.decode("latin-1").split("?", 1)[0] if raw_path else request.url.path
        upstream_url = build_upstream_url(
            target,
            strip_routing_prefix(request_path, prefix),
            request.url.query,
        )
        headers = forwardable_request_headers(request.headers.items())
        body = await request.body()

        try:
            async with _upstream_client(request.app) as client:
                upstream = await client.request(
                    request.method,
                    upstream_url,
                    headers=headers,
                    content=body or None,
                )
        except httpx.HTTPError as exc:
            logger.error(
                "proxy_upstream_failed method=%s target=%s error=%s",
                request.method,
                target.host,
                exc,
            )
            return JSONResponse(
                status_code=502,
                content={"error": "Proxy error", "message": str(exc) or type(exc).__name__},
            )

        logger.debug(
            "proxy_forwarded method=%s target=%s status=%s authenticated=%s",
            request.method,
            target.host,
            upstream.status_code,
            extract_bearer_token(request.headers.get("Authorization")) is not None,
        )
        response = Response(content=upstream.content, status_code=upstream.status_code)
        for name, value in upstream.headers.multi_items():
            if name.lower() not in _STRIPPED_RESPONSE_HEADERS:
                response.headers.append(name, value)
        return response

    return app


app = create_app()
