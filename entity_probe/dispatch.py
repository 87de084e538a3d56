from __future__ import annotations

import logging
from typing import Any

import httpx

from entity_probe.http_auth import (
    AUTHORIZATION_HEADER,
    CLIENT_ID_HEADER,
    TARGET_URL_HEADER,
    bearer_header,
)
from entity_probe.query_builder import RequestDescriptor


logger = logging.getLogger("entity_probe.dispatch")


class DispatchTransportError(RuntimeError):
    """Raised when the proxy cannot be reached or the connection fails."""

    def __init__(self, *, method: str, url: str, detail: str) -> None:
        self.method = method.upper()
        self.url = url
        self.detail = detail
        super().__init__(f"Request failed {self.method} {self.url}: {self.detail}")


class ProxyDispatcher:
    """Sends request descriptors through the routing proxy."""

    def __init__(
        self,
        *,
        proxy_base_url: str,
        prefix: str = "/proxy",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        resolved_base_url = proxy_base_url.strip().rstrip("/")
        if not resolved_base_url:
            raise ValueError("Proxy base URL cannot be empty")

        normalized_prefix = prefix.strip().strip("/")
        self.prefix = f"/{normalized_prefix}" if normalized_prefix else ""
        self._client = httpx.AsyncClient(
            base_url=resolved_base_url,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ProxyDispatcher":
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
        await self.aclose()

    def build_headers(
        self,
        descriptor: RequestDescriptor,
        *,
        target_url: str,
        token: str | None = None,
        client_id: str | None = None,
    ) -> dict[str, str]:
        headers = dict(descriptor.headers)
        headers[TARGET_URL_HEADER] = target_url
        authorization = bearer_header(token)
        if authorization:
            headers[AUTHORIZATION_HEADER] = authorization
        if client_id:
            headers[CLIENT_ID_HEADER] = str(client_id)
        return headers

    async def send(
        self,
        descriptor: RequestDescriptor,
        *,
        target_url: str,
        token: str | None = None,
        client_id: str | None = None,
    ) -> httpx.Response:
        url = f"{self.prefix}{descriptor.url}"
        headers = self.build_headers(descriptor, target_url=target_url, token=token, client_id=client_id)
        request_kwargs: dict[str, Any] = {"headers": headers}

        body = descriptor.body_for_send()
        if isinstance(body, str):
            request_kwargs["content"] = body.encode("utf-8")
        elif body is not None:
            request_kwargs["json"] = body

        try:
            return await self._client.request(descriptor.method, url, **request_kwargs)
        except httpx.HTTPError as exc:
            logger.warning(
                "dispatch_transport_failed method=%s path=%s error=%s",
                descriptor.method,
                descriptor.path,
                exc,
            )
            raise DispatchTransportError(
                method=descriptor.method,
                url=descriptor.url,
                detail=str(exc) or type(exc).__name__,
            ) from exc
