from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

from entity_probe.dispatch import DispatchTransportError, ProxyDispatcher
from entity_probe.environments import EnvironmentConfig
from entity_probe.query_builder import DEFAULT_API_PREFIX, JSON_CONTENT_TYPE, RequestDescriptor
from entity_probe.session import AuthStatus, ClientRef, SessionState, SessionStore, token_expiry


logger = logging.getLogger("entity_probe.auth")

LOGIN_ENDPOINT = "login"
REFRESH_ENDPOINT = "token/refresh"
ACTIVE_USER_ENDPOINT = "activeuser"
CLIENTS_ENDPOINT = "entity/client"

MISSING_CONFIGURATION_MESSAGE = "Please configure environment URL, username and password."
SESSION_EXPIRED_MESSAGE = "Session expired. Please log in again."


class AuthError(Exception):
    """Base auth error."""


class LoginError(AuthError):
    """Raised when the login call is rejected or cannot be completed."""


class RefreshError(AuthError):
    """Raised when the refresh token is missing or rejected."""

    def __init__(self, detail: str, *, status_code: int | None = None) -> None:
        self.detail = detail
        self.status_code = status_code
        super().__init__(detail)


class SessionExpiredError(AuthError):
    """Raised for every call that was waiting on a refresh that failed."""

    def __init__(self, detail: str = SESSION_EXPIRED_MESSAGE) -> None:
        self.detail = detail
        super().__init__(detail)


class NotAuthenticatedError(AuthError):
    """Raised when a request is dispatched without an active session."""


@dataclass(frozen=True, slots=True)
class Credentials:
    username: str
    password: str


def extract_error_message(response: httpx.Response) -> str:
    if not response.content:
        return f"Request failed with status code {response.status_code}"

    try:
        payload = response.json()
    except ValueError:
        text = response.text.strip()
        return text or f"Request failed with status code {response.status_code}"

    if isinstance(payload, dict):
        error = payload.get("error")
        if error:
            return error if isinstance(error, str) else json.dumps(error)
    if isinstance(payload, str):
        return payload or f"Request failed with status code {response.status_code}"
    return json.dumps(payload)


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


class AuthManager:
    """
    Owns the session of one environment and dispatches requests with it.

    Concurrent calls that hit 401 share a single refresh: the first caller
    performs it and the rest park in ``_waiters`` until it settles.
    """

    def __init__(
        self,
        *,
        environment: EnvironmentConfig,
        dispatcher: ProxyDispatcher,
        store: SessionStore,
        api_prefix: str = DEFAULT_API_PREFIX,
        clients_page_size: int = 100,
    ) -> None:
        self.environment = environment
        self._dispatcher = dispatcher
        self._store = store
        prefix = api_prefix.strip().strip("/")
        self._api_prefix = f"/{prefix}" if prefix else ""
        self._clients_page_size = clients_page_size

        self._state = SessionState()
        self._generation = 0
        self._refreshing = False
        self._waiters: list[asyncio.Future[str]] = []

    @property
    def env_id(self) -> str:
        return self.environment.id

    @property
    def state(self) -> SessionState:
        return self._state.snapshot()

    @property
    def is_refreshing(self) -> bool:
        return self._refreshing

    @property
    def pending_waiters(self) -> int:
        return len(self._waiters)

    async def aclose(self) -> None:
        await self._dispatcher.aclose()

    def endpoint(self, name: str) -> str:
        return f"{self._api_prefix}/{name}"

    def _is_auth_call(self, descriptor: RequestDescriptor) -> bool:
        return descriptor.path in {self.endpoint(LOGIN_ENDPOINT), self.endpoint(REFRESH_ENDPOINT)}

    def restore(self) -> SessionState:
        saved = self._store.load(self.env_id)
        self._state = saved if saved is not None else SessionState()
        return self.state

    def set_client_id(self, client_id: str | None) -> SessionState:
        self._state.client_id = client_id
        if self._state.token:
            self._store.save(self.env_id, self._state)
        return self.state

    def logout(self) -> None:
        self._generation += 1
        self._state = SessionState()
        self._store.clear(self.env_id)
        logger.info("logout env_id=%s", self.env_id)

    async def login(self, credentials: Credentials | None = None) -> SessionState:
        username = credentials.username if credentials else self.environment.username
        password = credentials.password if credentials else self.environment.password
        if not (self.environment.url and username and password):
            self._state.error = MISSING_CONFIGURATION_MESSAGE
            return self.state

        self._generation += 1
        self._state.status = AuthStatus.logging_in
        self._state.error = None

        try:
            token, refresh_token = await self._request_login(username, password)
        except LoginError as exc:
            logger.warning("login_failed env_id=%s error=%s", self.env_id, exc)
            self._state = SessionState(status=AuthStatus.logged_out, error=str(exc))
            return self.state

        clients = await self._fetch_clients(token)
        user = await self._fetch_active_user(token)

        self._state = SessionState(
            token=token,
            refresh_token=refresh_token,
            client_id=clients[0].id if clients else None,
            clients=clients,
            user=user,
            status=AuthStatus.logged_in,
            expires_at=token_expiry(token),
        )
        self._store.save(self.env_id, self._state)
        logger.info("login_succeeded env_id=%s clients=%s", self.env_id, len(clients))
        return self.state

    async def dispatch(self, descriptor: RequestDescriptor) -> httpx.Response:
        token = self._state.token
        if not token:
            raise NotAuthenticatedError("Not logged in")

        response = await self._send(descriptor, token=token)
        if response.status_code != 401 or self._is_auth_call(descriptor):
            return response

        fresh_token = await self._token_after_unauthorized(sent_token=token)
        logger.info("dispatch_retry method=%s path=%s", descriptor.method, descriptor.path)
        # Retried at most once; a second 401 is returned to the caller as is.
        return await self._send(descriptor, token=fresh_token)

    async def _send(self, descriptor: RequestDescriptor, *, token: str | None) -> httpx.Response:
        return await self._dispatcher.send(
            descriptor,
            target_url=self.environment.url,
            token=token,
            client_id=self._state.client_id,
        )

    async def _token_after_unauthorized(self, *, sent_token: str) -> str:
        if self._refreshing:
            waiter: asyncio.Future[str] = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            return await waiter

        current = self._state.token
        if current and current != sent_token:
            return current

        return await self._refresh()

    async def _refresh(self) -> str:
        generation = self._generation
        self._refreshing = True
        self._state.status = AuthStatus.token_expiring
        logger.info("token_refresh_started env_id=%s", self.env_id)

        try:
            refresh_token = self._state.refresh_token
            if not refresh_token:
                raise RefreshError("No refresh token available")
            token, new_refresh_token = await self._request_refresh(refresh_token)
            if generation != self._generation:
                raise RefreshError("Session changed during token refresh")
        except (RefreshError, DispatchTransportError) as exc:
            logger.warning("token_refresh_failed env_id=%s error=%s", self.env_id, exc)
            self._settle_waiters(error_factory=SessionExpiredError)
            if generation == self._generation:
                self._expire_session()
            raise SessionExpiredError() from exc
        except asyncio.CancelledError:
            self._settle_waiters(error_factory=lambda: RefreshError("Token refresh was cancelled"))
            if generation == self._generation:
                self._state.status = AuthStatus.logged_in
            raise
        finally:
            self._refreshing = False

        self._state.token = token
        if new_refresh_token:
            self._state.refresh_token = new_refresh_token
        self._state.status = AuthStatus.logged_in
        self._state.expires_at = token_expiry(token)
        logger.info("token_refresh_succeeded env_id=%s waiters=%s", self.env_id, len(self._waiters))
        self._settle_waiters(token=token)
        self._persist_refreshed_session()
        return token

    def _persist_refreshed_session(self) -> None:
        # Waiters already hold the new token, so a store failure is logged and not raised.
        try:
            self._store.save(self.env_id, self._state)
        except Exception:
            logger.exception("token_refresh_persist_failed env_id=%s", self.env_id)

    def _settle_waiters(
        self,
        *,
        token: str | None = None,
        error_factory: Callable[[], Exception] | None = None,
    ) -> None:
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if waiter.done():
                continue
            if error_factory is not None:
                waiter.set_exception(error_factory())
            else:
                waiter.set_result(token)

    def _expire_session(self) -> None:
        self._state = SessionState(status=AuthStatus.logged_out, error=SESSION_EXPIRED_MESSAGE)
        self._store.clear(self.env_id)

    def _descriptor(self, method: str, endpoint: str, *, body: Any = None, query: str = "") -> RequestDescriptor:
        path = self.endpoint(endpoint)
        headers = {"Content-Type": JSON_CONTENT_TYPE} if body is not None else {}
        return RequestDescriptor(method=method, url=f"{path}?{query}" if query else path, headers=headers, body=body)

    async def _request_login(self, username: str, password: str) -> tuple[str, str | None]:
        descriptor = self._descriptor(
            "POST",
            LOGIN_ENDPOINT,
            body={"username": username, "password": password},
        )
        try:
            response = await self._send(descriptor, token=None)
        except DispatchTransportError as exc:
            raise LoginError(exc.detail) from exc

        if not response.is_success:
            raise LoginError(extract_error_message(response))

        payload = _json_or_none(response)
        token = payload.get("token") if isinstance(payload, dict) else None
        if not token:
            raise LoginError("Login response did not include a token")
        return str(token), payload.get("refresh_token")

    async def _request_refresh(self, refresh_token: str) -> tuple[str, str | None]:
        descriptor = self._descriptor("POST", REFRESH_ENDPOINT, body={"refresh_token": refresh_token})
        response = await self._send(descriptor, token=None)
        if not response.is_success:
            raise RefreshError(extract_error_message(response), status_code=response.status_code)

        payload = _json_or_none(response)
        token = payload.get("token") if isinstance(payload, dict) else None
        if not token:
            raise RefreshError("Refresh response did not include a token", status_code=response.status_code)
        return str(token), payload.get("refresh_token")

    async def _fetch_clients(self, token: str) -> list[ClientRef]:
        query = str(
            httpx.QueryParams(
                [("fields[]", "id"), ("fields[]", "title"), ("limit", str(self._clients_page_size))]
            )
        )
        descriptor = self._descriptor("GET", CLIENTS_ENDPOINT, query=query)
        payload = await self._fetch_optional(descriptor, token=token)
        if not isinstance(payload, list):
            return []
        return [client for client in (ClientRef.from_payload(item) for item in payload) if client is not None]

    async def _fetch_active_user(self, token: str) -> dict[str, Any] | None:
        payload = await self._fetch_optional(self._descriptor("GET", ACTIVE_USER_ENDPOINT), token=token)
        return payload if isinstance(payload, dict) else None

    async def _fetch_optional(self, descriptor: RequestDescriptor, *, token: str) -> Any:
        # A user may lack permission for these lookups; login still succeeds.
        try:
            response = await self._dispatcher.send(descriptor, target_url=self.environment.url, token=token)
        except DispatchTransportError as exc:
            logger.info("optional_lookup_failed path=%s error=%s", descriptor.path, exc.detail)
            return None
        if not response.is_success:
            logger.info("optional_lookup_failed path=%s status=%s", descriptor.path, response.status_code)
            return None
        return _json_or_none(response)
