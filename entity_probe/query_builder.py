from __future__ import annotations

import copy
import json
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any
from urllib.parse import quote

import httpx

from entity_probe.operators import NO_VALUE_OPERATORS, OPERATORS
from entity_probe.schema_graph import EntityDefinition, entity_slug


ID_PLACEHOLDER = "<id>"
TOKEN_PLACEHOLDER = "<token>"
JSON_CONTENT_TYPE = "application/json"
DEFAULT_API_PREFIX = "/api/v1"
DEFAULT_LIMIT = 10


class RequestMode(str, Enum):
    list = "list"
    single = "single"
    search = "search"
    create = "create"
    update = "update"
    delete = "delete"


class Conjunction(str, Enum):
    AND = "AND"
    OR = "OR"


@dataclass(frozen=True, slots=True)
class ModeSpec:
    method: str
    collection: str
    needs_id: bool = False
    needs_body: bool = False
    needs_fields: bool = False
    needs_filters: bool = False
    paginated: bool = False
    sends_content_type: bool = True


MODE_TABLE: Mapping[RequestMode, ModeSpec] = MappingProxyType(
    {
        RequestMode.list: ModeSpec("GET", "entity", needs_fields=True, paginated=True),
        RequestMode.single: ModeSpec("GET", "entity", needs_id=True),
        RequestMode.search: ModeSpec(
            "POST",
            "searchentity",
            needs_fields=True,
            needs_filters=True,
            paginated=True,
        ),
        RequestMode.create: ModeSpec("POST", "entity", needs_body=True),
        RequestMode.update: ModeSpec("PATCH", "entity", needs_id=True, needs_body=True),
        RequestMode.delete: ModeSpec("DELETE", "entity", needs_id=True, sends_content_type=False),
    }
)


class ExecutionInputError(ValueError):
    """Raised when a request cannot be executed with the current input."""


class MissingEntityIdError(ExecutionInputError):
    def __init__(self, *, mode: RequestMode) -> None:
        self.mode = mode
        super().__init__(f"Mode `{mode.value}` requires an entity id")


@dataclass(frozen=True, slots=True)
class FilterClause:
    field: str
    operator: str = "EQ"
    value: str | Sequence[str] | None = ""
    conjunction: Conjunction | str = Conjunction.AND


@dataclass(frozen=True, slots=True)
class RequestInput:
    mode: RequestMode = RequestMode.list
    selected_fields: tuple[str, ...] = ()
    limit: int | None = DEFAULT_LIMIT
    offset: int | None = 0
    filters: tuple[FilterClause, ...] = ()
    raw_body: str = ""
    entity_id: str = ""


@dataclass(frozen=True)
class RequestDescriptor:
    method: str
    url: str
    headers: Mapping[str, str]
    body: Any = None
    mode: RequestMode = RequestMode.list
    entity_id: str = ""
    body_error: str | None = None
    requires_id: bool = False
    limit: int | None = None
    offset: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))
        object.__setattr__(self, "body", copy.deepcopy(self.body))

    @property
    def path(self) -> str:
        return self.url.split("?", 1)[0]

    @property
    def is_executable(self) -> bool:
        return not self.requires_id or bool(self.entity_id)

    def absolute_url(self, base_url: str) -> str:
        return f"{base_url.rstrip('/')}{self.url}"

    def body_for_send(self) -> Any:
        return copy.deepcopy(self.body)


def _normalize_prefix(api_prefix: str) -> str:
    value = api_prefix.strip().strip("/")
    return f"/{value}" if value else ""


def _conjunction_value(conjunction: Conjunction | str | None) -> str:
    if isinstance(conjunction, Conjunction):
        return conjunction.value
    return (conjunction or Conjunction.AND.value).strip().upper()


def _split_range(value: str) -> list[str]:
    lower, _, upper = value.partition(",")
    return [lower.strip(), upper.strip()]


def _range_bounds(value: Any) -> list[Any]:
    if value is None or isinstance(value, str):
        return _split_range(value or "")
    bounds = list(value)[:2]
    return bounds + [""] * (2 - len(bounds))


def serialize_filter(clause: FilterClause) -> dict[str, Any]:
    out: dict[str, Any] = {"field": clause.field, "operator": clause.operator}

    if clause.operator not in NO_VALUE_OPERATORS:
        value = clause.value
        if clause.operator == "BETWEENINCL":
            value = _range_bounds(value)
        elif value is not None and not isinstance(value, str):
            value = list(value)
        out["value"] = value

    conjunction = _conjunction_value(clause.conjunction)
    if conjunction != Conjunction.AND.value:
        out["conjunction"] = conjunction
    return out


def serialize_filters(filters: Iterable[FilterClause]) -> list[dict[str, Any]]:
    return [serialize_filter(clause) for clause in filters if clause.field]


def unknown_operators(filters: Iterable[FilterClause]) -> list[str]:
    return [clause.operator for clause in filters if clause.operator not in OPERATORS]


def _pagination_params(limit: int | None, offset: int | None) -> list[tuple[str, str]]:
    params: list[tuple[str, str]] = []
    if limit:
        params.append(("limit", str(limit)))
    if offset:
        params.append(("offset", str(offset)))
    return params


def _with_query(path: str, params: list[tuple[str, str]]) -> str:
    if not params:
        return path
    return f"{path}?{httpx.QueryParams(params)}"


def parse_raw_body(raw_body: str) -> tuple[Any, str | None]:
    if not raw_body.strip():
        return {}, None
    try:
        return json.loads(raw_body), None
    except ValueError as exc:
        # The raw text is still sent; the server decides whether it is acceptable.
        return raw_body, f"Request body is not valid JSON: {exc}"


def build_request(
    entity: EntityDefinition,
    request_input: RequestInput,
    *,
    api_prefix: str = DEFAULT_API_PREFIX,
    limit: int | None = None,
    offset: int | None = None,
) -> RequestDescriptor:
    """
    Build the request descriptor for ``entity`` in the input's mode.

    ``limit`` and ``offset`` override the stored pagination for this build
    only; the input itself is never modified.
    """

    mode = RequestMode(request_input.mode)
    mode_spec = MODE_TABLE[mode]
    slug = entity_slug(entity)
    base_path = f"{_normalize_prefix(api_prefix)}/{mode_spec.collection}/{slug}"

    effective_limit = limit if limit is not None else request_input.limit
    effective_offset = offset if offset is not None else request_input.offset

    headers: dict[str, str] = {}
    if mode_spec.sends_content_type:
        headers["Content-Type"] = JSON_CONTENT_TYPE

    entity_id = request_input.entity_id.strip()
    body: Any = None
    body_error: str | None = None
    params: list[tuple[str, str]] = []

    if mode_spec.needs_id:
        base_path = f"{base_path}/{quote(entity_id, safe='') if entity_id else ID_PLACEHOLDER}"

    if mode is RequestMode.list:
        params.extend(("fields[]", field_name) for field_name in request_input.selected_fields)
        params.extend(_pagination_params(effective_limit, effective_offset))
    elif mode is RequestMode.search:
        params.extend(_pagination_params(effective_limit, effective_offset))
        body = {}
        if request_input.selected_fields:
            body["fields"] = list(request_input.selected_fields)
        serialized = serialize_filters(request_input.filters)
        if serialized:
            body["filter"] = serialized
    elif mode_spec.needs_body:
        body, body_error = parse_raw_body(request_input.raw_body)

    return RequestDescriptor(
        method=mode_spec.method,
        url=_with_query(base_path, params),
        headers=headers,
        body=body,
        mode=mode,
        entity_id=entity_id,
        body_error=body_error,
        requires_id=mode_spec.needs_id,
        limit=effective_limit if mode_spec.paginated else None,
        offset=(effective_offset or 0) if mode_spec.paginated else None,
    )


def ensure_executable(descriptor: RequestDescriptor) -> RequestDescriptor:
    if not descriptor.is_executable:
        raise MissingEntityIdError(mode=descriptor.mode)
    return descriptor


def preview_headers(descriptor: RequestDescriptor, *, client_id: str | None = None) -> dict[str, str]:
    headers = {"Authorization": f"Bearer {TOKEN_PLACEHOLDER}", **descriptor.headers}
    if client_id:
        headers["X-Client-Id"] = str(client_id)
    return headers


def render_curl(descriptor: RequestDescriptor, *, base_url: str, client_id: str | None = None) -> str:
    parts = [f"curl -X {descriptor.method}"]
    for name, value in preview_headers(descriptor, client_id=client_id).items():
        parts.append(f'-H "{name}: {value}"')
    if descriptor.body is not None and descriptor.method not in {"GET", "DELETE"}:
        payload = descriptor.body if isinstance(descriptor.body, str) else json.dumps(descriptor.body, indent=2)
        parts.append(f"-d '{payload}'")
    parts.append(f'"{descriptor.absolute_url(base_url)}"')
    return " \\\n  ".join(parts)


@dataclass(frozen=True, slots=True)
class PageInfo:
    limit: int
    offset: int
    result_count: int | None

    @classmethod
    def from_result(cls, *, limit: int | None, offset: int | None, result_count: int | None) -> "PageInfo":
        return cls(limit=limit or DEFAULT_LIMIT, offset=offset or 0, result_count=result_count)

    @property
    def current_page(self) -> int:
        return self.offset // self.limit + 1

    @property
    def has_prev(self) -> bool:
        return self.offset > 0

    @property
    def has_next(self) -> bool:
        # A full page suggests more results exist.
        return self.result_count is not None and self.result_count >= self.limit

    @property
    def prev_offset(self) -> int:
        return max(0, self.offset - self.limit)

    @property
    def next_offset(self) -> int:
        return self.offset + self.limit

    @property
    def showing_from(self) -> int:
        return self.offset + 1

    @property
    def showing_to(self) -> int:
        return self.offset + (self.result_count or 0)
