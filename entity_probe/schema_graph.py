from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any


MAX_RELATION_DEPTH = 4
MAX_CHAIN_OCCURRENCES = 2
NAMESPACE_SEPARATOR = "\\"
DEFAULT_BUNDLE = "Other"

COLUMN_TYPES = frozenset(
    {
        "string",
        "integer",
        "decimal",
        "float",
        "boolean",
        "datetime",
        "date",
        "text",
        "json",
        "array",
        "object",
        "blob",
    }
)


class RelationType(str, Enum):
    many_to_one = "ManyToOne"
    one_to_many = "OneToMany"
    many_to_many = "ManyToMany"
    one_to_one = "OneToOne"


_RELATION_LABELS = {
    RelationType.many_to_one.value: "→ Many-to-One",
    RelationType.one_to_many.value: "← One-to-Many",
    RelationType.many_to_many.value: "↔ Many-to-Many",
    RelationType.one_to_one.value: "⇄ One-to-One",
}
_RELATION_ICONS = {
    RelationType.many_to_one.value: "→",
    RelationType.one_to_many.value: "←",
    RelationType.many_to_many.value: "↔",
    RelationType.one_to_one.value: "⇄",
}


@dataclass(frozen=True, slots=True)
class Column:
    property: str
    type: str
    length: int | None = None
    is_primary_key: bool = False

    @property
    def is_known_type(self) -> bool:
        return self.type in COLUMN_TYPES


@dataclass(frozen=True, slots=True)
class Relation:
    property: str
    type: str
    target_entity: str

    @property
    def label(self) -> str:
        return _RELATION_LABELS.get(self.type, self.type)

    @property
    def icon(self) -> str:
        return _RELATION_ICONS.get(self.type, "?")


@dataclass(frozen=True, slots=True)
class EntityDefinition:
    key: str
    class_name: str
    bundle: str | None = None
    table_name: str | None = None
    columns: tuple[Column, ...] = ()
    relations: tuple[Relation, ...] = ()

    @property
    def display_name(self) -> str:
        return self.class_name

    def column(self, prop: str) -> Column | None:
        return next((col for col in self.columns if col.property == prop), None)

    def relation(self, prop: str) -> Relation | None:
        return next((rel for rel in self.relations if rel.property == prop), None)


@dataclass(frozen=True)
class SchemaIndex:
    """Read-only lookup view over one loaded schema document."""

    by_full_key: Mapping[str, EntityDefinition]
    by_short_name: Mapping[str, EntityDefinition]
    ordered: tuple[EntityDefinition, ...]

    def __len__(self) -> int:
        return len(self.ordered)

    def get_entity(self, name_or_key: str) -> EntityDefinition | None:
        return self.by_short_name.get(name_or_key) or self.by_full_key.get(name_or_key)


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _as_list(value: Any) -> list[Any]:
    return list(value) if isinstance(value, (list, tuple)) else []


def _parse_column(raw: Any) -> Column:
    data = _as_mapping(raw)
    return Column(
        property=str(data.get("property") or ""),
        type=str(data.get("type") or ""),
        length=_as_int(data.get("length")),
        is_primary_key=bool(data.get("isPrimaryKey", False)),
    )


def _parse_relation(raw: Any) -> Relation:
    data = _as_mapping(raw)
    return Relation(
        property=str(data.get("property") or ""),
        type=str(data.get("type") or ""),
        target_entity=str(data.get("targetEntity") or ""),
    )


def parse_entity(key: str, raw: Any) -> EntityDefinition:
    data = _as_mapping(raw)
    return EntityDefinition(
        key=key,
        class_name=str(data.get("className") or ""),
        bundle=data.get("bundle") or None,
        table_name=data.get("tableName") or None,
        columns=tuple(_parse_column(col) for col in _as_list(data.get("columns"))),
        relations=tuple(_parse_relation(rel) for rel in _as_list(data.get("relations"))),
    )


def build_index(raw_document: Mapping[str, Any]) -> SchemaIndex:
    by_full_key: dict[str, EntityDefinition] = {}
    by_short_name: dict[str, EntityDefinition] = {}
    entities: list[EntityDefinition] = []

    for key, raw in raw_document.items():
        entity = parse_entity(str(key), raw)
        by_full_key[entity.key] = entity
        # Short names can collide across bundles; the first one wins.
        by_short_name.setdefault(entity.class_name, entity)
        entities.append(entity)

    entities.sort(key=lambda item: item.display_name.casefold())
    return SchemaIndex(
        by_full_key=MappingProxyType(by_full_key),
        by_short_name=MappingProxyType(by_short_name),
        ordered=tuple(entities),
    )


def resolve_reference(ref: str | None, index: SchemaIndex) -> EntityDefinition | None:
    """
    Resolve a relation target reference to an entity.

    Accepted forms:
    - Short name: ``Product``
    - Fully-qualified name: ``Acme\\ShopBundle\\Entity\\Product``
    - The same with a leading separator: ``\\Acme\\ShopBundle\\Entity\\Product``
    """

    if not ref:
        return None

    normalized = ref[1:] if ref.startswith(NAMESPACE_SEPARATOR) else ref
    if NAMESPACE_SEPARATOR in normalized:
        return index.by_full_key.get(normalized)
    return index.by_short_name.get(normalized)


def entity_slug(entity: EntityDefinition) -> str:
    return entity.class_name.lower()


def field_path(*segments: str) -> str:
    return ".".join(segment for segment in segments if segment)


def group_by_bundle(entities: Iterable[EntityDefinition]) -> dict[str, list[EntityDefinition]]:
    groups: dict[str, list[EntityDefinition]] = {}
    for entity in entities:
        groups.setdefault(entity.bundle or DEFAULT_BUNDLE, []).append(entity)
    return groups


@dataclass(frozen=True, slots=True)
class RelationStep:
    relation: Relation
    target: EntityDefinition | None
    path: str
    depth: int
    chain: tuple[str, ...]
    blocked: bool
    occurrences: int = 0

    @property
    def is_self_reference(self) -> bool:
        return self.occurrences >= 1 and not self.blocked

    def column_paths(self) -> list[str]:
        if self.blocked or self.target is None:
            return []
        return [field_path(self.path, col.property) for col in self.target.columns]

    def expand(self, index: SchemaIndex) -> Iterator[RelationStep]:
        if self.blocked or self.target is None:
            return iter(())
        return walk_relations(
            self.target,
            index,
            chain=(*self.chain, self.target.key),
            depth=self.depth + 1,
            prefix=self.path,
        )


def is_blocked(target: EntityDefinition | None, chain: tuple[str, ...], depth: int) -> bool:
    if target is None or depth >= MAX_RELATION_DEPTH:
        return True
    return chain.count(target.key) >= MAX_CHAIN_OCCURRENCES


def walk_relations(
    entity: EntityDefinition,
    index: SchemaIndex,
    *,
    chain: tuple[str, ...] | None = None,
    depth: int = 0,
    prefix: str = "",
    relations: Iterable[Relation] | None = None,
) -> Iterator[RelationStep]:
    """
    Lazily yield one step per relation of ``entity``.

    ``chain`` is the ancestry of keys leading to ``entity`` and defaults to the
    entity's own key, so a relation back to the same entity expands once and is
    blocked the second time. Steps at ``MAX_RELATION_DEPTH`` or deeper are
    always blocked.
    """

    ancestry = chain if chain is not None else (entity.key,)
    for relation in relations if relations is not None else entity.relations:
        target = resolve_reference(relation.target_entity, index)
        occurrences = ancestry.count(target.key) if target is not None else 0
        yield RelationStep(
            relation=relation,
            target=target,
            path=field_path(prefix, relation.property),
            depth=depth,
            chain=ancestry,
            blocked=is_blocked(target, ancestry, depth),
            occurrences=occurrences,
        )


def resolve_field_path(entity: EntityDefinition, path: str, index: SchemaIndex) -> Column | None:
    segments = path.split(".") if path else []
    if not segments or not all(segments):
        return None

    current = entity
    chain: tuple[str, ...] = (entity.key,)
    for depth, segment in enumerate(segments[:-1]):
        relation = current.relation(segment)
        if relation is None:
            return None
        step = next(walk_relations(current, index, chain=chain, depth=depth, relations=(relation,)))
        if step.blocked or step.target is None:
            return None
        current = step.target
        chain = (*chain, current.key)

    return current.column(segments[-1])


@dataclass(frozen=True, slots=True)
class FieldMatches:
    columns: tuple[Column, ...] = ()
    relations: tuple[Relation, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.columns and not self.relations


def search_fields(entity: EntityDefinition, query: str) -> FieldMatches:
    needle = query.strip().lower()
    if not needle:
        return FieldMatches(columns=entity.columns, relations=entity.relations)

    return FieldMatches(
        columns=tuple(col for col in entity.columns if needle in col.property.lower()),
        relations=tuple(
            rel
            for rel in entity.relations
            if needle in rel.property.lower() or needle in rel.target_entity.lower()
        ),
    )
