from __future__ import annotations

import pytest

from entity_probe.schema_graph import (
    MAX_RELATION_DEPTH,
    RelationStep,
    build_index,
    entity_slug,
    group_by_bundle,
    resolve_field_path,
    resolve_reference,
    search_fields,
    walk_relations,
)


def _document() -> dict[str, object]:
    return {
        "Acme\\ShopBundle\\Entity\\Product": {
            "className": "Product",
            "bundle": "ShopBundle",
            "tableName": "product",
            "columns": [
                {"property": "id", "type": "integer", "isPrimaryKey": True},
                {"property": "title", "type": "string", "length": 255},
                {"property": "price", "type": "decimal"},
            ],
            "relations": [
                {"property": "category", "type": "ManyToOne", "targetEntity": "Category"},
                {"property": "parent", "type": "ManyToOne", "targetEntity": "\\Acme\\ShopBundle\\Entity\\Product"},
                {"property": "ghost", "type": "ManyToOne", "targetEntity": "Missing"},
            ],
        },
        "Acme\\ShopBundle\\Entity\\Category": {
            "className": "Category",
            "bundle": "ShopBundle",
            "columns": [
                {"property": "id", "type": "integer", "isPrimaryKey": True},
                {"property": "name", "type": "string"},
            ],
            "relations": [
                {"property": "products", "type": "OneToMany", "targetEntity": "Product"},
                {"property": "owner", "type": "ManyToOne", "targetEntity": "Acme\\UserBundle\\Entity\\User"},
            ],
        },
        "Acme\\UserBundle\\Entity\\User": {
            "className": "User",
            "columns": [{"property": "email", "type": "string"}],
            "relations": [{"property": "favorite", "type": "ManyToOne", "targetEntity": "Product"}],
        },
        "Other\\Legacy\\Product": {
            "className": "Product",
            "bundle": "Legacy",
            "columns": [],
        },
    }


@pytest.fixture()
def index():
    return build_index(_document())


def test_build_index_keeps_first_short_name_and_sorts_by_display_name(index) -> None:
    assert len(index) == 4
    assert index.by_short_name["Product"].key == "Acme\\ShopBundle\\Entity\\Product"
    assert index.by_full_key["Other\\Legacy\\Product"].bundle == "Legacy"
    assert [entity.class_name for entity in index.ordered] == ["Category", "Product", "Product", "User"]


def test_build_index_tolerates_missing_sections() -> None:
    index = build_index({"Bare\\Thing": {"className": "Thing"}})
    thing = index.get_entity("Thing")

    assert thing is not None
    assert thing.columns == ()
    assert thing.relations == ()
    assert thing.bundle is None


def test_parsed_columns_and_relations(index) -> None:
    product = index.get_entity("Product")
    assert product is not None

    id_column = product.column("id")
    assert id_column is not None and id_column.is_primary_key
    assert product.column("title").length == 255
    assert product.column("price").is_known_type
    assert product.relation("category").label == "→ Many-to-One"
    assert product.relation("category").icon == "→"
    assert product.column("missing") is None


@pytest.mark.parametrize(
    ("reference", "expected_key"),
    [
        ("Product", "Acme\\ShopBundle\\Entity\\Product"),
        ("Acme\\UserBundle\\Entity\\User", "Acme\\UserBundle\\Entity\\User"),
        ("\\Acme\\UserBundle\\Entity\\User", "Acme\\UserBundle\\Entity\\User"),
        ("\\Category", "Acme\\ShopBundle\\Entity\\Category"),
        ("Other\\Legacy\\Product", "Other\\Legacy\\Product"),
    ],
)
def test_resolve_reference_accepts_all_forms(index, reference: str, expected_key: str) -> None:
    resolved = resolve_reference(reference, index)
    assert resolved is not None
    assert resolved.key == expected_key


@pytest.mark.parametrize("reference", ["", None, "Missing", "Acme\\Nope\\Product", "Acme\\ShopBundle\\Entity"])
def test_resolve_reference_returns_none_when_unresolved(index, reference: str | None) -> None:
    assert resolve_reference(reference, index) is None


def test_entity_slug_and_bundle_grouping(index) -> None:
    assert entity_slug(index.get_entity("Product")) == "product"

    groups = group_by_bundle(index.ordered)
    assert [entity.class_name for entity in groups["ShopBundle"]] == ["Category", "Product"]
    assert [entity.class_name for entity in groups["Other"]] == ["User"]
    assert set(groups) == {"ShopBundle", "Legacy", "Other"}


def test_walk_relations_marks_unresolved_targets_blocked(index) -> None:
    steps = {step.relation.property: step for step in walk_relations(index.get_entity("Product"), index)}

    assert steps["ghost"].target is None
    assert steps["ghost"].blocked
    assert steps["ghost"].column_paths() == []
    assert not steps["category"].blocked
    assert steps["category"].column_paths() == ["category.id", "category.name"]


def test_self_reference_expands_once_then_blocks(index) -> None:
    product = index.get_entity("Product")
    parent = next(step for step in walk_relations(product, index) if step.relation.property == "parent")

    assert not parent.blocked
    assert parent.is_self_reference
    assert parent.column_paths() == ["parent.id", "parent.title", "parent.price"]

    nested_parent = next(step for step in parent.expand(index) if step.relation.property == "parent")
    assert nested_parent.path == "parent.parent"
    assert nested_parent.blocked
    assert nested_parent.column_paths() == []


def test_cycle_between_entities_is_bounded(index) -> None:
    product = index.get_entity("Product")
    category = next(step for step in walk_relations(product, index) if step.relation.property == "category")
    products = next(step for step in category.expand(index) if step.relation.property == "products")

    assert products.path == "category.products"
    assert not products.blocked
    assert products.chain == (product.key, category.target.key)

    back_to_category = next(step for step in products.expand(index) if step.relation.property == "category")
    assert back_to_category.path == "category.products.category"
    assert not back_to_category.blocked

    third_visit = next(step for step in back_to_category.expand(index) if step.relation.property == "products")
    assert third_visit.blocked
    assert third_visit.occurrences == 2


def test_depth_limit_blocks_every_relation(index) -> None:
    user = index.get_entity("User")
    steps = list(walk_relations(user, index, chain=(), depth=MAX_RELATION_DEPTH))

    assert steps
    assert all(step.blocked for step in steps)


def test_expansion_is_lazy(index) -> None:
    product = index.get_entity("Product")
    walker = walk_relations(product, index)

    first = next(walker)
    assert isinstance(first, RelationStep)
    assert first.relation.property == "category"


def test_resolve_field_path_follows_relations(index) -> None:
    product = index.get_entity("Product")

    assert resolve_field_path(product, "title", index).property == "title"
    assert resolve_field_path(product, "category.name", index).property == "name"
    assert resolve_field_path(product, "category.owner.email", index).property == "email"
    assert resolve_field_path(product, "parent.parent.title", index) is None
    assert resolve_field_path(product, "ghost.id", index) is None
    assert resolve_field_path(product, "category.", index) is None
    assert resolve_field_path(product, "", index) is None


def test_search_fields_matches_properties_and_targets(index) -> None:
    product = index.get_entity("Product")

    everything = search_fields(product, "  ")
    assert len(everything.columns) == 3
    assert len(everything.relations) == 3

    matches = search_fields(product, "CAT")
    assert [col.property for col in matches.columns] == []
    assert [rel.property for rel in matches.relations] == ["category"]

    by_target = search_fields(product, "missing")
    assert [rel.property for rel in by_target.relations] == ["ghost"]

    assert search_fields(product, "zzz").is_empty


def test_all_reference_forms_resolve_to_the_same_entity(index) -> None:
    forms = ["User", "Acme\\UserBundle\\Entity\\User", "\\Acme\\UserBundle\\Entity\\User"]
    resolved = {resolve_reference(form, index) for form in forms}

    assert resolved == {index.get_entity("User")}
