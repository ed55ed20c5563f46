"""Migration planning: validation, classification and ordering."""

import pytest

from migration_engine.errors import MappingError, TransformationConfigError
from migration_engine.models.schema import (
    ColumnMapping,
    Connection,
    ConnectionRole,
    EngineType,
    TableKind,
    TableMapping,
    TransformationConfig,
    TransformationType,
)
from migration_engine.services.repository import InMemoryMappingRepository, MappingProject
from migration_engine.stages.plan import build_plan


def table(name, depends_on=(), load_order=0, kind=None, columns=None, id=""):
    mapping = TableMapping(name, name, id=id, load_order=load_order, depends_on=list(depends_on), kind=kind)
    return mapping, columns if columns is not None else [ColumnMapping("id", "id")]


def plan_for(*tables):
    repository = InMemoryMappingRepository()
    repository.add_project(MappingProject(
        project_id="p",
        source=Connection(engine_type=EngineType.POSTGRES, database="src"),
        target=Connection(engine_type=EngineType.POSTGRES, database="dst", role=ConnectionRole.TARGET),
        tables=list(tables),
    ))
    return build_plan("p", repository)


def test_dependencies_come_first():
    plan = plan_for(
        table("order_lines", depends_on=["orders", "products"]),
        table("orders", depends_on=["customers"]),
        table("products", load_order=2),
        table("customers", load_order=1),
    )

    assert [t.target_table for t in plan.tables] == ["customers", "orders", "products", "order_lines"]


def test_ties_break_on_load_order_then_name():
    plan = plan_for(table("b", load_order=1), table("c", load_order=0), table("a", load_order=1))
    assert [t.target_table for t in plan.tables] == ["c", "a", "b"]


def test_leaf_dependents_are_facts():
    plan = plan_for(
        table("customers"),
        table("orders", depends_on=["customers"]),
        table("order_lines", depends_on=["orders"]),
    )

    assert [t.target_table for t in plan.dimensions] == ["customers", "orders"]
    assert [t.target_table for t in plan.facts] == ["order_lines"]
    assert plan.get("order_lines").dependencies == ["orders"]


def test_declared_kind_wins():
    plan = plan_for(table("events", kind=TableKind.FACT), table("customers"))
    assert [t.target_table for t in plan.facts] == ["events"]


def test_dimension_depending_on_fact_is_rejected():
    with pytest.raises(MappingError, match="depends on fact"):
        plan_for(
            table("events", kind=TableKind.FACT),
            table("customers", depends_on=["events"], kind=TableKind.DIMENSION),
        )


def test_dependencies_resolve_by_target_name():
    mapping, columns = table("src_orders")
    mapping.target_table = "orders"
    plan = plan_for((mapping, columns), table("lines", depends_on=["orders"]))

    assert plan.get("lines").dependencies == ["src_orders"]


def test_cycle_is_rejected():
    with pytest.raises(MappingError, match="cycle"):
        plan_for(table("a", depends_on=["b"]), table("b", depends_on=["a"]))


def test_unknown_dependency_is_rejected():
    with pytest.raises(MappingError, match="unknown table"):
        plan_for(table("orders", depends_on=["customers"]))


def test_self_dependency_is_rejected():
    with pytest.raises(MappingError, match="itself"):
        plan_for(table("orders", depends_on=["orders"]))


def test_empty_project_is_rejected():
    with pytest.raises(MappingError, match="no table mappings"):
        plan_for()


def test_unknown_project_is_rejected():
    with pytest.raises(MappingError, match="Unknown project"):
        build_plan("missing", InMemoryMappingRepository())


def test_table_without_mapped_columns_is_rejected():
    excluded = ColumnMapping("id", "id", transformation=TransformationConfig(TransformationType.EXCLUDE_COLUMN))
    with pytest.raises(MappingError, match="maps no columns"):
        plan_for(table("orders", columns=[excluded]))


def test_duplicate_table_ids_are_rejected():
    with pytest.raises(MappingError, match="Duplicate"):
        plan_for(table("orders", id="t1"), table("customers", id="t1"))


def test_invalid_transformation_fails_planning():
    bad = ColumnMapping("id", "id", transformation=TransformationConfig(TransformationType.TYPE_CONVERSION))
    with pytest.raises(TransformationConfigError, match="orders"):
        plan_for(table("orders", columns=[bad]))


def test_key_mapping_and_plan_dict():
    plan = plan_for(table("orders", columns=[ColumnMapping("id", "order_id"), ColumnMapping("total", "total")]))
    orders = plan.get("orders")

    assert orders.key_mapping("id").target_column == "order_id"
    assert orders.key_mapping("missing") is None
    assert orders.key_mapping(None) is None
    assert plan.to_dict()["tables"][0]["kind"] == "dimension"


def test_key_columns_of_dependencies_become_foreign_keys():
    lines = [ColumnMapping("id", "id"), ColumnMapping("country_id", "country_id"), ColumnMapping("promo_id", "promo_id")]
    plan = plan_for(table("countries"), table("orders", depends_on=["countries"], columns=lines))

    [foreign_key] = plan.get("orders").foreign_keys
    assert foreign_key.column.target_column == "country_id"
    assert foreign_key.parent == "countries"
    assert plan.get("orders").to_dict()["foreign_keys"] == [{"column": "country_id", "parent": "countries"}]


def test_declared_reference_adds_a_dependency():
    buyer = ColumnMapping("buyer", "buyer_ref", references="customers")
    plan = plan_for(table("orders", columns=[ColumnMapping("id", "id"), buyer]), table("customers"))

    orders = plan.get("orders")
    assert orders.dependencies == ["customers"]
    assert [(fk.column.target_column, fk.parent) for fk in orders.foreign_keys] == [("buyer_ref", "customers")]
    assert [t.target_table for t in plan.tables] == ["customers", "orders"]


def test_reference_to_unknown_table_is_rejected():
    buyer = ColumnMapping("buyer", "buyer", references="people")
    with pytest.raises(MappingError, match="references unknown table people"):
        plan_for(table("orders", columns=[ColumnMapping("id", "id"), buyer]))


def test_self_reference_is_not_resolved():
    manager = ColumnMapping("manager_id", "manager_id", references="staff")
    plan = plan_for(table("staff", columns=[ColumnMapping("id", "id"), manager]))

    assert plan.get("staff").foreign_keys == []
    assert plan.get("staff").dependencies == []
