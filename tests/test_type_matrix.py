"""Cross-engine type compatibility lookups."""

import pytest

from migration_engine.models.schema import ColumnInfo, EngineType
from migration_engine.services.type_matrix import (
    is_valid_type_name,
    lookup_type,
    normalize_type,
    resolve_column_type,
    text_type_for,
)

PG = EngineType.POSTGRES
MY = EngineType.MYSQL
MS = EngineType.SQLSERVER


@pytest.mark.parametrize("raw, expected", [
    ("character varying(255)", "varchar"),
    ("INT UNSIGNED", "int"),
    ("timestamp without time zone", "timestamp"),
    ("NUMERIC(10, 2)", "numeric"),
    ("", ""),
    (None, ""),
])
def test_normalize_type(raw, expected):
    assert normalize_type(raw) == expected


def test_known_pair():
    mapping = lookup_type(PG, MY, "int4")
    assert mapping.target_type == "INT"
    assert not mapping.requires_transformation


def test_pair_requiring_transformation():
    mapping = lookup_type(PG, MS, "boolean")
    assert mapping.target_type == "BIT"
    assert mapping.requires_transformation
    assert mapping.transformation_hint


def test_equivalent_name_is_tried():
    assert lookup_type(MY, PG, "integer").target_type == "INTEGER"
    assert lookup_type(MS, PG, "double precision").target_type == "DOUBLE PRECISION"


def test_unknown_type_falls_back_to_text():
    mapping = lookup_type(PG, MS, "tsvector")
    assert mapping.target_type == "NVARCHAR(MAX)"
    assert not mapping.requires_transformation
    assert "text" in mapping.transformation_hint


def test_same_engine_keeps_type():
    assert lookup_type(PG, PG, "jsonb").target_type == "jsonb"


def test_document_source_to_relational():
    assert lookup_type(EngineType.MONGODB, PG, "object").target_type == "JSONB"
    assert lookup_type(EngineType.COUCHDB, MS, "boolean").target_type == "BIT"


@pytest.mark.parametrize("source, target, column, expected", [
    (PG, MY, ColumnInfo("name", "varchar", max_length=100), "VARCHAR(100)"),
    (PG, MY, ColumnInfo("name", "varchar"), "LONGTEXT"),
    (MS, PG, ColumnInfo("name", "nvarchar"), "VARCHAR"),
    (PG, PG, ColumnInfo("name", "varchar", max_length=50), "VARCHAR(50)"),
    (PG, PG, ColumnInfo("id", "integer"), "INTEGER"),
    (PG, MS, ColumnInfo("total", "numeric"), "DECIMAL(38,10)"),
    (PG, EngineType.MONGODB, ColumnInfo("id", "integer"), "integer"),
])
def test_resolve_column_type(source, target, column, expected):
    assert resolve_column_type(source, target, column) == expected


@pytest.mark.parametrize("name, valid", [
    ("INTEGER", True),
    ("NUMERIC(10, 2)", True),
    ("NVARCHAR(MAX)", True),
    ("double precision", True),
    ("TINYINT UNSIGNED", True),
    ("INT; DROP TABLE users", False),
    ("VARCHAR(10) --", False),
    ("", False),
])
def test_is_valid_type_name(name, valid):
    assert is_valid_type_name(name) is valid


def test_text_type_for():
    assert text_type_for(PG) == "TEXT"
    assert text_type_for(MY) == "LONGTEXT"
    assert text_type_for(MS) == "NVARCHAR(MAX)"
