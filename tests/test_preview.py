"""Dry-run previews against a SQLite source."""

import pytest

from migration_engine.adapters.sql import SqlAdapter
from migration_engine.errors import TransformationConfigError
from migration_engine.models.schema import (
    ColumnMapping,
    Connection,
    EngineType,
    TableMapping,
    TransformationConfig,
    TransformationType,
)
from migration_engine.services.preview import generate_preview

from .conftest import seed_source

T = TransformationType


@pytest.fixture
def source(source_engine):
    seed_source(source_engine, orders=10)
    connection = Connection(engine_type=EngineType.POSTGRES, database="shop_source")
    return SqlAdapter(connection, engine=source_engine)


def test_preview_transforms_sample_rows(source):
    mappings = [
        ColumnMapping("id", "id", transformation=TransformationConfig(T.TYPE_CONVERSION, {"target_type": "VARCHAR(10)"})),
        ColumnMapping("code", "code", transformation=TransformationConfig(T.UPPERCASE)),
        ColumnMapping("name", "name", transformation=TransformationConfig(T.TRIM)),
    ]

    preview = generate_preview(source, TableMapping("countries", "dim_country"), mappings, sample_size=3)

    assert preview.total_source_rows == 5
    assert len(preview.rows) == 3
    first = preview.rows[0]
    assert first.source["code"] == "fr"
    assert first.target == {"id": "1", "code": "FR", "name": "Country 1"}
    assert preview.transformations["code"] == "Uppercase"
    assert preview.error_count == 0
    assert preview.warnings == []


def test_preview_reports_conversion_errors_per_cell(source):
    mappings = [
        ColumnMapping("id", "id"),
        ColumnMapping("code", "code", transformation=TransformationConfig(T.TYPE_CONVERSION, {"target_type": "INTEGER"})),
    ]

    preview = generate_preview(source, TableMapping("countries", "countries"), mappings, sample_size=2)

    assert preview.error_count == 2
    assert "code" in preview.rows[0].errors
    assert preview.rows[0].target["code"] is None
    assert preview.warnings == ["Unmapped source columns: name"]


def test_preview_flags_excluded_and_custom_columns(source):
    mappings = [
        ColumnMapping("id", "id", transformation=TransformationConfig(T.CUSTOM_EXPRESSION, {"expression": "{column} + 1"})),
        ColumnMapping("code", "code"),
        ColumnMapping("name", "name", transformation=TransformationConfig(T.EXCLUDE_COLUMN)),
    ]

    preview = generate_preview(source, TableMapping("countries", "countries"), mappings, sample_size=1)

    assert preview.rows[0].source["id"] == 1
    assert preview.rows[0].target == {"id": None, "code": "fr"}
    assert preview.rows[0].unevaluated == ["id"]
    assert preview.to_dict()["rows"][0]["unevaluated"] == ["id"]
    assert len(preview.warnings) == 2
    assert preview.to_dict()["error_count"] == 0


def test_preview_rejects_invalid_configuration(source):
    mappings = [ColumnMapping("id", "id", transformation=TransformationConfig(T.TYPE_CONVERSION))]
    with pytest.raises(TransformationConfigError):
        generate_preview(source, TableMapping("countries", "countries"), mappings)
