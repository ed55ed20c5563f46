"""Dry-run preview of a table migration."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..adapters.base import DatabaseAdapter
from ..models.schema import ColumnMapping, TableMapping, TransformationType
from .transformer import TransformEngine, describe_transformation

logger = logging.getLogger(__name__)


@dataclass
class PreviewRow:
    """One sampled source row and what it would become in the target."""
    source: Dict[str, Any]
    target: Dict[str, Any]
    errors: Dict[str, str] = field(default_factory=dict)
    # Target columns only the database can compute; their value is None
    unevaluated: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "errors": self.errors,
            "unevaluated": self.unevaluated,
        }


@dataclass
class MigrationPreview:
    source_table: str
    target_table: str
    total_source_rows: Optional[int] = None
    transformations: Dict[str, str] = field(default_factory=dict)
    rows: List[PreviewRow] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        return sum(len(row.errors) for row in self.rows)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_table": self.source_table,
            "target_table": self.target_table,
            "total_source_rows": self.total_source_rows,
            "transformations": self.transformations,
            "rows": [row.to_dict() for row in self.rows],
            "error_count": self.error_count,
            "warnings": self.warnings,
        }


def generate_preview(
    source: DatabaseAdapter,
    table_mapping: TableMapping,
    column_mappings: List[ColumnMapping],
    sample_size: int = 10,
    transformer: Optional[TransformEngine] = None
) -> MigrationPreview:
    """
    Show how sample rows would look after transformation.

    Nothing is written anywhere. Values are transformed in-process. Custom
    expressions only the database can evaluate are left as None, listed
    in each row's ``unevaluated`` and flagged with a warning.

    Args:
        source: Open adapter for the source database
        table_mapping: Table to preview
        column_mappings: Column mappings of the table
        sample_size: Number of source rows to sample
        transformer: Transform engine (created if not given)

    Returns:
        MigrationPreview with sampled rows and warnings
    """
    transformer = transformer or TransformEngine()
    transformer.validate_mappings(column_mappings)

    preview = MigrationPreview(
        source_table=table_mapping.source_table,
        target_table=table_mapping.target_table,
    )
    preview.total_source_rows = source.row_count(table_mapping.source_table)

    database_only = set()
    for mapping in column_mappings:
        preview.transformations[mapping.source_column] = describe_transformation(mapping.transformation)
        if mapping.transformation and mapping.transformation.type == TransformationType.CUSTOM_EXPRESSION:
            database_only.add(mapping.target_column)
            preview.warnings.append(
                f"{mapping.source_column}: custom expressions are evaluated by the database and not shown"
            )

    excluded = [m.source_column for m in column_mappings if m.is_excluded]
    if excluded:
        preview.warnings.append(f"Excluded columns: {', '.join(excluded)}")

    sample = source.extract_batch(table_mapping.source_table, offset=0, limit=sample_size)
    if sample:
        mapped = {m.source_column for m in column_mappings}
        unmapped = [name for name in sample[0] if name not in mapped]
        if unmapped:
            preview.warnings.append(f"Unmapped source columns: {', '.join(unmapped)}")

    for row in sample:
        preview_row = PreviewRow(source=row, target={})
        for mapping in column_mappings:
            if mapping.is_excluded:
                continue
            value = row.get(mapping.source_column)
            if mapping.target_column in database_only:
                preview_row.unevaluated.append(mapping.target_column)
                value = None
            elif mapping.transformation is not None:
                try:
                    value = transformer.apply_value(value, mapping.transformation, row)
                except (ValueError, TypeError, OverflowError) as e:
                    preview_row.errors[mapping.target_column] = str(e)
                    value = None
            preview_row.target[mapping.target_column] = value
        preview.rows.append(preview_row)

    logger.info(
        f"Previewed {len(preview.rows)} rows of {table_mapping.source_table} "
        f"({preview.error_count} conversion errors)"
    )
    return preview
