"""Auto-mapping suggestions for tables and columns."""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..models.schema import (
    ColumnInfo,
    ColumnMapping,
    DatabaseSchema,
    TableInfo,
    TableMapping,
    TransformationConfig,
)
from .transformer import TransformEngine

logger = logging.getLogger(__name__)

EXACT_MATCH_SCORE = 1.0
NORMALIZED_MATCH_SCORE = 0.95
PRIMARY_KEY_BONUS = 0.1
TYPE_MATCH_BONUS = 0.05

_CAMEL_BOUNDARY_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_PREFIX_RE = re.compile(r"^(tbl|tb|t|src|tgt|dim|fact|fct)_", re.IGNORECASE)
_SUFFIX_RE = re.compile(r"_(id|key|pk)$", re.IGNORECASE)
_SEPARATOR_RE = re.compile(r"[\s_\-]+")

# Common spellings of the same concept
_VARIATIONS = {
    "emailaddress": "email",
    "phonenumber": "phone",
    "created": "createdat",
    "createddate": "createdat",
    "creationdate": "createdat",
    "updated": "updatedat",
    "modifieddate": "updatedat",
    "lastmodifieddate": "updatedat",
}


def normalize_name(name: str) -> str:
    """
    Normalize a table or column name for matching.

    Strips schema qualifiers, common prefixes and trailing _id/_key/_pk,
    removes separators and lowercases. CamelCase is split first so that
    ``CustomerID`` and ``customer_id`` normalize alike.
    """
    value = name.strip()
    if "." in value:
        value = value.rsplit(".", 1)[1]
    value = value.strip('[]"`')
    value = _CAMEL_BOUNDARY_RE.sub("_", value)

    stripped = _PREFIX_RE.sub("", value)
    stripped = _SUFFIX_RE.sub("", stripped)
    normalized = _SEPARATOR_RE.sub("", stripped).lower()

    if not normalized:
        normalized = _SEPARATOR_RE.sub("", value).lower()
    return _VARIATIONS.get(normalized, normalized)


def levenshtein(a: str, b: str) -> int:
    """Edit distance between two strings."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, 1):
        current = [i]
        for j, char_b in enumerate(b, 1):
            cost = 0 if char_a == char_b else 1
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + cost,
            ))
        previous = current
    return previous[-1]


def score_names(source: str, target: str) -> Tuple[float, str]:
    """Name similarity score in [0, 1] with a short reason."""
    if source.lower() == target.lower():
        return EXACT_MATCH_SCORE, "Exact name match"

    normalized_source = normalize_name(source)
    normalized_target = normalize_name(target)
    if normalized_source and normalized_source == normalized_target:
        return NORMALIZED_MATCH_SCORE, "Normalized name match"

    longest = max(len(normalized_source), len(normalized_target))
    if longest == 0:
        return 0.0, "No similarity"
    similarity = 1 - levenshtein(normalized_source, normalized_target) / longest
    return max(similarity, 0.0), f"Name similarity {similarity:.0%}"


@dataclass
class TableMappingSuggestion:
    source_table: str
    target_table: str
    confidence: float
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_table": self.source_table,
            "target_table": self.target_table,
            "confidence": round(self.confidence, 4),
            "reason": self.reason,
        }


@dataclass
class ColumnMappingSuggestion:
    source_table: str
    target_table: str
    source_column: str
    target_column: str
    confidence: float
    reason: str
    source_type: Optional[str] = None
    target_type: Optional[str] = None
    target_nullable: bool = True
    suggested_transformation: Optional[TransformationConfig] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_table": self.source_table,
            "target_table": self.target_table,
            "source_column": self.source_column,
            "target_column": self.target_column,
            "confidence": round(self.confidence, 4),
            "reason": self.reason,
            "source_type": self.source_type,
            "target_type": self.target_type,
            "target_nullable": self.target_nullable,
            "suggested_transformation": (
                self.suggested_transformation.to_dict() if self.suggested_transformation else None
            ),
        }


@dataclass
class AutoMappingResult:
    table_mappings: List[TableMappingSuggestion] = field(default_factory=list)
    column_mappings: List[ColumnMappingSuggestion] = field(default_factory=list)

    def columns_for(self, source_table: str) -> List[ColumnMappingSuggestion]:
        return [c for c in self.column_mappings if c.source_table == source_table]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table_mappings": [t.to_dict() for t in self.table_mappings],
            "column_mappings": [c.to_dict() for c in self.column_mappings],
        }


def _greedy_assign(candidates: List[Tuple[float, int, int, str]]) -> List[Tuple[float, int, int, str]]:
    """Accept pairs by descending score; each side is claimed at most once."""
    accepted = []
    used_sources, used_targets = set(), set()
    for candidate in sorted(candidates, key=lambda c: (-c[0], c[1], c[2])):
        _, source_index, target_index, _ = candidate
        if source_index in used_sources or target_index in used_targets:
            continue
        used_sources.add(source_index)
        used_targets.add(target_index)
        accepted.append(candidate)
    return sorted(accepted, key=lambda c: c[1])


class AutoMappingSuggester:
    """
    Suggests table and column mappings between two discovered schemas.

    Matching is greedy, not globally optimal: the highest-confidence pair
    claims its target first and claimed targets are not offered again.
    """

    def __init__(self, transformer: Optional[TransformEngine] = None):
        self.transformer = transformer or TransformEngine()

    def suggest(
        self,
        source_schema: DatabaseSchema,
        target_schema: DatabaseSchema,
        min_confidence: float = 0.7
    ) -> AutoMappingResult:
        """
        Suggest mappings from source tables/columns to target ones.

        Args:
            source_schema: Discovered source schema
            target_schema: Discovered target schema
            min_confidence: Pairs scoring below this are dropped

        Returns:
            AutoMappingResult with table and column suggestions
        """
        result = AutoMappingResult()

        candidates = []
        for i, source_table in enumerate(source_schema.tables):
            for j, target_table in enumerate(target_schema.tables):
                score, reason = score_names(source_table.name, target_table.name)
                if score >= min_confidence:
                    candidates.append((score, i, j, reason))

        for score, i, j, reason in _greedy_assign(candidates):
            source_table = source_schema.tables[i]
            target_table = target_schema.tables[j]
            result.table_mappings.append(TableMappingSuggestion(
                source_table=source_table.name,
                target_table=target_table.name,
                confidence=score,
                reason=reason,
            ))
            result.column_mappings.extend(self.suggest_columns(
                source_table,
                target_table,
                source_schema,
                target_schema,
                min_confidence,
            ))

        logger.info(
            f"Suggested {len(result.table_mappings)} table and "
            f"{len(result.column_mappings)} column mappings"
        )
        return result

    def suggest_columns(
        self,
        source_table: TableInfo,
        target_table: TableInfo,
        source_schema: DatabaseSchema,
        target_schema: DatabaseSchema,
        min_confidence: float = 0.7
    ) -> List[ColumnMappingSuggestion]:
        """Suggest column pairs within one accepted table pair."""
        candidates = []
        for i, source_column in enumerate(source_table.columns):
            for j, target_column in enumerate(target_table.columns):
                score, reason = self.score_columns(source_column, target_column)
                if score >= min_confidence:
                    candidates.append((score, i, j, reason))

        suggestions = []
        for score, i, j, reason in _greedy_assign(candidates):
            source_column = source_table.columns[i]
            target_column = target_table.columns[j]
            suggestions.append(ColumnMappingSuggestion(
                source_table=source_table.name,
                target_table=target_table.name,
                source_column=source_column.name,
                target_column=target_column.name,
                confidence=score,
                reason=reason,
                source_type=source_column.data_type,
                target_type=target_column.data_type,
                target_nullable=target_column.nullable,
                suggested_transformation=self.transformer.suggest_transformation(
                    source_schema.engine_type,
                    target_schema.engine_type,
                    source_column.data_type,
                    target_column.data_type,
                ),
            ))
        return suggestions

    def score_columns(self, source: ColumnInfo, target: ColumnInfo) -> Tuple[float, str]:
        """Name score plus primary-key and type bonuses, capped at 1.0."""
        score, reason = score_names(source.name, target.name)
        if source.is_primary_key and target.is_primary_key:
            score += PRIMARY_KEY_BONUS
            reason += ", both primary keys"
        if source.data_type and source.data_type.lower() == (target.data_type or "").lower():
            score += TYPE_MATCH_BONUS
            reason += ", same type"
        return min(score, 1.0), reason

    def apply_suggestions(
        self,
        result: AutoMappingResult,
        threshold: float = 0.85
    ) -> List[Tuple[TableMapping, List[ColumnMapping]]]:
        """Turn confident suggestions into table and column mappings."""
        applied = []
        for order, table in enumerate(
            t for t in result.table_mappings if t.confidence >= threshold
        ):
            table_mapping = TableMapping(
                source_table=table.source_table,
                target_table=table.target_table,
                load_order=order,
            )
            columns = [
                ColumnMapping(
                    source_column=c.source_column,
                    target_column=c.target_column,
                    source_type=c.source_type,
                    target_type=c.target_type,
                    nullable=c.target_nullable,
                    transformation=c.suggested_transformation,
                )
                for c in result.columns_for(table.source_table)
                if c.confidence >= threshold
            ]
            applied.append((table_mapping, columns))
        return applied


def unmatched_columns(table: TableInfo, suggestions: Sequence[ColumnMappingSuggestion]) -> List[str]:
    """Source columns of a table that received no suggestion."""
    matched = {s.source_column for s in suggestions if s.source_table == table.name}
    return [c.name for c in table.columns if c.name not in matched]
