"""Pipeline stages and the machinery they share."""

from .base import STAGE_ORDER, ExecutionControl, StageContext, TableOutcome
from .extract import extract_to_staging
from .load_dimensions import load_dimensions
from .load_facts import load_facts
from .plan import MigrationPlan, PlannedTable, build_plan
from .pool import TableWorkerPool
from .report import generate_report
from .staging import StagedTable, StagingArea
from .transform import transform_and_cleanse
from .validate import validate_load

__all__ = [
    "STAGE_ORDER",
    "ExecutionControl",
    "StageContext",
    "TableOutcome",
    "TableWorkerPool",
    "MigrationPlan",
    "PlannedTable",
    "build_plan",
    "StagedTable",
    "StagingArea",
    "extract_to_staging",
    "transform_and_cleanse",
    "load_dimensions",
    "load_facts",
    "validate_load",
    "generate_report",
]
