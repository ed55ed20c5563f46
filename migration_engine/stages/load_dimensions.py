"""Stage 3: load dimension tables."""

import logging

from ..models.execution import LoadStrategy, StageId, StageResult
from .base import StageContext
from .loading import run_load_stage

logger = logging.getLogger(__name__)


def load_dimensions(ctx: StageContext) -> StageResult:
    """
    Load dimension tables in dependency order.

    Under truncate-load the fact targets are emptied first (in reverse
    order) so that dimension rows they reference can be replaced.
    """

    def clear_facts(target, result: StageResult) -> None:
        if ctx.config.load_strategy != LoadStrategy.TRUNCATE_LOAD or not ctx.plan.facts:
            return
        with target.transaction() as session:
            for planned in reversed(ctx.plan.facts):
                session.truncate(planned.target_table)
        result.metadata["cleared_fact_tables"] = [t.target_table for t in reversed(ctx.plan.facts)]

    return run_load_stage(StageId.LOAD_DIMENSIONS, ctx, ctx.plan.dimensions, before_load=clear_facts)
