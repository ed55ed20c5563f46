"""Bounded worker pool that runs a stage's per-table work."""

import logging
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Sequence, TypeVar

from .base import ExecutionControl, TableOutcome

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TableWorkerPool:
    """
    Runs one work item per table with at most ``parallelism`` in flight.

    With ``stop_on_failure`` no further table is started once one has
    failed; tables already running are allowed to finish. Outcomes are
    returned in input order for the tables that ran.
    """

    def __init__(self, parallelism: int, control: ExecutionControl, stop_on_failure: bool = False):
        self.parallelism = max(1, parallelism)
        self.control = control
        self.stop_on_failure = stop_on_failure

    def run(self, items: Sequence[T], worker: Callable[[T], TableOutcome]) -> List[TableOutcome]:
        if self.parallelism == 1 or len(items) <= 1:
            return self._run_sequential(items, worker)
        return self._run_parallel(items, worker)

    def _run_sequential(self, items: Sequence[T], worker: Callable[[T], TableOutcome]) -> List[TableOutcome]:
        outcomes = []
        for item in items:
            self.control.check()
            outcome = worker(item)
            outcomes.append(outcome)
            if outcome.failed and self.stop_on_failure:
                logger.warning(f"Stopping after failure of {outcome.table}")
                break
        return outcomes

    def _run_parallel(self, items: Sequence[T], worker: Callable[[T], TableOutcome]) -> List[TableOutcome]:
        outcomes: Dict[int, TableOutcome] = {}
        queue = list(enumerate(items))
        stopped = False

        with ThreadPoolExecutor(max_workers=self.parallelism, thread_name_prefix="table-worker") as executor:
            pending = {}
            while queue or pending:
                while queue and not stopped and len(pending) < self.parallelism:
                    self.control.check()
                    index, item = queue.pop(0)
                    pending[executor.submit(worker, item)] = index

                if not pending:
                    break

                done, _ = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    index = pending.pop(future)
                    outcome = future.result()
                    outcomes[index] = outcome
                    if outcome.failed and self.stop_on_failure and not stopped:
                        logger.warning(f"Stopping after failure of {outcome.table}")
                        stopped = True

        return [outcomes[index] for index in sorted(outcomes)]
