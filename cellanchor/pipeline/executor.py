"""In-memory stage execution with dependency ordering."""

import time
from collections import deque
from typing import Any, Callable, Dict, List, Optional

from .logger import PipelineLogger


class InMemoryExecutor:
    """Runs registered Python stage functions in dependency order.

    Each stage function is called with the run keyword arguments plus
    ``stage_results`` (stage id -> result of every completed stage).

    Parameters
    ----------
    logger : PipelineLogger, optional
        Logger instance
    stop_on_error : bool
        Re-raise the first stage failure. When False, the failure is
        recorded and every stage depending on it is skipped.

    Example
    -------
    >>> executor = InMemoryExecutor()
    >>> executor.register_stage("load", load_func)
    >>> executor.register_stage("qc", qc_func, depends_on=["load"])
    >>> results = executor.run(path="counts.h5ad")
    """

    def __init__(self, logger: Optional[PipelineLogger] = None, stop_on_error: bool = True):
        self.logger = logger
        self.stop_on_error = stop_on_error
        self.stages: Dict[str, Dict[str, Any]] = {}
        self.completed_stages: List[str] = []
        self.failed_stages: Dict[str, str] = {}
        self.skipped_stages: Dict[str, str] = {}
        self.durations: Dict[str, float] = {}

    def register_stage(
        self,
        stage_id: str,
        func: Callable,
        depends_on: Optional[List[str]] = None,
        name: Optional[str] = None,
    ) -> None:
        """Register a stage function.

        Raises
        ------
        ValueError
            If the stage id is already registered.
        """
        if stage_id in self.stages:
            raise ValueError(f"Stage '{stage_id}' already registered")
        self.stages[stage_id] = {
            "func": func,
            "depends_on": list(depends_on or []),
            "name": name or stage_id,
        }

    def get_execution_order(self) -> List[str]:
        """Stage execution order via topological sort (registration order on ties).

        Raises
        ------
        ValueError
            On unknown dependencies or cycles.
        """
        for stage_id, stage in self.stages.items():
            missing = [d for d in stage["depends_on"] if d not in self.stages]
            if missing:
                raise ValueError(f"Stage '{stage_id}' depends on unknown stages: {missing}")

        in_degree = {sid: len(stage["depends_on"]) for sid, stage in self.stages.items()}
        queue = deque([sid for sid, degree in in_degree.items() if degree == 0])
        order = []
        while queue:
            stage_id = queue.popleft()
            order.append(stage_id)
            for other_id, other in self.stages.items():
                if stage_id in other["depends_on"]:
                    in_degree[other_id] -= 1
                    if in_degree[other_id] == 0:
                        queue.append(other_id)

        if len(order) != len(self.stages):
            raise ValueError("Circular dependency detected")
        return order

    def run(self, **kwargs) -> Dict[str, Any]:
        """Execute all registered stages in order.

        Returns
        -------
        Dict[str, Any]
            Map of stage_id to stage result (completed stages only)
        """
        order = self.get_execution_order()
        results: Dict[str, Any] = {}

        for stage_id in order:
            stage = self.stages[stage_id]
            blocked = [
                d for d in stage["depends_on"]
                if d in self.failed_stages or d in self.skipped_stages
            ]
            if blocked:
                reason = f"dependency failed: {', '.join(blocked)}"
                self.skipped_stages[stage_id] = reason
                if self.logger:
                    self.logger.log_stage_skipped(stage_id, reason)
                continue

            if self.logger:
                self.logger.log_stage_start(stage_id, stage["name"])
            start_time = time.time()
            try:
                results[stage_id] = stage["func"](**kwargs, stage_results=results)
            except Exception as e:
                self.failed_stages[stage_id] = f"{type(e).__name__}: {e}"
                if self.logger:
                    self.logger.log_stage_error(stage_id, str(e))
                if self.stop_on_error:
                    raise
                continue

            self.durations[stage_id] = time.time() - start_time
            self.completed_stages.append(stage_id)
            if self.logger:
                self.logger.log_stage_complete(stage_id, self.durations[stage_id])

        return results
