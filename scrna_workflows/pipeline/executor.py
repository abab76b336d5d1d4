"""Workflow execution engine with state and checkpoint support."""

import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

from ..errors import StageError
from .config import topological_order
from .logger import PipelineLogger
from .stage import Stage, StageOutput


@dataclass
class WorkflowRun:
    """Outcome of a workflow execution.

    Attributes
    ----------
    adata : AnnData
        Dataset produced by the last executed stage
    outputs : Dict[str, StageOutput]
        Output of every executed stage
    completed_stages : List[str]
        Stages that ran, in execution order
    skipped_stages : List[str]
        Disabled stages that were passed over
    durations : Dict[str, float]
        Seconds spent per stage
    """

    adata: Any = None
    outputs: Dict[str, StageOutput] = field(default_factory=dict)
    completed_stages: List[str] = field(default_factory=list)
    skipped_stages: List[str] = field(default_factory=list)
    durations: Dict[str, float] = field(default_factory=dict)

    def summary_table(self) -> pd.DataFrame:
        """One row per (stage, diagnostic) with its value."""
        rows = [
            {"stage": stage_id, "key": key, "value": value}
            for stage_id, output in self.outputs.items()
            for key, value in output.summary.items()
        ]
        return pd.DataFrame(rows, columns=["stage", "key", "value"])


class WorkflowExecutor:
    """Runs registered stages in dependency order on one dataset.

    Each stage receives the dataset produced by the previous stage and
    returns a ``StageOutput`` holding a new dataset. Failures are wrapped
    in ``StageError`` carrying the stages completed so far; with a
    checkpoint directory the run can be resumed from the failed stage.

    Parameters
    ----------
    logger : PipelineLogger, optional
        Logger instance (default: console-only ``PipelineLogger``)
    state_file : str, optional
        JSON file recording completed stages
    checkpoint_dir : str, optional
        Directory for ``<stage_id>.h5ad`` checkpoints written after each stage
    name : str
        Workflow name recorded in the state file

    Example
    -------
    >>> executor = WorkflowExecutor()
    >>> executor.register_stage("load", load_func)
    >>> executor.register_stage("qc", qc_func, depends_on=["load"])
    >>> run = executor.run()
    >>> run.adata
    """

    def __init__(
        self,
        logger: Optional[PipelineLogger] = None,
        state_file: Optional[str] = None,
        checkpoint_dir: Optional[str] = None,
        name: str = "workflow",
    ):
        if logger is None:
            logger = PipelineLogger()
            logger.setup()
        self.logger = logger
        self.state_file = Path(state_file) if state_file else None
        self.checkpoint_dir = Path(checkpoint_dir) if checkpoint_dir else None
        self.name = name
        self.stages: Dict[str, Stage] = {}
        self.completed_stages: List[str] = []

    def register_stage(
        self,
        stage_id: str,
        func: Callable,
        depends_on: Optional[List[str]] = None,
        name: Optional[str] = None,
        args: Optional[Dict[str, Any]] = None,
        optional: bool = False,
        enabled: bool = True,
    ) -> None:
        """Register a stage function ``func(adata, **args) -> StageOutput``."""
        self.add_stage(
            Stage(
                name=name or stage_id,
                stage_id=stage_id,
                func=func,
                depends_on=list(depends_on or []),
                args=dict(args or {}),
                optional=optional,
                enabled=enabled,
            )
        )

    def add_stage(self, stage: Stage) -> None:
        """Add a Stage object.

        Raises
        ------
        ValueError
            If the stage ID is already registered or the stage is invalid
        """
        if stage.stage_id in self.stages:
            raise ValueError(f"Stage '{stage.stage_id}' is already registered")
        valid, errors = stage.validate()
        if not valid:
            raise ValueError("; ".join(errors))
        self.stages[stage.stage_id] = stage

    def get_execution_order(self) -> List[str]:
        return topological_order({sid: s.depends_on for sid, s in self.stages.items()})

    # ------------------------------------------------------------------
    # State and checkpoints
    # ------------------------------------------------------------------

    def load_state(self) -> List[str]:
        """Load completed stages from the state file (empty if absent)."""
        if self.state_file is None or not self.state_file.exists():
            self.logger.log_debug("No state file found, starting fresh")
            return []

        with open(self.state_file, "r") as f:
            state = json.load(f)

        if state.get("workflow", self.name) != self.name:
            self.logger.log_warning(
                f"State file belongs to workflow '{state['workflow']}', ignoring it"
            )
            return []

        completed = state.get("completed_stages", [])
        self.logger.log_info(f"Loaded state: {len(completed)} stages completed")
        if completed:
            self.logger.log_info(f"Last completed: {completed[-1]}")
        return completed

    def save_state(self, summaries: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        """Write completed stages and their summaries to the state file."""
        if self.state_file is None:
            return

        state = {
            "workflow": self.name,
            "completed_stages": self.completed_stages,
            "summaries": summaries or {},
            "timestamp": datetime.now().isoformat(),
        }
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.state_file, "w") as f:
            json.dump(state, f, indent=2, default=str)

    def clear_state(self) -> None:
        """Clear state (for a fresh run)."""
        if self.state_file is not None and self.state_file.exists():
            self.state_file.unlink()
            self.logger.log_info("Cleared workflow state")
        self.completed_stages = []

    def checkpoint_path(self, stage_id: str) -> Optional[Path]:
        if self.checkpoint_dir is None:
            return None
        return self.checkpoint_dir / f"{stage_id}.h5ad"

    def write_checkpoint(self, stage_id: str, adata: Any) -> None:
        path = self.checkpoint_path(stage_id)
        if path is None or adata is None:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        adata.write_h5ad(path)
        self.logger.log_debug(f"Checkpoint written: {path}")

    def read_checkpoint(self, stage_id: str) -> Any:
        """Read the dataset checkpointed after ``stage_id``.

        Raises
        ------
        FileNotFoundError
            If no checkpoint exists for the stage
        """
        import anndata as ad

        path = self.checkpoint_path(stage_id)
        if path is None or not path.exists():
            raise FileNotFoundError(f"No checkpoint for stage '{stage_id}'")
        return ad.read_h5ad(path)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _slice_order(
        self, order: List[str], start_stage: Optional[str], end_stage: Optional[str]
    ) -> List[str]:
        if start_stage:
            if start_stage not in order:
                raise KeyError(f"Start stage '{start_stage}' not found")
            order = order[order.index(start_stage):]
        if end_stage:
            if end_stage not in order:
                raise KeyError(f"End stage '{end_stage}' not found")
            order = order[: order.index(end_stage) + 1]
        return order

    def _previous_executed(self, full_order: List[str], stage_id: str) -> Optional[str]:
        idx = full_order.index(stage_id)
        for prev in reversed(full_order[:idx]):
            if self.stages[prev].enabled:
                return prev
        return None

    def execute_stage(self, stage: Stage, adata: Any) -> StageOutput:
        """Run one stage and check the handoff.

        Raises
        ------
        TypeError
            If the stage returns neither a StageOutput nor an AnnData
        ValueError
            If the stage added cells that were not in its input
        """
        output = stage.resolve_func()(adata, **stage.args)
        if not isinstance(output, StageOutput):
            if hasattr(output, "obs_names"):
                output = StageOutput(adata=output)
            else:
                raise TypeError(
                    f"Stage '{stage.stage_id}' returned {type(output).__name__}, "
                    "expected StageOutput"
                )
        if adata is not None and output.adata is not None:
            added = output.adata.obs_names.difference(adata.obs_names)
            if len(added):
                raise ValueError(
                    f"Stage '{stage.stage_id}' introduced {len(added)} cells not in its input"
                )
        return output

    def run(
        self,
        adata: Any = None,
        start_stage: Optional[str] = None,
        end_stage: Optional[str] = None,
        resume: bool = False,
    ) -> WorkflowRun:
        """Execute stages from ``start_stage`` to ``end_stage``.

        Parameters
        ----------
        adata : AnnData, optional
            Input dataset for the first executed stage. When starting
            later in the workflow without one, the checkpoint of the
            preceding stage is read.
        start_stage : str, optional
            Stage ID to start from (default: first stage)
        end_stage : str, optional
            Stage ID to end at (default: last stage)
        resume : bool
            Start after the last stage recorded in the state file

        Returns
        -------
        WorkflowRun

        Raises
        ------
        StageError
            If a stage fails; carries the stages completed in this run
        """
        full_order = self.get_execution_order()
        done: List[str] = []

        if resume:
            done = [s for s in self.load_state() if s in full_order]
            if done:
                last = max(full_order.index(s) for s in done)
                if last + 1 >= len(full_order):
                    self.logger.log_info("All stages already completed")
                    adata = adata if adata is not None else self.read_checkpoint(full_order[last])
                    return WorkflowRun(adata=adata, completed_stages=[])
                start_stage = full_order[last + 1]
        else:
            self.clear_state()

        order = self._slice_order(full_order, start_stage, end_stage)
        if start_stage and adata is None:
            prev = self._previous_executed(full_order, order[0])
            if prev is not None:
                adata = self.read_checkpoint(prev)
                self.logger.log_info(f"Resuming from checkpoint of stage {prev}")

        self.logger.log_info(f"Workflow '{self.name}' execution plan: {' -> '.join(order)}")
        run = WorkflowRun(adata=adata)
        self.completed_stages = list(done)

        for stage_id in order:
            stage = self.stages[stage_id]
            if not stage.enabled:
                self.logger.log_stage_skip(stage_id, "disabled")
                run.skipped_stages.append(stage_id)
                continue

            self.logger.log_stage_start(stage_id, stage.name)
            start_time = time.time()
            try:
                output = self.execute_stage(stage, run.adata)
            except Exception as e:
                self.logger.log_stage_error(stage_id, str(e))
                raise StageError(stage_id, e, run.completed_stages) from e

            duration = time.time() - start_time
            run.adata = output.adata
            run.outputs[stage_id] = output
            run.durations[stage_id] = duration
            self.completed_stages.append(stage_id)
            run.completed_stages.append(stage_id)

            self.logger.log_stage_complete(stage_id, duration)
            self.logger.log_stage_summary(stage_id, output.summary)
            self.write_checkpoint(stage_id, output.adata)
            self.save_state({sid: out.summary for sid, out in run.outputs.items()})

        self.logger.log_info(f"Workflow '{self.name}' completed successfully")
        return run
