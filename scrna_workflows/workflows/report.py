"""Summary tables collected across the stages of a workflow run."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np
import pandas as pd

from ..io.csv import ensure_output_dir, write_tables
from ..io.logging import get_logger, log_yaml
from ..pipeline.executor import WorkflowRun


def _yaml_safe(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _yaml_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_yaml_safe(v) for v in value]
    if isinstance(value, np.generic):
        return value.item()
    return value


@dataclass
class WorkflowReport:
    """Diagnostics of a finished workflow.

    Attributes
    ----------
    name : str
        Workflow name
    adata : AnnData
        Final dataset
    summaries : Dict[str, Dict[str, Any]]
        Scalar diagnostics per stage
    tables : Dict[str, pd.DataFrame]
        Named summary tables from all stages
    durations : Dict[str, float]
        Seconds per stage
    skipped_stages : List[str]
        Stages that were disabled
    """

    name: str = "workflow"
    adata: Any = None
    summaries: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    tables: Dict[str, pd.DataFrame] = field(default_factory=dict)
    durations: Dict[str, float] = field(default_factory=dict)
    skipped_stages: List[str] = field(default_factory=list)
    run: Optional[WorkflowRun] = field(default=None, repr=False)

    @classmethod
    def from_run(cls, run: WorkflowRun, name: str = "workflow") -> "WorkflowReport":
        tables: Dict[str, pd.DataFrame] = {}
        for output in run.outputs.values():
            for table_name, table in output.tables.items():
                if table is not None:
                    tables[table_name] = table
        return cls(
            name=name,
            adata=run.adata,
            summaries={sid: dict(out.summary) for sid, out in run.outputs.items()},
            tables=tables,
            durations=dict(run.durations),
            skipped_stages=list(run.skipped_stages),
            run=run,
        )

    def result(self, stage_id: str) -> Any:
        """Full result object of a stage.

        Raises
        ------
        KeyError
            If the stage did not run
        """
        if self.run is None or stage_id not in self.run.outputs:
            raise KeyError(f"Stage '{stage_id}' has no result in this report")
        return self.run.outputs[stage_id].result

    def summary_table(self) -> pd.DataFrame:
        """Stage diagnostics as a long (stage, key, value) table."""
        rows = [
            {"stage": stage_id, "key": key, "value": value}
            for stage_id, summary in self.summaries.items()
            for key, value in summary.items()
        ]
        rows.extend(
            {"stage": stage_id, "key": "duration_seconds", "value": round(seconds, 3)}
            for stage_id, seconds in self.durations.items()
        )
        return pd.DataFrame(rows, columns=["stage", "key", "value"])

    def to_dict(self) -> Dict[str, Any]:
        return _yaml_safe(
            {
                "workflow": self.name,
                "n_cells": None if self.adata is None else int(self.adata.n_obs),
                "n_genes": None if self.adata is None else int(self.adata.n_vars),
                "skipped_stages": self.skipped_stages,
                "stages": self.summaries,
            }
        )

    def write(self, output_dir: Union[str, Path], history: bool = True) -> Dict[str, Path]:
        """Write every table as CSV plus ``summary.yaml``.

        With ``history`` the summary is also kept in a timestamped
        ``report_<time>.log`` so earlier runs into the same directory survive.

        Returns
        -------
        Dict[str, Path]
            Written file per table name (``summary`` for the YAML file)
        """
        out_dir = ensure_output_dir(output_dir)
        written = write_tables(self.tables, out_dir / "tables")
        summary_path = out_dir / "summary.yaml"
        summary_path.unlink(missing_ok=True)
        log_yaml(summary_path, self.to_dict())
        written["summary"] = summary_path

        if history:
            run_logger, log_path = get_logger(f"scrna_workflows.report.{self.name}", out_dir / "report.log")
            log_yaml(log_path, self.to_dict(), logger=run_logger)
            for handler in list(run_logger.handlers):
                handler.close()
                run_logger.removeHandler(handler)
            written["history"] = log_path
        return written
