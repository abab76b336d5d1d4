"""Pipeline definition loader and validator."""

import functools
import inspect
import re
from collections import deque
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import yaml

from ..config.workflow import WorkflowConfig, deep_merge
from .stage import Stage

# Builtin stage handlers addressable by short name in pipeline YAML
BUILTIN_HANDLERS = {
    "load": "scrna_workflows.workflows.stages:load_stage",
    "annotate": "scrna_workflows.workflows.stages:annotate_stage",
    "qc": "scrna_workflows.workflows.stages:qc_stage",
    "normalize": "scrna_workflows.workflows.stages:normalize_stage",
    "variance": "scrna_workflows.workflows.stages:variance_stage",
    "integrate": "scrna_workflows.workflows.stages:integrate_stage",
    "reduce": "scrna_workflows.workflows.stages:reduce_stage",
    "cluster": "scrna_workflows.workflows.stages:cluster_stage",
    "markers": "scrna_workflows.workflows.stages:markers_stage",
    "classify": "scrna_workflows.workflows.stages:classify_stage",
}

# Global settings copied onto the workflow configuration
GLOBAL_KEYS = ("batch_key", "n_jobs", "n_threads", "random_seed", "output_dir", "checkpoint")

_TEMPLATE = re.compile(r"\{([^}]+)\}")


def topological_order(dependencies: Mapping[str, Sequence[str]]) -> List[str]:
    """Order stage IDs so every stage follows its dependencies.

    Uses Kahn's algorithm; stages with no ordering constraint keep their
    definition order.

    Raises
    ------
    ValueError
        If a dependency is unknown or the graph has a cycle
    """
    for stage_id, deps in dependencies.items():
        for dep in deps:
            if dep not in dependencies:
                raise ValueError(f"Stage '{stage_id}' depends on unknown stage '{dep}'")

    in_degree = {stage_id: len(set(deps)) for stage_id, deps in dependencies.items()}
    queue = deque([sid for sid, degree in in_degree.items() if degree == 0])
    order = []

    while queue:
        stage_id = queue.popleft()
        order.append(stage_id)

        for other_id, deps in dependencies.items():
            if stage_id in deps:
                in_degree[other_id] -= 1
                if in_degree[other_id] == 0:
                    queue.append(other_id)

    if len(order) != len(dependencies):
        raise ValueError("Circular dependency detected - cannot compute execution order")

    return order


class PipelineConfig:
    """Loads and manages a workflow definition from YAML.

    The YAML has a ``pipeline`` section (name, version), a ``global``
    section (``batch_key``, ``n_jobs``, ``n_threads``, ``random_seed``,
    ...), an optional ``workflow`` section with ``WorkflowConfig``
    overrides, and a ``stages`` section. Stage arguments may reference
    ``{global.x}`` or ``{pipeline.x}``; a value that is exactly one
    template keeps the referenced value's type.

    Parameters
    ----------
    config_path : str
        Path to the YAML configuration file

    Example
    -------
    >>> config = PipelineConfig("workflow.yaml")
    >>> config.load()
    >>> config.parse_stages()
    >>> valid, errors = config.validate_dependencies()
    >>> executor = config.build_executor()
    >>> run = executor.run()
    """

    def __init__(self, config_path: str):
        self.config_path = Path(config_path)
        self.raw_config: Dict[str, Any] = {}
        self.stages: Dict[str, Stage] = {}
        self.global_settings: Dict[str, Any] = {}

    def load(self) -> None:
        """Load YAML configuration file.

        Raises
        ------
        FileNotFoundError
            If config file doesn't exist
        yaml.YAMLError
            If YAML is malformed
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        with open(self.config_path, "r") as f:
            self.raw_config = yaml.safe_load(f) or {}

        self.global_settings = {
            "pipeline": self.raw_config.get("pipeline", {}),
            "global": self.raw_config.get("global", {}),
        }

    def parse_stages(self) -> None:
        """Convert YAML stage definitions to Stage objects.

        Raises
        ------
        KeyError
            If the stages section or a stage handler is missing
        """
        if "stages" not in self.raw_config:
            raise KeyError("No 'stages' section in configuration")

        self.stages = {}
        for stage_id, stage_def in self.raw_config["stages"].items():
            stage_def = dict(stage_def or {})
            if "handler" not in stage_def:
                raise KeyError(f"Stage '{stage_id}' missing required field 'handler'")
            stage_def["handler"] = BUILTIN_HANDLERS.get(stage_def["handler"], stage_def["handler"])
            stage_def["args"] = self.resolve_value(stage_def.get("args", {}))
            stage_def["enabled"] = self.resolve_value(stage_def.get("enabled", True))
            self.stages[stage_id] = Stage.from_dict(stage_def, stage_id)

    def _lookup(self, ref: str) -> Any:
        value: Any = self.raw_config
        for part in ref.split("."):
            if not isinstance(value, dict) or part not in value:
                return None
            value = value[part]
        return value

    def resolve_value(self, value: Any) -> Any:
        """Resolve ``{section.key}`` templates in strings, lists and dicts.

        Unknown references are left untouched.
        """
        if isinstance(value, dict):
            return {k: self.resolve_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve_value(v) for v in value]
        if not isinstance(value, str) or "{" not in value:
            return value

        whole = _TEMPLATE.fullmatch(value)
        if whole:
            resolved = self._lookup(whole.group(1))
            if resolved is None:
                return value
            return self.resolve_value(resolved)

        def replace_template(match):
            resolved = self._lookup(match.group(1))
            if resolved is None or isinstance(resolved, (dict, list)):
                return match.group(0)
            return str(resolved)

        resolved = _TEMPLATE.sub(replace_template, value)
        if resolved != value and "{" in resolved:
            return self.resolve_value(resolved)
        return resolved

    def validate_dependencies(self) -> Tuple[bool, List[str]]:
        """Validate stage definitions and dependencies.

        Checks that every dependency exists, that there are no circular
        dependencies, and that each stage definition is valid.

        Returns
        -------
        Tuple[bool, List[str]]
            (valid, errors)
        """
        errors = []

        for stage_id, stage in self.stages.items():
            _, stage_errors = stage.validate()
            errors.extend(stage_errors)
            for dep in stage.depends_on:
                if dep not in self.stages:
                    errors.append(f"Stage '{stage_id}' depends on unknown stage '{dep}'")

        if not errors:
            try:
                self.get_execution_order()
            except ValueError:
                errors.append("Circular dependency detected in stage dependencies")

        return (len(errors) == 0, errors)

    def get_execution_order(self) -> List[str]:
        """Compute stage execution order via topological sort."""
        return topological_order({sid: s.depends_on for sid, s in self.stages.items()})

    def get_stage(self, stage_id: str) -> Optional[Stage]:
        return self.stages.get(stage_id)

    def list_stages(self) -> List[str]:
        return list(self.stages.keys())

    def workflow_config(self) -> WorkflowConfig:
        """Workflow configuration from the ``workflow`` and ``global`` sections."""
        data = dict(self.raw_config.get("workflow", {}) or {})
        glob = self.global_settings.get("global", {}) or {}
        data = deep_merge(data, {k: glob[k] for k in GLOBAL_KEYS if k in glob})
        if "name" not in data and self.global_settings.get("pipeline", {}).get("name"):
            data["name"] = self.global_settings["pipeline"]["name"]
        return WorkflowConfig.from_dict(data)

    def build_executor(self, logger=None, **executor_kwargs):
        """Create a WorkflowExecutor holding the parsed stages.

        Stage callables that accept a ``config`` argument are bound to the
        resolved workflow configuration.

        Raises
        ------
        ValueError
            If stage definitions or dependencies are invalid
        """
        from .executor import WorkflowExecutor

        valid, errors = self.validate_dependencies()
        if not valid:
            raise ValueError("Invalid pipeline configuration: " + "; ".join(errors))

        workflow_config = self.workflow_config().resolve()
        glob = self.global_settings.get("global", {}) or {}
        if workflow_config.output_dir and "state_file" not in executor_kwargs:
            executor_kwargs["state_file"] = str(
                Path(workflow_config.output_dir) / ".workflow_state.json"
            )
        if workflow_config.checkpoint and "checkpoint_dir" not in executor_kwargs:
            executor_kwargs["checkpoint_dir"] = str(
                Path(workflow_config.output_dir or glob.get("output_dir", ".")) / "checkpoints"
            )

        executor = WorkflowExecutor(logger=logger, name=workflow_config.name, **executor_kwargs)
        for stage_id in self.get_execution_order():
            stage = self.stages[stage_id]
            func = stage.resolve_func()
            if "config" in inspect.signature(func).parameters:
                stage.func = functools.partial(func, config=workflow_config)
            executor.add_stage(stage)
        return executor

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "pipeline": self.global_settings.get("pipeline", {}),
            "global": self.global_settings.get("global", {}),
            "workflow": self.raw_config.get("workflow", {}),
            "stages": {
                stage_id: stage.to_dict()
                for stage_id, stage in self.stages.items()
            },
        }

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "PipelineConfig":
        """Create PipelineConfig from dictionary (stages parsed)."""
        config = cls.__new__(cls)
        config.config_path = Path(".")
        config.raw_config = config_dict
        config.global_settings = {
            "pipeline": config_dict.get("pipeline", {}),
            "global": config_dict.get("global", {}),
        }
        config.stages = {}
        if "stages" in config_dict:
            config.parse_stages()
        return config
