"""Master workflow configuration.

Bundles the per-stage configurations with workflow-level settings
(batch column, worker counts, seed, optional stages). Workflow-level
settings are pushed down into the stage configurations by ``resolve``.
"""

from __future__ import annotations

import copy
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ..core.annotation.config import ClassifierConfig
from ..core.clustering.config import ClusteringConfig, MarkerConfig
from ..core.integration.config import IntegrationConfig
from ..core.preprocessing.config import PreprocessingConfig
from ..core.reduction.config import ReductionConfig


def deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``overrides`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


@dataclass
class WorkflowConfig:
    """Configuration of a complete analysis workflow.

    Attributes
    ----------
    name : str
        Workflow name used in logs and reports
    batch_key : str, optional
        Batch column used by QC, variance modelling, integration and markers
    n_jobs : int
        Worker processes for per-batch and per-cluster work
    n_threads : int
        Threads for neighbour search and t-SNE
    random_seed : int, optional
        Seed applied to every stochastic stage when set
    integrate : bool
        Run MNN integration (needs ``batch_key``)
    classify : bool
        Run reference-based classification (needs a reference)
    output_dir : str, optional
        Directory for summary tables, state and checkpoints
    checkpoint : bool
        Write an ``.h5ad`` checkpoint after every stage
    """

    name: str = "standard"
    batch_key: Optional[str] = None
    n_jobs: int = 1
    n_threads: int = 1
    random_seed: Optional[int] = None
    integrate: bool = False
    classify: bool = False
    output_dir: Optional[str] = None
    checkpoint: bool = False
    preprocessing: PreprocessingConfig = field(default_factory=PreprocessingConfig)
    integration: IntegrationConfig = field(default_factory=IntegrationConfig)
    reduction: ReductionConfig = field(default_factory=ReductionConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    markers: MarkerConfig = field(default_factory=MarkerConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)

    _SECTIONS = ("preprocessing", "integration", "reduction", "clustering", "markers", "classifier")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowConfig":
        """Build from a nested dictionary (missing keys use defaults)."""
        data = dict(data or {})
        scalars = {
            f.name: data[f.name]
            for f in fields(cls)
            if f.name not in cls._SECTIONS and f.name in data
        }
        return cls(
            preprocessing=PreprocessingConfig.from_dict(data.get("preprocessing", {})),
            integration=IntegrationConfig(**data.get("integration", {})),
            reduction=ReductionConfig(**data.get("reduction", {})),
            clustering=ClusteringConfig(**data.get("clustering", {})),
            markers=MarkerConfig(**data.get("markers", {})),
            classifier=ClassifierConfig(**data.get("classifier", {})),
            **scalars,
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "WorkflowConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Handle nested workflow section
        if "workflow" in data:
            data = data["workflow"]

        return cls.from_dict(data)

    @classmethod
    def default(cls) -> "WorkflowConfig":
        """Create default configuration."""
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        out = {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in self._SECTIONS
        }
        out["preprocessing"] = self.preprocessing.to_dict()
        for section in self._SECTIONS[1:]:
            out[section] = asdict(getattr(self, section))
        return out

    def merged(self, overrides: Dict[str, Any]) -> "WorkflowConfig":
        """New configuration with nested overrides applied."""
        return WorkflowConfig.from_dict(deep_merge(self.to_dict(), overrides))

    def resolve(self) -> "WorkflowConfig":
        """Copy with workflow-level settings pushed into the stage configs."""
        cfg = copy.deepcopy(self)
        pre = cfg.preprocessing
        if cfg.batch_key is not None:
            pre.loader.batch_key = pre.loader.batch_key or cfg.batch_key
            pre.variance.batch_key = pre.variance.batch_key or cfg.batch_key
            cfg.integration.batch_key = cfg.batch_key
            cfg.markers.block_key = cfg.markers.block_key or cfg.batch_key

        pre.qc.n_jobs = cfg.n_jobs
        pre.variance.n_jobs = cfg.n_jobs
        cfg.markers.n_jobs = cfg.n_jobs
        cfg.integration.n_threads = cfg.n_threads
        cfg.reduction.n_threads = cfg.n_threads

        if cfg.random_seed is not None:
            for section in (
                pre.normalization,
                pre.variance,
                cfg.integration,
                cfg.reduction,
                cfg.clustering,
            ):
                section.random_seed = cfg.random_seed

        if cfg.integrate:
            cfg.reduction.use_rep = cfg.integration.embedding_key
            cfg.clustering.use_rep = cfg.integration.embedding_key

        cluster_key = cfg.clustering.cluster_key
        cfg.markers.cluster_key = cluster_key
        cfg.classifier.cluster_key = cluster_key
        return cfg
