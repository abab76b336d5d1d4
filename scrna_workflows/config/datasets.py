"""Dataset presets.

A preset names a dataset source together with the settings that belong
to that dataset: its batch column, species, mitochondrial gene prefix
and the workflow overrides used to analyse it. Builtin presets ship as
YAML files in ``presets/`` next to this module.

Example
-------
>>> from scrna_workflows.config import get_dataset_config
>>> preset = get_dataset_config("hsc")
>>> preset.dataset_name
'nestorowa_hsc'
>>> cfg = preset.workflow_config()
"""

import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .workflow import WorkflowConfig

PRESETS_DIR = Path(__file__).parent / "presets"


@dataclass
class DatasetConfig:
    """Configuration for a named dataset.

    Attributes
    ----------
    dataset_name : str
        Canonical dataset name (lowercase, underscores)
    source : str
        Registered dataset source
    source_args : Dict[str, Any]
        Arguments for the source (e.g. ``path`` for h5ad files)
    batch_key : str, optional
        Batch column in the cell metadata
    species : str
        "mouse" or "human"
    mito_prefixes : List[str]
        Symbol prefixes of mitochondrial genes
    workflow : str
        Workflow the dataset is analysed with ("standard", "hsc", "bone_marrow")
    aliases : List[str]
        Alternative names for this dataset
    overrides : Dict[str, Any]
        Nested ``WorkflowConfig`` overrides
    description : str
        Free-text description
    """

    dataset_name: str
    source: str = "synthetic"
    source_args: Dict[str, Any] = field(default_factory=dict)
    batch_key: Optional[str] = None
    species: str = "human"
    mito_prefixes: List[str] = field(default_factory=lambda: ["MT-"])
    workflow: str = "standard"
    aliases: List[str] = field(default_factory=list)
    overrides: Dict[str, Any] = field(default_factory=dict)
    description: str = ""

    def workflow_config(
        self,
        base: Optional[WorkflowConfig] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> WorkflowConfig:
        """Workflow configuration for this dataset.

        Parameters
        ----------
        base : WorkflowConfig, optional
            Starting configuration (default: ``WorkflowConfig()``)
        overrides : dict, optional
            Extra nested overrides applied last

        Returns
        -------
        WorkflowConfig
            Configuration with the dataset's source, batch column and
            mitochondrial prefixes filled in
        """
        cfg = (base or WorkflowConfig()).merged(self.overrides)
        preset = {
            "name": self.dataset_name,
            "preprocessing": {
                "loader": {"source": self.source, "source_args": dict(self.source_args)},
                "annotation": {"mito_prefixes": list(self.mito_prefixes)},
            },
        }
        if self.batch_key is not None:
            preset["batch_key"] = self.batch_key
        cfg = cfg.merged(preset)
        if overrides:
            cfg = cfg.merged(overrides)
        return cfg

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DatasetConfig":
        return cls(
            dataset_name=data.get("dataset", ""),
            source=data.get("source", "synthetic"),
            source_args=data.get("source_args", {}) or {},
            batch_key=data.get("batch_key"),
            species=data.get("species", "human"),
            mito_prefixes=data.get("mito_prefixes", ["MT-"]),
            workflow=data.get("workflow", "standard"),
            aliases=data.get("aliases", []) or [],
            overrides=data.get("overrides", {}) or {},
            description=data.get("description", ""),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "DatasetConfig":
        """Load dataset config from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)


# =============================================================================
# Registry
# =============================================================================

# Global registry of dataset configurations
DATASET_CONFIG_REGISTRY: Dict[str, DatasetConfig] = {}

# Aliases map dataset aliases to canonical names
DATASET_ALIASES: Dict[str, str] = {}

# Flag to track if builtin configs have been loaded
_BUILTINS_LOADED = False


def _normalize(name: str) -> str:
    return name.lower().replace(" ", "_").replace("-", "_")


def register_dataset_config(config: DatasetConfig) -> None:
    """Register a dataset configuration and its aliases."""
    dataset_name = _normalize(config.dataset_name)
    DATASET_CONFIG_REGISTRY[dataset_name] = config
    for alias in config.aliases:
        DATASET_ALIASES[_normalize(alias)] = dataset_name


def get_dataset_config(dataset: str) -> DatasetConfig:
    """Get dataset configuration by name or alias.

    Raises
    ------
    ValueError
        If the dataset is not registered
    """
    _ensure_builtins_loaded()

    name = _normalize(dataset)
    name = DATASET_ALIASES.get(name, name)
    if name not in DATASET_CONFIG_REGISTRY:
        available = list_available_datasets()
        alias_info = [f"{k} -> {v}" for k, v in sorted(DATASET_ALIASES.items())]
        raise ValueError(
            f"Unknown dataset: '{dataset}'. "
            f"Available: {available}. "
            f"Aliases: {alias_info}"
        )
    return DATASET_CONFIG_REGISTRY[name]


def list_available_datasets() -> List[str]:
    """List registered dataset names (canonical)."""
    _ensure_builtins_loaded()
    return sorted(DATASET_CONFIG_REGISTRY.keys())


def list_dataset_aliases() -> Dict[str, str]:
    """Map of alias -> canonical dataset name."""
    _ensure_builtins_loaded()
    return dict(DATASET_ALIASES)


def _ensure_builtins_loaded() -> None:
    global _BUILTINS_LOADED
    if _BUILTINS_LOADED:
        return

    _load_builtin_configs()
    _BUILTINS_LOADED = True


def _load_builtin_configs() -> None:
    """Load builtin dataset presets from presets/*.yaml."""
    if not PRESETS_DIR.exists():
        return

    for yaml_path in sorted(PRESETS_DIR.glob("*.yaml")):
        try:
            config = DatasetConfig.from_yaml(yaml_path)
        except (OSError, yaml.YAMLError, TypeError) as e:
            warnings.warn(f"Failed to load dataset config from {yaml_path}: {e}")
            continue
        if config.dataset_name:
            register_dataset_config(config)
