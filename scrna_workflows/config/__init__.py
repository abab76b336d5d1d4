"""Centralized configuration for scRNA-Workflows.

This module provides the master workflow configuration and named dataset
presets (source, batch column, species, workflow overrides) that the
workflow builders start from.

Example
-------
>>> from scrna_workflows.config import get_dataset_config, list_available_datasets
>>>
>>> # List available datasets
>>> print(list_available_datasets())
['bone_marrow', 'nestorowa_hsc', 'pbmc3k', 'synthetic']
>>>
>>> # Get a preset by alias and build its workflow configuration
>>> preset = get_dataset_config("hca_bm")
>>> cfg = preset.workflow_config(overrides={"n_jobs": 4})
>>> cfg.integrate
True
"""

from .workflow import WorkflowConfig, deep_merge
from .datasets import (
    DatasetConfig,
    get_dataset_config,
    list_available_datasets,
    list_dataset_aliases,
    register_dataset_config,
)

__all__ = [
    "WorkflowConfig",
    "deep_merge",
    "DatasetConfig",
    "get_dataset_config",
    "list_available_datasets",
    "list_dataset_aliases",
    "register_dataset_config",
]
