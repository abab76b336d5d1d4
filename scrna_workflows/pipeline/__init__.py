"""Pipeline orchestration module.

Provides in-memory stage execution with dependency resolution, YAML
workflow definitions, JSON run state and ``.h5ad`` checkpoints.

Example Usage
-------------
>>> from scrna_workflows.pipeline import (
...     PipelineConfig,
...     PipelineLogger,
...     WorkflowExecutor,
... )
>>> # Load a workflow definition
>>> config = PipelineConfig("workflow.yaml")
>>> config.load()
>>> config.parse_stages()
>>> # Setup logging
>>> logger = PipelineLogger("logs/")
>>> logger.setup()
>>> # Execute
>>> run = config.build_executor(logger=logger).run()
"""

# Stage representation
from .stage import Stage, StageOutput, import_handler

# Configuration
from .config import BUILTIN_HANDLERS, PipelineConfig, topological_order

# Logging
from .logger import (
    ColoredFormatter,
    PipelineLogger,
)

# Execution
from .executor import (
    WorkflowExecutor,
    WorkflowRun,
)

__all__ = [
    # Stage
    "Stage",
    "StageOutput",
    "import_handler",
    # Config
    "BUILTIN_HANDLERS",
    "PipelineConfig",
    "topological_order",
    # Logging
    "ColoredFormatter",
    "PipelineLogger",
    # Execution
    "WorkflowExecutor",
    "WorkflowRun",
]
