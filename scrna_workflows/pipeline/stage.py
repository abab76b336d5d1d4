"""Stage representation for in-memory workflow execution."""

import importlib
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import pandas as pd


@dataclass
class StageOutput:
    """What a stage hands to the next one.

    Attributes
    ----------
    adata : AnnData
        New dataset produced by the stage (the input is never modified)
    summary : Dict[str, Any]
        Scalar diagnostics recorded in the run state and report
    tables : Dict[str, pd.DataFrame]
        Named summary tables (thresholds, cluster sizes, markers, ...)
    result : Any
        The stage's full result object
    """

    adata: Any
    summary: Dict[str, Any] = field(default_factory=dict)
    tables: Dict[str, pd.DataFrame] = field(default_factory=dict)
    result: Any = None


def import_handler(path: str) -> Callable:
    """Import a callable from ``"package.module:function"``.

    Raises
    ------
    ImportError
        If the module cannot be imported
    AttributeError
        If the module has no such attribute
    """
    if ":" in path:
        module_name, attr = path.split(":", 1)
    else:
        module_name, _, attr = path.rpartition(".")
    if not module_name or not attr:
        raise ImportError(f"Invalid handler path: '{path}'")
    module = importlib.import_module(module_name)
    return getattr(module, attr)


@dataclass
class Stage:
    """A single workflow stage with its callable and dependencies.

    Attributes
    ----------
    name : str
        Human-readable stage name (e.g., "Quality control")
    stage_id : str
        Short identifier (e.g., "qc")
    func : Callable, optional
        ``func(adata, **args) -> StageOutput``; the first stage receives
        ``adata=None``
    handler : str, optional
        Import path of ``func`` (``"package.module:function"``) or the
        name of a builtin stage handler, used when ``func`` is not given
    depends_on : List[str]
        Stage IDs this stage depends on
    args : Dict[str, Any]
        Keyword arguments passed to the stage callable
    optional : bool
        Whether the stage may be disabled
    enabled : bool
        Disabled stages are skipped and the dataset passes through

    Example
    -------
    >>> stage = Stage(
    ...     name="Quality control",
    ...     stage_id="qc",
    ...     func=qc_stage,
    ...     depends_on=["annotate"],
    ... )
    >>> valid, errors = stage.validate()
    """

    name: str
    stage_id: str
    func: Optional[Callable] = None
    handler: Optional[str] = None
    depends_on: List[str] = field(default_factory=list)
    args: Dict[str, Any] = field(default_factory=dict)
    optional: bool = False
    enabled: bool = True

    def resolve_func(self) -> Callable:
        """Return the stage callable, importing it from ``handler`` if needed."""
        if self.func is None:
            if not self.handler:
                raise ValueError(f"Stage '{self.stage_id}' has neither func nor handler")
            self.func = import_handler(self.handler)
        return self.func

    def validate(self) -> Tuple[bool, List[str]]:
        """Check the stage definition.

        Returns
        -------
        Tuple[bool, List[str]]
            (success, errors)
        """
        errors = []
        if self.func is None and not self.handler:
            errors.append(f"Stage '{self.stage_id}' has neither func nor handler")
        elif self.func is not None and not callable(self.func):
            errors.append(f"Stage '{self.stage_id}' func is not callable")
        if not self.enabled and not self.optional:
            errors.append(f"Stage '{self.stage_id}' is disabled but not optional")
        return (len(errors) == 0, errors)

    def to_dict(self) -> Dict[str, Any]:
        """Convert stage to dictionary for serialization."""
        handler = self.handler
        if handler is None and self.func is not None:
            func = getattr(self.func, "func", self.func)  # unwrap functools.partial
            handler = f"{func.__module__}:{getattr(func, '__qualname__', repr(func))}"
        return {
            "name": self.name,
            "stage_id": self.stage_id,
            "handler": handler,
            "depends_on": self.depends_on,
            "args": self.args,
            "optional": self.optional,
            "enabled": self.enabled,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], stage_id: str) -> "Stage":
        """Create Stage from dictionary.

        Raises
        ------
        KeyError
            If the definition has no ``handler``
        """
        if "handler" not in data:
            raise KeyError(f"Stage '{stage_id}' missing required field 'handler'")
        return cls(
            name=data.get("name", stage_id),
            stage_id=stage_id,
            handler=data["handler"],
            depends_on=data.get("depends_on", []),
            args=data.get("args", {}),
            optional=data.get("optional", False),
            enabled=data.get("enabled", True),
        )
