"""Exception types shared by all pipeline stages."""

from typing import List, Optional


class ScrnaWorkflowError(Exception):
    """Base class for errors raised by scrna_workflows."""

    pass


class InsufficientDataError(ScrnaWorkflowError):
    """Raised when a batch or cluster is too small for a computation.

    Parameters
    ----------
    stage : str
        Stage that detected the problem (e.g. "integration")
    entity : str
        Offending batch or cluster identifier
    message : str
        Description of the unmet requirement
    """

    def __init__(self, stage: str, entity: Optional[str], message: str):
        self.stage = stage
        self.entity = entity
        self.message = message
        where = f" [{entity}]" if entity is not None else ""
        super().__init__(f"{stage}{where}: {message}")


class StageError(ScrnaWorkflowError):
    """Raised by the workflow executor when a stage fails.

    Attributes
    ----------
    stage_id : str
        Identifier of the failed stage
    completed_stages : List[str]
        Stages that finished before the failure, in execution order
    """

    def __init__(
        self,
        stage_id: str,
        cause: BaseException,
        completed_stages: Optional[List[str]] = None,
    ):
        self.stage_id = stage_id
        self.cause = cause
        self.completed_stages = list(completed_stages or [])
        super().__init__(f"Stage '{stage_id}' failed: {cause}")
