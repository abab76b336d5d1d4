"""Unit tests for pipeline orchestration module."""

import json
from functools import partial

import anndata as ad
import numpy as np
import pandas as pd
import pytest
import yaml

from scrna_workflows.errors import StageError
from scrna_workflows.pipeline import (
    BUILTIN_HANDLERS,
    PipelineConfig,
    PipelineLogger,
    Stage,
    StageOutput,
    WorkflowExecutor,
    import_handler,
    topological_order,
)
from scrna_workflows.utils.stats import stouffer_combine
from scrna_workflows.workflows.stages import qc_stage


def _small_adata(n_obs: int = 6) -> ad.AnnData:
    return ad.AnnData(
        X=np.arange(n_obs * 3, dtype=np.float32).reshape(n_obs, 3),
        obs=pd.DataFrame(index=[f"c{i}" for i in range(n_obs)]),
        var=pd.DataFrame(index=["g0", "g1", "g2"]),
    )


def _mark(adata, label="x"):
    new = adata.copy()
    new.uns[label] = 1
    return StageOutput(adata=new, summary={"label": label, "n_cells": new.n_obs})


def _drop_first(adata):
    return StageOutput(adata=adata[1:].copy(), summary={"n_cells": adata.n_obs - 1})


def _fail(adata):
    raise RuntimeError("boom")


@pytest.fixture
def quiet_logger():
    logger = PipelineLogger(console=False)
    logger.setup()
    return logger


class TestStage:
    """Tests for Stage dataclass."""

    def test_create_stage(self):
        stage = Stage(name="Test Stage", stage_id="test", func=_mark)
        assert stage.depends_on == []
        assert stage.optional is False
        assert stage.enabled is True
        assert stage.validate() == (True, [])

    def test_validate_without_callable(self):
        valid, errors = Stage(name="Empty", stage_id="empty").validate()
        assert not valid
        assert "neither func nor handler" in errors[0]

    def test_disabled_must_be_optional(self):
        valid, errors = Stage(name="x", stage_id="x", func=_mark, enabled=False).validate()
        assert not valid
        assert "not optional" in errors[0]
        stage = Stage(name="x", stage_id="x", func=_mark, enabled=False, optional=True)
        assert stage.validate()[0]

    def test_resolve_handler(self):
        stage = Stage(name="QC", stage_id="qc", handler=BUILTIN_HANDLERS["qc"])
        assert stage.resolve_func() is qc_stage

    def test_to_dict_unwraps_partial(self):
        stage = Stage(name="QC", stage_id="qc", func=partial(qc_stage, config=None))
        data = stage.to_dict()
        assert data["handler"] == "scrna_workflows.workflows.stages:qc_stage"
        assert data["enabled"] is True

    def test_from_dict(self):
        stage = Stage.from_dict(
            {"handler": "pkg.mod:func", "depends_on": ["load"], "args": {"a": 1}}, "qc"
        )
        assert stage.name == "qc"
        assert stage.depends_on == ["load"]
        assert stage.args == {"a": 1}

    def test_from_dict_requires_handler(self):
        with pytest.raises(KeyError, match="handler"):
            Stage.from_dict({"name": "x"}, "x")


class TestImportHandler:
    """Tests for handler import paths."""

    def test_colon_form(self):
        assert import_handler("scrna_workflows.workflows.stages:qc_stage") is qc_stage

    def test_dotted_form(self):
        assert import_handler("scrna_workflows.utils.stats.stouffer_combine") is stouffer_combine

    def test_invalid_path(self):
        with pytest.raises(ImportError):
            import_handler("nodots")

    def test_missing_attribute(self):
        with pytest.raises(AttributeError):
            import_handler("scrna_workflows.utils.stats:does_not_exist")


class TestTopologicalOrder:
    """Tests for dependency ordering."""

    def test_linear(self):
        assert topological_order({"c": ["b"], "b": ["a"], "a": []}) == ["a", "b", "c"]

    def test_keeps_definition_order(self):
        order = topological_order({"a": [], "x": [], "b": ["a"], "c": ["a", "x"]})
        assert order == ["a", "x", "b", "c"]

    def test_unknown_dependency(self):
        with pytest.raises(ValueError, match="unknown stage 'z'"):
            topological_order({"a": ["z"]})

    def test_cycle(self):
        with pytest.raises(ValueError, match="Circular"):
            topological_order({"a": ["b"], "b": ["a"]})


class TestPipelineConfig:
    """Tests for PipelineConfig class."""

    def test_load_config(self, sample_pipeline_config):
        config = PipelineConfig(str(sample_pipeline_config))
        config.load()
        assert config.global_settings["pipeline"]["name"] == "test_pipeline"
        assert config.global_settings["global"]["batch_key"] == "batch"

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            PipelineConfig(str(tmp_path / "missing.yaml")).load()

    def test_parse_stages(self, sample_pipeline_config):
        config = PipelineConfig(str(sample_pipeline_config))
        config.load()
        config.parse_stages()
        assert config.list_stages() == [
            "load", "annotate", "qc", "normalize", "variance", "reduce", "cluster"
        ]
        load = config.get_stage("load")
        assert load.name == "Load dataset"
        assert load.handler == BUILTIN_HANDLERS["load"]
        # a whole-value template keeps the referenced type
        assert load.args["n_cells"] == 100
        assert config.get_stage("annotate").name == "annotate"

    def test_execution_order(self, sample_pipeline_config):
        config = PipelineConfig(str(sample_pipeline_config))
        config.load()
        config.parse_stages()
        assert config.get_execution_order() == config.list_stages()
        assert config.validate_dependencies() == (True, [])

    def test_missing_stages_section(self):
        with pytest.raises(KeyError, match="stages"):
            PipelineConfig.from_dict({"pipeline": {"name": "x"}}).parse_stages()

    def test_stage_without_handler(self):
        with pytest.raises(KeyError, match="handler"):
            PipelineConfig.from_dict({"stages": {"a": {"name": "A"}}})

    def test_resolve_value(self):
        config = PipelineConfig.from_dict(
            {"pipeline": {"name": "demo"}, "global": {"batch_key": "plate", "n_jobs": 4}}
        )
        assert config.resolve_value("{global.batch_key}") == "plate"
        assert config.resolve_value("{global.n_jobs}") == 4
        assert config.resolve_value("out/{pipeline.name}_{global.n_jobs}") == "out/demo_4"
        assert config.resolve_value("{global.unknown}") == "{global.unknown}"
        assert config.resolve_value(["{global.n_jobs}", 2]) == [4, 2]
        assert config.resolve_value({"k": {"v": "{global.batch_key}"}}) == {"k": {"v": "plate"}}

    def test_enabled_template(self):
        config = PipelineConfig.from_dict(
            {
                "global": {"do_markers": False},
                "stages": {
                    "load": {"handler": "load"},
                    "markers": {
                        "handler": "markers",
                        "depends_on": ["load"],
                        "optional": True,
                        "enabled": "{global.do_markers}",
                    },
                },
            }
        )
        assert config.get_stage("markers").enabled is False
        assert config.validate_dependencies()[0]

    def test_validate_unknown_dependency(self):
        config = PipelineConfig.from_dict(
            {"stages": {"qc": {"handler": "qc", "depends_on": ["load"]}}}
        )
        valid, errors = config.validate_dependencies()
        assert not valid
        assert "unknown stage 'load'" in errors[0]

    def test_validate_cycle(self):
        config = PipelineConfig.from_dict(
            {
                "stages": {
                    "a": {"handler": "qc", "depends_on": ["b"]},
                    "b": {"handler": "qc", "depends_on": ["a"]},
                }
            }
        )
        valid, errors = config.validate_dependencies()
        assert not valid
        assert "Circular" in errors[0]
        with pytest.raises(ValueError, match="Invalid pipeline configuration"):
            config.build_executor()

    def test_workflow_config(self, sample_pipeline_config):
        config = PipelineConfig(str(sample_pipeline_config))
        config.load()
        cfg = config.workflow_config()
        assert cfg.name == "test_pipeline"
        assert cfg.batch_key == "batch"
        assert cfg.random_seed == 0
        assert cfg.clustering.method == "kmeans"
        assert cfg.preprocessing.normalization.method == "library"

    def test_build_executor_binds_config(self, sample_pipeline_config, quiet_logger):
        config = PipelineConfig(str(sample_pipeline_config))
        config.load()
        config.parse_stages()
        executor = config.build_executor(logger=quiet_logger)
        assert executor.name == "test_pipeline"
        assert executor.get_execution_order() == config.list_stages()
        bound = executor.stages["cluster"].func
        assert isinstance(bound, partial)
        assert bound.keywords["config"].clustering.n_clusters == 2
        assert str(executor.state_file).endswith(".workflow_state.json")

    def test_round_trip(self, sample_pipeline_config):
        config = PipelineConfig(str(sample_pipeline_config))
        config.load()
        config.parse_stages()
        data = config.to_dict()
        assert data["stages"]["qc"]["depends_on"] == ["annotate"]
        restored = PipelineConfig.from_dict(data)
        assert restored.list_stages() == config.list_stages()
        assert restored.get_stage("load").args == config.get_stage("load").args


class TestWorkflowExecutor:
    """Tests for WorkflowExecutor."""

    def test_runs_in_dependency_order(self, quiet_logger):
        executor = WorkflowExecutor(logger=quiet_logger)
        executor.register_stage("b", partial(_mark, label="b"), depends_on=["a"])
        executor.register_stage("a", partial(_mark, label="a"))
        adata = _small_adata()
        run = executor.run(adata)
        assert run.completed_stages == ["a", "b"]
        assert {"a", "b"} <= set(run.adata.uns)
        assert "a" not in adata.uns
        assert set(run.durations) == {"a", "b"}

        table = run.summary_table()
        assert list(table.columns) == ["stage", "key", "value"]
        assert len(table) == 4

    def test_duplicate_stage(self, quiet_logger):
        executor = WorkflowExecutor(logger=quiet_logger)
        executor.register_stage("a", _mark)
        with pytest.raises(ValueError, match="already registered"):
            executor.register_stage("a", _mark)

    def test_invalid_stage(self, quiet_logger):
        executor = WorkflowExecutor(logger=quiet_logger)
        with pytest.raises(ValueError, match="not optional"):
            executor.register_stage("a", _mark, enabled=False)

    def test_skips_disabled(self, quiet_logger):
        executor = WorkflowExecutor(logger=quiet_logger)
        executor.register_stage("a", partial(_mark, label="a"))
        executor.register_stage(
            "b", partial(_mark, label="b"), depends_on=["a"], optional=True, enabled=False
        )
        executor.register_stage("c", partial(_mark, label="c"), depends_on=["b"])
        run = executor.run(_small_adata())
        assert run.completed_stages == ["a", "c"]
        assert run.skipped_stages == ["b"]
        assert "b" not in run.adata.uns

    def test_failure_reports_completed(self, quiet_logger):
        executor = WorkflowExecutor(logger=quiet_logger)
        executor.register_stage("a", _mark)
        executor.register_stage("b", _fail, depends_on=["a"])
        executor.register_stage("c", _mark, depends_on=["b"])
        with pytest.raises(StageError) as excinfo:
            executor.run(_small_adata())
        assert excinfo.value.stage_id == "b"
        assert excinfo.value.completed_stages == ["a"]
        assert isinstance(excinfo.value.cause, RuntimeError)

    def test_anndata_return_wrapped(self, quiet_logger):
        executor = WorkflowExecutor(logger=quiet_logger)
        executor.register_stage("a", lambda adata: adata.copy())
        run = executor.run(_small_adata())
        assert isinstance(run.outputs["a"], StageOutput)
        assert run.outputs["a"].summary == {}

    def test_bad_return_type(self, quiet_logger):
        executor = WorkflowExecutor(logger=quiet_logger)
        executor.register_stage("a", lambda adata: {"adata": adata})
        with pytest.raises(StageError) as excinfo:
            executor.run(_small_adata())
        assert isinstance(excinfo.value.cause, TypeError)

    def test_added_cells_rejected(self, quiet_logger):
        def grow(adata):
            extra = _small_adata(8)
            return StageOutput(adata=extra)

        executor = WorkflowExecutor(logger=quiet_logger)
        executor.register_stage("a", grow)
        with pytest.raises(StageError) as excinfo:
            executor.run(_small_adata(6))
        assert isinstance(excinfo.value.cause, ValueError)

    def test_cell_subset_allowed(self, quiet_logger):
        executor = WorkflowExecutor(logger=quiet_logger)
        executor.register_stage("a", _drop_first)
        run = executor.run(_small_adata())
        assert run.adata.n_obs == 5

    def test_start_and_end_stage(self, quiet_logger):
        executor = WorkflowExecutor(logger=quiet_logger)
        for sid, dep in [("a", []), ("b", ["a"]), ("c", ["b"]), ("d", ["c"])]:
            executor.register_stage(sid, partial(_mark, label=sid), depends_on=dep)
        run = executor.run(_small_adata(), start_stage="b", end_stage="c")
        assert run.completed_stages == ["b", "c"]
        with pytest.raises(KeyError, match="zz"):
            executor.run(_small_adata(), start_stage="zz")

    def test_state_file(self, tmp_path, quiet_logger):
        state_file = tmp_path / "state.json"
        executor = WorkflowExecutor(logger=quiet_logger, state_file=str(state_file), name="demo")
        executor.register_stage("a", partial(_mark, label="a"))
        executor.register_stage("b", partial(_mark, label="b"), depends_on=["a"])
        executor.run(_small_adata())

        state = json.loads(state_file.read_text())
        assert state["workflow"] == "demo"
        assert state["completed_stages"] == ["a", "b"]
        assert state["summaries"]["b"]["label"] == "b"
        assert executor.load_state() == ["a", "b"]

        other = WorkflowExecutor(logger=quiet_logger, state_file=str(state_file), name="other")
        assert other.load_state() == []

        executor.clear_state()
        assert not state_file.exists()
        assert executor.load_state() == []

    def test_checkpoints_and_resume(self, tmp_path, quiet_logger):
        executor = WorkflowExecutor(
            logger=quiet_logger,
            state_file=str(tmp_path / "state.json"),
            checkpoint_dir=str(tmp_path / "checkpoints"),
        )
        executor.register_stage("a", partial(_mark, label="a"))
        executor.register_stage("b", _drop_first, depends_on=["a"])
        executor.register_stage("c", _fail, depends_on=["b"])

        with pytest.raises(StageError):
            executor.run(_small_adata())
        assert executor.checkpoint_path("b").exists()
        assert not executor.checkpoint_path("c").exists()
        assert executor.read_checkpoint("b").n_obs == 5

        executor.stages["c"].func = partial(_mark, label="c")
        run = executor.run(resume=True)
        assert run.completed_stages == ["c"]
        assert executor.completed_stages == ["a", "b", "c"]
        assert run.adata.n_obs == 5
        assert "a" in run.adata.uns and "c" in run.adata.uns

    def test_resume_when_complete(self, tmp_path, quiet_logger):
        executor = WorkflowExecutor(
            logger=quiet_logger,
            state_file=str(tmp_path / "state.json"),
            checkpoint_dir=str(tmp_path / "checkpoints"),
        )
        executor.register_stage("a", partial(_mark, label="a"))
        executor.run(_small_adata())
        run = executor.run(resume=True)
        assert run.completed_stages == []
        assert "a" in run.adata.uns

    def test_missing_checkpoint(self, tmp_path, quiet_logger):
        executor = WorkflowExecutor(logger=quiet_logger, checkpoint_dir=str(tmp_path))
        with pytest.raises(FileNotFoundError):
            executor.read_checkpoint("qc")


class TestPipelineLogger:
    """Tests for PipelineLogger class."""

    def test_logger_creation(self, tmp_path):
        logger = PipelineLogger(str(tmp_path / "logs"), log_level="DEBUG", console=False)
        assert logger.log_dir.exists()
        assert logger.log_file.name.startswith("workflow_")
        assert logger.summary_file.suffix == ".jsonl"

    def test_writes_log_and_summaries(self, tmp_path):
        logger = PipelineLogger(str(tmp_path), log_name="test_pipeline_logger", console=False)
        logger.setup()
        logger.log_stage_start("qc", "Quality control")
        logger.log_stage_summary("qc", {"n_discarded": 3})
        logger.log_stage_complete("qc", 1.5)
        logger.close()

        text = logger.log_file.read_text()
        assert "Starting Stage qc: Quality control" in text
        assert "n_discarded: 3" in text
        assert "completed successfully in 1.5s" in text
        record = json.loads(logger.summary_file.read_text().strip())
        assert record["stage"] == "qc"
        assert record["n_discarded"] == 3

    def test_console_only(self):
        logger = PipelineLogger(log_name="test_console_only")
        logger.setup()
        assert logger.log_file is None
        assert len(logger.logger.handlers) == 1
        logger.close()

    @pytest.mark.parametrize(
        "seconds, expected",
        [(45.2, "45.2s"), (83, "1m 23s"), (8100, "2h 15m")],
    )
    def test_format_duration(self, seconds, expected):
        assert PipelineLogger.format_duration(seconds) == expected
