"""Unit tests for pipeline orchestration module."""

import logging
from types import SimpleNamespace

import pytest
import numpy as np
import pandas as pd
import yaml

from sctrace.core.errors import (
    ConfigValidationError,
    ConvergenceWarning,
    DisconnectedTrajectoryError,
    EmptySampleError,
    InputShapeError,
    StatisticalTestError,
)
from sctrace.pipeline import (
    AnalysisConfig,
    ArtifactCache,
    DiagnosticReport,
    InMemoryExecutor,
    PipelineLogger,
    PipelineResult,
    PipelineRunner,
    Stage,
    artifact_version,
)

from tests.fixtures import create_mock_sample

STAGE_ORDER = ["qc", "merge", "normalize", "integrate", "cluster", "trajectory", "de"]


class TestStage:
    """Tests for Stage dataclass."""

    def test_create_stage(self):
        """Test creating a basic stage."""
        stage = Stage(name="Test Stage", stage_id="test", func=len)
        assert stage.name == "Test Stage"
        assert stage.stage_id == "test"
        assert stage.depends_on == []
        assert stage.optional is False
        assert stage.output is object

    def test_contract_satisfied(self):
        """Test that compatible upstream types pass."""
        stage = Stage(name="B", stage_id="b", func=len, inputs={"a": int}, depends_on=["a"])
        valid, errors = stage.validate_contract({"a": bool})
        assert valid
        assert errors == []

    def test_contract_missing_input(self):
        """Test that an input nobody produces is reported."""
        stage = Stage(name="B", stage_id="b", func=len, inputs={"a": int})
        valid, errors = stage.validate_contract({})
        assert not valid
        assert "not produced by any stage" in errors[0]

    def test_contract_type_mismatch(self):
        """Test that an incompatible upstream type is reported."""
        stage = Stage(name="B", stage_id="b", func=len, inputs={"a": int})
        valid, errors = stage.validate_contract({"a": str})
        assert not valid
        assert "expects int, got str" in errors[0]

    def test_contract_requires_callable(self):
        """Test that a stage without a function is invalid."""
        valid, errors = Stage(name="B", stage_id="b").validate_contract({})
        assert not valid
        assert "has no callable" in errors[0]

    def test_validate_inputs_and_output(self):
        """Test run-time type checks."""
        stage = Stage(name="B", stage_id="b", func=len, inputs={"a": list}, output=int)
        assert stage.validate_inputs({"a": [1]}) == (True, [])
        assert not stage.validate_inputs({})[0]
        assert not stage.validate_inputs({"a": "text"})[0]
        assert stage.validate_output(3)[0]
        assert "returned str" in stage.validate_output("3")[1][0]

    def test_to_dict(self):
        """Test reporting form uses type names."""
        stage = Stage(name="B", stage_id="b", func=len, inputs={"a": list}, output=int)
        data = stage.to_dict()
        assert data["inputs"] == {"a": "list"}
        assert data["output"] == "int"


def _arithmetic_executor(cache=None, calls=None):
    calls = calls if calls is not None else []

    def double(x):
        calls.append("double")
        return 2 * x

    executor = InMemoryExecutor(cache=cache)
    executor.register_stage("double", double, inputs={"x": int}, output=int)
    executor.register_stage("inc", lambda double: double + 1, depends_on=["double"], output=int)
    return executor


class TestInMemoryExecutor:
    """Tests for InMemoryExecutor."""

    def test_run_in_order(self):
        """Test stages receive upstream outputs by name."""
        executor = _arithmetic_executor()
        results = executor.run({"x": 4})
        assert results == {"double": 8, "inc": 9}
        assert executor.completed_stages == ["double", "inc"]
        assert set(executor.timings) == {"double", "inc"}

    def test_duplicate_stage_rejected(self):
        """Test that stage ids are unique."""
        executor = _arithmetic_executor()
        with pytest.raises(ValueError, match="already registered"):
            executor.register_stage("inc", lambda double: double)

    def test_execution_order(self):
        """Test dependency ordering independent of registration order."""
        executor = InMemoryExecutor()
        executor.register_stage("c", lambda b: b, depends_on=["b"])
        executor.register_stage("b", lambda a: a, depends_on=["a"])
        executor.register_stage("a", lambda x: x, inputs={"x": object})
        assert executor.get_execution_order() == ["a", "b", "c"]

    def test_circular_dependency(self):
        """Test that cycles are rejected."""
        executor = InMemoryExecutor()
        executor.register_stage("a", lambda b: b, depends_on=["b"])
        executor.register_stage("b", lambda a: a, depends_on=["a"])
        with pytest.raises(ValueError, match="Circular dependency"):
            executor.get_execution_order()
        valid, errors = executor.validate({})
        assert not valid
        assert any("Circular dependency" in e for e in errors)

    def test_validate_contracts(self):
        """Test static contract validation before running."""
        executor = _arithmetic_executor()
        assert executor.validate({"x": int}) == (True, [])

        valid, errors = executor.validate({"x": str})
        assert not valid
        assert "expects int, got str" in errors[0]

    def test_validate_undeclared_dependency(self):
        """Test that reading a stage output requires depending on it."""
        executor = InMemoryExecutor()
        executor.register_stage("a", lambda x: x, inputs={"x": int}, output=int)
        executor.register_stage("b", lambda a: a, inputs={"a": int}, output=int)
        valid, errors = executor.validate({"x": int})
        assert not valid
        assert errors == ["Stage 'b' reads 'a' without depending on it"]

    def test_bad_input_type(self):
        """Test run-time input type errors."""
        executor = _arithmetic_executor()
        with pytest.raises(TypeError, match="expected int"):
            executor.run({"x": "4"})

    def test_bad_output_type(self):
        """Test run-time output type errors."""
        executor = InMemoryExecutor()
        executor.register_stage("a", lambda x: str(x), inputs={"x": int}, output=int)
        with pytest.raises(TypeError, match="returned str"):
            executor.run({"x": 1})

    def test_on_complete_callback(self):
        """Test the per-stage callback."""
        seen = []
        _arithmetic_executor().run(
            {"x": 1}, on_complete=lambda stage, result, cached: seen.append((stage.stage_id, result, cached))
        )
        assert seen == [("double", 2, False), ("inc", 3, False)]

    def test_cache_reuses_outputs(self):
        """Test that identical inputs and configuration hit the cache."""
        cache = ArtifactCache()
        calls = []
        first = _arithmetic_executor(cache=cache, calls=calls)
        first.run({"x": 4})
        second = _arithmetic_executor(cache=cache, calls=calls)
        assert second.run({"x": 4}) == {"double": 8, "inc": 9}
        assert second.cached_stages == ["double", "inc"]
        assert calls == ["double"]

        third = _arithmetic_executor(cache=cache, calls=calls)
        third.run({"x": 5})
        assert third.cached_stages == []
        assert calls == ["double", "double"]


class TestArtifactCache:
    """Tests for ArtifactCache."""

    def test_key_deterministic(self):
        """Test keys depend on stage, upstream versions and config."""
        key = ArtifactCache.key("merge", ["qc:abc"], {"gene_join": "union"})
        assert key == ArtifactCache.key("merge", ["qc:abc"], {"gene_join": "union"})
        assert key != ArtifactCache.key("merge", ["qc:abd"], {"gene_join": "union"})
        assert key != ArtifactCache.key("merge", ["qc:abc"], {"gene_join": "intersection"})
        assert key != ArtifactCache.key("qc", ["qc:abc"], {"gene_join": "union"})

    def test_memory_hits_and_misses(self):
        """Test in-memory storage and statistics."""
        cache = ArtifactCache()
        assert cache.get("k") is None
        cache.put("k", [1, 2])
        assert "k" in cache
        assert cache.get("k") == [1, 2]
        assert len(cache) == 1
        assert cache.stats() == {"entries": 1, "hits": 1, "misses": 1, "cache_dir": None}

    def test_disk_persistence(self, tmp_path):
        """Test that entries survive a new cache instance."""
        matrix = create_mock_sample("S", n_cells=5)
        ArtifactCache(tmp_path / "cache").put("k", matrix)
        restored = ArtifactCache(tmp_path / "cache")
        assert "k" in restored
        assert len(restored) == 0
        assert restored.get("k").version == matrix.version
        assert len(restored) == 1

    def test_clear(self, tmp_path):
        """Test clearing memory and disk entries."""
        cache = ArtifactCache(tmp_path)
        cache.put("k", 1)
        cache.clear()
        assert len(cache) == 0
        assert "k" in cache
        cache.clear(disk=True)
        assert "k" not in cache
        assert list(tmp_path.glob("*.joblib")) == []

    def test_artifact_version(self):
        """Test version lookup on artifacts, wrappers and sequences."""
        matrix = create_mock_sample("S", n_cells=5)
        assert artifact_version(matrix) == matrix.version
        assert artifact_version(SimpleNamespace(matrix=matrix)) == matrix.version
        other = create_mock_sample("T", n_cells=5)
        assert artifact_version([matrix, other]) != artifact_version([other, matrix])
        assert artifact_version(3) == artifact_version(3)


class TestDiagnosticReport:
    """Tests for DiagnosticReport."""

    def test_add_errors(self):
        """Test subjects and details of recoverable errors."""
        report = DiagnosticReport()
        report.add_error("qc", EmptySampleError("S3", n_cells=40))
        report.add_error("trajectory", DisconnectedTrajectoryError(4, root=0, n_cells=30))
        report.add_error("de", StatisticalTestError("FLAT", "zero variance"))
        assert [e.subject for e in report] == ["S3", "4", "FLAT"]
        assert report.entries[0].details == {"n_cells": 40}
        assert report.entries[1].details == {"root": 0, "n_cells": 30}
        assert report.entries[2].details == {"reason": "zero variance"}

    def test_add_warning(self):
        """Test convergence warnings are recorded under their stage."""
        report = DiagnosticReport()
        warning = ConvergenceWarning("integrate", 5, 0.25, details={"n_clusters": 3})
        entry = report.add_warning(warning)
        assert entry.stage == "integrate"
        assert entry.kind == "ConvergenceWarning"
        assert entry.details == {
            "iterations": 5,
            "displacement": 0.25,
            "cancelled": False,
            "n_clusters": 3,
        }

    def test_queries(self):
        """Test filters and counts."""
        report = DiagnosticReport()
        report.add_error("qc", EmptySampleError("S3"))
        report.add_error("qc", EmptySampleError("S4"))
        report.add("de", "SkippedComparison", "0_vs_1", "groups too small (2 vs 10 cells)")
        assert len(report.by_kind("EmptySampleError")) == 2
        assert len(report.by_stage("de")) == 1
        assert report.counts() == {"EmptySampleError": 2, "SkippedComparison": 1}

    def test_export(self, tmp_path):
        """Test frame and YAML exports with numpy values."""
        report = DiagnosticReport()
        report.add("cluster", "Note", 1, "message", {"value": np.int64(3), "score": np.nan})
        frame = report.to_frame()
        assert list(frame.columns) == ["stage", "kind", "subject", "message", "details"]
        path = tmp_path / "nested" / "diagnostics.yaml"
        report.to_yaml(path)
        data = yaml.safe_load(path.read_text())
        assert data["n_entries"] == 1
        assert data["entries"][0]["details"] == {"value": 3, "score": None}

    def test_empty_frame(self):
        """Test empty reports still have columns."""
        assert list(DiagnosticReport().to_frame().columns) == [
            "stage", "kind", "subject", "message", "details"
        ]


class TestPipelineLogger:
    """Tests for PipelineLogger."""

    def test_format_duration(self):
        """Test duration formatting."""
        assert PipelineLogger.format_duration(45.2) == "45.2s"
        assert PipelineLogger.format_duration(83) == "1m 23s"
        assert PipelineLogger.format_duration(8100) == "2h 15m"

    def test_log_file(self, tmp_path):
        """Test that stage events are written to the run log."""
        plog = PipelineLogger(tmp_path, log_name="sctrace.test_log_file").setup(console=False)
        plog.log_stage_start("qc", "Cell Quality Control")
        plog.log_stage_complete("qc", 1.5, {"cells_kept": 10, "per_sample": []})
        report = DiagnosticReport()
        report.add_error("qc", EmptySampleError("S3"))
        plog.log_diagnostics(report)
        for handler in plog.logger.handlers:
            handler.flush()

        assert plog.log_file.name.startswith("sctrace_run_")
        text = plog.log_file.read_text()
        assert "Starting stage qc: Cell Quality Control" in text
        assert "Stage qc completed in 1.5s" in text
        assert "cells_kept=10" in text
        assert "per_sample" not in text
        assert "1 diagnostics recorded (EmptySampleError: 1)" in text

    def test_setup_replaces_handlers(self, tmp_path):
        """Test repeated setup does not duplicate handlers."""
        plog = PipelineLogger(tmp_path, log_name="sctrace.test_handlers")
        plog.setup()
        plog.setup()
        assert len(plog.logger.handlers) == 2
        assert plog.logger.level == logging.INFO


class TestPipelineRunner:
    """End-to-end tests for PipelineRunner on synthetic samples."""

    def test_stage_order(self, analysis_config):
        """Test the stage DAG order."""
        executor = PipelineRunner(analysis_config).build_executor()
        assert executor.get_execution_order() == STAGE_ORDER
        assert executor.validate({"samples": list}) == (True, [])

    def test_full_run(self, analysis_config, celltype_samples):
        """Test every artifact of a complete run."""
        result = PipelineRunner(analysis_config).run(celltype_samples)
        assert isinstance(result, PipelineResult)
        assert list(result.stage_results) == STAGE_ORDER
        assert result.matrix.n_cells == 180
        assert len(result.qc_audit) == 180
        assert result.normalized.n_genes == 30
        assert result.pca.coords.shape == (180, 10)
        assert result.integrated.coords.shape == (180, 10)
        assert result.clusters.is_partition(result.matrix.cell_ids)
        assert result.clusters.n_clusters >= 2
        assert result.trajectory.root == 0
        assert result.trajectory.is_acyclic()
        assert list(result.de) == [f"{c}_vs_rest" for c in result.clusters.cluster_ids]
        assert result.cached_stages == []

    def test_summary(self, analysis_config, celltype_samples):
        """Test the run summary carries versions and timings."""
        summary = PipelineRunner(analysis_config).run(celltype_samples).to_dict()
        assert summary["n_cells"] == 180
        assert summary["versions"]["clusters"].startswith("clusters:")
        assert set(summary["timings"]) == set(STAGE_ORDER)

    def test_reproducible(self, analysis_config, celltype_samples):
        """Test that identical inputs reproduce every artifact version."""
        first = PipelineRunner(analysis_config).run(celltype_samples)
        second = PipelineRunner(analysis_config).run(celltype_samples)
        assert first.to_dict()["versions"] == second.to_dict()["versions"]
        np.testing.assert_array_equal(first.clusters.labels, second.clusters.labels)
        assert first.trajectory.cell_pseudotime.equals(second.trajectory.cell_pseudotime)
        assert list(first.de) == list(second.de)
        for name in first.de:
            pd.testing.assert_frame_equal(
                first.de[name].table, second.de[name].table, check_exact=True
            )

    def test_cached_rerun(self, analysis_config, celltype_samples):
        """Test that a rerun with a shared cache reuses every stage."""
        cache = ArtifactCache()
        first = PipelineRunner(analysis_config, cache=cache).run(celltype_samples)
        second = PipelineRunner(analysis_config, cache=cache).run(celltype_samples)
        assert second.cached_stages == STAGE_ORDER
        assert second.clusters is first.clusters
        assert second.diagnostics.counts() == first.diagnostics.counts()

    def test_changed_config_recomputes_downstream(self, analysis_dict, celltype_samples):
        """Test that a clustering change reuses upstream stages only."""
        cache = ArtifactCache()
        PipelineRunner(AnalysisConfig.from_dict(analysis_dict), cache=cache).run(celltype_samples)
        analysis_dict["clustering"]["resolution"] = 1.0
        rerun = PipelineRunner(AnalysisConfig.from_dict(analysis_dict), cache=cache).run(
            celltype_samples
        )
        assert rerun.cached_stages == ["qc", "merge", "normalize", "integrate"]

    def test_changed_gene_scope_recomputes_downstream(self, analysis_dict, celltype_samples):
        """Test that two same-size gene scopes never share cached results."""
        markers = [f"T{t}_M{j:02d}" for t in range(3) for j in range(8)]
        cache = ArtifactCache()
        analysis_dict["gene_scope"] = markers[:12]
        first = PipelineRunner(AnalysisConfig.from_dict(analysis_dict), cache=cache).run(
            celltype_samples
        )
        analysis_dict["gene_scope"] = markers[12:]
        config = AnalysisConfig.from_dict(analysis_dict)
        rerun = PipelineRunner(config, cache=cache).run(celltype_samples)
        fresh = PipelineRunner(config).run(celltype_samples)

        assert rerun.cached_stages == ["qc", "merge"]
        assert first.pca.version != rerun.pca.version
        assert rerun.to_dict()["versions"] == fresh.to_dict()["versions"]
        np.testing.assert_array_equal(rerun.integrated.coords, fresh.integrated.coords)
        np.testing.assert_array_equal(rerun.clusters.labels, fresh.clusters.labels)

    def test_failed_sample_recorded(self, analysis_config, celltype_samples):
        """Test that a sample losing every cell is skipped and reported."""
        failing = create_mock_sample("C", n_cells=20, n_high_mito=20)
        result = PipelineRunner(analysis_config).run(celltype_samples + [failing])
        assert result.matrix.n_cells == 180
        entries = result.diagnostics.by_kind("EmptySampleError")
        assert [e.subject for e in entries] == ["C"]
        assert entries[0].stage == "qc"

    def test_de_not_applicable_recorded(self, analysis_config, celltype_samples):
        """Test that untestable genes become diagnostics, not failures."""
        result = PipelineRunner(analysis_config).run(celltype_samples)
        de_entries = result.diagnostics.by_stage("de")
        assert all(e.kind in ("StatisticalTestError", "SkippedComparison") for e in de_entries)
        for entry in result.diagnostics.by_kind("StatisticalTestError"):
            assert entry.details["comparison"] in result.de

    def test_validate_inputs(self, analysis_config):
        """Test input validation before any stage runs."""
        runner = PipelineRunner(analysis_config)
        with pytest.raises(InputShapeError, match="No samples"):
            runner.run([])
        with pytest.raises(InputShapeError, match="ExpressionMatrix"):
            runner.run(["not a matrix"])

    def test_invalid_config_rejected(self, analysis_dict, celltype_samples):
        """Test that a configuration without a root never runs."""
        analysis_dict["trajectory"].pop("root_strategy")
        config = AnalysisConfig.from_dict(analysis_dict)
        with pytest.raises(ConfigValidationError):
            PipelineRunner(config).run(celltype_samples)
