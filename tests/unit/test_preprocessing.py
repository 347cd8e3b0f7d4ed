"""Unit tests for loading, quality control and merging."""

import pytest
import numpy as np
import pandas as pd

from sctrace.core.errors import EmptySampleError, InputShapeError
from sctrace.core.preprocessing import (
    CellQC,
    DataLoader,
    DataMerger,
    LoaderConfig,
    MergeConfig,
    QCConfig,
)
from sctrace.core.preprocessing.qc import RECORD_COLUMNS

from tests.fixtures import GENE_PANEL, create_mock_sample


class TestDataLoader:
    """Tests for DataLoader."""

    def test_from_triplets(self):
        """Test building a matrix from long-format triplets."""
        triplets = pd.DataFrame(
            {
                "cell_id": ["c1", "c1", "c2"],
                "gene_id": ["g1", "g2", "g2"],
                "count": [3, 1, 5],
            }
        )
        matrix = DataLoader().from_triplets(triplets, sample_id="S1", batch="run1")
        assert list(matrix.cell_ids) == ["c1", "c2"]
        assert list(matrix.gene_ids) == ["g1", "g2"]
        assert matrix.counts.toarray().tolist() == [[3, 1], [0, 5]]
        assert matrix.sample_id == "S1"
        assert set(matrix.obs["batch"]) == {"run1"}

    def test_duplicate_triplets_summed(self):
        """Test that repeated (cell, gene) pairs are summed."""
        triplets = pd.DataFrame(
            {"cell_id": ["c1", "c1"], "gene_id": ["g1", "g1"], "count": [2, 3]}
        )
        matrix = DataLoader().from_triplets(triplets, sample_id="S1")
        assert matrix.counts.toarray().tolist() == [[5]]

    def test_declared_cells_keep_empty_rows(self):
        """Test that declared cells without counts are kept."""
        triplets = pd.DataFrame({"cell_id": ["c1"], "gene_id": ["g1"], "count": [1]})
        matrix = DataLoader().from_triplets(
            triplets, sample_id="S1", cell_ids=["c0", "c1"], gene_ids=["g1", "g2"]
        )
        assert matrix.shape == (2, 2)
        assert matrix.total_counts().tolist() == [0, 1]

    def test_undeclared_cell_rejected(self):
        """Test that triplets referencing undeclared cells are rejected."""
        triplets = pd.DataFrame({"cell_id": ["c9"], "gene_id": ["g1"], "count": [1]})
        with pytest.raises(InputShapeError, match="undeclared cells"):
            DataLoader().from_triplets(triplets, sample_id="S1", cell_ids=["c1"])

    @pytest.mark.parametrize("count,message", [(-1, "negative"), (1.5, "integers")])
    def test_invalid_counts_rejected(self, count, message):
        """Test that negative and fractional counts are rejected."""
        triplets = pd.DataFrame({"cell_id": ["c1"], "gene_id": ["g1"], "count": [count]})
        with pytest.raises(InputShapeError, match=message):
            DataLoader().from_triplets(triplets, sample_id="S1")

    @pytest.mark.parametrize(
        "value,message",
        [(-1.0, "negative"), (1.5, "integers"), (np.nan, "non-numeric")],
    )
    def test_invalid_dense_counts_rejected(self, value, message):
        """Test that dense input gets the same count checks as triplets."""
        counts = np.array([[1.0, value], [0.0, 2.0]])
        with pytest.raises(InputShapeError, match=message):
            DataLoader().from_dense(counts, ["c1", "c2"], ["g1", "g2"], sample_id="S1")

    def test_dense_float_integers_accepted(self):
        """Test that whole-number floats load as integer counts."""
        matrix = DataLoader().from_dense(
            np.array([[1.0, 0.0], [0.0, 2.0]]), ["c1", "c2"], ["g1", "g2"], sample_id="S1"
        )
        assert matrix.counts.dtype == np.int64
        assert matrix.total_counts().tolist() == [1, 2]

    def test_missing_columns_rejected(self):
        """Test that the configured columns are required."""
        triplets = pd.DataFrame({"cell": ["c1"], "gene_id": ["g1"], "count": [1]})
        with pytest.raises(InputShapeError, match="missing columns"):
            DataLoader().from_triplets(triplets, sample_id="S1")

    def test_custom_columns(self):
        """Test configurable triplet column names."""
        triplets = pd.DataFrame({"barcode": ["c1"], "feature": ["g1"], "umi": [4]})
        loader = DataLoader(LoaderConfig(cell_id_col="barcode", gene_id_col="feature", count_col="umi"))
        assert loader.from_triplets(triplets, sample_id="S1").counts.sum() == 4

    def test_metadata_mismatch_rejected(self):
        """Test that metadata must declare exactly the matrix cells."""
        metadata = pd.DataFrame({"donor": ["D1"]}, index=["c1"])
        with pytest.raises(InputShapeError, match="metadata declares"):
            DataLoader().from_dense(
                np.ones((2, 2)), ["c1", "c2"], ["g1", "g2"], sample_id="S1", metadata=metadata
            )

    def test_load_samples_from_manifest(self, triplet_manifest, celltype_samples):
        """Test loading every manifest sample with relative paths."""
        samples = DataLoader().load_samples(triplet_manifest)
        assert [s.sample_id for s in samples] == ["S1", "S2"]
        assert samples[0].n_cells == celltype_samples[0].n_cells
        assert samples[0].counts.sum() == celltype_samples[0].counts.sum()

    def test_manifest_missing_column(self, tmp_path):
        """Test that a manifest without a path column is rejected."""
        manifest = tmp_path / "manifest.csv"
        pd.DataFrame({"sample_id": ["S1"]}).to_csv(manifest, index=False)
        with pytest.raises(ValueError, match="path"):
            DataLoader().load_manifest(manifest)


class TestQCConfig:
    """Tests for QCConfig dataclass."""

    def test_default_values(self):
        """Test default configuration values."""
        config = QCConfig()
        assert config.min_genes_per_cell == 200
        assert config.max_genes_per_cell == 6000
        assert config.max_percent_mito == 10.0
        assert config.mito_prefix == "MT-"
        assert config.excluded_genes == []


class TestCellQC:
    """Tests for CellQC."""

    def test_high_mito_cells_removed(self, qc_samples, qc_config):
        """Test that cells above the mitochondrial threshold fail QC."""
        result = CellQC(qc_config).filter_sample(qc_samples[0])
        assert result.cells_total == 100
        assert result.cells_removed == 5
        assert result.cells_kept == 95
        assert result.reason_counts == {"high_mito": 5}
        failed = result.records[~result.records["passed"]]
        assert list(failed.index) == [f"cell_{i:03d}" for i in range(5)]
        assert (failed["pct_mito"] > 15).all()
        assert set(failed["reasons"]) == {"high_mito"}

    def test_audit_record_covers_every_cell(self, qc_samples, qc_config):
        """Test that the audit record keeps failed cells with metrics."""
        result = CellQC(qc_config).filter_sample(qc_samples[0])
        assert list(result.records.columns) == RECORD_COLUMNS
        assert len(result.records) == 100
        assert result.matrix.n_cells == 95
        assert result.matrix.stage == "qc"

    def test_low_genes_flag(self, qc_samples):
        """Test the detected-gene floor."""
        config = QCConfig(min_genes_per_cell=1000, max_genes_per_cell=None)
        with pytest.raises(EmptySampleError) as excinfo:
            CellQC(config).filter_sample(qc_samples[1])
        assert excinfo.value.sample_id == "B"
        assert excinfo.value.n_cells == 100
        assert (excinfo.value.records["reasons"].str.contains("low_genes")).all()

    def test_high_genes_flag(self, qc_samples):
        """Test the detected-gene ceiling."""
        config = QCConfig(min_genes_per_cell=1, max_genes_per_cell=10, max_percent_mito=100.0)
        with pytest.raises(EmptySampleError):
            CellQC(config).filter_sample(qc_samples[1])

    def test_ribosomal_thresholds(self, qc_samples, qc_config):
        """Test that ribosomal fractions are computed and thresholded."""
        config = QCConfig(
            min_genes_per_cell=10,
            max_genes_per_cell=None,
            max_percent_mito=100.0,
            max_percent_rps=0.0,
        )
        result = CellQC(config).filter_sample(qc_samples[1])
        expressing_rps = int((qc_samples[1].counts[:, qc_samples[1].gene_positions(["RPS3"])].toarray() > 0).sum())
        assert result.reason_counts.get("high_rps", 0) == expressing_rps

    def test_excluded_genes_removed_before_metrics(self, qc_samples):
        """Test that excluded genes never contribute to QC metrics."""
        config = QCConfig(
            min_genes_per_cell=10,
            max_genes_per_cell=None,
            max_percent_mito=10.0,
            excluded_genes=["MT-CO1", "MT-ND1"],
        )
        result = CellQC(config).filter_sample(qc_samples[0])
        assert result.cells_removed == 0
        assert sorted(result.genes_excluded) == ["MT-CO1", "MT-ND1"]
        assert "MT-CO1" not in set(result.matrix.gene_ids)
        assert (result.records["pct_mito"] == 0).all()

    def test_prefix_matching_case_insensitive(self):
        """Test that lower-case mitochondrial genes are recognized."""
        sample = create_mock_sample("S1", n_cells=10, n_high_mito=10)
        genes = [g.lower() if g.startswith("MT-") else g for g in sample.gene_ids]
        lower = DataLoader().from_dense(
            sample.counts.toarray(), sample.cell_ids, genes, sample_id="S1"
        )
        metrics = CellQC(QCConfig()).compute_metrics(lower)
        assert (metrics["pct_mito"] > 15).all()

    def test_unexpressed_genes_dropped(self):
        """Test that genes without surviving expressing cells are dropped."""
        sample = create_mock_sample("S1", n_cells=10)
        counts = sample.counts.toarray()
        counts[:, 0] = 0
        sample = DataLoader().from_dense(counts, sample.cell_ids, sample.gene_ids, sample_id="S1")
        config = QCConfig(min_genes_per_cell=10, max_genes_per_cell=None)
        result = CellQC(config).filter_sample(sample)
        assert result.genes_dropped == 1
        assert GENE_PANEL[0] not in set(result.matrix.gene_ids)

    def test_filter_samples_skips_empty(self, qc_samples):
        """Test that a sample with no surviving cells is skipped, not fatal."""
        wiped = create_mock_sample("C", n_cells=20, n_high_mito=20)
        config = QCConfig(min_genes_per_cell=10, max_genes_per_cell=None, max_percent_mito=10.0)
        batch = CellQC(config).filter_samples(qc_samples + [wiped])
        assert [r.sample_id for r in batch.results] == ["A", "B"]
        assert [e.sample_id for e in batch.skipped] == ["C"]
        assert len(batch.matrices) == 2

        summary = batch.to_dict()
        assert summary["cells_total"] == 220
        assert summary["cells_kept"] == 195
        assert summary["samples_skipped"] == ["C"]

        audit = batch.audit
        assert len(audit) == 220
        assert "cell_id" in audit.columns
        assert (~audit["passed"]).sum() == 25

    def test_batch_version_deterministic(self, qc_samples, qc_config):
        """Test that repeated QC gives the same version."""
        first = CellQC(qc_config).filter_samples(qc_samples)
        second = CellQC(qc_config).filter_samples(qc_samples)
        assert first.version == second.version
        assert first.version.startswith("qc:")


class TestDataMerger:
    """Tests for DataMerger."""

    def _qc(self, samples, config):
        return CellQC(config).filter_samples(samples).matrices

    def test_merge_after_qc(self, qc_samples, qc_config):
        """Test that 195 cells survive QC and merge over the union gene axis."""
        result = DataMerger().merge_samples(self._qc(qc_samples, qc_config))
        matrix = result.matrix
        assert matrix.n_cells == 195
        assert result.cells_per_sample == {"A": 95, "B": 100}
        assert matrix.stage == "merged"
        assert "GENE40" in set(matrix.gene_ids)
        assert "GENE41" in set(matrix.gene_ids)
        # Union order is first-seen: sample A panel first
        assert list(matrix.gene_ids[:3]) == GENE_PANEL[:3]

    def test_union_zero_fill(self, qc_samples, qc_config):
        """Test that genes absent from a sample are zero for its cells."""
        matrix = DataMerger().merge_samples(self._qc(qc_samples, qc_config)).matrix
        is_b = (matrix.obs["sample_id"] == "B").to_numpy()
        col = matrix.gene_positions(["GENE40"])[0]
        assert matrix.counts[is_b][:, col].sum() == 0
        col = matrix.gene_positions(["GENE41"])[0]
        assert matrix.counts[~is_b][:, col].sum() == 0

    def test_intersection(self, qc_samples, qc_config):
        """Test intersection keeps only shared genes."""
        merger = DataMerger(MergeConfig(gene_join="intersection"))
        matrix = merger.merge_samples(self._qc(qc_samples, qc_config)).matrix
        assert "GENE40" not in set(matrix.gene_ids)
        assert "GENE41" not in set(matrix.gene_ids)

    def test_colliding_cell_ids_prefixed(self, qc_samples, qc_config):
        """Test that only colliding cell ids are prefixed with the sample id."""
        result = DataMerger().merge_samples(self._qc(qc_samples, qc_config))
        matrix = result.matrix
        # cell_000..cell_004 of sample A failed QC, so B's copies do not collide
        assert "cell_000" in set(matrix.cell_ids)
        assert "A:cell_005" in set(matrix.cell_ids)
        assert "B:cell_005" in set(matrix.cell_ids)
        assert result.renamed_cells == 190
        assert matrix.obs.loc["A:cell_005", "original_cell_id"] == "cell_005"

    def test_cell_order_and_counts_preserved(self, qc_samples, qc_config):
        """Test that merging keeps per-sample cell order and counts."""
        filtered = self._qc(qc_samples, qc_config)
        matrix = DataMerger().merge_samples(filtered).matrix
        assert matrix.counts.sum() == sum(m.counts.sum() for m in filtered)
        first_a = matrix.obs[matrix.obs["sample_id"] == "A"]["original_cell_id"]
        assert list(first_a) == list(filtered[0].cell_ids)

    def test_batch_defaults_to_sample(self, qc_samples, qc_config):
        """Test that a missing batch column defaults to the sample id."""
        matrix = DataMerger().merge_samples(self._qc(qc_samples, qc_config)).matrix
        assert set(matrix.obs["batch"]) == {"A", "B"}

    def test_duplicate_samples_rejected(self, qc_samples):
        """Test that merging the same sample twice is rejected."""
        with pytest.raises(InputShapeError, match="Duplicate sample ids"):
            DataMerger().merge_samples([qc_samples[0], qc_samples[0]])

    def test_empty_input_rejected(self):
        """Test that merging nothing is rejected."""
        with pytest.raises(InputShapeError):
            DataMerger().merge_samples([])

    def test_unknown_gene_join(self):
        """Test that an unknown policy is rejected."""
        with pytest.raises(ValueError, match="gene_join"):
            DataMerger(MergeConfig(gene_join="outer"))
