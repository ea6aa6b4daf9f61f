"""Unit tests for preprocessing module."""

import pytest
import numpy as np
import pandas as pd
from pathlib import Path
from scipy import sparse

from cellanchor.core.preprocessing import (
    LoaderConfig,
    QCConfig,
    NormalizationConfig,
    DataLoader,
    CellQC,
    Normalizer,
    compute_qc_metrics,
    find_elbow,
    log_normalize,
    scale_features,
    select_variable_features,
    split_composite_ids,
)
from cellanchor.exceptions import EmptySampleError, IdentifierError
from tests.fixtures import create_qc_adata


class TestConfigs:
    """Tests for preprocessing configuration dataclasses."""

    def test_qc_defaults(self):
        """Test default QC thresholds."""
        config = QCConfig()
        assert config.min_genes == 400
        assert config.max_genes == 7000
        assert config.max_mito_percent == 20.0
        assert config.max_ribo_percent == 20.0

    def test_qc_invalid_range(self):
        """Test that inverted gene bounds are rejected."""
        with pytest.raises(ValueError, match="min_genes"):
            QCConfig(min_genes=500, max_genes=400).validate()

    def test_normalization_defaults(self):
        """Test default normalization parameters."""
        config = NormalizationConfig()
        assert config.scale_factor == 1e4
        assert config.n_top_genes == 2000
        assert config.n_pcs == 20

    def test_loader_empty_delimiter(self):
        """Test that an empty identifier delimiter is rejected."""
        with pytest.raises(ValueError):
            DataLoader(LoaderConfig(id_delimiter=""))


class TestSplitCompositeIds:
    """Tests for composite identifier parsing."""

    def test_split_on_first_delimiter(self):
        """Test that barcodes may contain the delimiter."""
        parts = split_composite_ids(["P01_AAACCTG", "P02_GGT_1"])
        assert parts.loc["P01_AAACCTG", "patient_id"] == "P01"
        assert parts.loc["P02_GGT_1", "patient_id"] == "P02"
        assert parts.loc["P02_GGT_1", "barcode"] == "GGT_1"

    def test_custom_delimiter(self):
        """Test splitting on a custom delimiter."""
        parts = split_composite_ids(["P01-AAAC"], delimiter="-")
        assert parts["barcode"].tolist() == ["AAAC"]

    def test_malformed_ids_fail(self):
        """Test that every malformed identifier is reported."""
        with pytest.raises(IdentifierError) as excinfo:
            split_composite_ids(["P01_AAAC", "NODELIM", "_AAAC", "P02_"])
        assert excinfo.value.bad_ids == ["NODELIM", "_AAAC", "P02_"]
        assert isinstance(excinfo.value, ValueError)


class TestDataLoader:
    """Tests for DataLoader class."""

    @pytest.fixture
    def counts_table(self, tmp_path) -> Path:
        """Create a small delimited counts table."""
        df = pd.DataFrame(
            {
                "cell_id": ["P1_AAA", "P1_CCC", "P2_GGG"],
                "CD3E": [1, 0, 3],
                "MS4A1": [0, 2, 5],
            }
        )
        path = tmp_path / "counts.csv"
        df.to_csv(path, index=False)
        return path

    @pytest.fixture
    def metadata_table(self, tmp_path) -> Path:
        """Create per-cell metadata with sample and stage."""
        df = pd.DataFrame(
            {
                "cell_id": ["P2_GGG", "P1_AAA", "P1_CCC"],
                "sample_id": ["S2", "S1", "S1"],
                "stage": ["II", "I", "I"],
            }
        )
        path = tmp_path / "metadata.csv"
        df.to_csv(path, index=False)
        return path

    def test_load_counts_table(self, counts_table):
        """Test loading a counts table without metadata."""
        result = DataLoader().load(counts_table)
        adata = result.adata
        assert sparse.isspmatrix_csr(adata.X)
        assert adata.obs["patient_id"].tolist() == ["P1", "P1", "P2"]
        assert adata.obs["sample_id"].tolist() == ["P1", "P1", "P2"]
        assert result.sample_counts == {"P1": 2, "P2": 1}

    def test_load_with_metadata(self, counts_table, metadata_table):
        """Test that metadata rows are aligned to the counts."""
        result = DataLoader().load(counts_table, metadata_table)
        obs = result.adata.obs
        assert obs.loc["P1_AAA", "sample_id"] == "S1"
        assert obs.loc["P2_GGG", "stage"] == "II"
        assert obs.loc["P2_GGG", "barcode"] == "GGG"

    def test_load_h5ad(self, tmp_path):
        """Test loading an h5ad file."""
        adata = create_qc_adata([5, 6], n_genes=10)
        path = tmp_path / "data.h5ad"
        adata.write_h5ad(path)
        result = DataLoader().load(path)
        assert result.n_cells == 2
        assert result.n_genes == 12

    def test_malformed_ids_are_fatal(self, tmp_path):
        """Test that loading fails on identifiers without a delimiter."""
        df = pd.DataFrame({"cell_id": ["P1_AAA", "BROKEN"], "CD3E": [1, 2]})
        path = tmp_path / "counts.csv"
        df.to_csv(path, index=False)
        with pytest.raises(IdentifierError):
            DataLoader().load(path)

    def test_negative_counts_rejected(self, tmp_path):
        """Test that negative counts are rejected."""
        df = pd.DataFrame({"cell_id": ["P1_AAA"], "CD3E": [-1]})
        path = tmp_path / "counts.csv"
        df.to_csv(path, index=False)
        with pytest.raises(ValueError, match="negative"):
            DataLoader().load(path)

    def test_missing_file(self, tmp_path):
        """Test error on missing dataset."""
        with pytest.raises(FileNotFoundError):
            DataLoader().load(tmp_path / "missing.h5ad")

    def test_split_samples(self, counts_table, metadata_table):
        """Test splitting into per-sample copies."""
        loader = DataLoader()
        adata = loader.load(counts_table, metadata_table).adata
        samples = loader.split_samples(adata)
        assert list(samples) == ["S1", "S2"]
        assert samples["S1"].n_obs == 2
        samples["S1"].obs["stage"] = "changed"
        assert adata.obs.loc["P1_AAA", "stage"] == "I"


class TestQCMetrics:
    """Tests for per-cell QC metrics."""

    def test_metrics_values(self):
        """Test detected genes and percentages."""
        adata = create_qc_adata([1000, 500], mito_percent=[25.0, 0.0], ribo_percent=[0.0, 10.0])
        metrics = compute_qc_metrics(adata)
        assert metrics["genes_detected"].tolist() == [1001, 501]
        assert metrics.iloc[0]["mito_percent"] == pytest.approx(25.0)
        assert metrics.iloc[1]["ribo_percent"] == pytest.approx(10.0)
        assert metrics.iloc[1]["mito_percent"] == 0.0

    def test_zero_count_cell(self):
        """Test that a cell without counts gets zero percentages."""
        adata = create_qc_adata([0, 3], n_genes=5)
        metrics = compute_qc_metrics(adata)
        assert metrics.iloc[0]["genes_detected"] == 0
        assert metrics.iloc[0]["mito_percent"] == 0.0
        assert np.isfinite(metrics["ribo_percent"]).all()

    def test_stored_zeros_not_detected(self):
        """Test explicitly stored zeros do not count as detected genes."""
        adata = create_qc_adata([3, 2], n_genes=5)
        matrix = adata.X.tocoo()
        data = matrix.data.copy()
        data[0] = 0.0
        adata.X = sparse.csr_matrix((data, (matrix.row, matrix.col)), shape=matrix.shape)
        assert adata.X.nnz == 5
        metrics = compute_qc_metrics(adata)
        assert metrics["genes_detected"].tolist() == [2, 2]
        assert metrics["total_counts"].tolist() == [2.0, 2.0]

    def test_matches_scanpy(self, rng):
        """Test metrics agree with scanpy's per-cell QC columns."""
        sc = pytest.importorskip("scanpy")
        adata = create_qc_adata(
            rng.integers(50, 150, size=8).tolist(),
            mito_percent=rng.uniform(0, 30, size=8).tolist(),
            n_genes=200,
        )
        metrics = compute_qc_metrics(adata)
        reference = adata.copy()
        reference.var["mt"] = reference.var_names.str.startswith("MT-")
        sc.pp.calculate_qc_metrics(reference, qc_vars=["mt"], percent_top=None, inplace=True)
        np.testing.assert_array_equal(
            metrics["genes_detected"], reference.obs["n_genes_by_counts"]
        )
        np.testing.assert_allclose(metrics["mito_percent"], reference.obs["pct_counts_mt"])


class TestCellQC:
    """Tests for CellQC filtering."""

    def test_strict_gene_bounds(self):
        """Test that 400 and 7000 detected genes are excluded."""
        adata = create_qc_adata([350, 400, 401, 6999, 7000])
        result = CellQC().filter_cells(adata, "P1")
        retained = result.filtered.obs["genes_detected"].tolist()
        assert retained == [401, 6999]
        assert result.reason_counts == {"low_genes": 2, "high_genes": 1}

    def test_scenario_350_excluded_401_retained(self):
        """Test the documented scenario with other metrics at zero."""
        adata = create_qc_adata([350, 401])
        result = CellQC().filter_cells(adata, "P1")
        assert result.filtered.obs_names.tolist() == ["P1_CELL0001"]

    def test_mito_and_ribo_thresholds(self):
        """Test cells above the percentage thresholds are removed."""
        adata = create_qc_adata(
            [1000, 1000, 1000, 1000],
            mito_percent=[19.5, 25.0, 0.0, 0.0],
            ribo_percent=[0.0, 0.0, 19.5, 25.0],
        )
        result = CellQC().filter_cells(adata, "P1")
        assert result.filtered.n_obs == 2
        reasons = result.removal_records
        assert [r["reasons"] for r in reasons] == ["high_mito", "high_ribo"]

    def test_flags_are_strict(self):
        """Test that values equal to a threshold are flagged."""
        metrics = pd.DataFrame(
            {
                "genes_detected": [400, 7000, 1000, 1000, 1000],
                "mito_percent": [0.0, 0.0, 20.0, 0.0, 19.99],
                "ribo_percent": [0.0, 0.0, 0.0, 20.0, 19.99],
            }
        )
        flags = CellQC().flag_cells(metrics)
        assert flags.any(axis=1).tolist() == [True, True, True, True, False]

    def test_retained_cells_satisfy_thresholds(self, rng):
        """Test every retained cell satisfies all thresholds."""
        n = 60
        adata = create_qc_adata(
            rng.integers(300, 7200, size=n).tolist(),
            mito_percent=rng.uniform(0, 30, size=n).tolist(),
            ribo_percent=rng.uniform(0, 30, size=n).tolist(),
        )
        filtered = CellQC().filter_cells(adata, "P1").filtered
        obs = filtered.obs
        assert ((obs["genes_detected"] > 400) & (obs["genes_detected"] < 7000)).all()
        assert (obs["mito_percent"] < 20).all()
        assert (obs["ribo_percent"] < 20).all()

    def test_configurable_thresholds(self):
        """Test custom thresholds."""
        adata = create_qc_adata([50, 150], n_genes=200)
        result = CellQC(QCConfig(min_genes=100, max_genes=180)).filter_cells(adata, "P1")
        assert result.cells_retained == 1

    def test_input_not_modified(self):
        """Test that filtering returns a new object."""
        adata = create_qc_adata([350, 401])
        CellQC().filter_cells(adata, "P1")
        assert adata.n_obs == 2
        assert "genes_detected" not in adata.obs

    def test_empty_sample_excluded(self):
        """Test that a sample with no survivors is excluded, others kept."""
        samples = {
            "P1": create_qc_adata([500, 600], sample_id="P1"),
            "P2": create_qc_adata([100, 200], sample_id="P2"),
        }
        outcome = CellQC().filter_samples(samples)
        assert list(outcome.samples) == ["P1"]
        assert "P2" in outcome.excluded
        summary = outcome.summary()
        assert summary.set_index("sample_id").loc["P2", "excluded"]
        assert len(outcome.removal_table()) == 2

    def test_survivors_raise_when_empty(self):
        """Test that an all-removed sample raises on access to survivors."""
        result = CellQC().filter_cells(create_qc_adata([100, 200], sample_id="P2"), "P2")
        assert result.cells_retained == 0
        with pytest.raises(EmptySampleError, match="P2"):
            result.survivors()


class TestLogNormalize:
    """Tests for log-normalization."""

    def test_formula(self):
        """Test log1p(count / total * scale)."""
        counts = np.array([[1.0, 3.0], [2.0, 2.0]])
        normalized = log_normalize(counts, scale_factor=100)
        expected = np.log1p(counts / counts.sum(axis=1, keepdims=True) * 100)
        np.testing.assert_allclose(normalized, expected)

    def test_sparse_matches_dense(self):
        """Test sparse input keeps sparsity and values."""
        counts = np.array([[0.0, 4.0, 1.0], [2.0, 0.0, 0.0]])
        dense = log_normalize(counts)
        sp = log_normalize(sparse.csr_matrix(counts))
        assert sparse.issparse(sp)
        np.testing.assert_allclose(sp.toarray(), dense)

    def test_zero_row_stays_zero(self):
        """Test a zero-count cell maps to zeros, also when re-applied."""
        counts = sparse.csr_matrix(np.array([[0.0, 0.0], [1.0, 1.0]]))
        once = log_normalize(counts)
        twice = log_normalize(once)
        for matrix in (once, twice):
            values = matrix.toarray()
            assert np.isfinite(values).all()
            assert (values[0] == 0).all()

    def test_matches_scanpy(self, rng):
        """Test agreement with normalize_total followed by log1p."""
        sc = pytest.importorskip("scanpy")
        import anndata as ad

        counts = sparse.csr_matrix(rng.poisson(2, size=(20, 15)).astype(float))
        reference = ad.AnnData(counts.copy())
        sc.pp.normalize_total(reference, target_sum=1e4)
        sc.pp.log1p(reference)
        np.testing.assert_allclose(log_normalize(counts).toarray(), reference.X.toarray())


class TestVariableFeatures:
    """Tests for dispersion-based feature selection."""

    def test_top_genes_selected(self, rng):
        """Test that high-dispersion genes are ranked first."""
        counts = rng.poisson(5, size=(200, 30)).astype(float)
        counts[:20, 0] = 200
        counts[20:, 0] = 0
        matrix = log_normalize(counts)
        names = [f"g{i}" for i in range(30)]
        table = select_variable_features(
            matrix, names, n_top_genes=5, n_bins=1, min_mean=None, max_mean=None, min_disp=None
        )
        assert table["highly_variable"].sum() == 5
        assert table.loc["g0", "variable_rank"] == 1
        assert table.loc["g0", "highly_variable"]

    def test_constant_gene_not_variable(self, rng):
        """Test that a constant gene is never selected."""
        counts = rng.poisson(5, size=(50, 10)).astype(float)
        counts[:, 3] = 0
        table = select_variable_features(
            log_normalize(counts), [f"g{i}" for i in range(10)],
            n_top_genes=10, min_mean=None, max_mean=None, min_disp=None,
        )
        assert not table.loc["g3", "highly_variable"]
        assert np.isnan(table.loc["g3", "variable_rank"])

    def test_strict_cutoffs(self, rng):
        """Test that genes sitting exactly on a cutoff are not ranked."""
        counts = rng.poisson(5, size=(100, 12)).astype(float)
        matrix = log_normalize(counts)
        names = [f"g{i}" for i in range(12)]
        open_table = select_variable_features(
            matrix, names, n_top_genes=12, min_mean=None, max_mean=None, min_disp=None
        )
        cutoff = open_table["dispersions_norm"].max()
        table = select_variable_features(
            matrix, names, n_top_genes=12, min_mean=None, max_mean=None, min_disp=cutoff
        )
        top = open_table["dispersions_norm"].idxmax()
        assert not table.loc[top, "highly_variable"]
        np.testing.assert_allclose(table["means"], open_table["means"])


class TestScaleAndElbow:
    """Tests for scaling and elbow selection."""

    def test_scale_zero_variance(self):
        """Test zero-variance columns scale to zero."""
        matrix = np.array([[1.0, 5.0], [3.0, 5.0], [5.0, 5.0]])
        scaled = scale_features(matrix)
        np.testing.assert_allclose(scaled[:, 0], [-1.0, 0.0, 1.0])
        assert (scaled[:, 1] == 0).all()

    def test_scale_clip(self):
        """Test clipping of extreme values."""
        matrix = np.zeros((101, 1))
        matrix[0, 0] = 1.0
        scaled = scale_features(matrix, max_value=3.0)
        assert scaled.max() == 3.0

    def test_find_elbow(self):
        """Test the knee of a variance curve."""
        ratios = [0.5, 0.2, 0.1, 0.05, 0.04, 0.03, 0.02]
        assert find_elbow(ratios) == 3

    def test_find_elbow_short(self):
        """Test short curves keep every component."""
        assert find_elbow([0.6, 0.4]) == 2


class TestNormalizer:
    """Tests for Normalizer class."""

    def test_run(self, planted_samples, planted_normalization):
        """Test normalization, feature selection and PCA."""
        adata = planted_samples["P1"]
        result = Normalizer(planted_normalization).run(adata)
        out = result.adata
        assert out.obsm["X_pca"].shape == (100, 10)
        assert "counts" in out.layers
        assert out.var["highly_variable"].sum() == len(result.variable_features)
        # log1p(counts) because every cell totals the scale factor
        np.testing.assert_allclose(
            out.X[:, :5].toarray(), np.log1p(adata.X[:, :5].toarray())
        )

    def test_input_not_modified(self, planted_samples, planted_normalization):
        """Test that the input AnnData keeps its raw counts."""
        adata = planted_samples["P1"]
        before = adata.X.copy()
        Normalizer(planted_normalization).run(adata)
        assert (adata.X != before).nnz == 0
        assert "X_pca" not in adata.obsm

    def test_auto_n_pcs(self, planted_samples, planted_normalization):
        """Test elbow-based component count."""
        planted_normalization.auto_n_pcs = True
        planted_normalization.max_pcs = 15
        result = Normalizer(planted_normalization).run(planted_samples["P1"])
        assert 1 <= result.n_pcs <= 15

    def test_reproducible(self, planted_samples, planted_normalization):
        """Test that runs with the same seed agree."""
        a = Normalizer(planted_normalization).run(planted_samples["P1"])
        b = Normalizer(planted_normalization).run(planted_samples["P1"])
        np.testing.assert_allclose(a.adata.obsm["X_pca"], b.adata.obsm["X_pca"])

    def test_umap(self, planted_samples, planted_normalization):
        """Test a reproducible 2-D UMAP is added when enabled."""
        pytest.importorskip("scanpy")
        normalizer = Normalizer(planted_normalization)
        a = normalizer.run(planted_samples["P1"], compute_umap=True)
        b = normalizer.run(planted_samples["P1"], compute_umap=True)
        assert a.adata.obsm["X_umap"].shape == (100, 2)
        np.testing.assert_allclose(a.adata.obsm["X_umap"], b.adata.obsm["X_umap"])

    def test_umap_skipped_for_tiny_samples(self, planted_samples, planted_normalization):
        """Test that too few cells skip the embedding."""
        pytest.importorskip("scanpy")
        planted_normalization.n_pcs = 2
        tiny = planted_samples["P1"][:3].copy()
        result = Normalizer(planted_normalization).run(tiny, compute_umap=True)
        assert "X_umap" not in result.adata.obsm
