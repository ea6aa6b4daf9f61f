"""Unit tests for clustering module."""

import pytest
import numpy as np
import pandas as pd

from cellanchor.core.clustering import (
    DE_COLUMNS,
    ClusteringConfig,
    ClusteringResult,
    DEConfig,
    DEResult,
)


class TestClusteringConfig:
    """Tests for ClusteringConfig dataclass."""

    def test_default_values(self):
        """Test default configuration values."""
        config = ClusteringConfig()
        assert config.use_rep == "X_pca"
        assert config.n_neighbors == 15
        assert config.resolution == 0.6
        assert config.random_seed == 1337
        assert config.compute_umap is False

    def test_invalid_resolution(self):
        """Test non-positive resolution is rejected."""
        with pytest.raises(ValueError, match="resolution"):
            ClusteringConfig(resolution=0).validate()


class TestDEConfig:
    """Tests for DEConfig dataclass."""

    def test_default_values(self):
        """Test default DE configuration values."""
        config = DEConfig()
        assert config.method == "wilcoxon"
        assert config.n_genes == 50
        assert config.layer is None
        assert config.tie_correct is True

    def test_custom_method(self):
        """Test custom DE method."""
        config = DEConfig(method="t-test")
        assert config.method == "t-test"

    def test_to_dict(self):
        """Test conversion to dictionary."""
        assert DEConfig().to_dict()["max_pval_adj"] == 0.05


class TestDEResult:
    """Tests for DEResult."""

    def test_markers_only(self):
        """Test filtering the table to marker genes."""
        table = pd.DataFrame(
            {
                "cluster": ["0", "0", "1"],
                "gene": ["A", "B", "C"],
                "rank": [1, 2, 1],
            }
        ).reindex(columns=DE_COLUMNS)
        result = DEResult(cluster_de_genes={"0": ["A"], "1": []}, table=table)
        assert result.to_table(markers_only=True)["gene"].tolist() == ["A"]
        assert len(result.to_table()) == 3


class TestClusteringEngine:
    """Tests for ClusteringEngine (requires scanpy)."""

    @pytest.fixture
    def blobs(self, rng):
        """Two well-separated groups in a PCA-like embedding."""
        import anndata as ad

        groups = np.repeat(["a", "b"], 40)
        embedding = rng.normal(0, 0.2, size=(80, 5))
        embedding[groups == "b"] += 10.0
        adata = ad.AnnData(
            X=np.zeros((80, 3)),
            obs=pd.DataFrame({"group": groups}, index=[f"P1_BC{i:04d}" for i in range(80)]),
        )
        adata.obsm["X_pca"] = embedding
        return adata

    def test_run(self, blobs):
        """Test clusters never mix separated groups."""
        pytest.importorskip("scanpy")
        pytest.importorskip("igraph")
        from cellanchor.core.clustering import ClusteringEngine

        result = ClusteringEngine(ClusteringConfig(n_neighbors=10)).run(blobs)
        assert isinstance(result, ClusteringResult)
        assert result.n_clusters >= 2
        mixed = pd.crosstab(result.adata.obs["leiden"], result.adata.obs["group"])
        assert ((mixed > 0).sum(axis=1) == 1).all()
        assert sum(result.cluster_sizes.values()) == 80
        assert "leiden" not in blobs.obs

    def test_missing_embedding(self, blobs):
        """Test error when the embedding is absent."""
        pytest.importorskip("scanpy")
        from cellanchor.core.clustering import ClusteringEngine

        engine = ClusteringEngine(ClusteringConfig(use_rep="X_integrated"))
        with pytest.raises(ValueError, match="X_integrated"):
            engine.run(blobs)


class TestDERunner:
    """Tests for DERunner (requires scanpy)."""

    def test_markers_ranked_first(self, annotation_adata):
        """Test cluster markers top the DE ranking."""
        pytest.importorskip("scanpy")
        from cellanchor.core.clustering import DERunner

        result = DERunner().run(annotation_adata, cluster_key="leiden")
        assert list(result.table.columns) == DE_COLUMNS
        assert set(result.cluster_de_genes["0"][:3]) == {"CD3E", "CD3D", "CD8A"}
        assert set(result.cluster_de_genes["1"][:2]) == {"MS4A1", "CD79A"}
        assert set(result.cluster_de_genes["2"][:2]) == {"LYZ", "CD14"}
        assert "leiden" in annotation_adata.obs
        assert "de_wilcoxon" not in annotation_adata.uns

    def test_single_cluster(self, annotation_adata):
        """Test DE requires two clusters."""
        pytest.importorskip("scanpy")
        from cellanchor.core.clustering import DERunner

        adata = annotation_adata.copy()
        adata.obs["one"] = "0"
        with pytest.raises(ValueError, match="at least 2 clusters"):
            DERunner().run(adata, cluster_key="one")

    def test_missing_cluster_key(self, annotation_adata):
        """Test error on an unknown cluster column."""
        pytest.importorskip("scanpy")
        from cellanchor.core.clustering import DERunner

        with pytest.raises(ValueError, match="not found"):
            DERunner().run(annotation_adata, cluster_key="louvain")
