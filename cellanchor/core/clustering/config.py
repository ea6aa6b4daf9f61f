"""Configuration classes for clustering and differential expression."""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional


@dataclass
class ClusteringConfig:
    """Configuration for Leiden clustering.

    Attributes
    ----------
    use_rep : str
        Embedding in ``obsm`` used for the neighbor graph
    n_neighbors : int
        k for the neighborhood graph
    resolution : float
        Leiden resolution
    cluster_key : str
        Column in ``obs`` receiving the cluster labels
    random_seed : int
        Random seed for reproducibility
    compute_umap : bool
        Recompute UMAP on the clustering graph
    """

    use_rep: str = "X_pca"
    n_neighbors: int = 15
    resolution: float = 0.6
    cluster_key: str = "leiden"
    random_seed: int = 1337
    compute_umap: bool = False

    def validate(self) -> None:
        if self.n_neighbors < 2:
            raise ValueError(f"n_neighbors must be >= 2, got {self.n_neighbors}")
        if self.resolution <= 0:
            raise ValueError(f"resolution must be positive, got {self.resolution}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


@dataclass
class DEConfig:
    """Configuration for differential expression analysis.

    Attributes
    ----------
    method : str
        DE method (wilcoxon, t-test, etc.)
    n_genes : int
        Number of top genes kept per cluster
    layer : str, optional
        Layer to test; None uses ``X`` (log-normalized)
    tie_correct : bool
        Apply tie correction for Wilcoxon test
    max_pval_adj : float
        Marker genes must have an adjusted p-value below this
    min_logfc : float
        Marker genes must have a log fold change at or above this
    """

    method: str = "wilcoxon"
    n_genes: int = 50
    layer: Optional[str] = None
    tie_correct: bool = True
    max_pval_adj: float = 0.05
    min_logfc: float = 0.25

    def validate(self) -> None:
        if self.n_genes < 1:
            raise ValueError(f"n_genes must be >= 1, got {self.n_genes}")
        if not 0.0 < self.max_pval_adj <= 1.0:
            raise ValueError(f"max_pval_adj must be in (0, 1], got {self.max_pval_adj}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)
