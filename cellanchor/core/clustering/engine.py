"""Clustering engine for the integrated embedding.

Builds the neighbor graph on the integrated PCA embedding and runs
Leiden community detection.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import logging

from .config import ClusteringConfig


@dataclass
class ClusteringResult:
    """Result from clustering operation.

    Attributes
    ----------
    adata : AnnData
        Copy of the input with cluster labels in ``obs[cluster_key]``
    n_clusters : int
        Number of clusters found
    cluster_key : str
        Key in adata.obs containing cluster assignments
    cluster_sizes : Dict[str, int]
        Map of cluster ID to cell count
    """

    adata: Any = None
    n_clusters: int = 0
    cluster_key: str = "leiden"
    cluster_sizes: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "n_clusters": self.n_clusters,
            "cluster_key": self.cluster_key,
            "cluster_sizes": dict(self.cluster_sizes),
        }


class ClusteringEngine:
    """Leiden clustering on an integrated embedding.

    Parameters
    ----------
    config : ClusteringConfig, optional
        Clustering configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from cellanchor.core.clustering import ClusteringEngine, ClusteringConfig
    >>> engine = ClusteringEngine(ClusteringConfig(resolution=0.8))
    >>> result = engine.run(integrated.adata)
    >>> result.adata.obs["leiden"].value_counts()
    """

    def __init__(
        self,
        config: Optional[ClusteringConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ClusteringConfig()
        self.config.validate()
        self.logger = logger or logging.getLogger(__name__)
        self._check_dependencies()

    def _check_dependencies(self) -> None:
        """Check for required dependencies."""
        try:
            import scanpy  # noqa: F401
        except ImportError:
            raise RuntimeError(
                "Clustering requires scanpy. Install with: pip install scanpy"
            )

    def run(
        self,
        adata: Any,  # AnnData
        cluster_key: Optional[str] = None,
        n_neighbors: Optional[int] = None,
        resolution: Optional[float] = None,
        random_seed: Optional[int] = None,
        compute_umap: Optional[bool] = None,
    ) -> ClusteringResult:
        """Cluster cells on ``obsm[use_rep]``.

        Parameters
        ----------
        adata : AnnData
            Integrated AnnData (not modified)
        cluster_key : str, optional
            Key in adata.obs to store cluster assignments. Uses config default if None.
        n_neighbors : int, optional
            k for neighborhood graph. Uses config default if None.
        resolution : float, optional
            Leiden resolution. Uses config default if None.
        random_seed : int, optional
            Random seed for reproducibility. Uses config default if None.
        compute_umap : bool, optional
            Recompute UMAP embeddings. Uses config default if None.

        Returns
        -------
        ClusteringResult
            New AnnData with cluster labels and cluster statistics

        Raises
        ------
        ValueError
            If the embedding is missing.
        """
        import scanpy as sc

        cfg = self.config
        cluster_key = cluster_key if cluster_key is not None else cfg.cluster_key
        n_neighbors = n_neighbors if n_neighbors is not None else cfg.n_neighbors
        resolution = resolution if resolution is not None else cfg.resolution
        random_seed = random_seed if random_seed is not None else cfg.random_seed
        compute_umap = compute_umap if compute_umap is not None else cfg.compute_umap

        if cfg.use_rep not in adata.obsm:
            raise ValueError(
                f"Embedding '{cfg.use_rep}' not found in obsm "
                f"(available: {list(adata.obsm.keys())})"
            )

        adata = adata.copy()
        n_neighbors = min(n_neighbors, max(adata.n_obs - 1, 2))
        self.logger.info(
            "Running clustering: rep=%s, n_neighbors=%d, resolution=%.3f",
            cfg.use_rep,
            n_neighbors,
            resolution,
        )

        sc.pp.neighbors(
            adata, n_neighbors=n_neighbors, use_rep=cfg.use_rep, random_state=random_seed
        )
        sc.tl.leiden(
            adata,
            resolution=resolution,
            random_state=random_seed,
            key_added=cluster_key,
            flavor="igraph",
            n_iterations=2,
            directed=False,
        )
        if compute_umap:
            sc.tl.umap(adata, random_state=random_seed)

        result = ClusteringResult(adata=adata, cluster_key=cluster_key)
        labels = adata.obs[cluster_key].astype(str)
        result.n_clusters = labels.nunique()
        result.cluster_sizes = {str(k): int(v) for k, v in labels.value_counts().items()}

        self.logger.info("Computed Leiden clustering with %d clusters", result.n_clusters)
        return result
