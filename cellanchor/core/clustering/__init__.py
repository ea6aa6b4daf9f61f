"""Clustering and differential expression on the integrated embedding.

Example Usage
-------------
>>> from cellanchor.core.clustering import ClusteringEngine, DERunner
>>> clustered = ClusteringEngine().run(integrated.adata)
>>> de = DERunner().run(clustered.adata, cluster_key="leiden")
>>> de.cluster_de_genes["0"][:5]
"""

from .config import ClusteringConfig, DEConfig
from .engine import ClusteringEngine, ClusteringResult
from .de import DE_COLUMNS, DEResult, DERunner

__all__ = [
    "ClusteringConfig",
    "DEConfig",
    "ClusteringEngine",
    "ClusteringResult",
    "DE_COLUMNS",
    "DEResult",
    "DERunner",
]
