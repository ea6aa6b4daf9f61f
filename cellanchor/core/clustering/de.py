"""Differential expression testing for cluster markers.

One-vs-rest Wilcoxon rank-sum (or any ``rank_genes_groups`` method)
with per-cluster detection fractions.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging
import time

import numpy as np
import pandas as pd

from .config import DEConfig

DE_COLUMNS = [
    "cluster",
    "gene",
    "rank",
    "score",
    "logfoldchange",
    "pval",
    "pval_adj",
    "pct_in",
    "pct_out",
]

_RENAME = {
    "names": "gene",
    "scores": "score",
    "logfoldchanges": "logfoldchange",
    "pvals": "pval",
    "pvals_adj": "pval_adj",
    "pct_nz_group": "pct_in",
    "pct_nz_reference": "pct_out",
}


@dataclass
class DEResult:
    """Result from differential expression testing.

    Attributes
    ----------
    cluster_de_genes : Dict[str, List[str]]
        Map of cluster ID to marker genes passing the filters, best first
    table : pd.DataFrame
        Full ranked results (``DE_COLUMNS``), unfiltered
    cluster_key : str
        Column of the tested clusters
    method : str
        Test used
    elapsed_seconds : float
        Time taken for DE computation
    """

    cluster_de_genes: Dict[str, List[str]] = field(default_factory=dict)
    table: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=DE_COLUMNS))
    cluster_key: str = ""
    method: str = ""
    elapsed_seconds: float = 0.0

    def to_table(self, markers_only: bool = False) -> pd.DataFrame:
        """One row per (cluster, gene).

        Parameters
        ----------
        markers_only : bool
            Only keep genes listed in ``cluster_de_genes``.
        """
        if not markers_only:
            return self.table.copy()
        keep = pd.Series(
            [
                gene in set(self.cluster_de_genes.get(cluster, []))
                for cluster, gene in zip(self.table["cluster"], self.table["gene"])
            ],
            index=self.table.index,
            dtype=bool,
        )
        return self.table[keep].reset_index(drop=True)


class DERunner:
    """Differential expression test runner.

    Parameters
    ----------
    config : DEConfig, optional
        DE configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from cellanchor.core.clustering import DERunner
    >>> runner = DERunner()
    >>> result = runner.run(clustered.adata, cluster_key="leiden")
    >>> result.to_table(markers_only=True).head()
    """

    def __init__(
        self,
        config: Optional[DEConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or DEConfig()
        self.config.validate()
        self.logger = logger or logging.getLogger(__name__)
        self._check_dependencies()

    def _check_dependencies(self) -> None:
        """Check for required dependencies."""
        try:
            import scanpy  # noqa: F401
        except ImportError:
            raise RuntimeError(
                "Differential expression requires scanpy. "
                "Install with: pip install scanpy"
            )

    def run(
        self,
        adata: Any,  # AnnData
        cluster_key: str,
        method: Optional[str] = None,
        n_genes: Optional[int] = None,
        layer: Optional[str] = None,
        tie_correct: Optional[bool] = None,
    ) -> DEResult:
        """Run one-vs-rest differential expression between clusters.

        Parameters
        ----------
        adata : AnnData
            AnnData with log-normalized ``X`` and cluster assignments (not modified)
        cluster_key : str
            Column name in adata.obs with cluster labels
        method : str, optional
            DE method ('wilcoxon', 't-test', etc.). Uses config default if None.
        n_genes : int, optional
            Number of top genes kept per cluster. Uses config default if None.
        layer : str, optional
            Layer to use for DE analysis. Uses config default if None.
        tie_correct : bool, optional
            Apply tie correction for Wilcoxon test. Uses config default if None.

        Returns
        -------
        DEResult
            Ranked table and per-cluster marker lists

        Raises
        ------
        ValueError
            If ``cluster_key`` is missing or has fewer than two clusters.
        """
        import scanpy as sc

        cfg = self.config
        method = method if method is not None else cfg.method
        n_genes = n_genes if n_genes is not None else cfg.n_genes
        layer = layer if layer is not None else cfg.layer
        tie_correct = tie_correct if tie_correct is not None else cfg.tie_correct

        if cluster_key not in adata.obs:
            raise ValueError(f"Cluster column '{cluster_key}' not found in obs")
        if layer and layer not in adata.layers:
            self.logger.warning(
                "Layer '%s' not found in adata.layers (available: %s). "
                "Falling back to adata.X",
                layer,
                list(adata.layers.keys()),
            )
            layer = None

        work = adata.copy()
        work.obs[cluster_key] = work.obs[cluster_key].astype(str).astype("category")
        clusters = sorted(work.obs[cluster_key].cat.categories)
        if len(clusters) < 2:
            raise ValueError(
                f"Differential expression needs at least 2 clusters, got {len(clusters)}"
            )

        self.logger.info(
            "Starting %s DE: %d cells, %d clusters (layer=%s, tie_correct=%s, top_n=%d)",
            method,
            work.n_obs,
            len(clusters),
            layer if layer else "X",
            tie_correct,
            n_genes,
        )
        start = time.time()
        key_added = f"de_{method}"
        kwargs = {"tie_correct": tie_correct} if method == "wilcoxon" else {}
        sc.tl.rank_genes_groups(
            work,
            groupby=cluster_key,
            method=method,
            n_genes=min(n_genes, work.n_vars),
            layer=layer,
            use_raw=False,
            key_added=key_added,
            pts=True,
            **kwargs,
        )
        elapsed = time.time() - start
        self.logger.info("%s DE completed in %.1f seconds", method, elapsed)

        frames = []
        for cluster in clusters:
            df = sc.get.rank_genes_groups_df(work, group=cluster, key=key_added)
            df = df.dropna(subset=["names"]).rename(columns=_RENAME)
            df.insert(0, "cluster", cluster)
            df["rank"] = np.arange(1, len(df) + 1)
            for column in DE_COLUMNS:
                if column not in df.columns:
                    df[column] = np.nan
            frames.append(df[DE_COLUMNS])
        table = pd.concat(frames, ignore_index=True)
        table["gene"] = table["gene"].astype(str)

        result = DEResult(
            table=table,
            cluster_key=cluster_key,
            method=method,
            elapsed_seconds=elapsed,
        )
        passing = table[
            (table["pval_adj"] < cfg.max_pval_adj) & (table["logfoldchange"] >= cfg.min_logfc)
        ]
        for cluster in clusters:
            result.cluster_de_genes[cluster] = (
                passing.loc[passing["cluster"] == cluster, "gene"].tolist()
            )
            if not result.cluster_de_genes[cluster]:
                self.logger.warning("Cluster %s has no marker genes passing filters", cluster)

        self.logger.info("Computed differential expression for %d clusters", len(clusters))
        return result
