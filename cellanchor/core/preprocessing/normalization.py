"""Normalization and dimensionality reduction (Stage C).

Provides library-size log-normalization, dispersion-based variable
feature selection, per-gene scaling, PCA with optional elbow selection of
the component count, and a neighbor-graph UMAP embedding.

Normalization, dispersion statistics and scaling run through
``scanpy.pp`` on a throwaway AnnData; PCA goes through the compute
backend.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

import anndata as ad
import numpy as np
import pandas as pd
from scipy import sparse

from ..backend import ComputeBackend, SklearnBackend
from .config import NormalizationConfig

logger = logging.getLogger(__name__)


def _import_scanpy(purpose: str):
    try:
        import scanpy as sc
    except ImportError as e:
        raise RuntimeError(
            f"scanpy is required for {purpose}. Install with: pip install scanpy"
        ) from e
    return sc


def _as_float(matrix):
    if sparse.issparse(matrix):
        return sparse.csr_matrix(matrix, dtype=np.float64, copy=True)
    return np.array(matrix, dtype=np.float64)


def log_normalize(matrix, scale_factor: float = 1e4):
    """Log-normalize counts to a fixed library size.

    ``normalized[i, j] = log1p(counts[i, j] / total[i] * scale_factor)``.
    Cells with zero total counts stay all-zero.

    Parameters
    ----------
    matrix : sparse matrix or np.ndarray
        Cells x genes counts.
    scale_factor : float
        Target library size.

    Returns
    -------
    sparse.csr_matrix or np.ndarray
        Normalized matrix with the same storage type as the input.
    """
    sc = _import_scanpy("normalization")
    work = ad.AnnData(_as_float(matrix))
    sc.pp.normalize_total(work, target_sum=scale_factor)
    sc.pp.log1p(work)
    return work.X


def select_variable_features(
    matrix,
    var_names: Sequence[str],
    n_top_genes: int = 2000,
    n_bins: int = 20,
    min_mean: Optional[float] = 0.0125,
    max_mean: Optional[float] = 3.0,
    min_disp: Optional[float] = 0.5,
) -> pd.DataFrame:
    """Rank genes by mean-binned dispersion.

    Statistics come from ``sc.pp.highly_variable_genes(flavor="seurat")``:
    dispersion on the linear scale of log-normalized data, log-transformed
    and z-normalized within bins of log mean expression. Genes passing the
    optional cutoffs are ranked by normalized dispersion; ties keep gene
    order.

    Parameters
    ----------
    matrix : sparse matrix or np.ndarray
        Cells x genes log-normalized expression.
    var_names : Sequence[str]
        Gene names (columns of ``matrix``).
    n_top_genes : int
        Number of genes to flag as variable.
    n_bins : int
        Number of mean-expression bins.
    min_mean, max_mean : float, optional
        Exclusive bounds on log mean expression; None disables.
    min_disp : float, optional
        Exclusive lower bound on normalized dispersion; None disables.

    Returns
    -------
    pd.DataFrame
        Indexed by gene: ``means``, ``dispersions``, ``dispersions_norm``,
        ``variable_rank`` (1 = most variable, NaN if not ranked) and
        ``highly_variable``.
    """
    sc = _import_scanpy("variable feature selection")
    index = pd.Index([str(g) for g in var_names])
    work = ad.AnnData(_as_float(matrix), var=pd.DataFrame(index=index))
    stats = sc.pp.highly_variable_genes(work, flavor="seurat", n_bins=n_bins, inplace=False)

    df = pd.DataFrame(
        {col: np.asarray(stats[col], dtype=float)
         for col in ["means", "dispersions", "dispersions_norm"]},
        index=index,
    )
    df.loc[~np.isfinite(df["dispersions_norm"]), "dispersions_norm"] = np.nan

    # Strict cutoffs and a stable top-N ranking
    candidate = df["dispersions_norm"].notna()
    if min_mean is not None:
        candidate &= df["means"] > min_mean
    if max_mean is not None:
        candidate &= df["means"] < max_mean
    if min_disp is not None:
        candidate &= df["dispersions_norm"] > min_disp

    ranked = df.loc[candidate, "dispersions_norm"].sort_values(
        ascending=False, kind="mergesort"
    )
    top = ranked.index[:n_top_genes]
    df["variable_rank"] = np.nan
    df.loc[ranked.index, "variable_rank"] = np.arange(1, len(ranked) + 1, dtype=float)
    df["highly_variable"] = df.index.isin(top)
    return df


def scale_features(
    matrix,
    max_value: Optional[float] = 10.0,
) -> np.ndarray:
    """Z-score each column (gene) across rows (cells) with ``sc.pp.scale``.

    Constant columns scale to 0. Values are clipped to
    ``[-max_value, max_value]`` when ``max_value`` is set.
    """
    dense = matrix.toarray() if sparse.issparse(matrix) else np.asarray(matrix)
    dense = dense.astype(np.float64, copy=True)
    if dense.shape[0] < 2:
        return np.zeros_like(dense)

    sc = _import_scanpy("feature scaling")
    work = ad.AnnData(dense)
    sc.pp.scale(work, zero_center=True, max_value=max_value)
    scaled = np.asarray(work.X, dtype=np.float64)
    # Rounding in the variance leaves constant columns at tiny nonzero std
    scaled[:, np.ptp(dense, axis=0) == 0] = 0.0
    return scaled


def find_elbow(explained_variance_ratio: Sequence[float]) -> int:
    """Number of components at the explained-variance elbow.

    The elbow is the point farthest from the chord joining the first and
    last points of the variance curve.
    """
    values = np.asarray(explained_variance_ratio, dtype=float)
    n = len(values)
    if n <= 2:
        return n
    x = np.arange(n, dtype=float)
    start = np.array([x[0], values[0]])
    end = np.array([x[-1], values[-1]])
    chord = end - start
    norm = np.linalg.norm(chord)
    if norm == 0:
        return n
    points = np.column_stack([x, values]) - start
    distances = np.abs(chord[0] * points[:, 1] - chord[1] * points[:, 0]) / norm
    return int(np.argmax(distances)) + 1


def embed_umap(adata, config: NormalizationConfig, use_rep: str = "X_pca") -> bool:
    """Neighbor graph and UMAP on ``obsm[use_rep]``, in place.

    Returns False (and leaves ``adata`` untouched) when there are too few
    cells for a neighbor graph.
    """
    sc = _import_scanpy("UMAP embedding")
    if adata.n_obs < 4:
        logger.warning("Skipping UMAP: only %d cells", adata.n_obs)
        return False
    n_neighbors = min(config.n_neighbors, adata.n_obs - 1)
    sc.pp.neighbors(
        adata,
        n_neighbors=n_neighbors,
        use_rep=use_rep,
        random_state=config.random_seed,
    )
    sc.tl.umap(adata, min_dist=config.umap_min_dist, random_state=config.random_seed)
    return True


@dataclass
class NormalizationResult:
    """Result from normalizing and reducing one dataset.

    Attributes
    ----------
    adata : AnnData
        New AnnData: ``layers["counts"]`` raw counts, ``X`` log-normalized,
        ``var`` variable-feature table, ``obsm["X_pca"]`` and optionally
        ``obsm["X_umap"]``
    variable_features : List[str]
        Selected variable genes, most variable first
    explained_variance_ratio : np.ndarray
        Explained variance ratio of the retained components
    n_pcs : int
        Number of retained components
    """

    adata: Any = None
    variable_features: List[str] = field(default_factory=list)
    explained_variance_ratio: Optional[np.ndarray] = None
    n_pcs: int = 0


class Normalizer:
    """Log-normalization, feature selection and reduction.

    Parameters
    ----------
    config : NormalizationConfig
        Normalization configuration
    backend : ComputeBackend, optional
        Numerical backend for PCA (default: ``SklearnBackend``)

    Example
    -------
    >>> from cellanchor.core.preprocessing import Normalizer, NormalizationConfig
    >>> normalizer = Normalizer(NormalizationConfig(n_top_genes=2000, n_pcs=20))
    >>> result = normalizer.run(adata)
    >>> result.adata.obsm["X_pca"].shape
    """

    def __init__(
        self,
        config: Optional[NormalizationConfig] = None,
        backend: Optional[ComputeBackend] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or NormalizationConfig()
        self.config.validate()
        self.backend = backend or SklearnBackend(random_state=self.config.random_seed)
        self.logger = logger or logging.getLogger(__name__)

    def normalize(self, adata):
        """Return a new AnnData with counts in a layer and log-normalized ``X``."""
        adata = adata.copy()
        counts = adata.X if sparse.issparse(adata.X) else sparse.csr_matrix(adata.X)
        adata.layers["counts"] = sparse.csr_matrix(counts)
        adata.X = log_normalize(counts, self.config.scale_factor)
        return adata

    def variable_features(self, adata) -> pd.DataFrame:
        """Variable-feature table for log-normalized ``adata.X``."""
        cfg = self.config
        return select_variable_features(
            adata.X,
            adata.var_names,
            n_top_genes=cfg.n_top_genes,
            n_bins=cfg.n_bins,
            min_mean=cfg.min_mean,
            max_mean=cfg.max_mean,
            min_disp=cfg.min_disp,
        )

    def reduce(self, matrix, n_pcs: Optional[int] = None):
        """Scale a cells x features matrix and project it with PCA.

        Returns
        -------
        Tuple[np.ndarray, np.ndarray]
            (embedding, explained variance ratio of retained components)
        """
        cfg = self.config
        scaled = scale_features(matrix, cfg.max_value)
        if n_pcs is None and cfg.auto_n_pcs:
            embedding, ratio = self.backend.reduce(scaled, cfg.max_pcs)
            n_keep = find_elbow(ratio)
            self.logger.info("Elbow at %d of %d components", n_keep, len(ratio))
            return embedding[:, :n_keep], ratio[:n_keep]
        n_pcs = n_pcs if n_pcs is not None else cfg.n_pcs
        return self.backend.reduce(scaled, n_pcs)

    def run(
        self,
        adata,
        n_pcs: Optional[int] = None,
        compute_umap: Optional[bool] = None,
    ) -> NormalizationResult:
        """Normalize, select features, reduce and embed one dataset.

        Parameters
        ----------
        adata : AnnData
            Raw counts in ``X`` (not modified).
        n_pcs : int, optional
            Override config n_pcs (disables elbow selection).
        compute_umap : bool, optional
            Override config compute_umap.

        Returns
        -------
        NormalizationResult
            New AnnData and reduction summary.
        """
        cfg = self.config
        compute_umap = compute_umap if compute_umap is not None else cfg.compute_umap

        adata = self.normalize(adata)
        hvg = self.variable_features(adata)
        for col in ["means", "dispersions", "dispersions_norm", "variable_rank", "highly_variable"]:
            adata.var[col] = hvg[col].to_numpy()
        features = (
            hvg.loc[hvg["highly_variable"]].sort_values("variable_rank").index.tolist()
        )
        if not features:
            raise ValueError("No variable features passed the configured cutoffs")

        self.logger.info(
            "Normalized %d cells; %d variable features selected",
            adata.n_obs,
            len(features),
        )

        embedding, ratio = self.reduce(adata[:, features].X, n_pcs=n_pcs)
        adata.obsm["X_pca"] = embedding
        adata.uns["pca"] = {"variance_ratio": ratio}

        if compute_umap:
            embed_umap(adata, cfg)

        return NormalizationResult(
            adata=adata,
            variable_features=features,
            explained_variance_ratio=ratio,
            n_pcs=embedding.shape[1],
        )
