"""Reference-correlation annotation.

Each cell is compared with bulk reference centroids (genes x labels)
by Spearman correlation over informative genes shared with the data.
The best-correlated label is assigned unless its margin over the
runner-up is too small.
"""

import logging
from pathlib import Path
from typing import Optional, Union

import numpy as np
import pandas as pd
from scipy import sparse
from scipy.stats import rankdata

from ...io.reference import load_reference_profiles
from .base import AnnotationContext, AnnotationResult, AnnotationStrategy


def _standardize_rows(ranks: np.ndarray) -> np.ndarray:
    """Center and L2-normalize rows; constant rows become NaN."""
    centered = ranks - ranks.mean(axis=1, keepdims=True)
    norms = np.linalg.norm(centered, axis=1, keepdims=True)
    with np.errstate(divide="ignore", invalid="ignore"):
        out = centered / norms
    out[norms[:, 0] == 0] = np.nan
    return out


class ReferenceCorrelationAnnotator(AnnotationStrategy):
    """Per-cell Spearman correlation to reference label centroids.

    Parameters
    ----------
    profiles : pd.DataFrame or path
        Reference centroids, genes (index) x labels (columns). A path is
        read when the annotator first runs.
    name : str, optional
        Method name (label column)
    n_genes : int, optional
        Keep only the genes varying most across reference labels
    min_genes : int
        Minimum informative shared genes; fewer is an error
    min_margin : float
        Minimum best-minus-second correlation for a label to be assigned
    chunk_size : int
        Cells correlated per block

    Example
    -------
    >>> annotator = ReferenceCorrelationAnnotator("reference.tsv", min_margin=0.05)
    >>> result = annotator.annotate(context)
    >>> result.labels.value_counts(dropna=False)
    """

    name = "reference_correlation"

    def __init__(
        self,
        profiles: Union[pd.DataFrame, Path, str],
        name: Optional[str] = None,
        n_genes: Optional[int] = None,
        min_genes: int = 10,
        min_margin: float = 0.05,
        chunk_size: int = 2000,
        logger: Optional[logging.Logger] = None,
    ):
        if isinstance(profiles, pd.DataFrame):
            self._profiles, self.source = profiles, None
        else:
            self._profiles, self.source = None, Path(profiles)
        if name is not None:
            self.name = name
        self.n_genes = n_genes
        self.min_genes = min_genes
        self.min_margin = min_margin
        self.chunk_size = max(1, int(chunk_size))
        self.logger = logger or logging.getLogger(__name__)

    @property
    def profiles(self) -> pd.DataFrame:
        """Reference centroids, read from ``source`` on first use."""
        if self._profiles is None:
            self._profiles = load_reference_profiles(self.source)
        return self._profiles

    def informative_genes(self, gene_names: pd.Index) -> list:
        """Shared genes that vary across reference labels, most variable first."""
        shared = [g for g in gene_names.astype(str) if g in self.profiles.index]
        variance = self.profiles.loc[shared].var(axis=1, ddof=0)
        variance = variance[variance > 0]
        order = pd.DataFrame({"var": variance.to_numpy(), "gene": variance.index})
        order = order.sort_values(["var", "gene"], ascending=[False, True], kind="mergesort")
        genes = order["gene"].tolist()
        if self.n_genes is not None:
            genes = genes[: self.n_genes]
        return genes

    def annotate(self, context: AnnotationContext) -> AnnotationResult:
        genes = self.informative_genes(context.gene_names)
        if len(genes) < self.min_genes:
            raise ValueError(
                f"Only {len(genes)} informative genes shared with the reference "
                f"(minimum {self.min_genes})"
            )
        labels = np.asarray(self.profiles.columns.astype(str))
        reference = _standardize_rows(
            rankdata(self.profiles.loc[genes].to_numpy(dtype=np.float64), axis=0).T
        )

        matrix = context.expression()[:, context.gene_names.get_indexer(genes)]
        n_cells = matrix.shape[0]
        best = np.full(n_cells, np.nan)
        second = np.full(n_cells, np.nan)
        best_idx = np.full(n_cells, -1, dtype=int)

        for start in range(0, n_cells, self.chunk_size):
            block = matrix[start : start + self.chunk_size]
            block = block.toarray() if sparse.issparse(block) else np.asarray(block)
            cells = _standardize_rows(rankdata(block.astype(np.float64), axis=1))
            corr = cells @ reference.T
            defined = ~np.isnan(corr).any(axis=1)
            if not defined.any():
                continue
            order = np.argsort(-corr[defined], axis=1, kind="mergesort")
            rows = np.arange(start, start + len(block))[defined]
            top = corr[defined][np.arange(order.shape[0]), order[:, 0]]
            best[rows] = top
            best_idx[rows] = order[:, 0]
            if order.shape[1] > 1:
                second[rows] = corr[defined][np.arange(order.shape[0]), order[:, 1]]
            else:
                second[rows] = -np.inf

        margin = best - second
        assigned = (best_idx >= 0) & (margin >= self.min_margin)
        cell_labels = pd.Series(
            np.where(assigned, labels[np.clip(best_idx, 0, None)], None),
            index=context.cell_ids,
            dtype=object,
            name=self.name,
        )
        details = pd.DataFrame(
            {
                "best_label": np.where(best_idx >= 0, labels[np.clip(best_idx, 0, None)], None),
                "best_correlation": best,
                "second_correlation": second,
                "margin": margin,
            },
            index=context.cell_ids,
        )
        self.logger.info(
            "Reference correlation: %d genes, %d labels, %d/%d cells labeled "
            "(%d undefined, %d below margin %.3f)",
            len(genes),
            len(labels),
            int(assigned.sum()),
            n_cells,
            int((best_idx < 0).sum()),
            int(((best_idx >= 0) & ~assigned).sum()),
            self.min_margin,
        )
        return AnnotationResult(
            method=self.name,
            labels=cell_labels,
            scores=pd.Series(best, index=context.cell_ids, name=self.name),
            details=details,
        )
