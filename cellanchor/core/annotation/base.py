"""Shared inputs, result type and interface for annotation strategies.

Provides:
- AnnotationContext: read-only inputs shared by every strategy
- AnnotationResult: one labeling of the cells
- AnnotationStrategy: abstract base class for labeling methods
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
from scipy import sparse


@dataclass(frozen=True)
class AnnotationContext:
    """Inputs shared by all annotation strategies.

    Strategies read from the context and never modify it.

    Attributes
    ----------
    adata : AnnData
        Integrated cells with log-normalized ``X`` (genes as ``var_names``)
    cluster_key : str, optional
        Cluster column in ``adata.obs``
    de_genes : Dict[str, List[str]]
        Cluster id -> ranked DE marker genes, best first
    layer : str, optional
        Expression layer to read; None reads ``X``
    """

    adata: Any
    cluster_key: Optional[str] = None
    de_genes: Dict[str, List[str]] = field(default_factory=dict)
    layer: Optional[str] = None

    @property
    def cell_ids(self) -> pd.Index:
        return self.adata.obs_names

    @property
    def gene_names(self) -> pd.Index:
        return self.adata.var_names

    def clusters(self) -> pd.Series:
        """Cluster id per cell as strings.

        Raises
        ------
        ValueError
            If no cluster column is available.
        """
        if self.cluster_key is None or self.cluster_key not in self.adata.obs:
            raise ValueError(f"Cluster column '{self.cluster_key}' not available")
        return self.adata.obs[self.cluster_key].astype(str)

    def expression(self):
        """Cells x genes expression (sparse or dense, not a copy)."""
        if self.layer is not None:
            if self.layer not in self.adata.layers:
                raise ValueError(f"Layer '{self.layer}' not found")
            return self.adata.layers[self.layer]
        return self.adata.X

    def dense_expression(self, genes=None) -> np.ndarray:
        """Dense cells x genes array, optionally restricted to ``genes``."""
        matrix = self.expression()
        if genes is not None:
            idx = self.gene_names.get_indexer(list(genes))
            if (idx < 0).any():
                raise KeyError("Requested genes are not in the data")
            matrix = matrix[:, idx]
        return matrix.toarray() if sparse.issparse(matrix) else np.asarray(matrix)


@dataclass
class AnnotationResult:
    """One method's labeling of the cells.

    Attributes
    ----------
    method : str
        Name of the strategy that produced the labels
    labels : pd.Series
        Cell id -> label; missing (NaN/None) means unlabeled
    scores : pd.Series
        Cell id -> score or confidence of the assigned label
    details : pd.DataFrame
        Method-specific supporting table (e.g. per-cluster evidence)
    """

    method: str
    labels: pd.Series
    scores: pd.Series = None
    details: pd.DataFrame = field(default_factory=pd.DataFrame)

    def __post_init__(self):
        if self.scores is None:
            self.scores = pd.Series(np.nan, index=self.labels.index, dtype=float)

    @property
    def n_labeled(self) -> int:
        return int(self.labels.notna().sum())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        counts = self.labels.dropna().astype(str).value_counts()
        return {
            "method": self.method,
            "n_cells": int(len(self.labels)),
            "n_labeled": self.n_labeled,
            "label_counts": {str(k): int(v) for k, v in counts.items()},
        }


class AnnotationStrategy(ABC):
    """Abstract base class for annotation strategies.

    All strategies must implement:
    - name: Unique method name (becomes the label column)
    - annotate(): Label cells from the shared context

    Strategies must not modify the context; results may cover a subset
    of cells (others are unlabeled) but never unknown cells.
    """

    name: str = "base"

    @abstractmethod
    def annotate(self, context: AnnotationContext) -> AnnotationResult:
        """Label the cells in ``context``."""

    def _cluster_labels_to_cells(
        self,
        context: AnnotationContext,
        cluster_labels: Dict[str, Optional[str]],
        cluster_scores: Dict[str, float],
        details: Optional[pd.DataFrame] = None,
    ) -> AnnotationResult:
        """Broadcast per-cluster labels and scores to member cells."""
        clusters = context.clusters()
        labels = clusters.map(cluster_labels).astype(object)
        scores = clusters.map(cluster_scores).astype(float)
        return AnnotationResult(
            method=self.name,
            labels=labels.rename(self.name),
            scores=scores.rename(self.name),
            details=details if details is not None else pd.DataFrame(),
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"
