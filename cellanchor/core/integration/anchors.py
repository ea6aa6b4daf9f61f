"""Anchor detection between two datasets.

An anchor is a pair of cells, one per dataset, that are mutual nearest
neighbors in a joint correlation subspace. Anchors are scored by the
overlap of the two cells' neighborhoods and low scores are dropped.

Detection is computed in a canonical orientation (datasets ordered by
name) and transposed on the way out, so finding anchors for (A, B) and
(B, A) yields the same pairs with identical scores.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd
from scipy import sparse

from ...exceptions import IntegrationPairError
from ..backend import ComputeBackend, SklearnBackend
from ..preprocessing.normalization import scale_features
from .config import IntegrationConfig
from .features import FeatureBlock

logger = logging.getLogger(__name__)


@dataclass
class AnchorSet:
    """Scored anchors between a reference and a query dataset.

    Attributes
    ----------
    reference : str
        Reference dataset name
    query : str
        Query dataset name
    reference_cells : pd.Index
        Reference cell ids (row order of ``reference_embedding``)
    query_cells : pd.Index
        Query cell ids (row order of ``query_embedding``)
    reference_index : np.ndarray
        Row of the reference cell for each anchor
    query_index : np.ndarray
        Row of the query cell for each anchor
    scores : np.ndarray
        Neighborhood-overlap score per anchor, in [0, 1]
    reference_embedding : np.ndarray
        Reference cells in the joint subspace
    query_embedding : np.ndarray
        Query cells in the joint subspace
    n_candidates : int
        Mutual pairs found before score filtering
    """

    reference: str
    query: str
    reference_cells: pd.Index
    query_cells: pd.Index
    reference_index: np.ndarray
    query_index: np.ndarray
    scores: np.ndarray
    reference_embedding: Optional[np.ndarray] = None
    query_embedding: Optional[np.ndarray] = None
    n_candidates: int = 0
    params: Dict[str, Any] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.scores)

    def transposed(self) -> "AnchorSet":
        """Same anchors with reference and query swapped."""
        return AnchorSet(
            reference=self.query,
            query=self.reference,
            reference_cells=self.query_cells,
            query_cells=self.reference_cells,
            reference_index=self.query_index,
            query_index=self.reference_index,
            scores=self.scores,
            reference_embedding=self.query_embedding,
            query_embedding=self.reference_embedding,
            n_candidates=self.n_candidates,
            params=dict(self.params),
        )

    def pairs(self) -> Dict[tuple, float]:
        """(reference cell id, query cell id) -> score."""
        ref_ids = self.reference_cells[self.reference_index]
        query_ids = self.query_cells[self.query_index]
        return {
            (str(r), str(q)): float(s) for r, q, s in zip(ref_ids, query_ids, self.scores)
        }

    def to_frame(self) -> pd.DataFrame:
        """One row per anchor."""
        return pd.DataFrame(
            {
                "reference": self.reference,
                "query": self.query,
                "reference_cell": self.reference_cells[self.reference_index].astype(str),
                "query_cell": self.query_cells[self.query_index].astype(str),
                "score": self.scores,
            }
        )


def _l2_normalize(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def _incidence(indices: np.ndarray, n_cols: int, offset: int = 0) -> sparse.csr_matrix:
    n_rows, k = indices.shape
    rows = np.repeat(np.arange(n_rows), k)
    data = np.ones(n_rows * k, dtype=np.float64)
    return sparse.csr_matrix(
        (data, (rows, indices.ravel() + offset)), shape=(n_rows, n_cols)
    )


class AnchorFinder:
    """Mutual-nearest-neighbor anchor detection in a joint subspace.

    Parameters
    ----------
    config : IntegrationConfig
        Integration configuration (``dims``, ``k_anchor``, ``k_score``,
        ``min_score``, ``min_cells``, ``max_value``)
    backend : ComputeBackend, optional
        Numerical backend (default: ``SklearnBackend``)

    Example
    -------
    >>> finder = AnchorFinder(IntegrationConfig(k_anchor=5))
    >>> anchors = finder.find_anchors(reference_block, query_block)
    >>> anchors.to_frame().head()
    """

    def __init__(
        self,
        config: Optional[IntegrationConfig] = None,
        backend: Optional[ComputeBackend] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or IntegrationConfig()
        self.backend = backend or SklearnBackend(random_state=self.config.random_seed)
        self.logger = logger or logging.getLogger(__name__)

    def joint_embedding(self, reference: FeatureBlock, query: FeatureBlock):
        """Project both datasets into the weighted, L2-normalized joint subspace."""
        cfg = self.config
        scaled_ref = scale_features(reference.matrix, cfg.max_value)
        scaled_query = scale_features(query.matrix, cfg.max_value)
        u, v, singular = self.backend.joint_reduce(scaled_ref, scaled_query, cfg.dims)
        weights = np.sqrt(np.clip(singular, 0, None))
        return _l2_normalize(u * weights), _l2_normalize(v * weights)

    def _effective_k(self, k: int, n: int, what: str, name: str) -> int:
        if n < k:
            self.logger.warning(
                "Dataset %s has %d cells; reducing %s from %d to %d", name, n, what, k, n
            )
            return n
        return k

    def find_anchors(self, reference: FeatureBlock, query: FeatureBlock) -> AnchorSet:
        """Find scored anchors between two datasets.

        Parameters
        ----------
        reference : FeatureBlock
            Reference dataset on the shared features.
        query : FeatureBlock
            Query dataset on the same features.

        Returns
        -------
        AnchorSet
            Anchors passing ``min_score`` (possibly empty).

        Raises
        ------
        IntegrationPairError
            If either dataset has fewer than ``min_cells`` cells.
        """
        if reference.name > query.name:
            return self.find_anchors(query, reference).transposed()

        for block in (reference, query):
            if block.n_cells < self.config.min_cells:
                raise IntegrationPairError(
                    reference.name,
                    query.name,
                    reason=(
                        f"dataset {block.name} has {block.n_cells} cells "
                        f"(minimum {self.config.min_cells})"
                    ),
                )
        return self._find(reference, query)

    def _find(self, reference: FeatureBlock, query: FeatureBlock) -> AnchorSet:
        cfg = self.config
        backend = self.backend
        n_ref, n_query = reference.n_cells, query.n_cells
        emb_ref, emb_query = self.joint_embedding(reference, query)

        # Mutual nearest neighbors across datasets
        k_ref = self._effective_k(cfg.k_anchor, n_ref, "k_anchor", reference.name)
        k_query = self._effective_k(cfg.k_anchor, n_query, "k_anchor", query.name)
        _, ref_to_query = backend.nearest_neighbors(emb_query, k_query, query=emb_ref)
        _, query_to_ref = backend.nearest_neighbors(emb_ref, k_ref, query=emb_query)
        forward = _incidence(ref_to_query, n_query)
        backward = _incidence(query_to_ref, n_ref).T.tocsr()
        mutual = forward.multiply(backward).tocoo()
        order = np.lexsort((mutual.col, mutual.row))
        ref_index = mutual.row[order].astype(int)
        query_index = mutual.col[order].astype(int)

        # Neighborhood overlap scoring
        ks_ref = self._effective_k(cfg.k_score, n_ref, "k_score", reference.name)
        ks_query = self._effective_k(cfg.k_score, n_query, "k_score", query.name)
        n_total = n_ref + n_query
        _, rr = backend.nearest_neighbors(emb_ref, ks_ref, query=emb_ref)
        _, rq = backend.nearest_neighbors(emb_query, ks_query, query=emb_ref)
        _, qr = backend.nearest_neighbors(emb_ref, ks_ref, query=emb_query)
        _, qq = backend.nearest_neighbors(emb_query, ks_query, query=emb_query)
        ref_hood = _incidence(rr, n_total) + _incidence(rq, n_total, offset=n_ref)
        query_hood = _incidence(qr, n_total) + _incidence(qq, n_total, offset=n_ref)
        if len(ref_index):
            shared = np.asarray(
                ref_hood[ref_index].multiply(query_hood[query_index]).sum(axis=1)
            ).ravel()
        else:
            shared = np.zeros(0)
        scores = shared / float(ks_ref + ks_query)

        keep = scores >= cfg.min_score
        self.logger.info(
            "Anchors %s <-> %s: %d mutual pairs, %d after scoring (min_score=%.2f)",
            reference.name,
            query.name,
            len(scores),
            int(keep.sum()),
            cfg.min_score,
        )
        return AnchorSet(
            reference=reference.name,
            query=query.name,
            reference_cells=reference.cell_ids,
            query_cells=query.cell_ids,
            reference_index=ref_index[keep],
            query_index=query_index[keep],
            scores=scores[keep],
            reference_embedding=emb_ref,
            query_embedding=emb_query,
            n_candidates=len(scores),
            params={
                "k_anchor": min(k_ref, k_query),
                "k_score": (ks_ref, ks_query),
                "dims": emb_ref.shape[1],
            },
        )
