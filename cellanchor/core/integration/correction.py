"""Anchor-weighted correction of a query dataset toward a reference."""

import logging
from typing import Optional

import numpy as np
from scipy import sparse

from ..backend import ComputeBackend, SklearnBackend
from .anchors import AnchorSet
from .features import FeatureBlock

logger = logging.getLogger(__name__)


def anchor_weights(
    anchors: AnchorSet,
    k_weight: int = 100,
    sd_weight: float = 1.0,
    backend: Optional[ComputeBackend] = None,
) -> sparse.csr_matrix:
    """Per-query-cell weights over anchors.

    Each query cell is weighted against its ``k_weight`` nearest anchors
    (by distance to the anchors' query cells in the joint subspace).
    Distances are scaled by the distance to the k-th anchor, multiplied by
    the anchor score, passed through a Gaussian kernel and normalized to
    sum to one. Cells whose raw weights are all zero fall back to equal
    weights over their nearest anchors.

    Returns
    -------
    sparse.csr_matrix
        Query cells x anchors, rows summing to one.
    """
    backend = backend or SklearnBackend()
    n_anchors = len(anchors)
    n_query = anchors.query_embedding.shape[0]
    k = min(k_weight, n_anchors)

    anchor_points = anchors.query_embedding[anchors.query_index]
    distances, idx = backend.nearest_neighbors(
        anchor_points, k, query=anchors.query_embedding
    )
    kth = distances[:, -1:]
    with np.errstate(divide="ignore", invalid="ignore"):
        scaled = np.where(kth > 0, 1.0 - distances / kth, 1.0)
    scaled = np.clip(scaled, 0.0, 1.0) * anchors.scores[idx]
    weights = 1.0 - np.exp(-scaled / (2.0 * (1.0 / sd_weight)) ** 2)

    totals = weights.sum(axis=1, keepdims=True)
    empty = totals[:, 0] <= 0
    weights[empty] = 1.0
    totals[empty] = k
    weights = weights / totals

    rows = np.repeat(np.arange(n_query), k)
    return sparse.csr_matrix(
        (weights.ravel(), (rows, idx.ravel())), shape=(n_query, n_anchors)
    )


def compute_corrected(
    reference: FeatureBlock,
    query: FeatureBlock,
    anchors: AnchorSet,
    k_weight: int = 100,
    sd_weight: float = 1.0,
    backend: Optional[ComputeBackend] = None,
) -> np.ndarray:
    """Correct query expression toward the reference.

    Each anchor contributes the difference between its reference and
    query cells' feature values. A query cell is shifted by the weighted
    average of the correction vectors of its nearest anchors.

    Parameters
    ----------
    reference : FeatureBlock
        Reference dataset (rows match ``anchors.reference_cells``).
    query : FeatureBlock
        Query dataset (rows match ``anchors.query_cells``).
    anchors : AnchorSet
        Scored anchors with ``reference`` = reference and ``query`` = query.
    k_weight : int
        Anchors considered per query cell.
    sd_weight : float
        Gaussian kernel bandwidth.
    backend : ComputeBackend, optional
        Numerical backend for the anchor search.

    Returns
    -------
    np.ndarray
        Corrected query matrix, same shape as ``query.matrix``.
    """
    if len(anchors) == 0:
        raise ValueError(f"No anchors to correct '{query.name}' with")
    if anchors.reference != reference.name or anchors.query != query.name:
        raise ValueError(
            f"Anchor set {anchors.reference}->{anchors.query} does not match "
            f"{reference.name}->{query.name}"
        )

    vectors = reference.matrix[anchors.reference_index] - query.matrix[anchors.query_index]
    weights = anchor_weights(anchors, k_weight, sd_weight, backend)
    corrected = query.matrix + np.asarray(weights @ vectors)
    logger.debug(
        "Corrected %d cells of %s with %d anchors", query.n_cells, query.name, len(anchors)
    )
    return corrected
