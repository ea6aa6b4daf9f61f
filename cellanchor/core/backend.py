"""Numerical backend for reduction and neighbor search.

The integrator and reducer only talk to numerics through the narrow
``ComputeBackend`` interface:

- ``reduce(matrix, k)`` -> (embedding, explained variance ratio)
- ``nearest_neighbors(embedding, k, query=None)`` -> (distances, indices)
- ``joint_reduce(a, b, k)`` -> (embedding_a, embedding_b, singular values)

``SklearnBackend`` implements it with scikit-learn and numpy.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)


class ComputeBackend(ABC):
    """Capability interface for the linear algebra used by the pipeline."""

    @abstractmethod
    def reduce(self, matrix: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        """Project rows of ``matrix`` onto their top ``k`` principal components."""

    @abstractmethod
    def nearest_neighbors(
        self,
        embedding: np.ndarray,
        k: int,
        query: Optional[np.ndarray] = None,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Find the ``k`` nearest rows of ``embedding``.

        With ``query=None`` each row's neighbors exclude the row itself.
        """

    @abstractmethod
    def joint_reduce(
        self, a: np.ndarray, b: np.ndarray, k: int
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Correlation-based joint reduction of two datasets on shared features."""


class SklearnBackend(ComputeBackend):
    """scikit-learn/numpy implementation of ``ComputeBackend``.

    Parameters
    ----------
    random_state : int
        Seed for randomized solvers
    n_jobs : int, optional
        Parallel jobs for neighbor search
    """

    def __init__(self, random_state: int = 0, n_jobs: Optional[int] = None):
        self.random_state = random_state
        self.n_jobs = n_jobs

    def reduce(self, matrix: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        """PCA of a dense matrix.

        Parameters
        ----------
        matrix : np.ndarray
            Cells x features (already centered/scaled as desired).
        k : int
            Requested components; capped at ``min(n_cells, n_features)``.

        Returns
        -------
        Tuple[np.ndarray, np.ndarray]
            (cells x k embedding, explained variance ratio per component)
        """
        from sklearn.decomposition import PCA

        matrix = np.asarray(matrix, dtype=np.float64)
        n_obs, n_features = matrix.shape
        k_eff = max(1, min(k, n_obs, n_features))
        if k_eff < k:
            logger.debug("Reducing PCA components from %d to %d", k, k_eff)
        solver = "arpack" if k_eff < min(n_obs, n_features) else "full"
        pca = PCA(n_components=k_eff, svd_solver=solver, random_state=self.random_state)
        embedding = pca.fit_transform(matrix)
        return embedding, np.asarray(pca.explained_variance_ratio_)

    def nearest_neighbors(
        self,
        embedding: np.ndarray,
        k: int,
        query: Optional[np.ndarray] = None,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Euclidean k-nearest-neighbor search.

        Parameters
        ----------
        embedding : np.ndarray
            Indexed points (n x d).
        k : int
            Neighbors per query point; capped at the number of candidates.
        query : np.ndarray, optional
            Query points (m x d). When omitted, every indexed point is a
            query and is not returned as its own neighbor.

        Returns
        -------
        Tuple[np.ndarray, np.ndarray]
            (distances, indices), each (queries x k), nearest first.
        """
        from sklearn.neighbors import NearestNeighbors

        embedding = np.asarray(embedding, dtype=np.float64)
        n = embedding.shape[0]
        max_k = n if query is not None else n - 1
        k_eff = min(k, max_k)
        if k_eff < 1:
            rows = n if query is None else np.asarray(query).shape[0]
            return np.zeros((rows, 0)), np.zeros((rows, 0), dtype=int)

        nn = NearestNeighbors(n_neighbors=k_eff, metric="euclidean", n_jobs=self.n_jobs)
        nn.fit(embedding)
        if query is None:
            distances, indices = nn.kneighbors(n_neighbors=k_eff)
        else:
            distances, indices = nn.kneighbors(
                np.asarray(query, dtype=np.float64), n_neighbors=k_eff
            )
        return distances, indices

    def joint_reduce(
        self, a: np.ndarray, b: np.ndarray, k: int
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Canonical correlation subspace of two datasets.

        Computes the top singular vectors of the cell x cell cross product
        ``a @ b.T`` without forming it, through thin QR factors of both
        inputs. Signs are fixed so the largest-magnitude entry of each
        ``a``-side vector is positive.

        Parameters
        ----------
        a : np.ndarray
            First dataset, cells x shared features (scaled).
        b : np.ndarray
            Second dataset, cells x the same features (scaled).
        k : int
            Requested components; capped by the rank bound.

        Returns
        -------
        Tuple[np.ndarray, np.ndarray, np.ndarray]
            (a-side vectors, b-side vectors, singular values)
        """
        a = np.asarray(a, dtype=np.float64)
        b = np.asarray(b, dtype=np.float64)
        if a.shape[1] != b.shape[1]:
            raise ValueError(
                f"Feature mismatch for joint reduction: {a.shape[1]} vs {b.shape[1]}"
            )
        q_a, r_a = np.linalg.qr(a)
        q_b, r_b = np.linalg.qr(b)
        u_small, singular, vt_small = np.linalg.svd(r_a @ r_b.T, full_matrices=False)

        k_eff = max(1, min(k, singular.shape[0]))
        u = q_a @ u_small[:, :k_eff]
        v = q_b @ vt_small[:k_eff].T

        pivot = np.argmax(np.abs(u), axis=0)
        signs = np.sign(u[pivot, np.arange(k_eff)])
        signs[signs == 0] = 1.0
        return u * signs, v * signs, singular[:k_eff]
