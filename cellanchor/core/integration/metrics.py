"""Integration quality metrics.

- ``neighbor_purity``: fraction of each cell's nearest neighbors sharing
  its label, optionally restricted to neighbors from other samples.
- ``batch_variance_explained``: per-component eta-squared of the sample
  factor from a one-way ANOVA.
"""

import logging
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from ..backend import ComputeBackend, SklearnBackend

logger = logging.getLogger(__name__)


def neighbor_purity(
    embedding: np.ndarray,
    labels: Sequence,
    k: int = 10,
    batches: Optional[Sequence] = None,
    backend: Optional[ComputeBackend] = None,
) -> float:
    """Mean fraction of nearest neighbors that share a cell's label.

    Parameters
    ----------
    embedding : np.ndarray
        Cells x dimensions.
    labels : Sequence
        Label per cell (e.g. cell type).
    k : int
        Neighbors per cell.
    batches : Sequence, optional
        Sample per cell. When given, each cell's neighbors are searched
        only among cells of other samples, so the metric measures how well
        matching cell types line up across samples.
    backend : ComputeBackend, optional
        Neighbor-search backend.

    Returns
    -------
    float
        Purity in [0, 1] (NaN if no cell has a neighbor).
    """
    backend = backend or SklearnBackend()
    embedding = np.asarray(embedding, dtype=np.float64)
    labels = np.asarray([str(x) for x in labels])
    if len(labels) != embedding.shape[0]:
        raise ValueError("labels must have one entry per embedding row")

    if batches is None:
        _, idx = backend.nearest_neighbors(embedding, k)
        if idx.shape[1] == 0:
            return float("nan")
        return float(np.mean(labels[idx] == labels[:, None]))

    batches = np.asarray([str(x) for x in batches])
    per_cell = []
    for batch in np.unique(batches):
        inside = batches == batch
        others = ~inside
        if not others.any():
            continue
        _, idx = backend.nearest_neighbors(
            embedding[others], k, query=embedding[inside]
        )
        other_labels = labels[others]
        per_cell.append(np.mean(other_labels[idx] == labels[inside][:, None], axis=1))
    if not per_cell:
        return float("nan")
    return float(np.mean(np.concatenate(per_cell)))


def batch_variance_explained(
    embedding: np.ndarray,
    batches: Sequence,
    n_components: Optional[int] = None,
) -> pd.DataFrame:
    """Eta-squared of the sample factor for each embedding component.

    Parameters
    ----------
    embedding : np.ndarray
        Cells x dimensions.
    batches : Sequence
        Sample per cell.
    n_components : int, optional
        Only evaluate the first components.

    Returns
    -------
    pd.DataFrame
        One row per component with ``component``, ``eta2_batch`` and
        ``p_batch``.
    """
    import statsmodels.api as sm
    import statsmodels.formula.api as smf

    embedding = np.asarray(embedding, dtype=np.float64)
    n_dims = embedding.shape[1] if n_components is None else min(n_components, embedding.shape[1])
    batch_values = pd.Series([str(b) for b in batches], name="batch")

    records = []
    for i in range(n_dims):
        record = {"component": i + 1, "eta2_batch": float("nan"), "p_batch": float("nan")}
        if batch_values.nunique() >= 2:
            anova_df = pd.DataFrame({"value": embedding[:, i], "batch": batch_values})
            model = smf.ols("value ~ C(batch)", data=anova_df).fit()
            anova_table = sm.stats.anova_lm(model, typ=2)
            total_ss = float(anova_table["sum_sq"].sum())
            if total_ss > 0:
                batch_row = anova_table.loc["C(batch)"]
                record["eta2_batch"] = float(batch_row["sum_sq"]) / total_ss
                record["p_batch"] = float(batch_row.get("PR(>F)", float("nan")))
        records.append(record)
    return pd.DataFrame(records, columns=["component", "eta2_batch", "p_batch"])
