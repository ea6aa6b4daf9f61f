"""Shared feature vocabulary and per-sample feature blocks."""

import logging
from dataclasses import dataclass
from typing import Dict, List, Sequence

import numpy as np
import pandas as pd
from scipy import sparse

logger = logging.getLogger(__name__)


def select_integration_features(
    feature_tables: Dict[str, pd.DataFrame],
    n_features: int = 2000,
    mode: str = "ranked",
) -> List[str]:
    """Combine per-sample variable features into one shared vocabulary.

    Only genes measured in every sample are eligible. Candidates are
    ordered by the number of samples calling them variable (descending),
    then by median variable rank, then by name.

    Parameters
    ----------
    feature_tables : Dict[str, pd.DataFrame]
        Sample id -> table from ``select_variable_features`` (indexed by
        gene, with ``highly_variable`` and ``variable_rank``).
    n_features : int
        Maximum vocabulary size for ``ranked`` and ``intersection``.
    mode : str
        ``ranked``: top ``n_features`` by the ordering above.
        ``intersection``: genes variable in every sample.
        ``union``: genes variable in any sample (not capped).

    Returns
    -------
    List[str]
        Shared feature names, most consistently variable first.
    """
    if not feature_tables:
        return []

    tables = list(feature_tables.values())
    common = tables[0].index
    for table in tables[1:]:
        common = common.intersection(table.index, sort=False)

    calls = pd.DataFrame(
        {name: table.loc[common, "highly_variable"].astype(bool) for name, table in feature_tables.items()},
        index=common,
    )
    ranks = pd.DataFrame(
        {name: table.loc[common, "variable_rank"] for name, table in feature_tables.items()},
        index=common,
    )
    summary = pd.DataFrame(
        {
            "n_samples": calls.sum(axis=1).astype(int),
            "median_rank": ranks.where(calls).median(axis=1),
            "gene": common.astype(str),
        },
        index=common,
    )
    summary = summary[summary["n_samples"] > 0]
    if mode == "intersection":
        summary = summary[summary["n_samples"] == len(feature_tables)]
    summary = summary.sort_values(
        ["n_samples", "median_rank", "gene"],
        ascending=[False, True, True],
        kind="mergesort",
    )

    features = summary["gene"].tolist()
    if mode != "union":
        features = features[:n_features]

    logger.info(
        "Selected %d integration features (%s) from %d samples, %d common genes",
        len(features),
        mode,
        len(feature_tables),
        len(common),
    )
    return features


@dataclass
class FeatureBlock:
    """Dense expression of one dataset on the shared features.

    Attributes
    ----------
    name : str
        Dataset name (a sample id, or joined ids for a running reference)
    cell_ids : pd.Index
        Cell identifiers, one per row
    matrix : np.ndarray
        Cells x shared features (log-normalized or corrected)
    members : List[str]
        Sample ids contained in this block
    """

    name: str
    cell_ids: pd.Index
    matrix: np.ndarray
    members: List[str]

    @property
    def n_cells(self) -> int:
        return self.matrix.shape[0]

    @classmethod
    def from_adata(cls, name: str, adata, features: Sequence[str]) -> "FeatureBlock":
        """Slice ``adata.X`` to ``features`` as a dense block."""
        matrix = adata[:, list(features)].X
        matrix = matrix.toarray() if sparse.issparse(matrix) else np.asarray(matrix)
        return cls(
            name=name,
            cell_ids=adata.obs_names.copy(),
            matrix=np.asarray(matrix, dtype=np.float64),
            members=[name],
        )

    @classmethod
    def concat(cls, blocks: Sequence["FeatureBlock"]) -> "FeatureBlock":
        """Stack blocks row-wise into one dataset."""
        if len(blocks) == 1:
            return blocks[0]
        members = [m for block in blocks for m in block.members]
        return cls(
            name="+".join(members),
            cell_ids=pd.Index(np.concatenate([block.cell_ids.to_numpy() for block in blocks])),
            matrix=np.vstack([block.matrix for block in blocks]),
            members=members,
        )
