"""Mock AnnData generators for testing.

Provides functions to create small synthetic count matrices with known
structure (QC metrics, planted anchors, marker-defined clusters) so the
pipeline can be tested without real data.
"""

from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import sparse

# Genes S00..S39 carry planted pair signatures, S40..S49 cell-type markers
N_SHARED = 50
N_PLANTED = 20
MARKER_GENES = [f"S{i:02d}" for i in range(40, 50)]
TOTAL_COUNTS = 100_000


def create_qc_adata(
    genes_detected: Sequence[int],
    mito_percent: Optional[Sequence[float]] = None,
    ribo_percent: Optional[Sequence[float]] = None,
    n_genes: int = 7500,
    sample_id: str = "P1",
) -> "AnnData":
    """Create cells with exact QC metrics.

    Cell ``i`` has one count on each of its first ``genes_detected[i]``
    plain genes. Mitochondrial (``MT-CO1``) and ribosomal (``RPL5``)
    counts are added so the requested percentages hold exactly.

    Parameters
    ----------
    genes_detected : Sequence[int]
        Plain genes with a nonzero count, per cell
    mito_percent : Sequence[float], optional
        Mitochondrial percentage per cell (default 0)
    ribo_percent : Sequence[float], optional
        Ribosomal percentage per cell (default 0)
    n_genes : int
        Number of plain genes
    sample_id : str
        Sample (and patient) prefix of the composite cell identifiers

    Returns
    -------
    AnnData
        Sparse counts; var ends with ``MT-CO1`` and ``RPL5``
    """
    import anndata as ad

    n_cells = len(genes_detected)
    mito_percent = list(mito_percent) if mito_percent is not None else [0.0] * n_cells
    ribo_percent = list(ribo_percent) if ribo_percent is not None else [0.0] * n_cells

    rows, cols, data = [], [], []
    for i, n in enumerate(genes_detected):
        rows.extend([i] * n)
        cols.extend(range(n))
        data.extend([1.0] * n)
        plain = float(n)
        special = mito_percent[i] + ribo_percent[i]
        if special > 0:
            # plain / total = 1 - special / 100
            total = plain / (1.0 - special / 100.0)
            for offset, pct in ((0, mito_percent[i]), (1, ribo_percent[i])):
                if pct > 0:
                    rows.append(i)
                    cols.append(n_genes + offset)
                    data.append(total * pct / 100.0)

    matrix = sparse.csr_matrix(
        (np.asarray(data), (np.asarray(rows), np.asarray(cols))),
        shape=(n_cells, n_genes + 2),
    )
    var = pd.DataFrame(index=[f"G{j:04d}" for j in range(n_genes)] + ["MT-CO1", "RPL5"])
    obs = pd.DataFrame(
        {"sample_id": sample_id},
        index=[f"{sample_id}_CELL{i:04d}" for i in range(n_cells)],
    )
    return ad.AnnData(X=matrix, obs=obs, var=var)


def create_planted_samples(
    names: Sequence[str] = ("P1", "P2"),
    shifts: Optional[Sequence[float]] = None,
    n_cells: int = 100,
    n_private: int = 75,
    seed: int = 0,
) -> Dict[str, "AnnData"]:
    """Create samples sharing 50 genes with a planted cell correspondence.

    Every sample measures the 50 shared genes plus ``n_private`` genes of
    its own. Cells alternate between types ``alpha`` and ``beta``, which
    differ on the marker genes S40..S49. Cell ``i < 20`` of every sample
    expresses the signature genes ``S{2i}`` and ``S{2i+1}``, so cell ``i``
    of one sample and cell ``i`` of another form a planted anchor.

    The batch effect of a sample is a log-space shift of ``shift`` on the
    alpha markers and ``-shift`` on the beta markers, which moves beta
    cells toward the other samples' alpha cells. Every cell totals
    ``TOTAL_COUNTS`` counts, so normalizing with ``scale_factor=1e5``
    yields ``log1p(counts)``.

    Parameters
    ----------
    names : Sequence[str]
        Sample ids (also the patient prefix of cell identifiers)
    shifts : Sequence[float], optional
        Batch shift per sample (default: 0 for the first, 2.25 after)
    n_cells : int
        Cells per sample
    n_private : int
        Sample-specific genes (the first one absorbs the remaining counts)
    seed : int
        Random seed

    Returns
    -------
    Dict[str, AnnData]
        Sample id -> raw counts with ``sample_id``, ``cell_type`` and
        ``planted`` in ``obs``
    """
    import anndata as ad

    if shifts is None:
        shifts = [0.0] + [2.25] * (len(names) - 1)
    rng = np.random.default_rng(seed)
    shared = [f"S{i:02d}" for i in range(N_SHARED)]
    cell_types = np.where(np.arange(n_cells) % 2 == 0, "alpha", "beta")
    alpha = cell_types == "alpha"

    samples = {}
    for name, shift in zip(names, shifts):
        counts = np.zeros((n_cells, N_SHARED + n_private), dtype=np.float64)

        for i in range(min(N_PLANTED, n_cells)):
            counts[i, [2 * i, 2 * i + 1]] = rng.poisson(200, size=2)

        high = np.where(alpha, 6.0, 3.0)[:, None]
        low = np.where(alpha, 3.0, 6.0)[:, None]
        first = high + shift + rng.normal(0, 0.15, size=(n_cells, 5))
        second = low - shift + rng.normal(0, 0.15, size=(n_cells, 5))
        markers = np.hstack([first, second])
        counts[:, 40:50] = np.round(np.expm1(np.clip(markers, 0, None)))

        counts[:, N_SHARED + 1 :] = rng.poisson(20, size=(n_cells, n_private - 1))
        counts[:, N_SHARED] = TOTAL_COUNTS - counts.sum(axis=1)

        var = pd.DataFrame(
            index=shared + [f"{name}_G{j:03d}" for j in range(n_private)]
        )
        obs = pd.DataFrame(
            {
                "sample_id": name,
                "cell_type": cell_types,
                "planted": np.arange(n_cells) < N_PLANTED,
            },
            index=[f"{name}_BC{i:04d}" for i in range(n_cells)],
        )
        samples[name] = ad.AnnData(X=sparse.csr_matrix(counts), obs=obs, var=var)
    return samples


def merge_samples(samples: Dict[str, "AnnData"]) -> "AnnData":
    """Stack samples into one dataset, filling unmeasured genes with zeros."""
    import anndata as ad

    merged = ad.concat(list(samples.values()), join="outer", fill_value=0)
    merged.X = sparse.csr_matrix(merged.X)
    return merged


# Expression markers used by the annotation fixtures
ANNOTATION_MARKERS = {
    "0": ["CD3E", "CD3D", "CD8A"],
    "1": ["MS4A1", "CD79A"],
    "2": ["LYZ", "CD14"],
}
ANNOTATION_GENES = ["CD3E", "CD3D", "CD8A", "CD4", "MS4A1", "CD79A", "LYZ", "CD14"]


def create_annotation_adata(
    n_per_cluster: int = 40,
    n_filler: int = 20,
    seed: int = 42,
) -> "AnnData":
    """Create log-normalized cells in three marker-defined clusters.

    Cluster "0" expresses T cell markers (CD3E, CD3D, CD8A), cluster "1"
    B cell markers and cluster "2" monocyte markers. CD4 is measured but
    never expressed. Filler genes ``G00..`` are expressed everywhere.

    Returns
    -------
    AnnData
        Dense log-normalized ``X`` with ``leiden`` and ``sample_id`` in ``obs``
    """
    import anndata as ad

    rng = np.random.default_rng(seed)
    genes = ANNOTATION_GENES + [f"G{j:02d}" for j in range(n_filler)]
    gene_index = {g: i for i, g in enumerate(genes)}
    clusters = np.repeat(sorted(ANNOTATION_MARKERS), n_per_cluster)
    n_cells = len(clusters)

    X = np.zeros((n_cells, len(genes)))
    X[:, len(ANNOTATION_GENES):] = rng.uniform(0.1, 1.0, size=(n_cells, n_filler))
    for cluster, markers in ANNOTATION_MARKERS.items():
        rows = np.where(clusters == cluster)[0]
        for gene in markers:
            values = np.clip(rng.normal(3.0, 0.3, size=len(rows)), 0.1, None)
            X[rows, gene_index[gene]] = values

    obs = pd.DataFrame(
        {
            "leiden": pd.Categorical(clusters),
            "sample_id": np.where(np.arange(n_cells) % 2 == 0, "P1", "P2"),
        },
        index=[f"P{1 + i % 2}_BC{i:04d}" for i in range(n_cells)],
    )
    return ad.AnnData(X=X, obs=obs, var=pd.DataFrame(index=genes))


def create_marker_tree() -> dict:
    """Marker tree matching ``create_annotation_adata``."""
    return {
        "_meta": {"version": "1"},
        "T cell": {
            "markers": ["CD3E", "CD3D"],
            "subtypes": {
                "CD8 T cell": {"markers": ["CD8A"]},
                "CD4 T cell": {"markers": ["CD4"]},
            },
        },
        "B cell": {"markers": ["MS4A1", "CD79A"]},
        "Monocyte": {"markers": ["LYZ", "CD14"], "anti_markers": ["CD3E"]},
    }


def create_reference_profiles() -> pd.DataFrame:
    """Reference centroids (genes x labels) matching ``create_annotation_adata``."""
    values = {
        "T cell": [9.0, 8.0, 7.0, 1.0, 0.0, 0.0, 0.0, 0.0],
        "B cell": [0.0, 0.0, 0.0, 0.0, 9.0, 8.0, 0.0, 0.0],
        "Monocyte": [0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 9.0, 8.0],
    }
    return pd.DataFrame(values, index=ANNOTATION_GENES)


def create_knowledge_base(extra: Optional[List[tuple]] = None) -> pd.DataFrame:
    """Marker knowledge base (label, gene, weight) for the annotation genes."""
    rows = [
        ("T cell", "CD3E", 1.0),
        ("T cell", "CD3D", 1.0),
        ("T cell", "CD8A", 0.5),
        ("B cell", "MS4A1", 1.0),
        ("B cell", "CD79A", 1.0),
        ("Monocyte", "LYZ", 1.0),
        ("Monocyte", "CD14", 1.0),
    ]
    rows.extend(extra or [])
    return pd.DataFrame(rows, columns=["label", "gene", "weight"])
