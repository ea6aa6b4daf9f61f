"""Preprocessing module for data loading, quality control and normalization.

Pipeline Stages
---------------
- Stage A (Loader): Count matrix and metadata loading, identifier parsing
- Stage B (QC): Cell-level quality control per sample
- Stage C (Normalization): Log-normalization, variable features, PCA, UMAP

Example Usage
-------------
>>> from cellanchor.core.preprocessing import (
...     DataLoader, CellQC, Normalizer,
... )
>>> adata = DataLoader().load("counts.h5ad")
>>> samples = DataLoader().split_samples(adata)
>>> qc_result = CellQC().filter_samples(samples)
>>> norm = Normalizer().run(qc_result.samples["P1"])
"""

__version__ = "1.0.0"

# Configuration classes
from .config import (
    LoaderConfig,
    QCConfig,
    NormalizationConfig,
)

# Stage A: Data loading
from .loader import (
    DataLoader,
    LoadResult,
    split_composite_ids,
)

# Stage B: Cell QC
from .qc import (
    CellQC,
    QCResult,
    SampleQCResult,
    REASON_COLUMNS,
    QC_METRIC_COLUMNS,
    compute_qc_metrics,
)

# Stage C: Normalization
from .normalization import (
    Normalizer,
    NormalizationResult,
    embed_umap,
    find_elbow,
    log_normalize,
    scale_features,
    select_variable_features,
)

__all__ = [
    # Version
    "__version__",
    # Config
    "LoaderConfig",
    "QCConfig",
    "NormalizationConfig",
    # Stage A: Loader
    "DataLoader",
    "LoadResult",
    "split_composite_ids",
    # Stage B: QC
    "CellQC",
    "QCResult",
    "SampleQCResult",
    "REASON_COLUMNS",
    "QC_METRIC_COLUMNS",
    "compute_qc_metrics",
    # Stage C: Normalization
    "Normalizer",
    "NormalizationResult",
    "embed_umap",
    "find_elbow",
    "log_normalize",
    "scale_features",
    "select_variable_features",
]
