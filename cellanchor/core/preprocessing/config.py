"""Configuration classes for preprocessing stages.

All thresholds and parameters are configurable via YAML so the same
pipeline runs on any tissue or chemistry.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class LoaderConfig:
    """Configuration for dataset loading (Stage A).

    Attributes
    ----------
    id_delimiter : str
        Delimiter between the patient and barcode parts of a composite
        cell identifier (e.g. ``P01_AAACCTGAGAAGGCCT``)
    cell_id_col : str
        Cell identifier column in delimited count/metadata tables
    sample_id_col : str
        Metadata column holding the sample identifier. When absent,
        the patient part of the composite identifier is used.
    clinical_cols : List[str]
        Metadata columns carried through as clinical labels
    sep : str
        Field separator for delimited count/metadata tables
    """

    id_delimiter: str = "_"
    cell_id_col: str = "cell_id"
    sample_id_col: str = "sample_id"
    clinical_cols: List[str] = field(default_factory=lambda: ["stage"])
    sep: str = ","

    def validate(self) -> None:
        if not self.id_delimiter:
            raise ValueError("id_delimiter must be a non-empty string")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


@dataclass
class QCConfig:
    """Configuration for cell QC (Stage B).

    A cell is retained iff ``min_genes < genes_detected < max_genes`` and
    ``mito_percent < max_mito_percent`` and ``ribo_percent < max_ribo_percent``.

    Attributes
    ----------
    min_genes : int
        Exclusive lower bound on detected genes
    max_genes : int
        Exclusive upper bound on detected genes
    max_mito_percent : float
        Exclusive upper bound on mitochondrial read percentage
    max_ribo_percent : float
        Exclusive upper bound on ribosomal read percentage
    mito_pattern : str
        Regex matched against gene names for mitochondrial genes
    ribo_pattern : str
        Regex matched against gene names for ribosomal protein genes
    case_sensitive : bool
        Whether gene-name patterns are case sensitive
    """

    min_genes: int = 400
    max_genes: int = 7000
    max_mito_percent: float = 20.0
    max_ribo_percent: float = 20.0
    mito_pattern: str = "^MT-"
    ribo_pattern: str = "^RP[SL]"
    case_sensitive: bool = False

    def validate(self) -> None:
        if self.min_genes >= self.max_genes:
            raise ValueError(
                f"min_genes ({self.min_genes}) must be below max_genes ({self.max_genes})"
            )
        for name in ("max_mito_percent", "max_ribo_percent"):
            value = getattr(self, name)
            if not 0 < value <= 100:
                raise ValueError(f"{name} must be in (0, 100], got {value}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


@dataclass
class NormalizationConfig:
    """Configuration for normalization and reduction (Stage C).

    Attributes
    ----------
    scale_factor : float
        Target library size for log-normalization
    n_top_genes : int
        Number of variable features to retain
    n_bins : int
        Number of mean-expression bins for dispersion normalization
    min_mean : float, optional
        Lower cutoff on log mean expression (None disables)
    max_mean : float, optional
        Upper cutoff on log mean expression (None disables)
    min_disp : float, optional
        Lower cutoff on normalized dispersion (None disables)
    max_value : float
        Clip value for scaled (z-scored) expression
    n_pcs : int
        Number of principal components to retain
    auto_n_pcs : bool
        Choose the component count at the explained-variance elbow,
        searching up to ``max_pcs``
    max_pcs : int
        Upper bound on components considered for the elbow
    compute_umap : bool
        Compute a UMAP embedding from the neighbor graph
    n_neighbors : int
        Neighbors for the graph underlying UMAP
    umap_min_dist : float
        UMAP ``min_dist``
    random_seed : int
        Random seed for PCA, neighbor graph and UMAP initialization
    """

    scale_factor: float = 1e4
    n_top_genes: int = 2000
    n_bins: int = 20
    min_mean: Optional[float] = 0.0125
    max_mean: Optional[float] = 3.0
    min_disp: Optional[float] = 0.5
    max_value: float = 10.0
    n_pcs: int = 20
    auto_n_pcs: bool = False
    max_pcs: int = 50
    compute_umap: bool = True
    n_neighbors: int = 15
    umap_min_dist: float = 0.5
    random_seed: int = 0

    def validate(self) -> None:
        if self.scale_factor <= 0:
            raise ValueError(f"scale_factor must be positive, got {self.scale_factor}")
        if self.n_top_genes < 1:
            raise ValueError(f"n_top_genes must be >= 1, got {self.n_top_genes}")
        if self.n_pcs < 1:
            raise ValueError(f"n_pcs must be >= 1, got {self.n_pcs}")
        if self.n_bins < 1:
            raise ValueError(f"n_bins must be >= 1, got {self.n_bins}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)
