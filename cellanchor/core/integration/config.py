"""Configuration for anchor-based sample integration."""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List

FEATURE_MODES = ("ranked", "intersection", "union")
INTEGRATION_MODES = ("sequential", "reference")


@dataclass
class IntegrationConfig:
    """Configuration for the integrator (Stage D).

    Attributes
    ----------
    n_features : int
        Size of the shared integration feature vocabulary
    feature_mode : str
        How per-sample variable features are combined:
        ``ranked`` (most often variable across samples first),
        ``intersection`` (variable in every sample) or ``union``
        (variable in any sample)
    dims : int
        Dimensions of the joint correlation subspace
    k_anchor : int
        Neighbors searched in the other dataset for mutual matching
    k_score : int
        Neighbors per dataset used for anchor scoring
    k_weight : int
        Anchors used to weight each cell's correction vector
    sd_weight : float
        Bandwidth of the Gaussian kernel applied to anchor weights
    min_score : float
        Anchors scoring below this value are dropped
    min_anchors : int
        Minimum anchors for a pair to be integrated; fewer fails the pair
    min_cells : int
        Samples with fewer cells are excluded before integration
    max_value : float
        Clip value for per-dataset scaling before the joint reduction
    mode : str
        ``sequential`` (fold each sample into a running reference) or
        ``reference`` (map every query to a fixed reference in parallel)
    reference : List[str]
        Reference sample ids. Empty means the largest sample.
    n_workers : int
        Worker threads for ``reference`` mode
    compute_metrics : bool
        Report per-component batch eta-squared before and after correction
    random_seed : int
        Random seed for the numerical backend
    """

    n_features: int = 2000
    feature_mode: str = "ranked"
    dims: int = 30
    k_anchor: int = 5
    k_score: int = 30
    k_weight: int = 100
    sd_weight: float = 1.0
    min_score: float = 0.1
    min_anchors: int = 10
    min_cells: int = 10
    max_value: float = 10.0
    mode: str = "sequential"
    reference: List[str] = field(default_factory=list)
    n_workers: int = 4
    compute_metrics: bool = True
    random_seed: int = 0

    def validate(self) -> None:
        if self.feature_mode not in FEATURE_MODES:
            raise ValueError(
                f"feature_mode must be one of {FEATURE_MODES}, got '{self.feature_mode}'"
            )
        if self.mode not in INTEGRATION_MODES:
            raise ValueError(f"mode must be one of {INTEGRATION_MODES}, got '{self.mode}'")
        for name in ("n_features", "dims", "k_anchor", "k_score", "k_weight", "min_cells"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1, got {getattr(self, name)}")
        if not 0.0 <= self.min_score <= 1.0:
            raise ValueError(f"min_score must be in [0, 1], got {self.min_score}")
        if self.sd_weight <= 0:
            raise ValueError(f"sd_weight must be positive, got {self.sd_weight}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)
