"""Configuration for the annotator ensemble."""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

ANNOTATION_METHODS = ("reference_correlation", "hierarchical_markers", "de_evidence")


@dataclass
class AnnotationConfig:
    """Configuration for the annotator ensemble.

    Attributes
    ----------
    methods : List[str]
        Strategies to run, in column order
    reference_profiles : str, optional
        Genes x labels centroid table for ``reference_correlation``
    marker_tree : str, optional
        Marker tree JSON for ``hierarchical_markers``
    knowledge_base : str, optional
        label/gene/weight table for ``de_evidence`` (also a flat marker
        tree when ``marker_tree`` is not set)
    n_reference_genes : int, optional
        Most variable reference genes used for correlation
    min_reference_genes : int
        Minimum shared informative genes for correlation
    min_margin : float
        Minimum correlation margin over the runner-up label
    chunk_size : int
        Cells per correlation block
    min_expression : float
        Positivity threshold for marker scoring
    anti_weight : float
        Weight of the anti-marker penalty
    use_idf : bool
        IDF-weight markers in marker scoring
    gating_params : Dict
        Overrides of the hierarchical gate thresholds
    de_top_n : int, optional
        DE genes per cluster considered as evidence
    n_workers : int
        Threads running strategies concurrently
    """

    methods: List[str] = field(default_factory=lambda: list(ANNOTATION_METHODS))
    reference_profiles: Optional[str] = None
    marker_tree: Optional[str] = None
    knowledge_base: Optional[str] = None
    n_reference_genes: Optional[int] = None
    min_reference_genes: int = 10
    min_margin: float = 0.05
    chunk_size: int = 2000
    min_expression: float = 0.0
    anti_weight: float = 0.5
    use_idf: bool = False
    gating_params: Dict[str, Any] = field(default_factory=dict)
    de_top_n: Optional[int] = None
    n_workers: int = 3

    def validate(self) -> None:
        unknown = [m for m in self.methods if m not in ANNOTATION_METHODS]
        if unknown:
            raise ValueError(f"Unknown annotation methods {unknown}; choose from {ANNOTATION_METHODS}")
        if len(set(self.methods)) != len(self.methods):
            raise ValueError("Annotation methods must be unique")
        if self.min_margin < 0:
            raise ValueError(f"min_margin must be >= 0, got {self.min_margin}")
        if self.n_workers < 1:
            raise ValueError(f"n_workers must be >= 1, got {self.n_workers}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)
