"""Annotator ensemble for cell-type labeling.

Several independent strategies label the same integrated data; every
labeling is kept and none is adjudicated.

Strategies
----------
- ReferenceCorrelationAnnotator: per-cell Spearman correlation to reference centroids
- HierarchicalMarkerAnnotator: cluster descent through a marker tree
- DEEvidenceAnnotator: cluster DE genes weighted by a marker knowledge base

Example Usage
-------------
>>> from cellanchor.core.annotation import (
...     AnnotationContext, AnnotationEnsemble, build_strategies, AnnotationConfig,
... )
>>> context = AnnotationContext(adata, cluster_key="leiden", de_genes=de.cluster_de_genes)
>>> ensemble = AnnotationEnsemble(build_strategies(AnnotationConfig(knowledge_base="kb.tsv")))
>>> result = ensemble.run(context)
>>> result.crosstab("hierarchical_markers", "de_evidence")
"""

from .base import AnnotationContext, AnnotationResult, AnnotationStrategy
from .config import ANNOTATION_METHODS, AnnotationConfig
from .markers import MarkerSet, canonicalize_marker, compute_marker_idf, load_marker_sets
from .reference import ReferenceCorrelationAnnotator
from .hierarchy import (
    DEFAULT_GATING_PARAMS,
    HierarchicalMarkerAnnotator,
    compute_node_scores,
    merge_gating_params,
)
from .evidence import TIE_SEPARATOR, DEEvidenceAnnotator
from .ensemble import (
    UNLABELED,
    AnnotationEnsemble,
    EnsembleResult,
    align_result,
    build_strategies,
)

__all__ = [
    # Base
    "AnnotationContext",
    "AnnotationResult",
    "AnnotationStrategy",
    # Config
    "ANNOTATION_METHODS",
    "AnnotationConfig",
    # Markers
    "MarkerSet",
    "canonicalize_marker",
    "compute_marker_idf",
    "load_marker_sets",
    # Strategies
    "ReferenceCorrelationAnnotator",
    "DEFAULT_GATING_PARAMS",
    "HierarchicalMarkerAnnotator",
    "compute_node_scores",
    "merge_gating_params",
    "TIE_SEPARATOR",
    "DEEvidenceAnnotator",
    # Ensemble
    "UNLABELED",
    "AnnotationEnsemble",
    "EnsembleResult",
    "align_result",
    "build_strategies",
]
