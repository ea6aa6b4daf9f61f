"""Test fixtures for cellanchor.

Provides synthetic data generators and test utilities.
"""

from .mock_adata import (
    ANNOTATION_GENES,
    ANNOTATION_MARKERS,
    MARKER_GENES,
    N_PLANTED,
    create_annotation_adata,
    create_knowledge_base,
    create_marker_tree,
    create_planted_samples,
    create_qc_adata,
    create_reference_profiles,
    merge_samples,
)

__all__ = [
    "ANNOTATION_GENES",
    "ANNOTATION_MARKERS",
    "MARKER_GENES",
    "N_PLANTED",
    "create_annotation_adata",
    "create_knowledge_base",
    "create_marker_tree",
    "create_planted_samples",
    "create_qc_adata",
    "create_reference_profiles",
    "merge_samples",
]
