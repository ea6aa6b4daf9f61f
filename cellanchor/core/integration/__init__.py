"""Anchor-based multi-sample integration (Stage D).

Example Usage
-------------
>>> from cellanchor.core.integration import IntegrationEngine, IntegrationConfig
>>> engine = IntegrationEngine(IntegrationConfig(mode="reference", n_workers=4))
>>> result = engine.integrate(qc_result.samples)
>>> result.pair_table()
"""

from .config import FEATURE_MODES, INTEGRATION_MODES, IntegrationConfig
from .features import FeatureBlock, select_integration_features
from .anchors import AnchorFinder, AnchorSet
from .correction import anchor_weights, compute_corrected
from .metrics import batch_variance_explained, neighbor_purity
from .engine import IntegrationEngine, IntegrationResult, unintegrated_embedding

__all__ = [
    "FEATURE_MODES",
    "INTEGRATION_MODES",
    "IntegrationConfig",
    "FeatureBlock",
    "select_integration_features",
    "AnchorFinder",
    "AnchorSet",
    "anchor_weights",
    "compute_corrected",
    "batch_variance_explained",
    "neighbor_purity",
    "IntegrationEngine",
    "IntegrationResult",
    "unintegrated_embedding",
]
