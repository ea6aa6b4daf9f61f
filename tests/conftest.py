"""Pytest configuration and shared fixtures for cellanchor tests."""

import sys
from pathlib import Path

import pytest
import numpy as np
import pandas as pd

# Add package to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Import synthetic data generators
from tests.fixtures import (
    create_annotation_adata,
    create_knowledge_base,
    create_marker_tree,
    create_planted_samples,
    create_reference_profiles,
    merge_samples,
)


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def planted_normalization():
    """Normalization settings for the planted-anchor samples.

    Cells total 1e5 counts, so ``scale_factor=1e5`` gives ``log1p(counts)``.
    Cutoffs are disabled so every gene with finite dispersion is ranked.
    """
    from cellanchor.core.preprocessing import NormalizationConfig

    return NormalizationConfig(
        scale_factor=1e5,
        n_top_genes=500,
        min_mean=None,
        max_mean=None,
        min_disp=None,
        n_pcs=10,
        compute_umap=False,
    )


@pytest.fixture
def planted_integration():
    """Integration settings for the planted-anchor samples."""
    from cellanchor.core.integration import IntegrationConfig

    return IntegrationConfig(dims=30, k_anchor=5, k_score=30, k_weight=100)


@pytest.fixture
def small_qc_config():
    """QC thresholds suited to the synthetic samples (~85 genes per cell)."""
    from cellanchor.core.preprocessing import QCConfig

    return QCConfig(min_genes=10, max_genes=1000)


# ============================================================================
# AnnData Fixtures
# ============================================================================


@pytest.fixture
def planted_samples():
    """Two samples (P1 unshifted, P2 batch-shifted) with 20 planted anchors."""
    return create_planted_samples(("P1", "P2"))


@pytest.fixture
def planted_dataset():
    """Planted samples merged into one dataset with composite cell ids."""
    return merge_samples(create_planted_samples(("P1", "P2")))


@pytest.fixture
def annotation_adata():
    """Three marker-defined clusters of log-normalized cells."""
    return create_annotation_adata()


@pytest.fixture
def annotation_context(annotation_adata):
    """Annotation context with clusters and DE genes for ``annotation_adata``."""
    from cellanchor.core.annotation import AnnotationContext

    return AnnotationContext(
        adata=annotation_adata,
        cluster_key="leiden",
        de_genes={
            "0": ["CD3E", "CD8A", "CD3D", "G01"],
            "1": ["MS4A1", "CD79A", "G02"],
            "2": ["LYZ", "CD14"],
        },
    )


# ============================================================================
# Reference Data Fixtures
# ============================================================================


@pytest.fixture
def marker_tree() -> dict:
    """Marker tree matching ``annotation_adata``."""
    return create_marker_tree()


@pytest.fixture
def reference_profiles() -> pd.DataFrame:
    """Reference centroids matching ``annotation_adata``."""
    return create_reference_profiles()


@pytest.fixture
def knowledge_base() -> pd.DataFrame:
    """Marker knowledge base matching ``annotation_adata``."""
    return create_knowledge_base()


@pytest.fixture
def reference_files(tmp_path, marker_tree, reference_profiles, knowledge_base):
    """Reference data written to disk: (marker tree, profiles, knowledge base)."""
    import json

    tree_path = tmp_path / "markers.json"
    tree_path.write_text(json.dumps(marker_tree))
    profiles_path = tmp_path / "reference.tsv"
    reference_profiles.rename_axis("gene").to_csv(profiles_path, sep="\t")
    kb_path = tmp_path / "knowledge_base.tsv"
    knowledge_base.to_csv(kb_path, sep="\t", index=False)
    return tree_path, profiles_path, kb_path


@pytest.fixture
def tmp_output_dir(tmp_path: Path) -> Path:
    """Create a temporary output directory for tests."""
    output_dir = tmp_path / "output"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


@pytest.fixture
def rng():
    """Seeded random generator."""
    return np.random.default_rng(7)
