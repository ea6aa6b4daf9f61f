"""cellanchor: multi-sample single-cell RNA-seq integration and annotation.

This package provides tools for:
- Loading count matrices with composite patient/barcode identifiers
- Cell-level quality control
- Log-normalization, variable features, PCA and UMAP
- Anchor-based integration of samples with batch effects
- An ensemble of independent cell-type annotation strategies

Example usage:
    >>> from cellanchor.pipeline import AnalysisWorkflow
    >>> from cellanchor.config import AnalysisConfig
    >>>
    >>> config = AnalysisConfig.from_yaml("analysis.yaml")
    >>> result = AnalysisWorkflow(config).run("counts.h5ad", output_dir="out")
    >>> result.annotation.labels.head()
"""

__version__ = "0.1.0"
