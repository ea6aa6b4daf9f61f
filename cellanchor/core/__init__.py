"""Core computational modules for cellanchor.

This package contains the main analysis engines:
- preprocessing: Data loading, QC, normalization and reduction
- integration: Anchor-based sample integration
- clustering: Leiden clustering and differential expression
- annotation: Ensemble of cell-type annotation strategies
"""
