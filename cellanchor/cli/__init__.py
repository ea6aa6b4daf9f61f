"""Command-line interface for cellanchor.

Example Usage
-------------
    # From command line:
    cellanchor --help
    cellanchor qc --input counts.h5ad --out qc/
    cellanchor run --input counts.h5ad --config analysis.yaml --out results/
    cellanchor config > analysis.yaml
"""

from .main import cli, main

__all__ = [
    "cli",
    "main",
]
