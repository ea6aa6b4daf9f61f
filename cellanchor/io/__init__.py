"""I/O utilities for cellanchor.

Provides logging, delimited table export and reference data loading.
"""

from .logging import get_timestamped_log_path, log_json, log_yaml
from .tables import (
    cell_label_table,
    ensure_output_dir,
    read_table,
    write_table,
    write_tables,
)
from .reference import (
    load_marker_knowledge_base,
    load_marker_tree,
    load_reference_profiles,
)

__all__ = [
    # Logging
    "get_timestamped_log_path",
    "log_json",
    "log_yaml",
    # Tables
    "cell_label_table",
    "ensure_output_dir",
    "read_table",
    "write_table",
    "write_tables",
    # Reference data
    "load_marker_knowledge_base",
    "load_marker_tree",
    "load_reference_profiles",
]
