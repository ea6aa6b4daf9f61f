"""Marker set loading and resolution for marker-based annotation.

This module flattens a hierarchical marker tree into marker sets and
resolves marker names against the genes present in the data.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

# Keys of a tree node that are not child definitions
RESERVED_KEYS = {"markers", "anti_markers", "Anti_markers", "subtypes", "children", "gating_overrides"}


@dataclass(frozen=True)
class MarkerSet:
    """A set of markers defining a cell type.

    Attributes:
        label: Cell type name (e.g., "CD8 T cell")
        path: Labels from root to this node (e.g., ("T cell", "CD8 T cell"))
        level: Hierarchy depth (0=root)
        markers: Marker names as listed in the tree
        resolved_markers: Markers present in the data
        missing_markers: Markers absent from the data
        anti_markers: Genes expected to be absent
        resolved_anti_markers: Anti-markers present in the data
        gating_overrides: Optional per-node gate thresholds
    """

    label: str
    path: Tuple[str, ...]
    level: int
    markers: Tuple[str, ...]
    resolved_markers: Tuple[str, ...]
    missing_markers: Tuple[str, ...]
    anti_markers: Tuple[str, ...] = ()
    resolved_anti_markers: Tuple[str, ...] = ()
    gating_overrides: Optional[Dict[str, float]] = None

    @property
    def parent(self) -> Optional[str]:
        return self.path[-2] if len(self.path) > 1 else None

    @property
    def coverage(self) -> float:
        """Fraction of listed markers present in the data."""
        return len(self.resolved_markers) / max(len(self.markers), 1)


def canonicalize_marker(marker: str) -> str:
    """Normalize marker name for case-insensitive lookup."""
    return str(marker).strip().lower()


def _resolve(names: Sequence[str], lookup: Dict[str, str]) -> Tuple[List[str], List[str]]:
    resolved, missing = [], []
    for name in names:
        matched = lookup.get(canonicalize_marker(name))
        if matched is None:
            missing.append(name)
        else:
            resolved.append(matched)
    return resolved, missing


def _children(node: dict) -> Dict[str, dict]:
    children: Dict[str, dict] = {}
    if isinstance(node.get("subtypes"), dict):
        children.update(node["subtypes"])
    if isinstance(node.get("children"), dict):
        children.update(node["children"])
    for key, value in node.items():
        if key not in RESERVED_KEYS and isinstance(value, dict):
            children[key] = value
    return children


def load_marker_sets(
    marker_tree: Dict,
    var_names: Sequence[str],
    logger: Optional[logging.Logger] = None,
) -> List[MarkerSet]:
    """Flatten a marker tree and resolve markers against the data.

    Traversal is depth-first in tree order; parents always precede their
    children. Top-level keys starting with ``_`` are metadata.

    Args:
        marker_tree: Parsed marker tree (see ``cellanchor.io.load_marker_tree``)
        var_names: Gene names available in the data
        logger: Optional logger instance

    Returns:
        List of MarkerSet objects, one per node
    """
    if logger is None:
        logger = logging.getLogger(__name__)

    lookup: Dict[str, str] = {}
    for name in var_names:
        lookup.setdefault(canonicalize_marker(name), str(name))

    result: List[MarkerSet] = []

    def visit(label: str, node: dict, path: Tuple[str, ...]) -> None:
        markers_raw = list(node.get("markers", []))
        anti_raw = list(node.get("anti_markers", node.get("Anti_markers", [])))
        resolved, missing = _resolve(markers_raw, lookup)
        anti_resolved, _ = _resolve(anti_raw, lookup)
        if missing:
            logger.debug(
                "Marker set '%s': missing %d/%d markers: %s",
                label,
                len(missing),
                len(markers_raw),
                missing,
            )
        result.append(
            MarkerSet(
                label=label,
                path=path,
                level=len(path) - 1,
                markers=tuple(markers_raw),
                resolved_markers=tuple(resolved),
                missing_markers=tuple(missing),
                anti_markers=tuple(anti_raw),
                resolved_anti_markers=tuple(anti_resolved),
                gating_overrides=node.get("gating_overrides"),
            )
        )
        for child_label, child_node in _children(node).items():
            visit(child_label, child_node, path + (child_label,))

    for root_label, root_node in marker_tree.items():
        if root_label.startswith("_"):
            continue
        visit(root_label, root_node, (root_label,))

    logger.info(
        "Loaded %d marker sets (%d roots, %d with resolved markers)",
        len(result),
        sum(1 for ms in result if ms.level == 0),
        sum(1 for ms in result if ms.resolved_markers),
    )
    return result


def compute_marker_idf(
    marker_sets: Sequence[MarkerSet],
    smoothing: float = 1.0,
) -> Dict[str, float]:
    """IDF weights: markers used by fewer cell types weigh more.

    Formula: IDF(marker) = log(N / (df(marker) + smoothing)), floored at 0.1,
    where N = number of marker sets and df = sets listing the marker.
    """
    doc_freq: Dict[str, int] = {}
    for mset in marker_sets:
        for marker in set(mset.resolved_markers):
            doc_freq[marker] = doc_freq.get(marker, 0) + 1

    n_sets = len(marker_sets)
    return {
        marker: float(max(np.log(n_sets / (df + smoothing)), 0.1))
        for marker, df in doc_freq.items()
    }
