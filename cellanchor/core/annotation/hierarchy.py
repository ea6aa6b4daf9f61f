"""Hierarchical marker-tree annotation.

Clusters are scored against every node of a marker tree and assigned by
top-down descent: the best passing root, then the best passing child of
that node (siblings only), until no child passes its gate. Cells
inherit their cluster's label.

Node score:
    score = mean_enrichment + mean_positive_fraction - anti_penalty

Where:
    - mean_enrichment: (cluster mean - global mean) / global std, averaged
      over the node's markers
    - mean_positive_fraction: fraction of cluster cells expressing each
      marker, averaged over markers
    - anti_penalty: anti_weight * (clipped anti-marker enrichment +
      anti-marker positive fraction)
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from ...io.reference import (
    load_marker_knowledge_base,
    load_marker_tree,
    marker_tree_from_knowledge_base,
)
from .base import AnnotationContext, AnnotationResult, AnnotationStrategy
from .markers import MarkerSet, compute_marker_idf, load_marker_sets

# Gate thresholds by hierarchy level; deeper levels reuse the deepest entry
DEFAULT_GATING_PARAMS = {
    "min_coverage": {0: 0.5, 1: 0.4, 2: 0.3},
    "min_pos_frac": {0: 0.3, 1: 0.2, 2: 0.15},
    "min_enrichment": {0: 0.0, 1: -0.5, 2: -1.0},
    "anti_penalty_hard_gate": 1.0,
}

SCORE_COLUMNS = [
    "cluster_id",
    "label",
    "path",
    "level",
    "n_cells",
    "coverage",
    "mean_positive_fraction",
    "mean_enrichment",
    "anti_penalty",
    "score",
    "passed_gate",
    "fail_reason",
    "assigned",
]


def _threshold(by_level: Dict[int, float], level: int) -> float:
    if level in by_level:
        return by_level[level]
    return by_level[max(by_level)]


def merge_gating_params(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Default gating parameters updated with ``overrides``.

    Level keys may be given as strings (as parsed from YAML/JSON).
    """
    params = copy.deepcopy(DEFAULT_GATING_PARAMS)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict):
            params[key] = {int(k): float(v) for k, v in value.items()}
        else:
            params[key] = value
    return params


def compute_node_scores(
    context: AnnotationContext,
    marker_sets: Sequence[MarkerSet],
    min_expression: float = 0.0,
    anti_weight: float = 0.5,
    idf_weights: Optional[Dict[str, float]] = None,
) -> pd.DataFrame:
    """Score every cluster against every marker set.

    Args:
        context: Annotation inputs (clusters and expression)
        marker_sets: Flattened marker tree
        min_expression: A cell is positive for a gene above this value
        anti_weight: Weight of the anti-marker penalty
        idf_weights: Optional marker -> weight for weighted averages

    Returns:
        One row per (cluster, marker set) with coverage, mean positive
        fraction, mean enrichment, anti penalty and score
    """
    genes = sorted({g for ms in marker_sets for g in ms.resolved_markers + ms.resolved_anti_markers})
    clusters = context.clusters()
    if not genes:
        return pd.DataFrame(columns=SCORE_COLUMNS[:10])

    matrix = context.dense_expression(genes)
    gene_index = {g: i for i, g in enumerate(genes)}
    global_mean = matrix.mean(axis=0)
    global_std = matrix.std(axis=0)
    global_std[global_std == 0] = 1e-6

    records: List[Dict[str, Any]] = []
    for cluster in sorted(clusters.unique()):
        mask = (clusters == cluster).to_numpy()
        values = matrix[mask]
        enrichment = (values.mean(axis=0) - global_mean) / global_std
        positive = (values > min_expression).mean(axis=0)

        for mset in marker_sets:
            idxs = [gene_index[g] for g in mset.resolved_markers]
            if not idxs:
                continue
            weights = None
            if idf_weights:
                raw = np.array([idf_weights.get(g, 1.0) for g in mset.resolved_markers])
                weights = raw / raw.sum() if raw.sum() > 0 else None
            mean_positive = float(np.average(positive[idxs], weights=weights))
            mean_enrichment = float(np.average(enrichment[idxs], weights=weights))

            anti_idxs = [gene_index[g] for g in mset.resolved_anti_markers]
            anti_penalty = 0.0
            if anti_idxs and anti_weight > 0:
                anti_enrichment = float(np.mean(np.clip(enrichment[anti_idxs], 0, None)))
                anti_positive = float(np.mean(positive[anti_idxs]))
                anti_penalty = anti_weight * (anti_enrichment + anti_positive)

            records.append(
                {
                    "cluster_id": cluster,
                    "label": mset.label,
                    "path": " / ".join(mset.path),
                    "level": mset.level,
                    "n_cells": int(mask.sum()),
                    "coverage": mset.coverage,
                    "mean_positive_fraction": mean_positive,
                    "mean_enrichment": mean_enrichment,
                    "anti_penalty": anti_penalty,
                    "score": mean_enrichment + mean_positive - anti_penalty,
                }
            )
    return pd.DataFrame.from_records(records, columns=SCORE_COLUMNS[:10])


class HierarchicalMarkerAnnotator(AnnotationStrategy):
    """Cluster-level annotation by descent through a marker tree.

    Args:
        marker_tree: Parsed marker tree, or path to its JSON file (read when
            the annotator first runs)
        name: Method name (label column)
        min_expression: Positivity threshold on expression values
        anti_weight: Weight of the anti-marker penalty
        use_idf: Weight markers by inverse document frequency
        gating_params: Overrides for ``DEFAULT_GATING_PARAMS``
        knowledge_base: Marker knowledge base (table or path) giving a flat
            tree with one root per label; used when ``marker_tree`` is None

    Example:
        >>> annotator = HierarchicalMarkerAnnotator("markers.json")
        >>> result = annotator.annotate(context)
        >>> result.details.query("assigned")
    """

    name = "hierarchical_markers"

    def __init__(
        self,
        marker_tree: Union[Dict, Path, str, None] = None,
        name: Optional[str] = None,
        min_expression: float = 0.0,
        anti_weight: float = 0.5,
        use_idf: bool = False,
        gating_params: Optional[Dict[str, Any]] = None,
        knowledge_base: Union[pd.DataFrame, Path, str, None] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if marker_tree is None and knowledge_base is None:
            raise ValueError("Either marker_tree or knowledge_base is required")
        self._marker_tree: Optional[Dict[str, Any]] = None
        self.source: Optional[Path] = None
        if isinstance(marker_tree, dict):
            self._marker_tree = marker_tree
        elif marker_tree is not None:
            self.source = Path(marker_tree)
        self.knowledge_base = knowledge_base
        if name is not None:
            self.name = name
        self.min_expression = min_expression
        self.anti_weight = anti_weight
        self.use_idf = use_idf
        self.params = merge_gating_params(gating_params)
        self.logger = logger or logging.getLogger(__name__)

    @property
    def marker_tree(self) -> Dict[str, Any]:
        """Parsed tree, read from its JSON file or knowledge base on first use."""
        if self._marker_tree is None:
            if self.source is not None:
                self._marker_tree = load_marker_tree(self.source)
            else:
                kb = self.knowledge_base
                if not isinstance(kb, pd.DataFrame):
                    kb = load_marker_knowledge_base(kb)
                self._marker_tree = marker_tree_from_knowledge_base(kb)
        return self._marker_tree

    def passes_gate(self, row: pd.Series, mset: MarkerSet) -> Tuple[bool, Optional[str]]:
        """Check a (cluster, node) score row against the node's gates."""
        level = int(row["level"])
        overrides = mset.gating_overrides or {}

        min_cov = overrides.get("min_coverage", _threshold(self.params["min_coverage"], level))
        if row["coverage"] < min_cov:
            return False, f"low_coverage(<{min_cov:.2f})"
        min_pos = overrides.get("min_pos_frac", _threshold(self.params["min_pos_frac"], level))
        if row["mean_positive_fraction"] < min_pos:
            return False, f"low_pos_frac(<{min_pos:.2f})"
        min_enrich = overrides.get(
            "min_enrichment", _threshold(self.params["min_enrichment"], level)
        )
        if row["mean_enrichment"] < min_enrich:
            return False, f"low_enrichment(<{min_enrich:.2f})"
        if row["anti_penalty"] >= self.params["anti_penalty_hard_gate"]:
            return False, "anti_marker_conflict"
        return True, None

    def annotate(self, context: AnnotationContext) -> AnnotationResult:
        marker_sets = load_marker_sets(self.marker_tree, context.gene_names, self.logger)
        idf = compute_marker_idf(marker_sets) if self.use_idf else None
        scores = compute_node_scores(
            context, marker_sets, self.min_expression, self.anti_weight, idf
        )
        by_label = {ms.label: ms for ms in marker_sets}
        if len(by_label) != len(marker_sets):
            raise ValueError("Marker tree labels must be unique across levels")
        children: Dict[Optional[str], List[str]] = {}
        for ms in marker_sets:
            children.setdefault(ms.parent, []).append(ms.label)

        scores["passed_gate"] = False
        scores["fail_reason"] = None
        scores["assigned"] = False
        for i, row in scores.iterrows():
            passed, reason = self.passes_gate(row, by_label[row["label"]])
            scores.at[i, "passed_gate"] = passed
            scores.at[i, "fail_reason"] = reason

        cluster_labels: Dict[str, Optional[str]] = {}
        cluster_scores: Dict[str, float] = {}
        for cluster_id in sorted(context.clusters().unique()):
            rows = scores[scores["cluster_id"] == cluster_id]
            passing = {r["label"]: (i, r["score"]) for i, r in rows.iterrows() if r["passed_gate"]}

            label, score = None, np.nan
            candidates = children.get(None, [])
            while True:
                options = [(passing[c][1], -k, c) for k, c in enumerate(candidates) if c in passing]
                if not options:
                    break
                score, _, label = max(options)
                scores.at[passing[label][0], "assigned"] = True
                candidates = children.get(label, [])

            cluster_labels[cluster_id] = label
            cluster_scores[cluster_id] = score
            if label is None:
                self.logger.debug("Cluster %s: no root passed its gate", cluster_id)

        n_assigned = sum(1 for v in cluster_labels.values() if v is not None)
        self.logger.info(
            "Hierarchical assignment: %d/%d clusters labeled", n_assigned, len(cluster_labels)
        )
        return self._cluster_labels_to_cells(
            context, cluster_labels, cluster_scores, details=scores[SCORE_COLUMNS]
        )
