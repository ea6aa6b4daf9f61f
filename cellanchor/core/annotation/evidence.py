"""DE-evidence annotation against a marker knowledge base.

For every cluster, the ranked DE genes are matched to a knowledge base
of (label, gene, weight) associations:

    evidence(label) = sum over hits of weight * IDF(gene) * rank_weight

with ``rank_weight = (K - r + 1) / K`` for a gene at rank ``r`` of ``K``
DE genes. The label with the most evidence wins; tied labels are all
kept, joined with ``|``. Clusters without evidence stay unlabeled.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import numpy as np
import pandas as pd

from ...io.reference import load_marker_knowledge_base, marker_tree_from_knowledge_base
from .base import AnnotationContext, AnnotationResult, AnnotationStrategy
from .markers import compute_marker_idf, load_marker_sets

TIE_SEPARATOR = "|"


class DEEvidenceAnnotator(AnnotationStrategy):
    """Cluster labels from DE genes weighted by a marker knowledge base.

    Parameters
    ----------
    knowledge_base : pd.DataFrame or path
        Columns ``label``, ``gene``, ``weight`` (a path is read on first use)
    name : str, optional
        Method name (label column)
    top_n : int, optional
        Only the top DE genes per cluster are considered
    use_idf : bool
        Down-weight genes listed for many labels
    """

    name = "de_evidence"

    def __init__(
        self,
        knowledge_base: Union[pd.DataFrame, Path, str],
        name: Optional[str] = None,
        top_n: Optional[int] = None,
        use_idf: bool = True,
        logger: Optional[logging.Logger] = None,
    ):
        if isinstance(knowledge_base, pd.DataFrame):
            self._knowledge_base, self.source = knowledge_base, None
        else:
            self._knowledge_base, self.source = None, Path(knowledge_base)
        if name is not None:
            self.name = name
        self.top_n = top_n
        self.use_idf = use_idf
        self.logger = logger or logging.getLogger(__name__)

    @property
    def knowledge_base(self) -> pd.DataFrame:
        if self._knowledge_base is None:
            self._knowledge_base = load_marker_knowledge_base(self.source)
        return self._knowledge_base

    def cluster_evidence(self, de_genes: List[str], idf: Dict[str, float]) -> pd.Series:
        """Evidence per label for one cluster's ranked DE genes."""
        genes = list(de_genes[: self.top_n] if self.top_n else de_genes)
        n_ranked = len(genes)
        if n_ranked == 0:
            return pd.Series(dtype=float)
        rank_weight = {g: (n_ranked - r) / n_ranked for r, g in enumerate(genes)}
        hits = self.knowledge_base[self.knowledge_base["gene"].isin(rank_weight)]
        if hits.empty:
            return pd.Series(dtype=float)
        contrib = (
            hits["weight"].to_numpy(dtype=np.float64)
            * hits["gene"].map(lambda g: idf.get(g, 1.0)).to_numpy(dtype=np.float64)
            * hits["gene"].map(rank_weight).to_numpy(dtype=np.float64)
        )
        return pd.Series(contrib, index=hits["label"].to_numpy()).groupby(level=0).sum()

    def annotate(self, context: AnnotationContext) -> AnnotationResult:
        if not context.de_genes:
            raise ValueError("No DE genes available in the annotation context")

        idf: Dict[str, float] = {}
        if self.use_idf:
            marker_sets = load_marker_sets(
                marker_tree_from_knowledge_base(self.knowledge_base),
                context.gene_names,
                self.logger,
            )
            idf = compute_marker_idf(marker_sets)

        cluster_labels: Dict[str, Optional[str]] = {}
        cluster_scores: Dict[str, float] = {}
        records = []
        for cluster_id in sorted(context.clusters().unique()):
            evidence = self.cluster_evidence(context.de_genes.get(cluster_id, []), idf)
            best = float(evidence.max()) if len(evidence) else 0.0
            if best <= 0:
                cluster_labels[cluster_id] = None
                cluster_scores[cluster_id] = 0.0
            else:
                winners = sorted(evidence.index[np.isclose(evidence.to_numpy(), best)])
                cluster_labels[cluster_id] = TIE_SEPARATOR.join(winners)
                cluster_scores[cluster_id] = best
                if len(winners) > 1:
                    self.logger.debug(
                        "Cluster %s: tie between %s", cluster_id, ", ".join(winners)
                    )
            for label, value in evidence.items():
                records.append({"cluster_id": cluster_id, "label": label, "evidence": float(value)})

        n_labeled = sum(1 for v in cluster_labels.values() if v is not None)
        self.logger.info(
            "DE evidence: %d/%d clusters labeled from %d knowledge base entries",
            n_labeled,
            len(cluster_labels),
            len(self.knowledge_base),
        )
        details = pd.DataFrame.from_records(records, columns=["cluster_id", "label", "evidence"])
        return self._cluster_labels_to_cells(context, cluster_labels, cluster_scores, details)
