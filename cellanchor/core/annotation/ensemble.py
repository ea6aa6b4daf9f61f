"""Annotator ensemble: independent strategies over the same inputs.

Every strategy reads the same ``AnnotationContext`` and produces its own
labeling. Strategies run concurrently in a thread pool; a failing
strategy is logged and left out while the others proceed. All labelings
are kept side by side; no consensus label is derived.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from ...exceptions import AnnotationStrategyError
from .base import AnnotationContext, AnnotationResult, AnnotationStrategy
from .config import AnnotationConfig
from .evidence import DEEvidenceAnnotator
from .hierarchy import HierarchicalMarkerAnnotator
from .reference import ReferenceCorrelationAnnotator

UNLABELED = "unlabeled"


@dataclass
class EnsembleResult:
    """All labelings produced by the ensemble.

    Attributes
    ----------
    labels : pd.DataFrame
        Cells x methods; NaN means unlabeled
    scores : pd.DataFrame
        Cells x methods scores of the assigned labels
    results : Dict[str, AnnotationResult]
        Raw result per successful method
    failures : Dict[str, str]
        Failed method -> error message
    elapsed_seconds : float
        Wall time
    """

    labels: pd.DataFrame = field(default_factory=pd.DataFrame)
    scores: pd.DataFrame = field(default_factory=pd.DataFrame)
    results: Dict[str, AnnotationResult] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)
    elapsed_seconds: float = 0.0

    @property
    def methods(self) -> List[str]:
        return list(self.labels.columns)

    def agreement(self) -> pd.DataFrame:
        """Pairwise agreement between methods.

        Fraction of cells labeled by both methods that received the same
        label (NaN when no cell is labeled by both).
        """
        methods = self.methods
        out = pd.DataFrame(np.nan, index=methods, columns=methods, dtype=float)
        for a in methods:
            for b in methods:
                both = self.labels[a].notna() & self.labels[b].notna()
                if both.any():
                    same = self.labels.loc[both, a].astype(str) == self.labels.loc[both, b].astype(str)
                    out.loc[a, b] = float(same.mean())
        return out

    def crosstab(self, a: str, b: str) -> pd.DataFrame:
        """Contingency table of two methods' labels (unlabeled included)."""
        for method in (a, b):
            if method not in self.labels:
                raise KeyError(f"Method '{method}' not in ensemble result")
        return pd.crosstab(
            self.labels[a].fillna(UNLABELED).astype(str).rename(a),
            self.labels[b].fillna(UNLABELED).astype(str).rename(b),
        )

    def to_long_table(self) -> pd.DataFrame:
        """One row per (cell, method) with ``cell_id``, ``method``, ``label``, ``score``."""
        frames = []
        for method in self.methods:
            frames.append(
                pd.DataFrame(
                    {
                        "cell_id": self.labels.index.astype(str),
                        "method": method,
                        "label": self.labels[method].to_numpy(),
                        "score": self.scores[method].to_numpy(),
                    }
                )
            )
        if not frames:
            return pd.DataFrame(columns=["cell_id", "method", "label", "score"])
        return pd.concat(frames, ignore_index=True)

    def to_dict(self):
        """Convert to dictionary for reporting."""
        return {
            "methods": self.methods,
            "failures": dict(self.failures),
            "n_labeled": {m: int(self.labels[m].notna().sum()) for m in self.methods},
            "elapsed_seconds": round(self.elapsed_seconds, 2),
        }


def align_result(result: AnnotationResult, cell_ids: pd.Index) -> AnnotationResult:
    """Reindex a result 1:1 onto ``cell_ids``.

    Raises
    ------
    AnnotationStrategyError
        If the result has duplicate or unknown cells.
    """
    labels = result.labels
    if not labels.index.is_unique:
        raise AnnotationStrategyError(result.method, "duplicate cell identifiers in labels")
    unknown = labels.index.difference(cell_ids)
    if len(unknown):
        raise AnnotationStrategyError(
            result.method, f"{len(unknown)} labels for unknown cells (e.g. {unknown[0]})"
        )
    scores = result.scores
    if not scores.index.is_unique:
        raise AnnotationStrategyError(result.method, "duplicate cell identifiers in scores")
    return AnnotationResult(
        method=result.method,
        labels=labels.reindex(cell_ids).astype(object).rename(result.method),
        scores=scores.reindex(cell_ids).astype(float).rename(result.method),
        details=result.details,
    )


class AnnotationEnsemble:
    """Run several annotation strategies over one context.

    Parameters
    ----------
    strategies : Sequence[AnnotationStrategy]
        Strategies with unique names (column order follows this order)
    n_workers : int
        Worker threads
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> ensemble = AnnotationEnsemble([
    ...     ReferenceCorrelationAnnotator(profiles),
    ...     DEEvidenceAnnotator(knowledge_base),
    ... ])
    >>> result = ensemble.run(context)
    >>> result.agreement()
    """

    def __init__(
        self,
        strategies: Sequence[AnnotationStrategy],
        n_workers: int = 3,
        logger: Optional[logging.Logger] = None,
    ):
        names = [s.name for s in strategies]
        if len(set(names)) != len(names):
            raise ValueError(f"Strategy names must be unique, got {names}")
        self.strategies = list(strategies)
        self.n_workers = max(1, n_workers)
        self.logger = logger or logging.getLogger(__name__)

    def _run_one(self, strategy: AnnotationStrategy, context: AnnotationContext) -> AnnotationResult:
        start = time.time()
        result = strategy.annotate(context)
        if result.method != strategy.name:
            raise AnnotationStrategyError(
                strategy.name, f"result tagged with method '{result.method}'"
            )
        aligned = align_result(result, context.cell_ids)
        self.logger.info(
            "Strategy %s labeled %d/%d cells in %.1fs",
            strategy.name,
            aligned.n_labeled,
            len(context.cell_ids),
            time.time() - start,
        )
        return aligned

    def run(self, context: AnnotationContext) -> EnsembleResult:
        """Run all strategies and collect their labelings.

        Returns
        -------
        EnsembleResult
            Labels and scores of successful strategies, failures by name.
        """
        start = time.time()
        result = EnsembleResult()
        lock = threading.Lock()
        n_workers = min(self.n_workers, max(len(self.strategies), 1))
        self.logger.info(
            "Running %d annotation strategies with %d workers",
            len(self.strategies),
            n_workers,
        )

        with ThreadPoolExecutor(max_workers=n_workers) as executor:
            futures = {
                executor.submit(self._run_one, strategy, context): strategy.name
                for strategy in self.strategies
            }
            for future in as_completed(futures):
                name = futures[future]
                try:
                    outcome = future.result()
                except Exception as e:
                    self.logger.warning("Strategy %s failed: %s", name, e)
                    with lock:
                        result.failures[name] = f"{type(e).__name__}: {e}"
                    continue
                with lock:
                    result.results[name] = outcome

        ordered = [s.name for s in self.strategies if s.name in result.results]
        cell_ids = context.cell_ids
        result.labels = pd.DataFrame(
            {name: result.results[name].labels for name in ordered},
            index=cell_ids,
            columns=ordered,
        ).astype(object)
        result.scores = pd.DataFrame(
            {name: result.results[name].scores for name in ordered},
            index=cell_ids,
            columns=ordered,
            dtype=float,
        )
        result.elapsed_seconds = time.time() - start
        self.logger.info(
            "Annotation ensemble: %d succeeded, %d failed (%.1fs)",
            len(ordered),
            len(result.failures),
            result.elapsed_seconds,
        )
        return result


def build_strategies(
    config: AnnotationConfig,
    logger: Optional[logging.Logger] = None,
) -> List[AnnotationStrategy]:
    """Instantiate the configured strategies.

    Methods whose reference inputs are not configured are skipped with a
    warning. Reference files are read by each strategy when it runs, so an
    unreadable file fails only that strategy inside the ensemble.
    """
    config.validate()
    logger = logger or logging.getLogger(__name__)

    strategies: List[AnnotationStrategy] = []
    for method in config.methods:
        if method == "reference_correlation":
            if not config.reference_profiles:
                logger.warning("Skipping %s: no reference_profiles configured", method)
                continue
            strategies.append(
                ReferenceCorrelationAnnotator(
                    config.reference_profiles,
                    n_genes=config.n_reference_genes,
                    min_genes=config.min_reference_genes,
                    min_margin=config.min_margin,
                    chunk_size=config.chunk_size,
                )
            )
        elif method == "hierarchical_markers":
            if not (config.marker_tree or config.knowledge_base):
                logger.warning("Skipping %s: no marker_tree or knowledge_base configured", method)
                continue
            strategies.append(
                HierarchicalMarkerAnnotator(
                    config.marker_tree,
                    min_expression=config.min_expression,
                    anti_weight=config.anti_weight,
                    use_idf=config.use_idf,
                    gating_params=config.gating_params,
                    knowledge_base=config.knowledge_base,
                )
            )
        elif method == "de_evidence":
            if not config.knowledge_base:
                logger.warning("Skipping %s: no knowledge_base configured", method)
                continue
            strategies.append(DEEvidenceAnnotator(config.knowledge_base, top_n=config.de_top_n))
    return strategies
