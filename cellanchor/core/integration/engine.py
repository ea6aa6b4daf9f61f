"""Anchor-based multi-sample integration (Stage D).

Aligns per-sample expression on a shared feature vocabulary so that
sample-specific structure is suppressed while cell-type structure is
kept, then re-reduces the corrected matrix into one embedding.

Workflow
--------
1. Log-normalize each sample and select its variable features
2. Combine them into a fixed shared vocabulary
3. Order samples: reference sample(s) first, then by size
4. For each query: find anchors against the reference, correct the query
5. Fold corrected queries into the reference (critical section)
6. Scale, PCA and UMAP on the corrected matrix

A pair that cannot be aligned (too few cells, too few anchors) is
reported and its query sample excluded; the run continues.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ...exceptions import IntegrationPairError
from ..backend import ComputeBackend, SklearnBackend
from ..preprocessing.config import NormalizationConfig
from ..preprocessing.normalization import Normalizer, embed_umap
from .anchors import AnchorFinder, AnchorSet
from .config import IntegrationConfig
from .correction import compute_corrected
from .features import FeatureBlock, select_integration_features
from .metrics import batch_variance_explained

# Failures that exclude one pair instead of aborting the run
PAIR_ERRORS = (IntegrationPairError, np.linalg.LinAlgError, ValueError)


def unintegrated_embedding(
    samples: Dict[str, Any],
    features: Sequence[str],
    normalizer: Optional[Normalizer] = None,
    n_pcs: Optional[int] = None,
) -> np.ndarray:
    """PCA of the naively merged samples, without correction.

    Parameters
    ----------
    samples : Dict[str, AnnData]
        Log-normalized samples, stacked in iteration order.
    features : Sequence[str]
        Shared features (present in every sample).
    normalizer : Normalizer, optional
        Supplies the scaling and PCA settings.
    n_pcs : int, optional
        Components to keep.

    Returns
    -------
    np.ndarray
        Cells x components.
    """
    normalizer = normalizer or Normalizer()
    stacked = np.vstack(
        [FeatureBlock.from_adata(name, adata, features).matrix for name, adata in samples.items()]
    )
    embedding, _ = normalizer.reduce(stacked, n_pcs=n_pcs)
    return embedding


@dataclass
class IntegrationResult:
    """Result from integrating a set of samples.

    Attributes
    ----------
    adata : AnnData
        Integrated cells: ``X`` log-normalized common genes,
        ``layers["counts"]``, ``obsm["X_integrated"]`` (corrected
        features), ``obsm["X_pca"]``, ``obsm["X_pca_unintegrated"]``
        and optionally ``obsm["X_umap"]``
    features : List[str]
        Shared integration features
    anchors : Dict[Tuple[str, str], AnchorSet]
        (reference name, query sample) -> anchors used for correction
    excluded : Dict[str, str]
        Excluded sample id -> reason
    order : List[str]
        Integrated samples in fold order
    pair_records : List[Dict]
        One record per attempted pair
    metrics : Dict[str, float]
        Summary metrics (mean batch eta-squared before/after)
    elapsed_seconds : float
        Wall time
    """

    adata: Any = None
    features: List[str] = field(default_factory=list)
    anchors: Dict[Tuple[str, str], AnchorSet] = field(default_factory=dict)
    excluded: Dict[str, str] = field(default_factory=dict)
    order: List[str] = field(default_factory=list)
    pair_records: List[Dict[str, Any]] = field(default_factory=list)
    metrics: Dict[str, float] = field(default_factory=dict)
    elapsed_seconds: float = 0.0

    def pair_table(self) -> pd.DataFrame:
        """Per-pair outcomes."""
        return pd.DataFrame(
            self.pair_records,
            columns=["reference", "query", "n_candidates", "n_anchors", "status", "reason"],
        )

    def anchor_table(self) -> pd.DataFrame:
        """All anchors used, one row per anchor."""
        frames = [anchors.to_frame() for anchors in self.anchors.values()]
        if not frames:
            return pd.DataFrame(columns=["reference", "query", "reference_cell", "query_cell", "score"])
        return pd.concat(frames, ignore_index=True)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "n_cells": int(self.adata.n_obs) if self.adata is not None else 0,
            "n_features": len(self.features),
            "samples_integrated": list(self.order),
            "samples_excluded": dict(self.excluded),
            "n_anchors": {f"{r}->{q}": len(a) for (r, q), a in self.anchors.items()},
            "metrics": dict(self.metrics),
            "elapsed_seconds": round(self.elapsed_seconds, 2),
        }


class IntegrationEngine:
    """Anchor-based integration of per-sample count data.

    Parameters
    ----------
    config : IntegrationConfig, optional
        Integration configuration. If None, uses defaults.
    normalization : NormalizationConfig, optional
        Normalization/reduction configuration shared with Stage C.
    backend : ComputeBackend, optional
        Numerical backend (default: ``SklearnBackend``)
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from cellanchor.core.integration import IntegrationEngine, IntegrationConfig
    >>> engine = IntegrationEngine(IntegrationConfig(k_anchor=5, dims=30))
    >>> result = engine.integrate(qc_result.samples)
    >>> result.adata.obsm["X_pca"].shape
    """

    def __init__(
        self,
        config: Optional[IntegrationConfig] = None,
        normalization: Optional[NormalizationConfig] = None,
        backend: Optional[ComputeBackend] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or IntegrationConfig()
        self.config.validate()
        self.normalization = normalization or NormalizationConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.backend = backend or SklearnBackend(random_state=self.config.random_seed)
        self.normalizer = Normalizer(self.normalization, backend=self.backend, logger=self.logger)
        self.finder = AnchorFinder(self.config, backend=self.backend, logger=self.logger)
        self._lock = threading.Lock()

    def prepare(self, samples: Dict[str, Any]):
        """Normalize each sample and compute its variable-feature table.

        Returns
        -------
        Tuple[Dict[str, AnnData], Dict[str, pd.DataFrame]]
            (normalized samples, variable-feature tables)
        """
        normalized = {}
        tables = {}
        for sample_id, adata in samples.items():
            norm = self.normalizer.normalize(adata)
            tables[sample_id] = self.normalizer.variable_features(norm)
            normalized[sample_id] = norm
            self.logger.debug(
                "Sample %s: %d cells, %d variable features",
                sample_id,
                norm.n_obs,
                int(tables[sample_id]["highly_variable"].sum()),
            )
        return normalized, tables

    def _integration_order(self, blocks: Dict[str, FeatureBlock]) -> Tuple[List[str], List[str]]:
        by_size = sorted(blocks, key=lambda s: (-blocks[s].n_cells, s))
        reference = [s for s in self.config.reference if s in blocks]
        missing = [s for s in self.config.reference if s not in blocks]
        if missing:
            self.logger.warning("Reference sample(s) not available: %s", ", ".join(missing))
        if not reference:
            reference = by_size[:1]
        rest = [s for s in by_size if s not in reference]
        return reference, rest

    def align_pair(
        self, reference: FeatureBlock, query: FeatureBlock
    ) -> Tuple[AnchorSet, FeatureBlock]:
        """Find anchors and correct ``query`` toward ``reference``.

        Raises
        ------
        IntegrationPairError
            If fewer than ``min_anchors`` anchors pass scoring.
        """
        cfg = self.config
        anchors = self.finder.find_anchors(reference, query)
        if len(anchors) < cfg.min_anchors:
            raise IntegrationPairError(
                reference.name,
                query.name,
                n_anchors=len(anchors),
                n_candidates=anchors.n_candidates,
            )
        corrected = compute_corrected(
            reference, query, anchors, cfg.k_weight, cfg.sd_weight, self.backend
        )
        return anchors, FeatureBlock(query.name, query.cell_ids, corrected, list(query.members))

    def _record_failure(self, result: IntegrationResult, reference: str, query: str, error) -> None:
        n_anchors = getattr(error, "n_anchors", 0)
        self.logger.warning("Excluding sample %s: %s", query, error)
        result.excluded[query] = str(error)
        result.pair_records.append(
            {
                "reference": reference,
                "query": query,
                "n_candidates": getattr(error, "n_candidates", 0),
                "n_anchors": n_anchors,
                "status": "failed",
                "reason": getattr(error, "reason", str(error)),
            }
        )

    def _fold_in(
        self,
        running: List[FeatureBlock],
        reference_name: str,
        anchors: AnchorSet,
        corrected: FeatureBlock,
        result: IntegrationResult,
    ) -> None:
        with self._lock:
            running.append(corrected)
            result.anchors[(reference_name, corrected.name)] = anchors
            result.pair_records.append(
                {
                    "reference": reference_name,
                    "query": corrected.name,
                    "n_candidates": anchors.n_candidates,
                    "n_anchors": len(anchors),
                    "status": "integrated",
                    "reason": "",
                }
            )

    def _fold_sequential(
        self,
        running: List[FeatureBlock],
        queries: List[str],
        blocks: Dict[str, FeatureBlock],
        result: IntegrationResult,
    ) -> List[FeatureBlock]:
        """Fold each query, in order, into the growing reference."""
        running = list(running)
        for name in queries:
            reference = FeatureBlock.concat(running)
            try:
                anchors, corrected = self.align_pair(reference, blocks[name])
            except PAIR_ERRORS as e:
                self._record_failure(result, reference.name, name, e)
                continue
            self._fold_in(running, reference.name, anchors, corrected, result)
            self.logger.info(
                "Integrated %s into %s (%d anchors)", name, reference.name, len(anchors)
            )
        return running

    def _map_to_reference(
        self,
        running: List[FeatureBlock],
        queries: List[str],
        blocks: Dict[str, FeatureBlock],
        result: IntegrationResult,
    ) -> List[FeatureBlock]:
        """Align every query to one fixed reference in parallel, then reduce in order."""
        running = list(running)
        if not queries:
            return running
        reference = FeatureBlock.concat(running)
        outcomes: Dict[str, Tuple[AnchorSet, FeatureBlock]] = {}
        failures: Dict[str, Exception] = {}
        n_workers = max(1, min(self.config.n_workers, len(queries)))
        self.logger.info(
            "Mapping %d queries to %s with %d workers", len(queries), reference.name, n_workers
        )

        with ThreadPoolExecutor(max_workers=n_workers) as executor:
            futures = {
                executor.submit(self.align_pair, reference, blocks[name]): name
                for name in queries
            }
            for future in as_completed(futures):
                name = futures[future]
                try:
                    outcome = future.result()
                except PAIR_ERRORS as e:
                    with self._lock:
                        failures[name] = e
                    continue
                with self._lock:
                    outcomes[name] = outcome

        for name in queries:
            if name in failures:
                self._record_failure(result, reference.name, name, failures[name])
                continue
            anchors, corrected = outcomes[name]
            self._fold_in(running, reference.name, anchors, corrected, result)
        return running

    def integrate(self, samples: Dict[str, Any]) -> IntegrationResult:
        """Integrate QC-filtered samples into one corrected embedding.

        Parameters
        ----------
        samples : Dict[str, AnnData]
            Sample id -> raw counts of surviving cells (not modified).

        Returns
        -------
        IntegrationResult
            Integrated AnnData plus anchors, exclusions and metrics.

        Raises
        ------
        ValueError
            If no sample is usable or no shared features exist.
        """
        start = time.time()
        cfg = self.config
        result = IntegrationResult()

        usable = {}
        for sample_id, adata in samples.items():
            if adata.n_obs < cfg.min_cells:
                reason = f"{adata.n_obs} cells (minimum {cfg.min_cells})"
                self.logger.warning("Excluding sample %s before integration: %s", sample_id, reason)
                result.excluded[sample_id] = reason
                continue
            usable[sample_id] = adata
        if not usable:
            raise ValueError("No sample has enough cells to integrate")

        self.logger.info("Phase 1: Normalizing %d samples", len(usable))
        normalized, tables = self.prepare(usable)

        self.logger.info("Phase 2: Selecting integration features")
        features = select_integration_features(tables, cfg.n_features, cfg.feature_mode)
        if not features:
            raise ValueError("No integration features are shared by all samples")
        result.features = features
        blocks = {
            sample_id: FeatureBlock.from_adata(sample_id, normalized[sample_id], features)
            for sample_id in normalized
        }

        reference, queries = self._integration_order(blocks)
        self.logger.info(
            "Phase 3: Integrating %d samples (%s mode, reference=%s)",
            len(blocks),
            cfg.mode,
            ", ".join(reference),
        )
        running = self._fold_sequential([blocks[reference[0]]], reference[1:], blocks, result)
        if cfg.mode == "sequential":
            running = self._fold_sequential(running, queries, blocks, result)
        else:
            running = self._map_to_reference(running, queries, blocks, result)

        result.order = [m for block in running for m in block.members]
        self.logger.info("Phase 4: Reducing corrected matrix (%d samples)", len(result.order))
        result.adata = self._assemble(running, normalized, result)

        if cfg.compute_metrics and len(result.order) > 1:
            batches = result.adata.obs["sample_id"].astype(str).to_numpy()
            before = batch_variance_explained(result.adata.obsm["X_pca_unintegrated"], batches)
            after = batch_variance_explained(result.adata.obsm["X_pca"], batches)
            result.metrics["batch_eta2_before"] = float(before["eta2_batch"].mean())
            result.metrics["batch_eta2_after"] = float(after["eta2_batch"].mean())
            self.logger.info(
                "Mean batch eta2 across components: %.3f before, %.3f after",
                result.metrics["batch_eta2_before"],
                result.metrics["batch_eta2_after"],
            )

        result.elapsed_seconds = time.time() - start
        self.logger.info(
            "Integration complete: %d cells from %d samples, %d excluded (%.1fs)",
            result.adata.n_obs,
            len(result.order),
            len(result.excluded),
            result.elapsed_seconds,
        )
        return result

    def _assemble(
        self,
        running: List[FeatureBlock],
        normalized: Dict[str, Any],
        result: IntegrationResult,
    ):
        import anndata as ad

        order = result.order
        merged = ad.concat([normalized[name] for name in order], join="inner", merge="same")
        if not merged.obs_names.is_unique:
            raise ValueError("Cell identifiers are not unique across samples")
        merged.obs["sample_id"] = np.repeat(
            np.asarray(order, dtype=object), [normalized[name].n_obs for name in order]
        )

        corrected = FeatureBlock.concat(running)
        if not np.array_equal(merged.obs_names.to_numpy(), corrected.cell_ids.to_numpy()):
            raise RuntimeError("Integrated cell order does not match the merged samples")

        merged.obsm["X_integrated"] = corrected.matrix
        embedding, ratio = self.normalizer.reduce(corrected.matrix)
        merged.obsm["X_pca"] = embedding
        merged.uns["pca"] = {"variance_ratio": ratio}
        merged.obsm["X_pca_unintegrated"] = unintegrated_embedding(
            {name: normalized[name] for name in order},
            result.features,
            self.normalizer,
            n_pcs=embedding.shape[1],
        )
        merged.uns["integration"] = {
            "features": list(result.features),
            "mode": self.config.mode,
            "order": list(order),
            "excluded": dict(result.excluded),
        }
        if self.normalization.compute_umap:
            embed_umap(merged, self.normalization)
        return merged
