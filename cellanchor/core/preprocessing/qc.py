"""Cell-level quality control (Stage B).

Computes per-cell QC metrics with scanpy and removes cells outside
fixed, configurable thresholds. Removed cells never re-enter the pipeline;
a sample left with no cells is excluded from all downstream stages.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import anndata as ad
import numpy as np
import pandas as pd
from scipy import sparse

from ...exceptions import EmptySampleError
from .config import QCConfig

logger = logging.getLogger(__name__)


# Reason columns for tracking removal causes
REASON_COLUMNS = [
    "low_genes",
    "high_genes",
    "high_mito",
    "high_ribo",
]

QC_METRIC_COLUMNS = ["genes_detected", "total_counts", "mito_percent", "ribo_percent"]


def _gene_mask(var_names: pd.Index, pattern: str, case_sensitive: bool) -> np.ndarray:
    names = pd.Series(var_names.astype(str))
    return names.str.contains(pattern, case=case_sensitive, regex=True).to_numpy()


def compute_qc_metrics(adata, config: Optional[QCConfig] = None) -> pd.DataFrame:
    """Compute per-cell QC metrics from raw counts.

    Wraps ``sc.pp.calculate_qc_metrics`` with the mitochondrial and
    ribosomal gene sets as QC variables.

    Parameters
    ----------
    adata : AnnData
        Cells x genes raw counts in ``X`` (sparse or dense).
    config : QCConfig, optional
        Provides the mitochondrial and ribosomal gene patterns.

    Returns
    -------
    pd.DataFrame
        Indexed by cell, with ``genes_detected``, ``total_counts``,
        ``mito_percent`` and ``ribo_percent``. Cells with zero total counts
        get 0 percentages.
    """
    try:
        import scanpy as sc
    except ImportError as e:
        raise RuntimeError(
            "scanpy is required for QC metrics. Install with: pip install scanpy"
        ) from e

    config = config or QCConfig()
    if adata.n_obs == 0:
        return pd.DataFrame(
            {col: pd.Series(dtype=int if col == "genes_detected" else float)
             for col in QC_METRIC_COLUMNS},
            index=adata.obs_names.copy(),
        )
    counts = sparse.csr_matrix(adata.X, dtype=np.float64, copy=True)
    # Stored zeros would count as detected genes
    counts.eliminate_zeros()
    var = pd.DataFrame(
        {
            "mito": _gene_mask(adata.var_names, config.mito_pattern, config.case_sensitive),
            "ribo": _gene_mask(adata.var_names, config.ribo_pattern, config.case_sensitive),
        },
        index=adata.var_names.copy(),
    )
    work = ad.AnnData(counts, obs=pd.DataFrame(index=adata.obs_names.copy()), var=var)
    obs_metrics, _ = sc.pp.calculate_qc_metrics(
        work, qc_vars=["mito", "ribo"], percent_top=None, log1p=False, inplace=False
    )

    return pd.DataFrame(
        {
            "genes_detected": obs_metrics["n_genes_by_counts"].to_numpy().astype(int),
            "total_counts": obs_metrics["total_counts"].to_numpy(dtype=float),
            "mito_percent": np.nan_to_num(obs_metrics["pct_counts_mito"].to_numpy(dtype=float)),
            "ribo_percent": np.nan_to_num(obs_metrics["pct_counts_ribo"].to_numpy(dtype=float)),
        },
        index=adata.obs_names.copy(),
    )


@dataclass
class QCResult:
    """Result from QC filtering a single sample.

    Attributes
    ----------
    sample_id : str
        Sample identifier
    cells_total : int
        Total cells before filtering
    cells_removed : int
        Number of cells removed
    removal_fraction : float
        Fraction of cells removed
    reason_counts : Dict[str, int]
        Counts per removal reason
    metrics : pd.DataFrame
        Per-cell QC metrics for all input cells
    filtered : AnnData
        Retained cells with QC metrics in ``obs``
    removal_records : List[Dict]
        Details of removed cells
    """

    sample_id: str
    cells_total: int = 0
    cells_removed: int = 0
    removal_fraction: float = 0.0
    reason_counts: Dict[str, int] = field(default_factory=dict)
    metrics: Optional[pd.DataFrame] = None
    filtered: Any = None
    removal_records: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def cells_retained(self) -> int:
        return self.cells_total - self.cells_removed

    def survivors(self):
        """Retained cells; raises EmptySampleError if none passed."""
        if self.cells_retained == 0:
            raise EmptySampleError(self.sample_id, stage="qc")
        return self.filtered

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        result = {
            "sample_id": self.sample_id,
            "cells_total": self.cells_total,
            "cells_removed": self.cells_removed,
            "cells_retained": self.cells_retained,
            "removal_fraction": round(self.removal_fraction, 4),
        }
        for reason in REASON_COLUMNS:
            result[f"removed_{reason}"] = self.reason_counts.get(reason, 0)
        return result


@dataclass
class SampleQCResult:
    """Result from QC filtering a set of samples.

    Attributes
    ----------
    samples : Dict[str, AnnData]
        Surviving samples (at least one retained cell)
    results : Dict[str, QCResult]
        Per-sample QC results, including excluded samples
    excluded : Dict[str, str]
        Excluded sample id -> reason
    """

    samples: Dict[str, Any] = field(default_factory=dict)
    results: Dict[str, QCResult] = field(default_factory=dict)
    excluded: Dict[str, str] = field(default_factory=dict)

    def summary(self) -> pd.DataFrame:
        """Per-sample QC summary table."""
        rows = []
        for sample_id, result in self.results.items():
            row = result.to_dict()
            row["excluded"] = sample_id in self.excluded
            rows.append(row)
        return pd.DataFrame(rows)

    def removal_table(self) -> pd.DataFrame:
        """One row per removed cell with its joined reasons."""
        records = [r for res in self.results.values() for r in res.removal_records]
        return pd.DataFrame(records, columns=["sample_id", "cell_id", "reasons"])


class CellQC:
    """Cell-level quality control filter.

    Parameters
    ----------
    config : QCConfig
        QC configuration

    Example
    -------
    >>> from cellanchor.core.preprocessing import CellQC, QCConfig
    >>> qc = CellQC(QCConfig(min_genes=200))
    >>> result = qc.filter_cells(adata, "sample_01")
    >>> result.filtered.n_obs
    """

    def __init__(
        self,
        config: Optional[QCConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or QCConfig()
        self.config.validate()
        self.logger = logger or logging.getLogger(__name__)

    def flag_cells(self, metrics: pd.DataFrame) -> pd.DataFrame:
        """Build boolean removal-reason flags from QC metrics."""
        cfg = self.config
        reasons = pd.DataFrame(index=metrics.index)
        reasons["low_genes"] = metrics["genes_detected"] <= cfg.min_genes
        reasons["high_genes"] = metrics["genes_detected"] >= cfg.max_genes
        reasons["high_mito"] = metrics["mito_percent"] >= cfg.max_mito_percent
        reasons["high_ribo"] = metrics["ribo_percent"] >= cfg.max_ribo_percent
        return reasons

    def filter_cells(self, adata, sample_id: Optional[str] = None) -> QCResult:
        """Filter cells of one sample.

        Parameters
        ----------
        adata : AnnData
            Raw counts for one sample (not modified).
        sample_id : str, optional
            Sample identifier for reporting. Defaults to the first value
            of ``obs["sample_id"]`` when present.

        Returns
        -------
        QCResult
            Filtering result; ``filtered`` holds a new AnnData with the
            retained cells and their QC metrics in ``obs``.
        """
        if sample_id is None:
            if "sample_id" in adata.obs.columns and adata.n_obs > 0:
                sample_id = str(adata.obs["sample_id"].iloc[0])
            else:
                sample_id = "sample"

        result = QCResult(sample_id=sample_id)
        metrics = compute_qc_metrics(adata, self.config)
        reasons = self.flag_cells(metrics)
        flagged = reasons.any(axis=1)

        result.metrics = metrics
        result.cells_total = int(len(metrics))
        result.cells_removed = int(flagged.sum())
        result.removal_fraction = (
            result.cells_removed / result.cells_total if result.cells_total > 0 else 0.0
        )

        for cell_id, row_values in reasons.loc[flagged].iterrows():
            cell_reasons = [name for name in REASON_COLUMNS if bool(row_values[name])]
            result.removal_records.append(
                {
                    "sample_id": sample_id,
                    "cell_id": cell_id,
                    "reasons": ";".join(sorted(cell_reasons)),
                }
            )
            for reason in cell_reasons:
                result.reason_counts[reason] = result.reason_counts.get(reason, 0) + 1

        keep = (~flagged).to_numpy()
        filtered = adata[keep].copy()
        for col in QC_METRIC_COLUMNS:
            filtered.obs[col] = metrics.loc[keep, col].to_numpy()
        result.filtered = filtered

        self.logger.info(
            "QC %s: %d/%d cells retained (%.1f%% removed)",
            sample_id,
            result.cells_retained,
            result.cells_total,
            100.0 * result.removal_fraction,
        )
        return result

    def filter_samples(self, samples: Dict[str, Any]) -> SampleQCResult:
        """Filter every sample, excluding samples with zero survivors.

        Parameters
        ----------
        samples : Dict[str, AnnData]
            Sample id -> raw counts.

        Returns
        -------
        SampleQCResult
            Surviving samples and per-sample results.
        """
        outcome = SampleQCResult()
        for sample_id, adata in samples.items():
            result = self.filter_cells(adata, sample_id)
            outcome.results[sample_id] = result
            try:
                outcome.samples[sample_id] = result.survivors()
            except EmptySampleError as e:
                reason = f"{e} ({result.cells_total} input cells)"
                self.logger.warning("Excluding sample %s: %s", sample_id, reason)
                outcome.excluded[sample_id] = reason

        self.logger.info(
            "QC complete: %d samples kept, %d excluded",
            len(outcome.samples),
            len(outcome.excluded),
        )
        return outcome
