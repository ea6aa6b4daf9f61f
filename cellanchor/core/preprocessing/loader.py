"""Dataset loader for the analysis pipeline (Stage A).

Reads a cell x gene count matrix with per-cell metadata, derives the
patient and sample grouping from composite cell identifiers, and splits
the dataset into per-sample objects. Malformed identifiers are fatal.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

import numpy as np
import pandas as pd
from scipy import sparse

from ...exceptions import IdentifierError
from .config import LoaderConfig

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

TABLE_SUFFIXES = {".csv": ",", ".tsv": "\t", ".txt": "\t"}


def split_composite_ids(ids: Iterable[str], delimiter: str = "_") -> pd.DataFrame:
    """Split composite ``PATIENT<delim>BARCODE`` identifiers.

    The split happens on the first delimiter, so barcodes may themselves
    contain the delimiter.

    Parameters
    ----------
    ids : Iterable[str]
        Composite cell identifiers.
    delimiter : str
        Separator between patient and barcode.

    Returns
    -------
    pd.DataFrame
        Indexed by identifier, with ``patient_id`` and ``barcode`` columns.

    Raises
    ------
    IdentifierError
        If any identifier lacks the delimiter or has an empty part.
    """
    ids = [str(i) for i in ids]
    records = []
    bad = []
    for cell_id in ids:
        patient, sep, barcode = cell_id.partition(delimiter)
        if not sep or not patient or not barcode:
            bad.append(cell_id)
            continue
        records.append((patient, barcode))
    if bad:
        raise IdentifierError(bad, delimiter)
    return pd.DataFrame(records, index=pd.Index(ids), columns=["patient_id", "barcode"])


@dataclass
class LoadResult:
    """Result from loading a dataset.

    Attributes
    ----------
    adata : AnnData
        Loaded dataset with sparse raw counts in ``X``
    n_cells : int
        Number of cells
    n_genes : int
        Number of genes
    sample_counts : Dict[str, int]
        Cells per sample
    source : str
        Path the dataset was read from
    """

    adata: Any
    n_cells: int = 0
    n_genes: int = 0
    sample_counts: Dict[str, int] = field(default_factory=dict)
    source: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "source": self.source,
            "n_cells": self.n_cells,
            "n_genes": self.n_genes,
            "n_samples": len(self.sample_counts),
            "sample_counts": dict(self.sample_counts),
        }


class DataLoader:
    """Dataset loader with identifier validation.

    Parameters
    ----------
    config : LoaderConfig
        Loader configuration

    Example
    -------
    >>> from cellanchor.core.preprocessing import DataLoader, LoaderConfig
    >>> loader = DataLoader(LoaderConfig(id_delimiter="_"))
    >>> result = loader.load("dataset.h5ad")
    >>> samples = loader.split_samples(result.adata)
    """

    def __init__(
        self,
        config: Optional[LoaderConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or LoaderConfig()
        self.config.validate()
        self.logger = logger or logging.getLogger(__name__)

    def _read_table(self, path: Path) -> pd.DataFrame:
        sep = TABLE_SUFFIXES.get(path.suffix.lower(), self.config.sep)
        df = pd.read_csv(path, sep=sep)
        if df.empty:
            raise ValueError(f"Table {path} is empty")
        id_col = self.config.cell_id_col
        if id_col not in df.columns:
            id_col = df.columns[0]
            self.logger.debug("Column '%s' not in %s, using '%s'", self.config.cell_id_col, path, id_col)
        df[id_col] = df[id_col].astype(str)
        return df.set_index(id_col)

    def _read_counts_table(self, path: Path, metadata_path: Optional[Path]):
        import anndata as ad

        counts = self._read_table(path)
        matrix = sparse.csr_matrix(counts.to_numpy(dtype=np.float32))
        obs = pd.DataFrame(index=counts.index.copy())
        if metadata_path is not None:
            meta = self._read_table(metadata_path)
            missing = obs.index.difference(meta.index)
            if len(missing) > 0:
                raise ValueError(
                    f"{len(missing)} cell(s) in {path} have no metadata row in {metadata_path}"
                )
            obs = meta.loc[obs.index].copy()
        var = pd.DataFrame(index=pd.Index(counts.columns.astype(str)))
        return ad.AnnData(X=matrix, obs=obs, var=var)

    def load(
        self,
        path: PathLike,
        metadata_path: Optional[PathLike] = None,
    ) -> LoadResult:
        """Load a dataset and attach patient/sample identifiers.

        Parameters
        ----------
        path : PathLike
            ``.h5ad`` file or delimited counts table (cells as rows, first
            column holds the cell identifier).
        metadata_path : PathLike, optional
            Delimited per-cell metadata table (counts tables only).

        Returns
        -------
        LoadResult
            Loaded dataset and summary.

        Raises
        ------
        FileNotFoundError
            If an input file does not exist.
        IdentifierError
            If composite identifiers cannot be split.
        ValueError
            If counts are negative or identifiers are duplicated.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Dataset not found: {path}")
        meta_path = Path(metadata_path) if metadata_path is not None else None
        if meta_path is not None and not meta_path.exists():
            raise FileNotFoundError(f"Metadata table not found: {meta_path}")

        if path.suffix.lower() == ".h5ad":
            import anndata as ad

            adata = ad.read_h5ad(path)
        else:
            adata = self._read_counts_table(path, meta_path)

        adata = self.prepare(adata)
        sample_counts = adata.obs["sample_id"].value_counts().sort_index()
        self.logger.info(
            "Loaded %d cells x %d genes from %s (%d samples)",
            adata.n_obs,
            adata.n_vars,
            path,
            len(sample_counts),
        )
        return LoadResult(
            adata=adata,
            n_cells=adata.n_obs,
            n_genes=adata.n_vars,
            sample_counts={str(k): int(v) for k, v in sample_counts.items()},
            source=str(path),
        )

    def prepare(self, adata):
        """Validate an in-memory dataset and derive identifier columns.

        Returns a new AnnData with CSR counts, unique gene names and
        ``patient_id``, ``barcode`` and ``sample_id`` columns.
        """
        adata = adata.copy()
        adata.obs_names = adata.obs_names.astype(str)
        if not adata.obs_names.is_unique:
            dupes = adata.obs_names[adata.obs_names.duplicated()].unique().tolist()
            raise ValueError(f"Duplicate cell identifiers: {dupes[:5]}")

        if sparse.issparse(adata.X):
            adata.X = sparse.csr_matrix(adata.X)
        else:
            adata.X = sparse.csr_matrix(np.asarray(adata.X))
        if adata.X.nnz and adata.X.data.min() < 0:
            raise ValueError("Count matrix contains negative values")
        adata.var_names_make_unique()

        parts = split_composite_ids(adata.obs_names, self.config.id_delimiter)
        adata.obs["patient_id"] = parts["patient_id"].to_numpy()
        adata.obs["barcode"] = parts["barcode"].to_numpy()

        sample_col = self.config.sample_id_col
        if sample_col in adata.obs.columns:
            samples = adata.obs[sample_col]
            if samples.isna().any():
                raise ValueError(
                    f"{int(samples.isna().sum())} cell(s) have no value in '{sample_col}'"
                )
            adata.obs["sample_id"] = samples.astype(str).to_numpy()
        else:
            adata.obs["sample_id"] = adata.obs["patient_id"].to_numpy()

        for col in self.config.clinical_cols:
            if col not in adata.obs.columns:
                self.logger.debug("Clinical column '%s' not present", col)
        return adata

    def split_samples(self, adata, sample_col: str = "sample_id"):
        """Split a dataset into per-sample AnnData copies.

        Parameters
        ----------
        adata : AnnData
            Dataset with a sample column.
        sample_col : str
            Column holding the sample identifier.

        Returns
        -------
        Dict[str, AnnData]
            Sample id -> AnnData, ordered by sample id.
        """
        if sample_col not in adata.obs.columns:
            raise KeyError(f"Column '{sample_col}' not found in adata.obs")
        samples = {}
        labels = adata.obs[sample_col].astype(str)
        for sample_id in sorted(labels.unique()):
            samples[sample_id] = adata[(labels == sample_id).to_numpy()].copy()
        return samples
