"""Delimited table export.

Every table is plain text with a header row and one row per record
(tab-delimited unless another separator is given).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional, Union

import pandas as pd

PathLike = Union[str, Path]

logger = logging.getLogger(__name__)


def ensure_output_dir(path: PathLike) -> Path:
    """Create ``path`` (and parents) if needed and return it."""
    output_dir = Path(path)
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


def write_table(
    df: pd.DataFrame,
    path: PathLike,
    *,
    sep: str = "\t",
    index: bool = False,
) -> Path:
    """Write DataFrame to path ensuring the parent directory exists.

    Parameters
    ----------
    df : pd.DataFrame
        DataFrame to write.
    path : PathLike
        Output path.
    sep : str
        Field delimiter (default: tab).
    index : bool
        Whether to write row index (default: False).

    Returns
    -------
    Path
        The output path.
    """
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(output_path, sep=sep, index=index, na_rep="")
    logger.debug("Wrote %d rows to %s", len(df), output_path)
    return output_path


def read_table(path: PathLike, *, sep: Optional[str] = None, **kwargs) -> pd.DataFrame:
    """Read a delimited table, inferring the delimiter from the suffix.

    ``.csv`` is comma-delimited; anything else defaults to tab.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Table not found: {path}")
    if sep is None:
        sep = "," if path.suffix.lower() == ".csv" else "\t"
    return pd.read_csv(path, sep=sep, **kwargs)


def cell_label_table(
    adata,
    labels: pd.DataFrame,
    cluster_key: Optional[str] = None,
) -> pd.DataFrame:
    """Per-cell table: ``cell_id``, ``sample_id``, ``cluster`` and one column per method.

    Parameters
    ----------
    adata : AnnData
        Cells in output order.
    labels : pd.DataFrame
        Cells x methods (index must match ``adata.obs_names``).
    cluster_key : str, optional
        Cluster column in ``adata.obs``.
    """
    table = pd.DataFrame({"cell_id": adata.obs_names.astype(str)})
    obs = adata.obs
    table["sample_id"] = (
        obs["sample_id"].astype(str).to_numpy() if "sample_id" in obs else ""
    )
    table["cluster"] = (
        obs[cluster_key].astype(str).to_numpy()
        if cluster_key is not None and cluster_key in obs
        else ""
    )
    aligned = labels.reindex(adata.obs_names)
    for method in aligned.columns:
        table[method] = aligned[method].to_numpy()
    return table


def write_tables(
    tables: Dict[str, pd.DataFrame],
    output_dir: PathLike,
    *,
    sep: str = "\t",
    suffix: str = ".tsv",
) -> Dict[str, Path]:
    """Write several named tables into ``output_dir``.

    Returns
    -------
    Dict[str, Path]
        Table name -> written path.
    """
    output_dir = ensure_output_dir(output_dir)
    written = {}
    for name, df in tables.items():
        written[name] = write_table(df, output_dir / f"{name}{suffix}", sep=sep)
    logger.info("Exported %d tables to %s", len(written), output_dir)
    return written
