"""Loaders for read-only annotation reference data.

- Marker tree: JSON, label -> {"markers", "anti_markers", "subtypes"/"children"}
- Reference profiles: delimited table, genes (rows) x labels (columns)
- Marker knowledge base: delimited table with ``label``, ``gene`` and
  optional ``weight`` columns
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import pandas as pd

from .tables import read_table

PathLike = Union[str, Path]

logger = logging.getLogger(__name__)

KNOWLEDGE_BASE_COLUMNS = ["label", "gene", "weight"]


def load_marker_tree(path: PathLike) -> Dict[str, Any]:
    """Load a hierarchical marker tree from JSON.

    Keys starting with ``_`` are treated as metadata and kept as-is.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ValueError
        If a top-level node is not an object.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Marker tree not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        tree = json.load(f)
    if not isinstance(tree, dict):
        raise ValueError(f"Marker tree must be a JSON object: {path}")

    bad = [k for k, v in tree.items() if not k.startswith("_") and not isinstance(v, dict)]
    if bad:
        raise ValueError(f"Marker tree nodes must be objects: {bad}")
    logger.info(
        "Loaded marker tree from %s (%d roots)",
        path,
        sum(1 for k in tree if not k.startswith("_")),
    )
    return tree


def load_reference_profiles(path: PathLike, sep: Optional[str] = None) -> pd.DataFrame:
    """Load reference centroids as genes x labels.

    The first column holds gene names. Duplicate genes are averaged.

    Raises
    ------
    ValueError
        If the table has no label columns or non-numeric values.
    """
    df = read_table(path, sep=sep, index_col=0)
    if df.shape[1] == 0:
        raise ValueError(f"Reference profile table has no label columns: {path}")
    try:
        df = df.apply(pd.to_numeric, errors="raise")
    except (TypeError, ValueError) as e:
        raise ValueError(f"Reference profiles must be numeric: {path}") from e
    df.index = df.index.astype(str)
    df.columns = df.columns.astype(str)
    if not df.index.is_unique:
        n_dup = int(df.index.duplicated().sum())
        logger.warning("Averaging %d duplicated genes in %s", n_dup, path)
        df = df.groupby(level=0, sort=False).mean()
    logger.info("Loaded reference profiles: %d genes x %d labels", df.shape[0], df.shape[1])
    return df


def load_marker_knowledge_base(path: PathLike, sep: Optional[str] = None) -> pd.DataFrame:
    """Load a marker knowledge base (one row per label/gene association).

    A missing ``weight`` column means weight 1. Rows with empty label or
    gene are dropped; repeated (label, gene) pairs keep the largest weight.

    Raises
    ------
    ValueError
        If ``label`` or ``gene`` columns are missing or weights are negative.
    """
    df = read_table(path, sep=sep)
    df.columns = [str(c).strip().lower() for c in df.columns]
    missing = [c for c in ("label", "gene") if c not in df.columns]
    if missing:
        raise ValueError(f"Marker knowledge base missing columns {missing}: {path}")
    if "weight" not in df.columns:
        df["weight"] = 1.0

    df = df[KNOWLEDGE_BASE_COLUMNS].dropna(subset=["label", "gene"]).copy()
    df["label"] = df["label"].astype(str).str.strip()
    df["gene"] = df["gene"].astype(str).str.strip()
    df["weight"] = pd.to_numeric(df["weight"], errors="coerce").fillna(1.0)
    df = df[(df["label"] != "") & (df["gene"] != "")]
    if (df["weight"] < 0).any():
        raise ValueError(f"Marker knowledge base weights must be non-negative: {path}")

    df = (
        df.sort_values("weight", ascending=False, kind="mergesort")
        .drop_duplicates(subset=["label", "gene"])
        .sort_values(["label", "gene"], kind="mergesort")
        .reset_index(drop=True)
    )
    logger.info(
        "Loaded marker knowledge base: %d entries, %d labels, %d genes",
        len(df),
        df["label"].nunique(),
        df["gene"].nunique(),
    )
    return df


def marker_tree_from_knowledge_base(kb: pd.DataFrame) -> Dict[str, Any]:
    """Flat marker tree (one root per label) from a knowledge base."""
    tree: Dict[str, Any] = {}
    for label, group in kb.groupby("label", sort=True):
        tree[str(label)] = {"markers": group["gene"].astype(str).tolist()}
    return tree

