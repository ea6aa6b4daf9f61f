"""Logging utilities for cellanchor.

Provides timestamped log paths and structured log output (JSON, YAML).
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

import numpy as np
import yaml

PathLike = Union[str, Path]


def get_timestamped_log_path(log_path: PathLike) -> Path:
    """Generate a timestamped log path from the base log path.

    Example: integrate.log -> integrate_20261017_080530.log
    """
    log_path = Path(log_path)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    suffix = log_path.suffix or ".log"
    return log_path.parent / f"{log_path.stem}_{timestamp}{suffix}"


def _to_builtin(value: Any) -> Any:
    """Convert numpy scalars and arrays (also nested) to plain Python values."""
    if isinstance(value, dict):
        return {str(k): _to_builtin(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_builtin(v) for v in value]
    if isinstance(value, np.ndarray):
        return _to_builtin(value.tolist())
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, Path):
        return str(value)
    return value


def _prepare_log_destination(log_path: PathLike) -> Path:
    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def log_json(log_path: PathLike, record: dict[str, Any]) -> None:
    """Append a JSON line to log_path."""
    path = _prepare_log_destination(log_path)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(record, default=str))
        handle.write("\n")


def log_yaml(
    log_path: Optional[PathLike],
    record: dict[str, Any],
    *,
    logger: logging.Logger | None = None,
) -> None:
    """Append a YAML document to log_path.

    Parameters
    ----------
    log_path : PathLike
        Path to log file.
    record : dict
        Dictionary to serialize as YAML; numpy values are converted.
    logger : logging.Logger, optional
        If provided, log to this logger instead of file.
    """
    yaml_text = yaml.safe_dump(_to_builtin(record), sort_keys=False).rstrip("\n")
    message = f"{yaml_text}\n---"
    if logger is not None:
        logger.info("%s", message)
        return

    path = _prepare_log_destination(log_path)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(message)
        handle.write("\n")
