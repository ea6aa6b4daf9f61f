"""Exception types raised across the cellanchor pipeline.

Only ``IdentifierError`` is fatal for a run. The other errors are raised at
the point of failure and caught by the engine that owns the recovery
decision (QC per sample, integration per sample pair, annotation per
strategy).
"""

from typing import Iterable, Optional


class CellAnchorError(Exception):
    """Base class for cellanchor errors."""

    pass


class IdentifierError(CellAnchorError, ValueError):
    """Raised when composite cell identifiers cannot be split.

    Parameters
    ----------
    bad_ids : Iterable[str]
        Identifiers that failed to split.
    delimiter : str
        Delimiter that was expected between patient and barcode.
    """

    def __init__(self, bad_ids: Iterable[str], delimiter: str):
        self.bad_ids = list(bad_ids)
        self.delimiter = delimiter
        preview = ", ".join(repr(i) for i in self.bad_ids[:5])
        more = f" (+{len(self.bad_ids) - 5} more)" if len(self.bad_ids) > 5 else ""
        super().__init__(
            f"{len(self.bad_ids)} cell identifier(s) cannot be split into "
            f"patient and barcode on {delimiter!r}: {preview}{more}"
        )


class EmptySampleError(CellAnchorError):
    """Raised when a sample has no cells left to process."""

    def __init__(self, sample_id: str, stage: str = "qc"):
        self.sample_id = sample_id
        self.stage = stage
        super().__init__(f"Sample '{sample_id}' has no cells after {stage}")


class IntegrationPairError(CellAnchorError):
    """Raised when two datasets cannot be aligned.

    Parameters
    ----------
    reference : str
        Reference dataset name.
    query : str
        Query dataset name.
    n_anchors : int
        Number of anchors that passed scoring.
    n_candidates : int
        Mutual nearest-neighbor pairs found before scoring.
    reason : str, optional
        Human-readable failure reason.
    """

    def __init__(
        self,
        reference: str,
        query: str,
        n_anchors: int = 0,
        reason: Optional[str] = None,
        n_candidates: int = 0,
    ):
        self.reference = reference
        self.query = query
        self.n_anchors = n_anchors
        self.n_candidates = n_candidates
        self.reason = reason or f"only {n_anchors} anchor(s) passed scoring"
        super().__init__(
            f"Integration of '{query}' into '{reference}' failed: {self.reason}"
        )


class AnnotationStrategyError(CellAnchorError):
    """Raised when an annotation strategy cannot produce labels."""

    def __init__(self, method: str, reason: str):
        self.method = method
        self.reason = reason
        super().__init__(f"Annotation method '{method}' failed: {reason}")
