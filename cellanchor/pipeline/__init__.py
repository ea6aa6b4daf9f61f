"""Pipeline orchestration module.

Provides in-memory stage execution with dependency resolution and the
end-to-end analysis workflow.

Example Usage
-------------
>>> from cellanchor.pipeline import AnalysisWorkflow, PipelineLogger
>>> logger = PipelineLogger("logs/").setup()
>>> result = AnalysisWorkflow(logger=logger).run("counts.h5ad", output_dir="out/")
"""

__version__ = "1.0.0"

from .logger import ColoredFormatter, PipelineLogger
from .executor import InMemoryExecutor
from .workflow import STAGES, AnalysisWorkflow, WorkflowResult

__all__ = [
    "__version__",
    "ColoredFormatter",
    "PipelineLogger",
    "InMemoryExecutor",
    "STAGES",
    "AnalysisWorkflow",
    "WorkflowResult",
]
