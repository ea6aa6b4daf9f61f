"""End-to-end analysis workflow.

Stages run in memory, each receiving the results of the previous ones:

    load -> qc -> integrate -> cluster -> de -> annotate -> export

An already integrated ``.h5ad`` can enter at clustering through
``AnalysisWorkflow.annotate_dataset``.

Every stage returns a new object; inputs are never modified.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import pandas as pd

from ..config import AnalysisConfig
from ..core.annotation import AnnotationContext, AnnotationEnsemble, build_strategies
from ..core.clustering import ClusteringEngine, DERunner
from ..core.integration import IntegrationEngine
from ..core.preprocessing import CellQC, DataLoader
from ..io.logging import log_json, log_yaml
from ..io.tables import cell_label_table, write_tables
from .executor import InMemoryExecutor
from .logger import PipelineLogger

PathLike = Union[str, Path]

STAGES = ["load", "qc", "integrate", "cluster", "de", "annotate", "export"]
STAGE_NAMES = {
    "load": "Dataset loading",
    "qc": "Cell quality control",
    "integrate": "Anchor-based integration",
    "cluster": "Leiden clustering",
    "de": "Differential expression",
    "annotate": "Annotator ensemble",
    "export": "Table export",
    "read": "Integrated dataset loading",
}
ANNOTATION_STAGES = ["read", "cluster", "de", "annotate", "export"]


@dataclass
class WorkflowResult:
    """Results of an analysis run (None for stages not run).

    Attributes
    ----------
    load : LoadResult
    qc : SampleQCResult
    integration : IntegrationResult
    clustering : ClusteringResult
    de : DEResult
    annotation : EnsembleResult
    adata : AnnData
        Integrated, clustered cells with one label column per method
    exports : Dict[str, Path]
        Written table name -> path
    """

    load: Any = None
    qc: Any = None
    integration: Any = None
    clustering: Any = None
    de: Any = None
    annotation: Any = None
    adata: Any = None
    exports: Dict[str, Path] = field(default_factory=dict)

    def summary(self) -> Dict[str, Any]:
        """Per-stage summaries."""
        out: Dict[str, Any] = {}
        if self.load is not None:
            out["load"] = self.load.to_dict()
        if self.qc is not None:
            out["qc"] = {
                "samples_kept": sorted(self.qc.samples),
                "samples_excluded": dict(self.qc.excluded),
            }
        for name in ("integration", "clustering", "annotation"):
            stage = getattr(self, name)
            if stage is not None:
                out[name] = stage.to_dict()
        if self.de is not None:
            out["de"] = {
                "method": self.de.method,
                "n_markers": {k: len(v) for k, v in self.de.cluster_de_genes.items()},
            }
        return out


class AnalysisWorkflow:
    """Registers and runs the analysis stages.

    Parameters
    ----------
    config : AnalysisConfig, optional
        Master configuration. If None, uses defaults.
    logger : PipelineLogger, optional
        Stage logger. If None, logs through the ``cellanchor`` logger only.

    Example
    -------
    >>> workflow = AnalysisWorkflow(AnalysisConfig.from_yaml("analysis.yaml"))
    >>> result = workflow.run("counts.h5ad", output_dir="out/")
    >>> result.annotation.agreement()
    """

    def __init__(
        self,
        config: Optional[AnalysisConfig] = None,
        logger: Optional[PipelineLogger] = None,
    ):
        self.config = config or AnalysisConfig.default()
        self.config.validate()
        self.pipeline_logger = logger
        self.logger = logger.logger if logger is not None else logging.getLogger("cellanchor")

    # Stage functions -----------------------------------------------------

    def _load(self, path, metadata_path=None, stage_results=None, **_):
        loader = DataLoader(self.config.loader, logger=self.logger)
        return loader.load(path, metadata_path)

    def _qc(self, stage_results, **_):
        loader = DataLoader(self.config.loader, logger=self.logger)
        samples = loader.split_samples(stage_results["load"].adata)
        return CellQC(self.config.qc, logger=self.logger).filter_samples(samples)

    def _integrate(self, stage_results, **_):
        engine = IntegrationEngine(
            self.config.integration, self.config.normalization, logger=self.logger
        )
        return engine.integrate(stage_results["qc"].samples)

    def _read(self, path, stage_results=None, **_):
        import anndata as ad

        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Integrated dataset not found: {path}")
        adata = ad.read_h5ad(path)
        use_rep = self.config.clustering.use_rep
        if use_rep not in adata.obsm:
            raise ValueError(f"Embedding '{use_rep}' not found in {path}")
        self.logger.info("Read %d cells x %d genes from %s", adata.n_obs, adata.n_vars, path)
        return adata

    def _cluster(self, stage_results, **_):
        if "integrate" in stage_results:
            adata = stage_results["integrate"].adata
        else:
            adata = stage_results["read"]
        engine = ClusteringEngine(self.config.clustering, logger=self.logger)
        return engine.run(adata)

    def _de(self, stage_results, **_):
        clustering = stage_results["cluster"]
        runner = DERunner(self.config.de, logger=self.logger)
        return runner.run(clustering.adata, cluster_key=clustering.cluster_key)

    def _annotate(self, stage_results, **_):
        clustering = stage_results["cluster"]
        context = AnnotationContext(
            adata=clustering.adata,
            cluster_key=clustering.cluster_key,
            de_genes=stage_results["de"].cluster_de_genes,
        )
        strategies = build_strategies(self.config.annotation, logger=self.logger)
        if not strategies:
            self.logger.warning("No annotation strategies configured")
        ensemble = AnnotationEnsemble(
            strategies, n_workers=self.config.annotation.n_workers, logger=self.logger
        )
        return ensemble.run(context)

    def _export(self, stage_results, output_dir=None, **_):
        if output_dir is None:
            self.logger.info("No output directory given; skipping export")
            return {}
        cfg = self.config.export
        tables: Dict[str, pd.DataFrame] = {}

        if "qc" in stage_results:
            qc = stage_results["qc"]
            tables["qc_summary"] = qc.summary()
            tables["qc_removed_cells"] = qc.removal_table()
        if "integrate" in stage_results:
            integration = stage_results["integrate"]
            tables["integration_pairs"] = integration.pair_table()
            tables["anchors"] = integration.anchor_table()
        if "de" in stage_results:
            tables["de_results"] = stage_results["de"].to_table()
        if "annotate" in stage_results:
            clustering = stage_results["cluster"]
            annotation = stage_results["annotate"]
            tables["cell_labels"] = cell_label_table(
                clustering.adata, annotation.labels, clustering.cluster_key
            )
            tables["annotation_long"] = annotation.to_long_table()
            tables["annotation_agreement"] = (
                annotation.agreement().rename_axis("method").reset_index()
            )
            tables["annotation_failures"] = pd.DataFrame(
                sorted(annotation.failures.items()), columns=["method", "error"]
            )

        output_dir = Path(output_dir)
        written = write_tables(tables, output_dir, sep=cfg.sep, suffix=cfg.suffix)
        self.config.to_yaml(output_dir / "config.yaml")

        if cfg.write_h5ad and "annotate" in stage_results:
            adata = self.labeled_adata(stage_results)
            h5ad_path = output_dir / "integrated.h5ad"
            adata.write_h5ad(h5ad_path)
            written["integrated"] = h5ad_path
        return written

    # ---------------------------------------------------------------------

    @staticmethod
    def labeled_adata(stage_results: Dict[str, Any]):
        """Clustered AnnData copy with one label column per annotation method."""
        adata = stage_results["cluster"].adata.copy()
        labels = stage_results["annotate"].labels
        for method in labels.columns:
            adata.obs[method] = pd.Categorical(
                labels[method].reindex(adata.obs_names).to_numpy(dtype=object)
            )
        return adata

    def build_executor(self, until: Optional[str] = None) -> InMemoryExecutor:
        """Register stages up to ``until`` (inclusive) plus export."""
        if until is not None and until not in STAGES:
            raise ValueError(f"Unknown stage '{until}'; choose from {STAGES}")
        selected = STAGES if until is None else STAGES[: STAGES.index(until) + 1]
        if "export" not in selected:
            selected = selected + ["export"]
        return self._chain(selected)

    def _chain(self, stage_ids) -> InMemoryExecutor:
        funcs = {
            "load": self._load,
            "read": self._read,
            "qc": self._qc,
            "integrate": self._integrate,
            "cluster": self._cluster,
            "de": self._de,
            "annotate": self._annotate,
            "export": self._export,
        }
        executor = InMemoryExecutor(logger=self.pipeline_logger)
        previous = None
        for stage_id in stage_ids:
            executor.register_stage(
                stage_id,
                funcs[stage_id],
                depends_on=[previous] if previous else None,
                name=STAGE_NAMES[stage_id],
            )
            previous = stage_id
        return executor

    def run(
        self,
        path: PathLike,
        metadata_path: Optional[PathLike] = None,
        output_dir: Optional[PathLike] = None,
        until: Optional[str] = None,
    ) -> WorkflowResult:
        """Run the workflow on one dataset.

        Parameters
        ----------
        path : PathLike
            ``.h5ad`` or delimited counts table
        metadata_path : PathLike, optional
            Per-cell metadata for delimited counts
        output_dir : PathLike, optional
            Directory for exported tables. None skips export.
        until : str, optional
            Last analysis stage to run (export always follows)

        Returns
        -------
        WorkflowResult
            Results of every stage that ran
        """
        executor = self.build_executor(until)
        results = executor.run(path=path, metadata_path=metadata_path, output_dir=output_dir)
        return self._collect(results, output_dir)

    def annotate_dataset(
        self,
        path: PathLike,
        output_dir: Optional[PathLike] = None,
    ) -> WorkflowResult:
        """Cluster and annotate an already integrated ``.h5ad``.

        The file must hold the clustering embedding
        (``config.clustering.use_rep``) in ``obsm``.
        """
        executor = self._chain(ANNOTATION_STAGES)
        results = executor.run(path=path, output_dir=output_dir)
        return self._collect(results, output_dir)

    def _collect(self, results: Dict[str, Any], output_dir: Optional[PathLike]) -> WorkflowResult:
        result = WorkflowResult(
            load=results.get("load"),
            qc=results.get("qc"),
            integration=results.get("integrate"),
            clustering=results.get("cluster"),
            de=results.get("de"),
            annotation=results.get("annotate"),
            exports=results.get("export") or {},
        )
        if result.annotation is not None:
            result.adata = self.labeled_adata(results)
        elif result.clustering is not None:
            result.adata = result.clustering.adata
        elif result.integration is not None:
            result.adata = result.integration.adata

        summary = result.summary()
        if output_dir is not None:
            log_json(Path(output_dir) / "run_summary.jsonl", summary)
        # One YAML document per stage; to the run log when nothing is exported
        yaml_path = Path(output_dir) / "run_summary.yaml" if output_dir is not None else None
        for stage, record in summary.items():
            log_yaml(
                yaml_path,
                {"stage": stage, **record},
                logger=None if yaml_path is not None else self.logger,
            )
        return result
