"""Master configuration for a full analysis run.

All stage parameters are configurable from one YAML file. The file may
hold the settings at the top level or under a ``cellanchor:`` section:

    cellanchor:
      qc:
        min_genes: 400
      integration:
        mode: reference
        reference: [P1]
      annotation:
        knowledge_base: markers.tsv
"""

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Union

import yaml

from ..core.annotation.config import AnnotationConfig
from ..core.clustering.config import ClusteringConfig, DEConfig
from ..core.integration.config import IntegrationConfig
from ..core.preprocessing.config import LoaderConfig, NormalizationConfig, QCConfig


@dataclass
class ExportConfig:
    """Configuration for delimited table export.

    Attributes
    ----------
    sep : str
        Field delimiter
    suffix : str
        File suffix of exported tables
    write_h5ad : bool
        Also write the annotated AnnData (``integrated.h5ad``)
    """

    sep: str = "\t"
    suffix: str = ".tsv"
    write_h5ad: bool = False

    def validate(self) -> None:
        if len(self.sep) != 1:
            raise ValueError(f"sep must be a single character, got {self.sep!r}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


SECTIONS = {
    "loader": LoaderConfig,
    "qc": QCConfig,
    "normalization": NormalizationConfig,
    "integration": IntegrationConfig,
    "clustering": ClusteringConfig,
    "de": DEConfig,
    "annotation": AnnotationConfig,
    "export": ExportConfig,
}


@dataclass
class AnalysisConfig:
    """Master configuration for load, QC, integration, clustering,
    DE, annotation and export.

    Attributes
    ----------
    loader : LoaderConfig
        Data loading configuration
    qc : QCConfig
        Cell QC configuration
    normalization : NormalizationConfig
        Normalization and reduction configuration
    integration : IntegrationConfig
        Anchor integration configuration
    clustering : ClusteringConfig
        Leiden clustering configuration
    de : DEConfig
        Differential expression configuration
    annotation : AnnotationConfig
        Annotator ensemble configuration
    export : ExportConfig
        Table export configuration
    """

    loader: LoaderConfig = field(default_factory=LoaderConfig)
    qc: QCConfig = field(default_factory=QCConfig)
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    integration: IntegrationConfig = field(default_factory=IntegrationConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    de: DEConfig = field(default_factory=DEConfig)
    annotation: AnnotationConfig = field(default_factory=AnnotationConfig)
    export: ExportConfig = field(default_factory=ExportConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisConfig":
        """Build from a nested dictionary; unknown sections are errors.

        Raises
        ------
        ValueError
            If a section or a key inside a section is unknown.
        """
        data = dict(data or {})
        if "cellanchor" in data:
            data = data["cellanchor"] or {}

        unknown = sorted(set(data) - set(SECTIONS))
        if unknown:
            raise ValueError(f"Unknown configuration sections: {unknown}")

        kwargs = {}
        for name, section_cls in SECTIONS.items():
            values = data.get(name) or {}
            allowed = {f.name for f in fields(section_cls)}
            bad = sorted(set(values) - allowed)
            if bad:
                raise ValueError(f"Unknown keys in '{name}': {bad}")
            kwargs[name] = section_cls(**values)
        config = cls(**kwargs)
        config.validate()
        return config

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "AnalysisConfig":
        """Load configuration from YAML file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def default(cls) -> "AnalysisConfig":
        """Create default configuration."""
        return cls()

    def validate(self) -> None:
        for name in SECTIONS:
            getattr(self, name).validate()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {name: getattr(self, name).to_dict() for name in SECTIONS}

    def to_yaml(self, path: Union[str, Path, None] = None) -> str:
        """Serialize under a ``cellanchor:`` section, optionally writing to ``path``."""
        text = yaml.safe_dump({"cellanchor": self.to_dict()}, sort_keys=False)
        if path is not None:
            path = Path(path)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text)
        return text
