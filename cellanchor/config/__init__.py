"""Configuration for cellanchor analysis runs."""

from .analysis import SECTIONS, AnalysisConfig, ExportConfig

__all__ = ["SECTIONS", "AnalysisConfig", "ExportConfig"]
