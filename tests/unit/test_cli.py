"""Unit tests for the command-line interface."""

import pytest
import yaml
from click.testing import CliRunner

from cellanchor import __version__
from cellanchor.cli.main import cli
from cellanchor.config import AnalysisConfig


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def planted_h5ad(tmp_path, planted_dataset):
    """Planted two-sample dataset written to disk."""
    path = tmp_path / "planted.h5ad"
    planted_dataset.write_h5ad(path)
    return path


@pytest.fixture
def planted_config_file(tmp_path, small_qc_config, planted_normalization, planted_integration):
    """Configuration file suited to the planted dataset."""
    path = tmp_path / "analysis.yaml"
    AnalysisConfig(
        qc=small_qc_config,
        normalization=planted_normalization,
        integration=planted_integration,
    ).to_yaml(path)
    return path


class TestConfigCommand:
    """Tests for the config command."""

    def test_prints_defaults(self, runner):
        """Test the default configuration is printed as YAML."""
        result = runner.invoke(cli, ["config"])
        assert result.exit_code == 0
        data = yaml.safe_load(result.output)
        assert data["cellanchor"]["qc"]["min_genes"] == 400

    def test_writes_file(self, runner, tmp_path):
        """Test --out writes a loadable file."""
        out = tmp_path / "cfg" / "analysis.yaml"
        result = runner.invoke(cli, ["config", "--out", str(out)])
        assert result.exit_code == 0
        assert "Configuration written to" in result.output
        assert AnalysisConfig.from_yaml(out).qc.min_genes == 400

    def test_normalizes_existing(self, runner, tmp_path):
        """Test --from fills defaults around the given settings."""
        source = tmp_path / "partial.yaml"
        source.write_text("qc:\n  min_genes: 250\n")
        result = runner.invoke(cli, ["config", "--from", str(source)])
        assert result.exit_code == 0
        data = yaml.safe_load(result.output)
        assert data["cellanchor"]["qc"]["min_genes"] == 250
        assert data["cellanchor"]["integration"]["k_anchor"] == 5

    def test_invalid_config(self, runner, tmp_path):
        """Test an invalid configuration exits with status 1."""
        source = tmp_path / "bad.yaml"
        source.write_text("qc:\n  min_gene: 250\n")
        result = runner.invoke(cli, ["config", "--from", str(source)])
        assert result.exit_code == 1
        assert "invalid configuration" in result.output


class TestCli:
    """Tests for the command group and analysis commands."""

    def test_version(self, runner):
        """Test --version reports the package version."""
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self, runner):
        """Test every command is registered."""
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("qc", "integrate", "annotate", "run", "config"):
            assert command in result.output

    def test_qc(self, runner, planted_h5ad, planted_config_file, tmp_output_dir):
        """Test QC on a small dataset."""
        result = runner.invoke(
            cli,
            ["qc", "-i", str(planted_h5ad), "-o", str(tmp_output_dir),
             "-c", str(planted_config_file)],
        )
        assert result.exit_code == 0, result.output
        assert "QC complete: 2 samples kept, 0 excluded" in result.output
        assert (tmp_output_dir / "qc_summary.tsv").exists()

    def test_integrate(self, runner, planted_h5ad, planted_config_file, tmp_output_dir):
        """Test integration reports cells, samples and metrics."""
        result = runner.invoke(
            cli,
            ["integrate", "-i", str(planted_h5ad), "-o", str(tmp_output_dir),
             "-c", str(planted_config_file), "--mode", "reference", "-r", "P1"],
        )
        assert result.exit_code == 0, result.output
        assert "Integration complete: 200 cells from 2 samples" in result.output
        assert "batch_eta2_after" in result.output
        assert (tmp_output_dir / "anchors.tsv").exists()

    def test_unknown_reference_falls_back(
        self, runner, planted_h5ad, planted_config_file, tmp_output_dir
    ):
        """Test an unknown reference sample falls back to the largest sample."""
        result = runner.invoke(
            cli,
            ["integrate", "-i", str(planted_h5ad), "-o", str(tmp_output_dir),
             "-c", str(planted_config_file), "-r", "P9"],
        )
        assert result.exit_code == 0, result.output
        assert "Integration complete: 200 cells from 2 samples" in result.output

    def test_stage_failure(self, runner, tmp_path, planted_dataset, tmp_output_dir):
        """Test a stage failure exits with status 1."""
        adata = planted_dataset.copy()
        adata.X = adata.X.toarray()
        adata.X[0, 0] = -1.0
        path = tmp_path / "negative.h5ad"
        adata.write_h5ad(path)
        result = runner.invoke(cli, ["qc", "-i", str(path), "-o", str(tmp_output_dir)])
        assert result.exit_code == 1
        assert "negative values" in result.output

    def test_missing_input(self, runner, tmp_output_dir):
        """Test a nonexistent input path is a usage error."""
        result = runner.invoke(cli, ["qc", "-i", "missing.h5ad", "-o", str(tmp_output_dir)])
        assert result.exit_code == 2

    def test_annotate_requires_embedding(self, runner, annotation_adata, tmp_path, tmp_output_dir):
        """Test annotate reports a missing embedding."""
        path = tmp_path / "no_embedding.h5ad"
        annotation_adata.write_h5ad(path)
        result = runner.invoke(cli, ["annotate", "-i", str(path), "-o", str(tmp_output_dir)])
        assert result.exit_code == 1
        assert "not found" in result.output
