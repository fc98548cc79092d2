"""Unit tests for the guidance CLI commands."""

import json

import pytest
import typer
import yaml
from typer.testing import CliRunner

from guidance_cli import __version__
from guidance_cli.main import EXIT_STOP, app, parse_file_spec, parse_work_item_spec
from guidance_engine.models import ChangeKind

runner = CliRunner()

SQL_INJECTION_ARGS = ["evaluate", "fix sql injection in login handler", "-f", "auth/login.py"]


@pytest.fixture
def config_file(tmp_path, sample_catalog_dir):
    """Config pointing at the sample catalog with a temporary learning database."""
    path = tmp_path / "guidance-config.yaml"
    path.write_text(
        yaml.dump(
            {
                "catalog": {"path": str(sample_catalog_dir)},
                "learning": {"db_path": str(tmp_path / "learning.db")},
            }
        )
    )
    return path


def invoke(config_file, *args, **kwargs):
    return runner.invoke(app, ["--config", str(config_file), *args], **kwargs)


class TestParsers:
    """Tests for option value parsers."""

    def test_file_spec_path_only(self):
        """A bare path is a modified file."""
        ref = parse_file_spec("src/app.py")
        assert ref.path == "src/app.py"
        assert ref.change_kind == ChangeKind.MODIFIED
        assert ref.lines_changed is None

    def test_file_spec_full(self):
        """Kind and line count are parsed."""
        ref = parse_file_spec("src/old.py:deleted:40")
        assert ref.change_kind == ChangeKind.DELETED
        assert ref.lines_changed == 40

    @pytest.mark.parametrize("spec", ["", "a.py:exploded", "a.py:added:many", "a:b:c:d"])
    def test_file_spec_invalid(self, spec):
        """Malformed specs are rejected."""
        with pytest.raises(typer.BadParameter):
            parse_file_spec(spec)

    @pytest.mark.parametrize(
        "spec, path, kind, lines",
        [
            ("C:\\repo\\auth.py", "C:\\repo\\auth.py", ChangeKind.MODIFIED, None),
            ("C:\\repo\\auth.py:added", "C:\\repo\\auth.py", ChangeKind.ADDED, None),
            ("C:\\repo\\auth.py:deleted:12", "C:\\repo\\auth.py", ChangeKind.DELETED, 12),
            ("D:/work/app.py:modified", "D:/work/app.py", ChangeKind.MODIFIED, None),
        ],
    )
    def test_file_spec_windows_paths(self, spec, path, kind, lines):
        """A drive letter stays part of the path."""
        ref = parse_file_spec(spec)
        assert (ref.path, ref.change_kind, ref.lines_changed) == (path, kind, lines)

    def test_file_spec_windows_path_bad_kind(self):
        """Unknown kinds after a Windows path are still rejected."""
        with pytest.raises(typer.BadParameter, match="Unknown change kind"):
            parse_file_spec("C:\\repo\\auth.py:exploded")

    def test_work_item_spec(self):
        """ID with optional kind."""
        assert parse_work_item_spec("SEC-1:Security").kind == "security"
        assert parse_work_item_spec("42").kind == "task"

    def test_work_item_spec_empty(self):
        """An empty id is rejected."""
        with pytest.raises(typer.BadParameter):
            parse_work_item_spec(":bug")


class TestVersion:
    """Tests for --version."""

    def test_version(self):
        """--version prints the version and exits cleanly."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"guidance version {__version__}" in result.output


class TestEvaluate:
    """Tests for the evaluate command."""

    def test_stop_exit_code(self, config_file):
        """A Stop decision exits with the stop code."""
        result = invoke(config_file, *SQL_INJECTION_ARGS)

        assert result.exit_code == EXIT_STOP
        assert "STOP" in result.output

    def test_proceed_table(self, config_file):
        """A proceeding request exits 0 and lists instructions."""
        result = invoke(config_file, "evaluate", "update the readme")

        assert result.exit_code == 0
        assert "PROCEED" in result.output
        assert "documentation/docs-style" in result.output

    def test_json_output(self, config_file):
        """--format json prints the execution context."""
        result = invoke(
            config_file, *SQL_INJECTION_ARGS, "-w", "SEC-12:bug", "--format", "json"
        )

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["proceed"] is True
        assert data["context"]["primary_domain"] == "security"
        assert data["instructions"][0] == "core/baseline"

    def test_markdown_output(self, config_file):
        """--format markdown prints the report."""
        result = invoke(config_file, *SQL_INJECTION_ARGS, "--format", "markdown")

        assert result.exit_code == EXIT_STOP
        assert "## Guidance: STOP" in result.output

    def test_stdin(self, config_file):
        """--stdin reads the request as JSON."""
        payload = json.dumps({"text": "update the readme", "files": [], "work_item": None})
        result = invoke(config_file, "evaluate", "--stdin", "--format", "json", input=payload)

        assert result.exit_code == 0
        assert json.loads(result.stdout)["context"]["persona"] == "technical-writer"

    def test_stdin_invalid_json(self, config_file):
        """Invalid JSON on stdin is an error."""
        result = invoke(config_file, "evaluate", "--stdin", input="{not json")
        assert result.exit_code == 1

    def test_unknown_format(self, config_file):
        """Unknown formats are rejected."""
        result = invoke(config_file, "evaluate", "x", "--format", "yaml")
        assert result.exit_code != 0

    def test_bad_file_spec(self, config_file):
        """A bad --file value is a usage error."""
        result = invoke(config_file, "evaluate", "x", "-f", "a.py:exploded")
        assert result.exit_code != 0
        assert "Unknown change kind" in result.output

    def test_invalid_config(self, tmp_path):
        """An invalid config file exits 1."""
        bad = tmp_path / "bad.yaml"
        bad.write_text("selection: [unclosed")
        result = runner.invoke(app, ["--config", str(bad), "evaluate", "x"])
        assert result.exit_code == 1

    def test_missing_catalog(self, tmp_path):
        """A configured catalog that does not exist exits 1."""
        config = tmp_path / "guidance-config.yaml"
        config.write_text(yaml.dump({"catalog": {"path": str(tmp_path / "nowhere")}}))
        result = runner.invoke(app, ["--config", str(config), "evaluate", "x"])
        assert result.exit_code == 1


class TestFeedbackAndStats:
    """Tests for the feedback and stats commands."""

    def test_stats_empty(self, config_file):
        """No history yet."""
        result = invoke(config_file, "stats")
        assert result.exit_code == 0
        assert "No outcomes recorded yet." in result.output

    def test_feedback_then_stats(self, config_file):
        """Feedback persists and shows up in stats."""
        first = invoke(config_file, "feedback", "security", "secure-developer", "--success")
        second = invoke(config_file, "feedback", "security", "secure-developer", "--failure")

        assert first.exit_code == 0
        assert "Recorded success for security/secure-developer (1/1)" in first.output
        assert "Recorded failure for security/secure-developer (1/2)" in second.output

        result = invoke(config_file, "stats")
        assert result.exit_code == 0
        assert "secure-developer" in result.output
        assert "Records: 1 | Outcomes: 2" in result.output

    def test_feedback_requires_outcome(self, config_file):
        """--success or --failure is required."""
        result = invoke(config_file, "feedback", "security", "secure-developer")
        assert result.exit_code != 0


class TestCatalogCommand:
    """Tests for the catalog command."""

    def test_catalog_summary(self, config_file):
        """The catalog command summarizes entries and budget."""
        result = invoke(config_file, "catalog")

        assert result.exit_code == 0
        assert "Entries: 11 | Total cost: 3650 | Budget: 4000" in result.output

    def test_empty_catalog(self, tmp_path):
        """Without a catalog the command says so."""
        config = tmp_path / "guidance-config.yaml"
        config.write_text(yaml.dump({"learning": {"store": "memory"}}))
        result = runner.invoke(app, ["--config", str(config), "catalog"])

        assert result.exit_code == 0
        assert "Catalog is empty." in result.output
