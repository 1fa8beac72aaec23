"""
Tests for CLI commands — install, prune, rebuild, probe-reflink.
"""

import json
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from conftest import posix_only
from nodelink.core.persistence.lockfile import hidden_lockfile_path
from nodelink.main import cli


@pytest.fixture(autouse=True)
def _isolated_cwd(tmp_path: Path, monkeypatch):
    # keep config auto-detection and NODELINK_* from leaking into tests
    monkeypatch.chdir(tmp_path)
    for key in ("NODELINK_STRATEGY", "NODELINK_CACHE", "NODELINK_IGNORE_SCRIPTS",
                "NODELINK_LOG_LEVEL", "NODELINK_LOG_FILE", "NODELINK_SCRIPT_OUTPUT"):
        monkeypatch.delenv(key, raising=False)


def _lockfile(tmp_path: Path, entries: list[dict], name: str = "lock.yml") -> Path:
    """Write a lockfile whose package sources are relative to it."""
    rel_entries = []
    for entry in entries:
        entry = dict(entry)
        if "resolved" in entry:
            entry["resolved"] = str(Path(entry["resolved"]).relative_to(tmp_path))
        rel_entries.append(entry)
    path = tmp_path / name
    path.write_text(yaml.safe_dump({"root": 0, "packages": rel_entries}))
    return path


class TestCLIGlobal:
    """Tests for global CLI behavior."""

    def test_help(self):
        result = CliRunner().invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "install" in result.output
        assert "probe-reflink" in result.output

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


@posix_only
class TestInstallCommand:
    """Tests for nodelink install."""

    def _simple(self, tmp_path: Path, packages) -> Path:
        packages("a")
        packages("b", bin={"b-cli": "./cli.js"}, files={"cli.js": "#!/bin/sh\necho b\n"})
        return _lockfile(tmp_path, [
            {"name": "app", "version": "0.0.0", "dependencies": [1, 2]},
            packages.entry("a"),
            packages.entry("b"),
        ])

    def test_hoisted_install(self, tmp_path: Path, packages, project: Path):
        lockfile = self._simple(tmp_path, packages)
        result = CliRunner().invoke(cli, ["install", str(lockfile), "--root", str(project)])

        assert result.exit_code == 0, result.output
        assert "Installed 2 packages" in result.output
        assert (project / "node_modules" / "a" / "index.js").is_file()
        assert (project / "node_modules" / ".bin" / "b-cli").is_symlink()
        assert hidden_lockfile_path(project).is_file()

    def test_isolated_install(self, tmp_path: Path, packages, project: Path):
        lockfile = self._simple(tmp_path, packages)
        result = CliRunner().invoke(cli, [
            "install", str(lockfile), "--root", str(project), "--strategy", "isolated",
        ])

        assert result.exit_code == 0, result.output
        assert (project / "node_modules" / ".store").is_dir()
        assert (project / "node_modules" / "a").is_symlink()

    def test_strategy_from_environment(self, tmp_path: Path, packages, project: Path, monkeypatch):
        lockfile = self._simple(tmp_path, packages)
        monkeypatch.setenv("NODELINK_STRATEGY", "isolated")
        result = CliRunner().invoke(cli, ["install", str(lockfile), "--root", str(project)])
        assert result.exit_code == 0, result.output
        assert (project / "node_modules" / ".store").is_dir()

    def test_json_output(self, tmp_path: Path, packages, project: Path):
        lockfile = self._simple(tmp_path, packages)
        result = CliRunner().invoke(cli, [
            "install", str(lockfile), "--root", str(project), "--json",
        ])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["strategy"] == "hoisted"
        assert data["packages"] == 2
        assert data["extracted"] == 2
        assert data["pruned"] == 0

    def test_reinstall_prunes_with_snapshot(self, tmp_path: Path, packages, project: Path):
        lockfile = self._simple(tmp_path, packages)
        runner = CliRunner()
        assert runner.invoke(cli, ["install", str(lockfile), "--root", str(project)]).exit_code == 0

        smaller = _lockfile(tmp_path, [
            {"name": "app", "version": "0.0.0", "dependencies": [1]},
            packages.entry("a"),
        ], name="smaller.yml")
        result = runner.invoke(cli, ["install", str(smaller), "--root", str(project), "--json"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["pruned"] == 1
        assert data["extracted"] == 0
        assert not (project / "node_modules" / "b").exists()

    def test_scripts_announced(self, tmp_path: Path, packages, project: Path):
        packages("built", scripts={"install": "touch made.txt"})
        lockfile = _lockfile(tmp_path, [
            {"name": "app", "version": "0.0.0", "dependencies": [1]},
            packages.entry("built"),
        ])
        result = CliRunner().invoke(cli, ["install", str(lockfile), "--root", str(project)])

        assert result.exit_code == 0, result.output
        assert "built@1.0.0" in result.output
        assert (project / "node_modules" / "built" / "made.txt").is_file()

    def test_script_output_flag(self, tmp_path: Path, packages, project: Path):
        packages("loud", scripts={"install": "echo building-native"})
        lockfile = _lockfile(tmp_path, [
            {"name": "app", "version": "0.0.0", "dependencies": [1]},
            packages.entry("loud"),
        ])
        quiet = CliRunner().invoke(cli, ["install", str(lockfile), "--root", str(project)])
        assert "building-native" not in quiet.output

        result = CliRunner().invoke(cli, [
            "--script-output", "rebuild", str(lockfile), "--root", str(project),
        ])
        assert result.exit_code == 0, result.output
        assert "stdout::loud::install: building-native" in result.output
        assert "Rebuild complete" in result.output

    def test_ignore_scripts(self, tmp_path: Path, packages, project: Path):
        packages("built", scripts={"install": "touch made.txt"})
        lockfile = _lockfile(tmp_path, [
            {"name": "app", "version": "0.0.0", "dependencies": [1]},
            packages.entry("built"),
        ])
        result = CliRunner().invoke(cli, [
            "install", str(lockfile), "--root", str(project), "--ignore-scripts",
        ])
        assert result.exit_code == 0, result.output
        assert not (project / "node_modules" / "built" / "made.txt").exists()

    def test_script_failure_exits_1(self, tmp_path: Path, packages, project: Path):
        packages("bad", scripts={"postinstall": "exit 4"})
        lockfile = _lockfile(tmp_path, [
            {"name": "app", "version": "0.0.0", "dependencies": [1]},
            packages.entry("bad"),
        ])
        result = CliRunner().invoke(cli, ["install", str(lockfile), "--root", str(project)])

        assert result.exit_code == 1
        assert "code 4" in result.output
        assert not hidden_lockfile_path(project).exists()

    def test_invalid_lockfile(self, tmp_path: Path, project: Path):
        lockfile = tmp_path / "lock.yml"
        lockfile.write_text("root: 0\n")
        result = CliRunner().invoke(cli, ["install", str(lockfile), "--root", str(project)])
        assert result.exit_code == 1
        assert "packages" in result.output

    def test_invalid_config(self, tmp_path: Path, packages, project: Path):
        lockfile = self._simple(tmp_path, packages)
        config = tmp_path / "nodelink.yml"
        config.write_text("strategy: flat\n")
        result = CliRunner().invoke(cli, [
            "--config", str(config), "install", str(lockfile), "--root", str(project),
        ])
        assert result.exit_code == 1
        assert "Invalid linker configuration" in result.output

    def test_config_file_detected(self, tmp_path: Path, packages, project: Path):
        lockfile = self._simple(tmp_path, packages)
        (tmp_path / "nodelink.yml").write_text("strategy: isolated\nconcurrency: 2\n")
        result = CliRunner().invoke(cli, ["install", str(lockfile), "--root", str(project)])
        assert result.exit_code == 0, result.output
        assert "(isolated)" in result.output


@posix_only
class TestPruneAndRebuildCommands:
    """Tests for nodelink prune and nodelink rebuild."""

    def test_prune(self, tmp_path: Path, packages, project: Path):
        packages("a")
        stray = project / "node_modules" / "stray"
        stray.mkdir(parents=True)
        lockfile = _lockfile(tmp_path, [
            {"name": "app", "version": "0.0.0", "dependencies": [1]},
            packages.entry("a"),
        ])
        result = CliRunner().invoke(cli, ["prune", str(lockfile), "--root", str(project)])

        assert result.exit_code == 0, result.output
        assert "Pruned 1 packages" in result.output
        assert not stray.exists()

    def test_rebuild_reruns_scripts(self, tmp_path: Path, packages, project: Path):
        packages("counter", scripts={"install": 'echo run >> "$INIT_CWD/runs.log"'})
        lockfile = _lockfile(tmp_path, [
            {"name": "app", "version": "0.0.0", "dependencies": [1]},
            packages.entry("counter"),
        ])
        runner = CliRunner()
        assert runner.invoke(cli, ["install", str(lockfile), "--root", str(project)]).exit_code == 0
        result = runner.invoke(cli, ["rebuild", str(lockfile), "--root", str(project)])

        assert result.exit_code == 0, result.output
        assert "Rebuild complete" in result.output
        assert (project / "runs.log").read_text().splitlines() == ["run", "run"]


class TestProbeReflinkCommand:
    """Tests for nodelink probe-reflink."""

    def test_reports_either_way(self, tmp_path: Path):
        src = tmp_path / "src"
        dest = tmp_path / "dest"
        src.mkdir()
        dest.mkdir()
        result = CliRunner().invoke(cli, ["probe-reflink", str(src), str(dest)])
        assert result.exit_code == 0
        assert "reflinks" in result.output
        assert list(src.iterdir()) == [] and list(dest.iterdir()) == []

    def test_missing_directory(self, tmp_path: Path):
        result = CliRunner().invoke(cli, ["probe-reflink", str(tmp_path / "nope"), str(tmp_path)])
        assert result.exit_code == 2
