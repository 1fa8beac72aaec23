"""
Shared test fixtures and configuration.

Packages are built as plain directories under ``tmp_path/sources`` and
referenced from the graph by absolute ``resolved`` paths, so no test
needs a registry or tarballs unless it is about tarballs.
"""

import json
import logging
import os
from pathlib import Path

import pytest

from nodelink.core.models.graph import Graph
from nodelink.core.models.options import LinkerOptions
from nodelink.core.observability.logging_config import SCRIPT_LOGGER

posix_only = pytest.mark.skipif(os.name == "nt", reason="needs sh and symlinks")


class PackageFactory:
    """Writes fake packages to disk and remembers where they went."""

    def __init__(self, base: Path):
        self.base = base

    def __call__(
        self,
        name: str,
        version: str = "1.0.0",
        scripts: dict[str, str] | None = None,
        bin: dict[str, str] | str | None = None,
        files: dict[str, str] | None = None,
    ) -> Path:
        pkg_dir = self.base / f"{name.replace('/', '+')}-{version}"
        pkg_dir.mkdir(parents=True, exist_ok=True)
        manifest: dict = {"name": name, "version": version}
        if scripts:
            manifest["scripts"] = scripts
        if bin:
            manifest["bin"] = bin
        (pkg_dir / "package.json").write_text(json.dumps(manifest))
        (pkg_dir / "index.js").write_text(f"module.exports = '{name}@{version}';\n")
        for rel, content in (files or {}).items():
            path = pkg_dir / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
        return pkg_dir

    def entry(self, name: str, version: str = "1.0.0", **node) -> dict:
        """Lockfile entry for a package previously written by this factory."""
        pkg_dir = self.base / f"{name.replace('/', '+')}-{version}"
        return {"name": name, "version": version, "resolved": str(pkg_dir), **node}


@pytest.fixture
def packages(tmp_path: Path) -> PackageFactory:
    """Factory for fake package source directories."""
    return PackageFactory(tmp_path / "sources")


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """An empty project directory with a script-less package.json."""
    root = tmp_path / "project"
    root.mkdir()
    (root / "package.json").write_text(json.dumps({"name": "app", "version": "0.0.0"}))
    return root


@pytest.fixture
def make_opts(project: Path):
    """Build LinkerOptions rooted at the project, with small pools."""

    def _make(**kwargs) -> LinkerOptions:
        kwargs.setdefault("concurrency", 4)
        kwargs.setdefault("script_concurrency", 2)
        return LinkerOptions(root=project, **kwargs)

    return _make


def build_graph(*entries: dict, root: int = 0) -> Graph:
    """Graph from lockfile-style dicts; the first entry is the root."""
    return Graph.from_packages(list(entries), root=root)


def root_entry(**node) -> dict:
    return {"name": "app", "version": "0.0.0", **node}


def installed_version(package_dir: Path) -> str:
    return json.loads((package_dir / "package.json").read_text())["version"]


@pytest.fixture(autouse=True)
def _restore_root_logger():
    """CLI tests reconfigure the root and script loggers; put them back afterwards."""
    root = logging.getLogger()
    level = root.level
    yield
    scripts = logging.getLogger(SCRIPT_LOGGER)
    for logger in (root, scripts):
        for handler in list(logger.handlers):
            if type(handler) in (logging.StreamHandler, logging.FileHandler):
                logger.removeHandler(handler)
                handler.close()
    scripts.setLevel(logging.NOTSET)
    scripts.propagate = True
    root.setLevel(level)
