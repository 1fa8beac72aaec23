"""
Hidden lockfile — a snapshot of what was last installed.

Written to node_modules/.nodelink-lock.yml after a successful install
and read back as the actual tree by the next run's prune.  Writes are
atomic (write to temp file, then rename) so an interrupted install
never leaves a truncated snapshot behind.
"""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path

import yaml

from nodelink.core.errors import IoError
from nodelink.core.models.graph import Graph

logger = logging.getLogger(__name__)

HIDDEN_LOCKFILE = ".nodelink-lock.yml"


def hidden_lockfile_path(root: Path) -> Path:
    """Where the snapshot for the project at ``root`` lives."""
    return root / "node_modules" / HIDDEN_LOCKFILE


def dump_graph(graph: Graph) -> str:
    return yaml.safe_dump(
        {"root": graph.root, "packages": graph.to_packages()},
        sort_keys=False,
        default_flow_style=False,
    )


def write_lockfile(graph: Graph, path: Path) -> None:
    """Write ``graph`` to ``path`` (atomic write).

    Raises:
        IoError: The file could not be written.
    """
    content = dump_graph(graph)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        _fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".lock_", suffix=".tmp")
        tmp = Path(tmp_path)
        try:
            with open(_fd, "w", encoding="utf-8") as f:
                f.write(content)
            tmp.replace(path)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise
    except OSError as e:
        raise IoError("write", path, e) from e
    logger.debug("Lockfile snapshot saved to %s", path)
