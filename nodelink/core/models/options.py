"""
LinkerOptions — configuration for one install operation.

Built once before the operation starts and shared read-only by every
worker thread.  The callbacks are observers only: whether they are set
never changes what the linker does.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from nodelink.core.models.graph import PackageIdentity

ProgressHandler = Callable[[int], None]
ScriptStartHandler = Callable[[PackageIdentity, str], None]
ScriptLineHandler = Callable[[str], None]

DEFAULT_CONCURRENCY = 50
DEFAULT_SCRIPT_CONCURRENCY = 6


@dataclass(frozen=True)
class LinkerOptions:
    """Immutable linker configuration.

    Args:
        root: Install root (the directory holding ``node_modules``).
        concurrency: Max parallel filesystem placements/removals.
        script_concurrency: Max lifecycle scripts running at once.
        actual_tree: Lockfile describing what is currently installed,
            used by prune instead of scanning the disk.
        cache: Shared content cache.  Files inside it are immutable,
            so they may be hard linked into installs.
        prefer_copy: Force full copies (no reflinks, no hard links).
        validate: Re-verify content of packages that already exist.
    """

    root: Path
    concurrency: int = DEFAULT_CONCURRENCY
    script_concurrency: int = DEFAULT_SCRIPT_CONCURRENCY
    actual_tree: Path | None = None
    cache: Path | None = None
    prefer_copy: bool = False
    validate: bool = False
    on_prune_progress: ProgressHandler | None = None
    on_extract_progress: ProgressHandler | None = None
    on_script_start: ScriptStartHandler | None = None
    on_script_line: ScriptLineHandler | None = None

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.script_concurrency < 1:
            raise ValueError("script_concurrency must be at least 1")

    @property
    def node_modules(self) -> Path:
        return self.root / "node_modules"
