"""
Placement strategy — the contract both on-disk layouts implement.

A strategy owns three things for the lifetime of one install:

    - the mapping graph node → install directory (``package_dir``)
    - the pending-rebuild set (nodes whose lifecycle scripts must run)
    - a reference to the shared ``LinkerOptions``

The shared machinery lives here: bounded worker pools, the per-package
materialisation routine (stage in a sibling temp dir, then rename into
place), "already installed" detection, and bin linking helpers.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from enum import StrEnum
from pathlib import Path
from typing import Callable, Iterable, TypeVar

from nodelink.adapters.shell.bin_link import link_bin
from nodelink.adapters.shell.filesystem import (
    MARKER_FILE,
    PlaceMethod,
    place_tree,
    remove_path,
    same_device,
    supports_reflink,
    tree_digest,
)
from nodelink.core.config.loader import load_graph
from nodelink.core.errors import (
    BinLinkError,
    ExtractError,
    IoError,
    LinkerError,
    TaskJoinError,
)
from nodelink.core.models.graph import Graph, PackageIdentity
from nodelink.core.models.manifest import BuildManifest
from nodelink.core.models.options import LinkerOptions
from nodelink.core.services.package_source import PackageSource

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

BIN_DIR = ".bin"


class PendingRebuild:
    """Lock-guarded set of node indices awaiting lifecycle scripts.

    Callers copy what they need out with ``snapshot`` and do their I/O
    after the lock is released.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: set[int] = set()

    def add(self, idx: int) -> None:
        with self._lock:
            self._items.add(idx)

    def snapshot(self) -> list[int]:
        with self._lock:
            return sorted(self._items)

    def drain(self, indices: Iterable[int]) -> None:
        with self._lock:
            self._items.difference_update(indices)

    def __contains__(self, idx: object) -> bool:
        with self._lock:
            return idx in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


def run_bounded(
    items: Iterable[T],
    fn: Callable[[T], R],
    max_workers: int,
    what: str,
) -> list[R]:
    """Run ``fn`` over ``items`` on at most ``max_workers`` threads.

    The first failure cancels everything not yet started, waits for the
    running tasks, and is re-raised.  Unexpected (non-linker) errors are
    wrapped in ``TaskJoinError``.
    """
    items = list(items)
    if not items:
        return []
    pool = ThreadPoolExecutor(max_workers=min(max_workers, len(items)),
                              thread_name_prefix=f"nodelink-{what}")
    try:
        futures = [pool.submit(fn, item) for item in items]
        done, _ = wait(futures, return_when=FIRST_EXCEPTION)
        for future in futures:
            if future in done and future.exception() is not None:
                pool.shutdown(wait=True, cancel_futures=True)
                error = future.exception()
                if isinstance(error, LinkerError):
                    raise error
                raise TaskJoinError(what, error) from error
        return [future.result() for future in futures]
    finally:
        pool.shutdown(wait=True, cancel_futures=True)


class Outcome(StrEnum):
    """Result of materialising one package."""

    PLACED = "placed"
    PRESENT = "present"
    FAILED = "failed"  # optional package, error logged and swallowed


class ProgressCounter:
    """Thread-safe running count fed to an optional progress callback."""

    def __init__(self, callback: Callable[[int], None] | None):
        self._callback = callback
        self._lock = threading.Lock()
        self.value = 0

    def tick(self) -> None:
        with self._lock:
            self.value += 1
            value = self.value
        if self._callback is not None:
            self._callback(value)


class PlacementStrategy(ABC):
    """Shared contract and helpers for the Isolated and Hoisted layouts."""

    def __init__(self, opts: LinkerOptions, source: PackageSource | None = None):
        self.opts = opts
        self.source = source or PackageSource(cache=opts.cache, base_dir=opts.root)
        self.pending_rebuild = PendingRebuild()

    # ── Contract ─────────────────────────────────────────────────

    @abstractmethod
    def package_dir(self, graph: Graph, idx: int) -> Path:
        """Install directory for a node.  The root maps to ``opts.root``."""

    @abstractmethod
    def extract(self, graph: Graph) -> int:
        """Place every package not already present; return how many were placed."""

    @abstractmethod
    def prune(self, graph: Graph) -> int:
        """Remove package directories no current node maps to; return the count."""

    @abstractmethod
    def link_bins(self, graph: Graph) -> int:
        """Create bin entry points; return how many were linked."""

    # ── Extraction helpers ───────────────────────────────────────

    def _placement_methods(self) -> tuple[PlaceMethod, ...]:
        """Methods to try for files coming from the content cache.

        Probed once per extract.  Hard links are filtered out later for
        sources that are not immutable.
        """
        if self.opts.prefer_copy:
            return (PlaceMethod.COPY,)
        methods = [PlaceMethod.HARDLINK, PlaceMethod.COPY]
        self.opts.node_modules.mkdir(parents=True, exist_ok=True)
        probe_source = self.source.cache if self.source.cache.is_dir() else self.opts.root
        if supports_reflink(probe_source, self.opts.node_modules):
            methods.insert(0, PlaceMethod.REFLINK)
        return tuple(methods)

    def _mark_root_pending(self, graph: Graph) -> None:
        # The project itself runs its own lifecycle scripts after install
        if (self.opts.root / "package.json").is_file():
            self.pending_rebuild.add(graph.root)

    def _is_present(self, package: PackageIdentity, target: Path) -> bool:
        """Whether ``target`` already holds ``package`` (re-verified if validating)."""
        if target.is_symlink() or not target.is_dir():
            return False
        try:
            marker = json.loads((target / MARKER_FILE).read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return False
        if not isinstance(marker, dict):
            return False
        if (marker.get("name"), marker.get("version"), marker.get("resolved")) != (
            package.name, package.version, package.resolved,
        ):
            return False
        if self.opts.validate:
            expected = marker.get("digest")
            if not expected or tree_digest(target) != expected:
                logger.debug("Content of %s failed validation, re-extracting", target)
                return False
        return True

    def _materialize(
        self,
        graph: Graph,
        idx: int,
        target: Path,
        methods: tuple[PlaceMethod, ...],
    ) -> Outcome:
        """Put node ``idx``'s contents at ``target``.

        Contents are staged in a temp dir next to ``target`` and renamed
        into place, so an interrupted extraction never leaves a
        half-written package at its final path.  A replaced package keeps
        its nested ``node_modules``.
        """
        node = graph[idx]
        package = node.package
        if self._is_present(package, target):
            return Outcome.PRESENT

        staging: Path | None = None
        try:
            source_dir = self.source.fetch(package)
            target.parent.mkdir(parents=True, exist_ok=True)
            allowed = tuple(
                m for m in methods
                if m != PlaceMethod.HARDLINK
                or (self.source.is_immutable(source_dir) and same_device(source_dir, target.parent))
            )
            staging = Path(tempfile.mkdtemp(dir=target.parent, prefix=f".{target.name}-"))
            used = place_tree(source_dir, staging, allowed or (PlaceMethod.COPY,))
            marker = {
                "name": package.name,
                "version": package.version,
                "resolved": package.resolved,
                "digest": tree_digest(staging) if self.opts.validate else None,
            }
            (staging / MARKER_FILE).write_text(json.dumps(marker), encoding="utf-8")
            self._swap_into_place(staging, target)
            staging = None
        except (LinkerError, OSError) as e:
            if staging is not None:
                shutil.rmtree(staging, ignore_errors=True)
            if node.optional:
                logger.warning("Skipping optional dependency %s: %s", package.spec, e)
                return Outcome.FAILED
            if isinstance(e, ExtractError):
                raise
            raise ExtractError(package.spec, e) from e

        logger.debug(
            "Extracted %s to %s (%s)",
            package.spec, target, ", ".join(f"{m}={n}" for m, n in sorted(used.items())) or "empty",
        )
        return Outcome.PLACED

    @staticmethod
    def _swap_into_place(staging: Path, target: Path) -> None:
        if target.is_symlink() or target.is_file():
            target.unlink()
        elif target.is_dir():
            nested = target / "node_modules"
            if nested.is_dir() and not (staging / "node_modules").exists():
                os.replace(nested, staging / "node_modules")
            old = Path(tempfile.mkdtemp(dir=target.parent, prefix=f".{target.name}-old-"))
            os.replace(target, old / "pkg")
            os.replace(staging, target)
            shutil.rmtree(old, ignore_errors=True)
            return
        os.replace(staging, target)

    def _log_phase(self, what: str, count: int, start: float) -> None:
        logger.debug("%s %d packages in %dms.", what, count, (time.monotonic() - start) * 1000)

    # ── Prune helpers ────────────────────────────────────────────

    def _load_actual_tree(self) -> Graph | None:
        """The previously installed graph, when a snapshot was given."""
        if self.opts.actual_tree is None or not self.opts.actual_tree.is_file():
            return None
        try:
            return load_graph(self.opts.actual_tree)
        except LinkerError as e:
            logger.debug("Ignoring unreadable actual tree %s: %s", self.opts.actual_tree, e)
            return None

    def _remove_all(self, paths: list[Path]) -> int:
        """Remove each path (concurrently), ticking the prune progress callback."""
        counter = ProgressCounter(self.opts.on_prune_progress)

        def _remove(path: Path) -> None:
            try:
                remove_path(path)
            except OSError as e:
                raise IoError("remove", path, e) from e
            logger.debug("Pruned %s", path)
            counter.tick()

        run_bounded(paths, _remove, self.opts.concurrency, "prune")
        return counter.value

    def _drop_empty_scopes(self, paths: list[Path]) -> None:
        """Remove @scope directories left empty by removing ``paths``."""
        for scope in sorted({p.parent for p in paths if p.parent.name.startswith("@")}):
            try:
                if scope.is_dir() and not any(scope.iterdir()):
                    scope.rmdir()
            except OSError as e:
                raise IoError("remove", scope, e) from e

    # ── Bin helpers ──────────────────────────────────────────────

    def _declared_bins(self, graph: Graph, idx: int, package_dir: Path) -> dict[str, str]:
        """Bins declared by an installed package (empty for failed optionals)."""
        if not package_dir.is_dir():
            if graph.is_optional(idx):
                return {}
            raise BinLinkError("read", package_dir, FileNotFoundError("package is not installed"))
        try:
            return BuildManifest.from_dir(package_dir).bin
        except LinkerError as e:
            if graph.is_optional(idx):
                logger.warning("Not linking bins of optional %s: %s", graph[idx].package.spec, e)
                return {}
            raise

    @staticmethod
    def _reset_bin_dir(bin_dir: Path) -> None:
        if bin_dir.is_symlink() or bin_dir.is_file():
            bin_dir.unlink()
        elif bin_dir.is_dir():
            shutil.rmtree(bin_dir)

    def _link_into(self, bin_dir: Path, package_dir: Path, bins: dict[str, str]) -> int:
        linked = 0
        for name, rel in sorted(bins.items()):
            if not name or "/" in name or "\\" in name or name in (".", ".."):
                logger.warning("Ignoring invalid bin name %r in %s", name, package_dir)
                continue
            bin_dir.mkdir(parents=True, exist_ok=True)
            link_bin(package_dir / rel, bin_dir / name)
            linked += 1
        return linked
