"""
Linker — the single entry point for materialising a resolved graph.

The linker is a tagged variant over the on-disk layouts:

    ISOLATED  →  IsolatedLinker (content-addressed store + private links)
    HOISTED   →  HoistedLinker  (flattened node_modules)
    NULL      →  no-op, for targets where linking is unsupported

The caller converges the tree with ``extract`` and ``prune`` (either
order), then calls ``rebuild``:

    preinstall → link bins → install → postinstall

Each step aborts the rest on failure.  Bins are linked after
``preinstall`` (which may generate them) and before ``install`` /
``postinstall`` (which often call sibling packages' bins).
"""

from __future__ import annotations

import logging
import time
from enum import StrEnum
from pathlib import Path

from nodelink.core.config.loader import Strategy
from nodelink.core.engine.scripts import ScriptRunner
from nodelink.core.models.graph import Graph
from nodelink.core.models.options import LinkerOptions
from nodelink.core.services.package_source import PackageSource
from nodelink.core.strategies.base import PendingRebuild, PlacementStrategy
from nodelink.core.strategies.hoisted import HoistedLinker
from nodelink.core.strategies.isolated import IsolatedLinker

logger = logging.getLogger(__name__)


class LinkerKind(StrEnum):
    """Which layout a Linker drives."""

    ISOLATED = "isolated"
    HOISTED = "hoisted"
    NULL = "null"


class Linker:
    """Facade dispatching to exactly one placement strategy."""

    def __init__(self, kind: LinkerKind, strategy: PlacementStrategy | None = None):
        if (kind == LinkerKind.NULL) != (strategy is None):
            raise ValueError(f"{kind} linker needs {'no' if strategy is None else 'a'} strategy")
        self.kind = kind
        self._strategy = strategy
        self._scripts = ScriptRunner(strategy) if strategy is not None else None

    @classmethod
    def isolated(cls, opts: LinkerOptions, source: PackageSource | None = None) -> Linker:
        return cls(LinkerKind.ISOLATED, IsolatedLinker(opts, source))

    @classmethod
    def hoisted(cls, opts: LinkerOptions, source: PackageSource | None = None) -> Linker:
        return cls(LinkerKind.HOISTED, HoistedLinker(opts, source))

    @classmethod
    def null(cls) -> Linker:
        return cls(LinkerKind.NULL)

    @classmethod
    def for_strategy(
        cls,
        strategy: Strategy,
        opts: LinkerOptions,
        source: PackageSource | None = None,
    ) -> Linker:
        match strategy:
            case Strategy.ISOLATED:
                return cls.isolated(opts, source)
            case Strategy.HOISTED:
                return cls.hoisted(opts, source)

    def __repr__(self) -> str:
        return f"<Linker kind={self.kind.value!r}>"

    @property
    def pending_rebuild(self) -> PendingRebuild | None:
        return self._strategy.pending_rebuild if self._strategy is not None else None

    def close(self) -> None:
        if self._strategy is not None:
            self._strategy.source.close()

    def __enter__(self) -> Linker:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ── Tree convergence ─────────────────────────────────────────

    def extract(self, graph: Graph) -> int:
        match self.kind:
            case LinkerKind.ISOLATED | LinkerKind.HOISTED:
                return self._strategy.extract(graph)
            case LinkerKind.NULL:
                return 0

    def prune(self, graph: Graph) -> int:
        match self.kind:
            case LinkerKind.ISOLATED | LinkerKind.HOISTED:
                return self._strategy.prune(graph)
            case LinkerKind.NULL:
                return 0

    def package_dir(self, graph: Graph, idx: int) -> Path | None:
        match self.kind:
            case LinkerKind.ISOLATED | LinkerKind.HOISTED:
                return self._strategy.package_dir(graph, idx)
            case LinkerKind.NULL:
                return None

    def mark_all_pending(self, graph: Graph) -> None:
        """Queue every reachable package for scripts (forced rebuild).

        Optional packages that are not on disk (their extraction failed)
        are left out; a missing required package still fails the rebuild.
        """
        if self._strategy is None:
            return
        for idx in graph.reachable():
            if idx == graph.root:
                if not (self._strategy.opts.root / "package.json").is_file():
                    continue
            elif graph.is_optional(idx) and not self._strategy.package_dir(graph, idx).is_dir():
                logger.debug("Skipping missing optional %s", graph[idx].package.spec)
                continue
            self._strategy.pending_rebuild.add(idx)

    # ── Rebuild ──────────────────────────────────────────────────

    def rebuild(self, graph: Graph, ignore_scripts: bool = False) -> None:
        """Run lifecycle scripts and link bins, in lifecycle order."""
        logger.debug("Running lifecycle scripts...")
        start = time.monotonic()
        pending = self.pending_rebuild.snapshot() if self.pending_rebuild is not None else []
        if not ignore_scripts:
            self.run_scripts(graph, "preinstall")
        self.link_bins(graph)
        if not ignore_scripts:
            self.run_scripts(graph, "install")
            self.run_scripts(graph, "postinstall")
            if self.pending_rebuild is not None:
                self.pending_rebuild.drain(pending)
        logger.debug("Ran lifecycle scripts in %dms.", (time.monotonic() - start) * 1000)

    def link_bins(self, graph: Graph) -> int:
        logger.debug("Linking bins...")
        start = time.monotonic()
        match self.kind:
            case LinkerKind.ISOLATED | LinkerKind.HOISTED:
                linked = self._strategy.link_bins(graph)
            case LinkerKind.NULL:
                linked = 0
        logger.debug(
            "Linked %d package bins in %dms.", linked, (time.monotonic() - start) * 1000
        )
        return linked

    def run_scripts(self, graph: Graph, event: str) -> int:
        match self.kind:
            case LinkerKind.ISOLATED | LinkerKind.HOISTED:
                return self._scripts.run(graph, event)
            case LinkerKind.NULL:
                return 0
