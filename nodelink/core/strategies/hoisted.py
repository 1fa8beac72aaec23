"""
Hoisted layout — the classic flattened node_modules tree.

Packages go as high in the tree as they can without changing what any
other package resolves:

    <root>/node_modules/
        a/                      a@1 (hoisted)
        b/                      b@1
            node_modules/
                a/              a@2 (b needs a@2, conflicts with a@1)
        .bin/

Placement is computed by ``HoistPlan`` breadth-first from the root with
children ordered by name, so the same graph always gives the same tree.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path

from nodelink.core.errors import GraphError
from nodelink.core.models.graph import Graph
from nodelink.core.models.options import LinkerOptions
from nodelink.core.services.package_source import PackageSource
from nodelink.core.strategies.base import (
    BIN_DIR,
    Outcome,
    PlacementStrategy,
    ProgressCounter,
    run_bounded,
)

logger = logging.getLogger(__name__)

# A placement location: the chain of package names from the root,
# e.g. ("b", "a") is <root>/node_modules/b/node_modules/a
Location = tuple[str, ...]


@dataclass
class HoistPlan:
    """Where every package occurrence lives in the hoisted tree."""

    placements: dict[Location, int] = field(default_factory=dict)
    primary: dict[int, Location] = field(default_factory=dict)
    # empty slots something resolved *through*, with the identity it found
    walked: dict[Location, str] = field(default_factory=dict)

    @classmethod
    def build(cls, graph: Graph) -> HoistPlan:
        plan = cls()
        max_depth = len(graph) + 1
        queue: deque[tuple[Location, int]] = deque([((), graph.root)])
        while queue:
            location, idx = queue.popleft()
            for dep in graph.dependencies(idx):
                if dep == graph.root:
                    continue
                placed = plan._place(graph, location, dep)
                if placed is not None:
                    if len(placed) > max_depth:
                        raise GraphError(
                            f"Cannot hoist {graph[dep].package.spec}: nesting deeper than "
                            f"{max_depth} levels"
                        )
                    queue.append((placed, dep))
        return plan

    def _place(self, graph: Graph, location: Location, dep: int) -> Location | None:
        """Resolve ``dep`` for the package at ``location``.

        Returns the new location if a copy had to be placed, or None when
        an identical package was already visible.
        """
        package = graph[dep].package
        name = package.name
        key = package.store_key
        passed: list[Location] = []
        best: Location | None = None

        # containers nearest first: the dependent itself, then each ancestor
        for depth in range(len(location), -1, -1):
            slot = location[:depth] + (name,)
            occupant = self.placements.get(slot)
            if occupant is not None:
                if graph[occupant].package == package:
                    self._walk(passed, key)
                    self.primary.setdefault(dep, slot)
                    return None
                break
            prior = self.walked.get(slot)
            if prior is None or prior == key:
                best = slot
            passed.append(slot)

        if best is None:
            best = location + (name,)
            if best in self.placements:
                logger.warning(
                    "%s depends on two packages named %s, ignoring %s",
                    location or "root", name, package.spec,
                )
                return None
        self._walk([s for s in passed if len(s) > len(best)], key)
        self.placements[best] = dep
        self.primary.setdefault(dep, best)
        return best

    def _walk(self, slots: list[Location], key: str) -> None:
        for slot in slots:
            self.walked.setdefault(slot, key)

    def by_depth(self) -> list[list[tuple[Location, int]]]:
        """Placements grouped by nesting depth, shallowest first, sorted."""
        levels: dict[int, list[tuple[Location, int]]] = {}
        for location, idx in sorted(self.placements.items()):
            levels.setdefault(len(location), []).append((location, idx))
        return [levels[d] for d in sorted(levels)]


class HoistedLinker(PlacementStrategy):
    """Flattened node_modules tree with nested fallback on conflicts."""

    def __init__(self, opts: LinkerOptions, source: PackageSource | None = None):
        super().__init__(opts, source)
        self._plan_lock = threading.Lock()
        self._plan_cache: tuple[Graph, HoistPlan] | None = None

    def plan(self, graph: Graph) -> HoistPlan:
        """The hoist plan for ``graph`` (computed once per graph object)."""
        with self._plan_lock:
            if self._plan_cache is None or self._plan_cache[0] is not graph:
                self._plan_cache = (graph, HoistPlan.build(graph))
            return self._plan_cache[1]

    def location_dir(self, location: Location) -> Path:
        path = self.opts.node_modules
        for i, name in enumerate(location):
            if i:
                path = path / "node_modules"
            path = path / name
        return path

    def package_dir(self, graph: Graph, idx: int) -> Path:
        if idx == graph.root:
            return self.opts.root
        location = self.plan(graph).primary.get(idx)
        if location is None:
            raise GraphError(f"{graph[idx].package.spec} is not reachable from the root")
        return self.location_dir(location)

    # ── extract ──────────────────────────────────────────────────

    def extract(self, graph: Graph) -> int:
        start = time.monotonic()
        plan = self.plan(graph)
        self.opts.node_modules.mkdir(parents=True, exist_ok=True)
        methods = self._placement_methods()
        counter = ProgressCounter(self.opts.on_extract_progress)
        failed: set[Location] = set()

        def _place(item: tuple[Location, int]) -> tuple[Location, Outcome]:
            location, idx = item
            outcome = self._materialize(graph, idx, self.location_dir(location), methods)
            if outcome == Outcome.PLACED:
                if plan.primary[idx] == location:
                    self.pending_rebuild.add(idx)
                counter.tick()
            return location, outcome

        # Parents must exist before anything nests inside them
        for level in plan.by_depth():
            runnable = [
                (location, idx) for location, idx in level
                if not any(location[:i] in failed for i in range(1, len(location)))
            ]
            for location, outcome in run_bounded(
                runnable, _place, self.opts.concurrency, "extract",
            ):
                if outcome == Outcome.FAILED:
                    failed.add(location)

        self._mark_root_pending(graph)
        self._log_phase("Extracted", counter.value, start)
        return counter.value

    # ── prune ────────────────────────────────────────────────────

    def _scan(self, modules_dir: Path, expected: set[Path], stale: list[Path]) -> None:
        if not modules_dir.is_dir():
            return
        for entry in sorted(modules_dir.iterdir()):
            if entry.name.startswith("."):
                continue
            if entry.name.startswith("@") and entry.is_dir() and not entry.is_symlink():
                for sub in sorted(entry.iterdir()):
                    if not sub.name.startswith("."):
                        self._check(sub, expected, stale)
            else:
                self._check(entry, expected, stale)

    def _check(self, path: Path, expected: set[Path], stale: list[Path]) -> None:
        if path not in expected:
            stale.append(path)
        elif path.is_dir() and not path.is_symlink():
            self._scan(path / "node_modules", expected, stale)

    def prune(self, graph: Graph) -> int:
        start = time.monotonic()
        expected = {self.location_dir(loc) for loc in self.plan(graph).placements}

        actual = self._load_actual_tree()
        stale: list[Path] = []
        if actual is not None:
            previous = sorted(
                HoistPlan.build(actual).placements,
                key=lambda loc: (len(loc), loc),
            )
            removed_locations: set[Location] = set()
            for location in previous:
                if any(location[:i] in removed_locations for i in range(1, len(location))):
                    continue
                path = self.location_dir(location)
                if path not in expected and (path.exists() or path.is_symlink()):
                    stale.append(path)
                    removed_locations.add(location)
        else:
            self._scan(self.opts.node_modules, expected, stale)

        # A store left behind by the isolated layout holds nothing we map to
        store = self.opts.node_modules / ".store"
        if store.is_dir():
            stale.extend(p for p in sorted(store.iterdir()) if not p.name.startswith("."))

        removed = self._remove_all(stale)
        self._drop_empty_scopes(stale)
        self._log_phase("Pruned", removed, start)
        return removed

    # ── link_bins ────────────────────────────────────────────────

    def link_bins(self, graph: Graph) -> int:
        plan = self.plan(graph)
        by_bin_dir: dict[Path, list[tuple[Location, int]]] = {}
        for location, idx in sorted(plan.placements.items()):
            if len(location) == 1:
                bin_dir = self.opts.node_modules / BIN_DIR
            else:
                bin_dir = self.location_dir(location[:-1]) / "node_modules" / BIN_DIR
            by_bin_dir.setdefault(bin_dir, []).append((location, idx))

        def _link_dir(bin_dir: Path) -> int:
            self._reset_bin_dir(bin_dir)
            linked = 0
            for location, idx in by_bin_dir[bin_dir]:
                package_dir = self.location_dir(location)
                if not package_dir.is_dir() and (
                    graph.is_optional(idx)
                    or (len(location) > 1 and not self.location_dir(location[:-1]).is_dir())
                ):
                    continue
                bins = self._declared_bins(graph, idx, package_dir)
                linked += self._link_into(bin_dir, package_dir, bins)
            return linked

        return sum(run_bounded(list(by_bin_dir), _link_dir, self.opts.concurrency, "link-bins"))
