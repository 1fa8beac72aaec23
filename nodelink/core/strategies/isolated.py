"""
Isolated layout — one physical copy per package version, private links.

    <root>/node_modules/
        a -> .store/a@1.0.0/node_modules/a           (root's direct deps)
        .bin/                                        (root's bins)
        .store/
            a@1.0.0/node_modules/
                a/            package contents
                b -> ../../b@2.0.0/node_modules/b
                .bin/         bins of a's direct deps
            b@2.0.0/node_modules/
                b/

Every dependent sees exactly its own direct dependencies, so a package
can never resolve something it did not declare, and disk usage grows
with distinct versions rather than with edges.
"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path

from nodelink.adapters.shell.filesystem import remove_path
from nodelink.core.errors import IoError
from nodelink.core.models.graph import Graph
from nodelink.core.strategies.base import (
    BIN_DIR,
    Outcome,
    PlacementStrategy,
    ProgressCounter,
    run_bounded,
)

logger = logging.getLogger(__name__)

STORE_DIR = ".store"


def _entry_names(modules_dir: Path) -> list[str]:
    """Package names present in a node_modules dir, expanding @scopes."""
    names: list[str] = []
    if not modules_dir.is_dir():
        return names
    for entry in sorted(modules_dir.iterdir()):
        if entry.name.startswith("."):
            continue
        if entry.name.startswith("@") and entry.is_dir() and not entry.is_symlink():
            names.extend(
                f"{entry.name}/{sub.name}" for sub in sorted(entry.iterdir())
                if not sub.name.startswith(".")
            )
        else:
            names.append(entry.name)
    return names


class IsolatedLinker(PlacementStrategy):
    """Content-addressed store plus per-dependent link trees."""

    @property
    def store(self) -> Path:
        return self.opts.node_modules / STORE_DIR

    def package_dir(self, graph: Graph, idx: int) -> Path:
        if idx == graph.root:
            return self.opts.root
        package = graph[idx].package
        return self.store / package.store_key / "node_modules" / package.name

    def _modules_dir(self, graph: Graph, idx: int) -> Path:
        """The node_modules dir a node resolves its dependencies from."""
        if idx == graph.root:
            return self.opts.node_modules
        return self.store / graph[idx].package.store_key / "node_modules"

    def _groups(self, graph: Graph) -> dict[str, list[int]]:
        """Reachable nodes grouped by store key, in breadth-first order.

        Nodes with identical identity share one directory, so they are
        handled together.  The root gets the empty key.
        """
        groups: dict[str, list[int]] = {}
        for idx in graph.reachable():
            key = "" if idx == graph.root else graph[idx].package.store_key
            groups.setdefault(key, []).append(idx)
        return groups

    def _group_deps(self, graph: Graph, members: list[int]) -> dict[str, int]:
        """Direct dependencies of a group, by package name (first wins)."""
        deps: dict[str, int] = {}
        for idx in members:
            for dep in graph.dependencies(idx):
                if dep == graph.root:
                    continue
                name = graph[dep].package.name
                if name in deps and deps[name] != dep:
                    if graph[deps[name]].package != graph[dep].package:
                        logger.debug(
                            "%s: conflicting dependencies named %s, keeping %s",
                            graph[idx].package.spec, name, graph[deps[name]].package.spec,
                        )
                    continue
                deps[name] = dep
        return deps

    # ── extract ──────────────────────────────────────────────────

    def extract(self, graph: Graph) -> int:
        start = time.monotonic()
        groups = self._groups(graph)
        self.opts.node_modules.mkdir(parents=True, exist_ok=True)
        methods = self._placement_methods()
        counter = ProgressCounter(self.opts.on_extract_progress)

        def _place(key: str) -> tuple[str, Outcome]:
            idx = groups[key][0]
            outcome = self._materialize(graph, idx, self.package_dir(graph, idx), methods)
            if outcome == Outcome.PLACED:
                self.pending_rebuild.add(idx)
                counter.tick()
            return key, outcome

        outcomes = dict(run_bounded(
            [key for key in groups if key], _place, self.opts.concurrency, "extract",
        ))
        failed = {key for key, outcome in outcomes.items() if outcome == Outcome.FAILED}

        run_bounded(
            [key for key in groups if key not in failed],
            lambda key: self._link_dependencies(graph, groups[key], failed),
            self.opts.concurrency,
            "link-deps",
        )
        self._mark_root_pending(graph)
        self._log_phase("Extracted", counter.value, start)
        return counter.value

    def _link_dependencies(self, graph: Graph, members: list[int], failed: set[str]) -> None:
        """Point a group's private node_modules entries at its dependencies."""
        representative = members[0]
        modules_dir = self._modules_dir(graph, representative)
        deps = self._group_deps(graph, members)
        is_root = representative == graph.root

        own_name = graph[representative].package.name
        for name, dep in deps.items():
            if not is_root and name == own_name:
                continue
            link = modules_dir / name
            if graph[dep].package.store_key in failed:
                logger.debug("Not linking failed optional %s", graph[dep].package.spec)
                if link.is_symlink():
                    link.unlink()
                continue
            target = os.path.relpath(self.package_dir(graph, dep), link.parent)
            try:
                if link.is_symlink() and os.readlink(link) == target:
                    continue
                if link.exists() or link.is_symlink():
                    remove_path(link)
                link.parent.mkdir(parents=True, exist_ok=True)
                os.symlink(target, link, target_is_directory=True)
            except OSError as e:
                raise IoError("symlink", link, e) from e

        if is_root:
            # Stale top-level entries belong to prune
            return
        for name in _entry_names(modules_dir):
            if name != own_name and name not in deps:
                stale = modules_dir / name
                try:
                    remove_path(stale)
                except OSError as e:
                    raise IoError("remove", stale, e) from e

    # ── prune ────────────────────────────────────────────────────

    def prune(self, graph: Graph) -> int:
        start = time.monotonic()
        groups = self._groups(graph)
        expected_keys = {key for key in groups if key}
        root_deps = self._group_deps(graph, groups[""])

        actual = self._load_actual_tree()
        if actual is not None:
            previous_keys = {
                actual[i].package.store_key for i in actual.reachable() if i != actual.root
            }
            stale_entries = [self.store / k for k in sorted(previous_keys - expected_keys)]
            stale_entries = [p for p in stale_entries if p.exists()]
            previous_root = {actual[d].package.name for d in actual.dependencies(actual.root)}
            top_level = sorted(previous_root)
        else:
            stale_entries = []
            if self.store.is_dir():
                stale_entries = [
                    p for p in sorted(self.store.iterdir())
                    if not p.name.startswith(".") and p.name not in expected_keys
                ]
            top_level = _entry_names(self.opts.node_modules)

        # Real directories at the top level are leftovers of another
        # layout; links are only stale when they are not root deps.
        stale_links: list[Path] = []
        for name in top_level:
            entry = self.opts.node_modules / name
            if entry.is_symlink():
                if name not in root_deps:
                    stale_links.append(entry)
            elif entry.is_dir():
                stale_entries.append(entry)

        for link in stale_links:
            try:
                link.unlink()
            except OSError as e:
                raise IoError("remove", link, e) from e

        removed = self._remove_all(stale_entries)
        self._drop_empty_scopes(stale_links + stale_entries)
        self._log_phase("Pruned", removed, start)
        return removed

    # ── link_bins ────────────────────────────────────────────────

    def link_bins(self, graph: Graph) -> int:
        groups = self._groups(graph)

        def _link_group(key: str) -> int:
            members = groups[key]
            if key and not self.package_dir(graph, members[0]).is_dir():
                # optional package whose extraction failed
                return 0
            bin_dir = self._modules_dir(graph, members[0]) / BIN_DIR
            self._reset_bin_dir(bin_dir)
            linked = 0
            for _name, dep in sorted(self._group_deps(graph, members).items()):
                dep_dir = self.package_dir(graph, dep)
                bins = self._declared_bins(graph, dep, dep_dir)
                linked += self._link_into(bin_dir, dep_dir, bins)
            return linked

        return sum(run_bounded(list(groups), _link_group, self.opts.concurrency, "link-bins"))
