"""
Tests for the hoisted layout — plan determinism, conflicts, prune, bins.
"""

from pathlib import Path

import pytest

from conftest import build_graph, installed_version, posix_only, root_entry
from nodelink.core.errors import GraphError
from nodelink.core.persistence.lockfile import write_lockfile
from nodelink.core.strategies.hoisted import HoistedLinker, HoistPlan

pytestmark = posix_only


@pytest.fixture
def conflict_graph(packages):
    """app → a@1, b@1;  b → a@2, c@1;  c → d@1."""
    for name, version in [("a", "1.0.0"), ("a", "2.0.0"), ("b", "1.0.0"), ("c", "1.0.0"), ("d", "1.0.0")]:
        packages(name, version)
    return build_graph(
        root_entry(dependencies=[1, 2]),
        packages.entry("a", "1.0.0"),
        packages.entry("b", dependencies=[3, 4]),
        packages.entry("a", "2.0.0"),
        packages.entry("c", dependencies=[5]),
        packages.entry("d"),
    )


def _layout(graph, plan: HoistPlan) -> dict[tuple[str, ...], str]:
    return {loc: graph[idx].package.spec for loc, idx in plan.placements.items()}


class TestHoistPlan:
    """Placement decisions, independent of the disk."""

    def test_hoists_and_nests_conflicts(self, conflict_graph):
        layout = _layout(conflict_graph, HoistPlan.build(conflict_graph))
        assert layout == {
            ("a",): "a@1.0.0",
            ("b",): "b@1.0.0",
            ("b", "a"): "a@2.0.0",
            ("c",): "c@1.0.0",
            ("d",): "d@1.0.0",
        }

    def test_deterministic_across_node_order(self, packages):
        packages("x")
        packages("y")
        packages("z")
        one = build_graph(
            root_entry(dependencies=[1, 2]),
            packages.entry("x", dependencies=[3]),
            packages.entry("y"),
            packages.entry("z"),
        )
        two = build_graph(
            root_entry(dependencies=[3, 2]),
            packages.entry("z"),
            packages.entry("y"),
            packages.entry("x", dependencies=[1]),
        )
        assert _layout(one, HoistPlan.build(one)) == _layout(two, HoistPlan.build(two))

    def test_same_identity_reused(self, packages):
        packages("a")
        packages("b")
        graph = build_graph(
            root_entry(dependencies=[1, 2]),
            packages.entry("a"),
            packages.entry("b", dependencies=[3]),
            packages.entry("a"),
        )
        plan = HoistPlan.build(graph)
        assert set(plan.placements) == {("a",), ("b",)}
        assert plan.primary[3] == ("a",)

    def test_conflict_nests_under_dependent(self, packages):
        for name, version in [("a", "1.0.0"), ("a", "2.0.0"), ("b", "1.0.0"), ("c", "1.0.0")]:
            packages(name, version)
        graph = build_graph(
            root_entry(dependencies=[1]),
            packages.entry("b", dependencies=[2, 3]),
            packages.entry("a", "2.0.0"),
            packages.entry("c", dependencies=[4]),
            packages.entry("a", "1.0.0"),
        )
        layout = _layout(graph, HoistPlan.build(graph))
        assert layout[("a",)] == "a@2.0.0"
        assert layout[("c", "a")] == "a@1.0.0"

    def test_slot_resolved_through_is_not_reused(self, packages):
        # b finds c@1 at the top level by passing through b/node_modules/c;
        # x@1 (nested under b) must not put c@2 there and shadow it.
        for name, version in [("b", "1.0.0"), ("c", "1.0.0"), ("c", "2.0.0"),
                              ("x", "1.0.0"), ("x", "2.0.0")]:
            packages(name, version)
        graph = build_graph(
            root_entry(dependencies=[1, 2]),
            packages.entry("b", dependencies=[3, 4]),
            packages.entry("x", "2.0.0"),
            packages.entry("c", "1.0.0"),
            packages.entry("x", "1.0.0", dependencies=[5]),
            packages.entry("c", "2.0.0"),
        )
        layout = _layout(graph, HoistPlan.build(graph))
        assert layout[("c",)] == "c@1.0.0"
        assert layout[("b", "x")] == "x@1.0.0"
        assert layout[("b", "x", "c")] == "c@2.0.0"
        assert ("b", "c") not in layout

    def test_cycles_terminate(self, packages):
        packages("a")
        packages("b")
        graph = build_graph(
            root_entry(dependencies=[1]),
            packages.entry("a", dependencies=[2]),
            packages.entry("b", dependencies=[1]),
        )
        assert set(HoistPlan.build(graph).placements) == {("a",), ("b",)}


class TestHoistedExtract:
    """Materialising the plan on disk."""

    def test_layout_on_disk(self, conflict_graph, make_opts, project: Path):
        linker = HoistedLinker(make_opts())
        assert linker.extract(conflict_graph) == 5

        top = project / "node_modules"
        assert installed_version(top / "a") == "1.0.0"
        assert installed_version(top / "b" / "node_modules" / "a") == "2.0.0"
        assert (top / "d").is_dir()
        assert linker.package_dir(conflict_graph, 3) == top / "b" / "node_modules" / "a"
        assert linker.package_dir(conflict_graph, 0) == project

    def test_idempotent(self, conflict_graph, make_opts):
        HoistedLinker(make_opts()).extract(conflict_graph)
        again = HoistedLinker(make_opts())
        assert again.extract(conflict_graph) == 0
        assert again.pending_rebuild.snapshot() == [0]

    def test_upgrade_keeps_nested_dependencies(self, conflict_graph, packages, make_opts, project: Path):
        HoistedLinker(make_opts()).extract(conflict_graph)
        packages("b", "1.1.0")
        upgraded = build_graph(*[
            {**entry, **({"version": "1.1.0", "resolved": packages.entry("b", "1.1.0")["resolved"]}
                         if entry["name"] == "b" else {})}
            for entry in conflict_graph.to_packages()
        ])
        linker = HoistedLinker(make_opts())
        assert linker.extract(upgraded) == 1
        top = project / "node_modules"
        assert installed_version(top / "b") == "1.1.0"
        assert installed_version(top / "b" / "node_modules" / "a") == "2.0.0"

    def test_unreachable_node(self, packages, make_opts):
        packages("a")
        graph = build_graph(root_entry(), packages.entry("a"))
        with pytest.raises(GraphError, match="not reachable"):
            HoistedLinker(make_opts()).package_dir(graph, 1)


class TestHoistedPrune:
    """Removal of directories no placement maps to."""

    def test_prune_by_scanning(self, conflict_graph, packages, make_opts, project: Path):
        HoistedLinker(make_opts()).extract(conflict_graph)
        smaller = build_graph(root_entry(dependencies=[1]), packages.entry("a", "1.0.0"))

        removed = HoistedLinker(make_opts()).prune(smaller)

        # b (with its nested a@2), c and d
        assert removed == 3
        top = project / "node_modules"
        assert sorted(p.name for p in top.iterdir() if not p.name.startswith(".")) == ["a"]

    def test_prune_nested_only(self, conflict_graph, packages, make_opts, project: Path):
        HoistedLinker(make_opts()).extract(conflict_graph)
        # b now uses the hoisted a@1, so b/node_modules/a is stale
        fixed = build_graph(*[
            {**entry, "dependencies": [1, 4]} if entry["name"] == "b" else entry
            for entry in conflict_graph.to_packages()
        ])
        assert HoistedLinker(make_opts()).prune(fixed) == 1
        assert not (project / "node_modules" / "b" / "node_modules" / "a").exists()
        assert (project / "node_modules" / "b").is_dir()

    def test_prune_from_actual_tree(self, conflict_graph, packages, make_opts, tmp_path: Path):
        HoistedLinker(make_opts()).extract(conflict_graph)
        snapshot = tmp_path / "actual.yml"
        write_lockfile(conflict_graph, snapshot)
        smaller = build_graph(root_entry(dependencies=[1]), packages.entry("a", "1.0.0"))

        assert HoistedLinker(make_opts(actual_tree=snapshot)).prune(smaller) == 3

    def test_prune_scoped_packages(self, packages, make_opts, project: Path):
        packages("@scope/a")
        graph = build_graph(root_entry(dependencies=[1]), packages.entry("@scope/a"))
        HoistedLinker(make_opts()).extract(graph)
        assert (project / "node_modules" / "@scope" / "a").is_dir()

        assert HoistedLinker(make_opts()).prune(build_graph(root_entry())) == 1
        assert not (project / "node_modules" / "@scope").exists()

    def test_prune_removes_isolated_store(self, packages, make_opts, project: Path):
        store_entry = project / "node_modules" / ".store" / "a@1.0.0"
        store_entry.mkdir(parents=True)
        assert HoistedLinker(make_opts()).prune(build_graph(root_entry())) == 1
        assert not store_entry.exists()


class TestHoistedBins:
    """Top-level bins go to node_modules/.bin, nested ones stay nested."""

    def test_top_level_and_nested_bins(self, packages, make_opts, project: Path):
        packages("tool", "1.0.0", bin="./cli.js", files={"cli.js": "#!/bin/sh\necho 1\n"})
        packages("tool", "2.0.0", bin="./cli.js", files={"cli.js": "#!/bin/sh\necho 2\n"})
        packages("user")
        graph = build_graph(
            root_entry(dependencies=[1, 3]),
            packages.entry("tool", "1.0.0"),
            packages.entry("tool", "2.0.0"),
            packages.entry("user", dependencies=[2]),
        )
        linker = HoistedLinker(make_opts())
        linker.extract(graph)
        assert linker.link_bins(graph) == 2

        top = project / "node_modules"
        assert (top / ".bin" / "tool").resolve() == (top / "tool" / "cli.js").resolve()
        nested = top / "user" / "node_modules" / ".bin" / "tool"
        assert nested.resolve() == (top / "user" / "node_modules" / "tool" / "cli.js").resolve()

    def test_missing_optional_has_no_bins(self, packages, make_opts, project: Path):
        graph = build_graph(
            root_entry(dependencies=[1]),
            {"name": "ghost", "version": "1.0.0", "resolved": "/nope", "optional": True},
        )
        linker = HoistedLinker(make_opts())
        linker.extract(graph)
        assert linker.link_bins(graph) == 0

    def test_nested_scoped_bins_go_to_enclosing_bin_dir(self, packages, make_opts, project: Path):
        packages("@s/tool", "1.0.0", bin="./cli.js", files={"cli.js": "#!/bin/sh\necho 1\n"})
        packages("@s/tool", "2.0.0", bin="./cli.js", files={"cli.js": "#!/bin/sh\necho 2\n"})
        packages("user")
        graph = build_graph(
            root_entry(dependencies=[1, 3]),
            packages.entry("@s/tool", "1.0.0"),
            packages.entry("@s/tool", "2.0.0"),
            packages.entry("user", dependencies=[2]),
        )
        linker = HoistedLinker(make_opts())
        linker.extract(graph)
        assert linker.link_bins(graph) == 2

        top = project / "node_modules"
        user_modules = top / "user" / "node_modules"
        assert (top / ".bin" / "tool").resolve() == (top / "@s" / "tool" / "cli.js").resolve()
        nested = user_modules / ".bin" / "tool"
        assert nested.resolve() == (user_modules / "@s" / "tool" / "cli.js").resolve()
        assert not (user_modules / "@s" / ".bin").exists()

        # the converged tree has nothing to prune, bin dirs included
        assert HoistedLinker(make_opts()).prune(graph) == 0
        assert nested.is_symlink()

    def test_prune_ignores_dot_entries_in_scopes(self, packages, make_opts, project: Path):
        packages("@s/a")
        graph = build_graph(root_entry(dependencies=[1]), packages.entry("@s/a"))
        HoistedLinker(make_opts()).extract(graph)
        stray_bin = project / "node_modules" / "@s" / ".bin"
        stray_bin.mkdir()

        assert HoistedLinker(make_opts()).prune(graph) == 0
        assert stray_bin.is_dir()
