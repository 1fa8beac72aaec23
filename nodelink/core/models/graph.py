"""
Dependency graph — the resolved input the linker consumes.

The resolver builds this; the linker only reads it.  Nodes are
addressed by a stable integer index (their position in ``nodes``),
and each node lists the indices of its direct dependencies.
Dependency cycles are allowed.
"""

from __future__ import annotations

import hashlib
from collections import deque

from pydantic import BaseModel, Field, model_validator

from nodelink.core.errors import GraphError


class PackageIdentity(BaseModel):
    """A resolved package: name plus version and where it came from."""

    name: str
    version: str
    resolved: str | None = None   # tarball path/URL or package directory
    integrity: str | None = None  # SRI string, informational

    model_config = {"frozen": True}

    @property
    def spec(self) -> str:
        return f"{self.name}@{self.version}"

    @property
    def store_key(self) -> str:
        """Filesystem-safe key, equal for equal identities.

        Registry tarballs are fully identified by name and version;
        anything else (local paths, git checkouts) gets a short hash of
        its source appended.
        """
        key = f"{self.name.replace('/', '+')}@{self.version}"
        if self.resolved and not self.resolved.startswith(("http://", "https://")):
            digest = hashlib.sha256(self.resolved.encode("utf-8")).hexdigest()[:10]
            key = f"{key}-{digest}"
        return key

    def __str__(self) -> str:
        return self.spec


class GraphNode(BaseModel):
    """One resolved package occurrence in the graph."""

    index: int
    package: PackageIdentity
    optional: bool = False
    dependencies: list[int] = Field(default_factory=list)


class Graph(BaseModel):
    """A finished dependency graph with one designated root."""

    root: int = 0
    nodes: list[GraphNode] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_edges(self) -> Graph:
        count = len(self.nodes)
        for position, node in enumerate(self.nodes):
            if node.index != position:
                raise GraphError(
                    f"Node {node.package.spec} has index {node.index}, expected {position}"
                )
            for dep in node.dependencies:
                if not 0 <= dep < count:
                    raise GraphError(
                        f"Node {node.package.spec} depends on unknown node {dep}"
                    )
        if not 0 <= self.root < count:
            raise GraphError(f"Root node {self.root} is not in the graph")
        return self

    def __getitem__(self, idx: int) -> GraphNode:
        return self.nodes[idx]

    def __len__(self) -> int:
        return len(self.nodes)

    def is_optional(self, idx: int) -> bool:
        return self.nodes[idx].optional

    def dependencies(self, idx: int) -> list[int]:
        """Direct dependencies of ``idx``, ordered by package name then index."""
        deps = dict.fromkeys(self.nodes[idx].dependencies)
        return sorted(deps, key=lambda d: (self.nodes[d].package.name, d))

    def dependents(self, idx: int) -> list[int]:
        """Nodes that list ``idx`` as a direct dependency."""
        return [n.index for n in self.nodes if idx in n.dependencies]

    def reachable(self) -> list[int]:
        """All nodes reachable from root, breadth-first, root first."""
        seen = {self.root}
        order = [self.root]
        queue = deque([self.root])
        while queue:
            current = queue.popleft()
            for dep in self.dependencies(current):
                if dep not in seen:
                    seen.add(dep)
                    order.append(dep)
                    queue.append(dep)
        return order

    @classmethod
    def from_packages(
        cls,
        packages: list[dict],
        root: int = 0,
    ) -> Graph:
        """Build a graph from plain dicts (one per node, in index order).

        Each dict holds the identity fields plus optional ``optional``
        and ``dependencies`` keys.
        """
        nodes = []
        for index, raw in enumerate(packages):
            raw = dict(raw)
            optional = bool(raw.pop("optional", False))
            dependencies = list(raw.pop("dependencies", []) or [])
            nodes.append(GraphNode(
                index=index,
                package=PackageIdentity.model_validate(raw),
                optional=optional,
                dependencies=dependencies,
            ))
        return cls(root=root, nodes=nodes)

    def to_packages(self) -> list[dict]:
        """Inverse of ``from_packages``, for writing lockfiles."""
        out = []
        for node in self.nodes:
            raw = node.package.model_dump(exclude_none=True)
            if node.optional:
                raw["optional"] = True
            if node.dependencies:
                raw["dependencies"] = list(node.dependencies)
            out.append(raw)
        return out
