"""
Domain models — graph, manifest and options types for the linker.

All models are re-exported here for convenient access:

    from nodelink.core.models import Graph, PackageIdentity, BuildManifest, LinkerOptions
"""

from nodelink.core.models.graph import Graph, GraphNode, PackageIdentity
from nodelink.core.models.manifest import BuildManifest
from nodelink.core.models.options import LinkerOptions

__all__ = [
    # manifest.py
    "BuildManifest",
    # graph.py
    "Graph",
    "GraphNode",
    # options.py
    "LinkerOptions",
    "PackageIdentity",
]
