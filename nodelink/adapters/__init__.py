"""Adapters — the linker's bindings to the filesystem and to child processes.

Public re-exports for convenient access.
"""

from nodelink.adapters.shell.bin_link import link_bin
from nodelink.adapters.shell.command import LifecycleScript
from nodelink.adapters.shell.filesystem import PlaceMethod, supports_reflink

__all__ = [
    "LifecycleScript",
    "PlaceMethod",
    "link_bin",
    "supports_reflink",
]
