"""
Script orchestrator — run one lifecycle event for every pending package.

Flow per event:
    snapshot pending set → bounded pool over nodes → per node:
    resolve dir → read manifest → spawn → (drain stdout ∥ drain stderr ∥ wait)

Scripts for one event run with no ordering between packages; only
``script_concurrency`` throttles them.  A failing optional package is
logged and skipped; any other failure stops the event and propagates.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ALL_COMPLETED, ThreadPoolExecutor, wait

from nodelink.adapters.shell.command import LifecycleScript, drain
from nodelink.core.errors import (
    LinkerError,
    ManifestReadError,
    PackageMissingError,
    TaskJoinError,
)
from nodelink.core.models.graph import Graph
from nodelink.core.models.manifest import BuildManifest
from nodelink.core.strategies.base import PlacementStrategy, run_bounded

logger = logging.getLogger(__name__)

LIFECYCLE_EVENTS = ("preinstall", "install", "postinstall")


class ScriptRunner:
    """Runs lifecycle scripts for the packages a strategy marked pending."""

    def __init__(self, strategy: PlacementStrategy):
        self.strategy = strategy
        self.opts = strategy.opts

    def run(self, graph: Graph, event: str) -> int:
        """Run ``event`` for every pending node.  Returns how many scripts ran."""
        start = time.monotonic()
        logger.debug("Running %s lifecycle scripts", event)
        pending = self.strategy.pending_rebuild.snapshot()
        ran = run_bounded(
            pending,
            lambda idx: self._run_one(graph, idx, event),
            self.opts.script_concurrency,
            f"script-{event}",
        )
        logger.debug(
            "Ran lifecycle scripts for %s in %dms.", event, (time.monotonic() - start) * 1000
        )
        return sum(ran)

    def _run_one(self, graph: Graph, idx: int, event: str) -> bool:
        node = graph[idx]
        package = node.package
        if idx == graph.root:
            package_dir = self.opts.root
        else:
            package_dir = self.strategy.package_dir(graph, idx)
        if not package_dir.is_dir():
            raise PackageMissingError(package.spec, package_dir)

        try:
            manifest = BuildManifest.from_dir(package_dir)
        except ManifestReadError as e:
            if node.optional:
                logger.warning("Error in optional dependency script: %s", e)
                return False
            raise

        if not manifest.has_script(event):
            return False

        if self.opts.on_script_start is not None:
            self.opts.on_script_start(package, event)

        script = LifecycleScript(package_dir, event, manifest, self.opts.root)
        try:
            script.spawn()
            self._join(script, package.name, event)
        except LinkerError as e:
            if node.optional:
                logger.warning("Error in optional dependency script: %s", e)
                return False
            raise
        return True

    def _join(self, script: LifecycleScript, name: str, event: str) -> None:
        """Drain both streams and wait for exit; all three must finish.

        The first error (stdout, stderr, then exit, in that order) is
        raised only after every unit is done, so no pipe is left unread.
        """
        on_line = self.opts.on_script_line
        with ThreadPoolExecutor(max_workers=3, thread_name_prefix=f"script-{name}") as pool:
            units = [
                ("stdout", pool.submit(drain, script.stdout, f"stdout::{name}::{event}", on_line)),
                ("stderr", pool.submit(drain, script.stderr, f"stderr::{name}::{event}", on_line)),
                ("wait", pool.submit(script.wait)),
            ]
            wait([future for _, future in units], return_when=ALL_COMPLETED)

        for what, future in units:
            error = future.exception()
            if error is None:
                continue
            if isinstance(error, LinkerError):
                raise error
            raise TaskJoinError(f"{name} {event} {what}", error) from error
