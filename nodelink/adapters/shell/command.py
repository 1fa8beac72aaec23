"""
Lifecycle script process — spawn one package script and stream its output.

This is the SINGLE PLACE where lifecycle scripts are started.  The
process runs through the platform shell with its working directory set
to the package directory, and an npm-compatible environment:

    PATH                      package and workspace node_modules/.bin first
    npm_lifecycle_event       the event being run (e.g. "postinstall")
    npm_lifecycle_script      the script command itself
    npm_package_json          path to the package's package.json
    npm_package_name/version  from the manifest
    INIT_CWD                  the workspace root
    npm_config_local_prefix   the workspace root
"""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import IO, Callable

from nodelink.core.errors import ScriptExitError, ScriptSpawnError
from nodelink.core.models.manifest import MANIFEST_FILE, BuildManifest
from nodelink.core.observability.logging_config import SCRIPT_LOGGER

logger = logging.getLogger(__name__)
script_logger = logging.getLogger(SCRIPT_LOGGER)


def _shell_command(script: str) -> list[str]:
    if os.name == "nt":
        return [os.environ.get("COMSPEC", "cmd.exe"), "/d", "/s", "/c", script]
    return ["sh", "-c", script]


def _bin_paths(package_dir: Path, workspace_root: Path) -> list[str]:
    """node_modules/.bin directories visible from the package, nearest first."""
    paths: list[str] = []
    current = package_dir
    while True:
        candidate = current / "node_modules" / ".bin"
        if str(candidate) not in paths:
            paths.append(str(candidate))
        if current == workspace_root or current.parent == current:
            break
        current = current.parent
    root_bin = str(workspace_root / "node_modules" / ".bin")
    if root_bin not in paths:
        paths.append(root_bin)
    return paths


class LifecycleScript:
    """One lifecycle script invocation for one package.

    Usage::

        script = LifecycleScript(pkg_dir, "install", manifest, root)
        script.spawn()
        # drain script.stdout / script.stderr, then:
        script.wait()
    """

    def __init__(
        self,
        package_dir: Path,
        event: str,
        manifest: BuildManifest,
        workspace_root: Path,
    ):
        self.package_dir = package_dir
        self.event = event
        self.manifest = manifest
        self.workspace_root = workspace_root
        self.command = manifest.scripts[event]
        self.process: subprocess.Popen[bytes] | None = None

    @property
    def label(self) -> str:
        return self.manifest.name or self.package_dir.name

    def environment(self) -> dict[str, str]:
        env = os.environ.copy()
        path_key = next((k for k in env if k.upper() == "PATH"), "PATH")
        bins = _bin_paths(self.package_dir, self.workspace_root)
        existing = env.get(path_key, "")
        env[path_key] = os.pathsep.join(bins + ([existing] if existing else []))
        env.update({
            "npm_lifecycle_event": self.event,
            "npm_lifecycle_script": self.command,
            "npm_package_json": str(self.package_dir / MANIFEST_FILE),
            "npm_package_name": self.manifest.name,
            "npm_package_version": self.manifest.version,
            "INIT_CWD": str(self.workspace_root),
            "npm_config_local_prefix": str(self.workspace_root),
        })
        return env

    def spawn(self) -> subprocess.Popen[bytes]:
        """Start the script.

        Raises:
            ScriptSpawnError: The shell could not be started.
        """
        logger.debug(
            "Executing %s script for %s: %s (cwd=%s)",
            self.event, self.label, self.command, self.package_dir,
        )
        try:
            self.process = subprocess.Popen(
                _shell_command(self.command),
                cwd=self.package_dir,
                env=self.environment(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise ScriptSpawnError(self.label, self.event, e) from e
        return self.process

    @property
    def stdout(self) -> IO[bytes] | None:
        return self.process.stdout if self.process else None

    @property
    def stderr(self) -> IO[bytes] | None:
        return self.process.stderr if self.process else None

    def wait(self) -> None:
        """Wait for exit.

        Raises:
            ScriptExitError: Non-zero or abnormal exit.
        """
        if self.process is None:
            raise RuntimeError("script was never spawned")
        code = self.process.wait()
        if code != 0:
            raise ScriptExitError(self.label, self.event, code)


def drain(
    stream: IO[bytes] | None,
    prefix: str,
    on_line: Callable[[str], None] | None = None,
) -> None:
    """Read ``stream`` to EOF, one line at a time.

    Each line goes to the script logger at DEBUG as ``<prefix>: <line>`` and to
    ``on_line`` when given.  The stream is closed afterwards.

    If ``on_line`` raises, the rest of the stream is still read (and
    discarded) so the child never blocks on a full pipe; the error is
    re-raised once EOF is reached.
    """
    if stream is None:
        return
    error: Exception | None = None
    with stream:
        for raw in iter(stream.readline, b""):
            if error is not None:
                continue
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            script_logger.debug("%s: %s", prefix, line)
            if on_line is not None:
                try:
                    on_line(line)
                except Exception as e:
                    error = e
    if error is not None:
        raise error
