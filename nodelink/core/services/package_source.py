"""
Package source — where a package's unpacked contents come from.

The registry/cache layer is not part of the linker; this is the narrow
seam it talks through.  ``resolved`` on a package identity is either:

    a directory   →  used in place (treated as mutable)
    a .tgz file   →  unpacked once into the content cache

Cache entries are keyed by the tarball's sha256 and never modified
after they are written, which is what makes hard linking them into
several installs safe.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import tarfile
import tempfile
import threading
from pathlib import Path

from nodelink.core.errors import ExtractError
from nodelink.core.models.graph import PackageIdentity

logger = logging.getLogger(__name__)

_TARBALL_SUFFIXES = (".tgz", ".tar.gz", ".tar")


def _sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _strip_prefix(name: str) -> str | None:
    """npm tarballs wrap everything in one top-level dir (usually ``package/``)."""
    parts = Path(name).parts
    if len(parts) < 2:
        return None
    return str(Path(*parts[1:]))


def _unpack(tarball: Path, dest: Path) -> None:
    with tarfile.open(tarball, "r:*") as tar:
        members = []
        for member in tar.getmembers():
            if not (member.isfile() or member.isdir() or member.issym()):
                continue
            stripped = _strip_prefix(member.name)
            if stripped is None:
                continue
            target = (dest / stripped).resolve()
            if not target.is_relative_to(dest.resolve()):
                raise ValueError(f"tarball entry escapes package root: {member.name}")
            member.name = stripped
            members.append(member)
        tar.extractall(dest, members=members, filter="tar")


class PackageSource:
    """Supplies unpacked package directories.

    Args:
        cache: Content cache directory.  When None, tarballs unpack into
            a private temporary directory that lives as long as this
            object (and is not eligible for hard linking).
        base_dir: Directory that relative ``resolved`` paths are
            relative to (normally the lockfile's directory).
    """

    def __init__(self, cache: Path | None = None, base_dir: Path | None = None):
        self.base_dir = base_dir or Path.cwd()
        self._tmp: tempfile.TemporaryDirectory[str] | None = None
        if cache is None:
            self._tmp = tempfile.TemporaryDirectory(prefix="nodelink-unpack-")
            self.cache = Path(self._tmp.name)
            self._immutable = False
        else:
            self.cache = cache
            self._immutable = True
        self._lock = threading.Lock()
        self._inflight: dict[str, threading.Lock] = {}

    def close(self) -> None:
        if self._tmp is not None:
            self._tmp.cleanup()
            self._tmp = None

    def is_immutable(self, path: Path) -> bool:
        """Whether ``path`` lives in the shared immutable cache."""
        return self._immutable and path.resolve().is_relative_to(self.cache.resolve())

    def _resolve_location(self, package: PackageIdentity) -> Path:
        if not package.resolved:
            raise ExtractError(package.spec, ValueError("package has no resolved location"))
        if package.resolved.startswith(("http://", "https://")):
            raise ExtractError(
                package.spec,
                ValueError(f"remote source {package.resolved} must be fetched into the cache first"),
            )
        location = Path(package.resolved.removeprefix("file:"))
        if not location.is_absolute():
            location = self.base_dir / location
        return location

    def fetch(self, package: PackageIdentity) -> Path:
        """Return a directory holding the package's unpacked contents.

        Raises:
            ExtractError: The source is missing or cannot be unpacked.
        """
        location = self._resolve_location(package)
        if location.is_dir():
            return location
        if not location.is_file() or not location.name.endswith(_TARBALL_SUFFIXES):
            raise ExtractError(package.spec, FileNotFoundError(f"no package at {location}"))

        try:
            key = _sha256_file(location)
        except OSError as e:
            raise ExtractError(package.spec, e) from e
        entry = self.cache / "content" / key[:2] / key

        with self._lock:
            entry_lock = self._inflight.setdefault(key, threading.Lock())
        with entry_lock:
            if entry.is_dir():
                return entry
            entry.parent.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(dir=entry.parent, prefix=f".{key[:8]}-"))
            try:
                _unpack(location, staging)
                os.replace(staging, entry)
            except (OSError, tarfile.TarError, ValueError) as e:
                shutil.rmtree(staging, ignore_errors=True)
                raise ExtractError(package.spec, e) from e
        logger.debug("Unpacked %s into cache entry %s", package.spec, key[:12])
        return entry
