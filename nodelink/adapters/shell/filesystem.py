"""
Filesystem primitives — capability probe and package tree placement.

Placement copies a package tree file by file, preferring the cheapest
method that is safe:

    reflink (copy-on-write clone)  →  hard link  →  full copy

Hard links are only requested for sources in the immutable content
cache; the caller decides that and passes the allowed methods in.
"""

from __future__ import annotations

import errno
import hashlib
import logging
import os
import shutil
import sys
import tempfile
from enum import StrEnum
from pathlib import Path

from nodelink.core.errors import PlacementError

logger = logging.getLogger(__name__)

# Marker written into every placed package directory
MARKER_FILE = ".nodelink.json"

# linux/fs.h: _IOW(0x94, 9, int)
_FICLONE = 0x40049409


class PlaceMethod(StrEnum):
    """How a file ended up at its destination."""

    REFLINK = "reflink"
    HARDLINK = "hardlink"
    COPY = "copy"


def reflink(src: Path, dst: Path) -> None:
    """Clone ``src`` to ``dst`` with copy-on-write semantics.

    Raises:
        OSError: The platform or filesystem cannot clone.
    """
    if sys.platform.startswith("linux"):
        import fcntl

        with open(src, "rb") as s, open(dst, "xb") as d:
            try:
                fcntl.ioctl(d.fileno(), _FICLONE, s.fileno())
            except OSError:
                d.close()
                os.unlink(dst)
                raise
        shutil.copymode(src, dst)
        return

    if sys.platform == "darwin":
        import ctypes
        import ctypes.util

        libc = ctypes.CDLL(ctypes.util.find_library("c"), use_errno=True)
        clonefile = getattr(libc, "clonefile", None)
        if clonefile is not None:
            if clonefile(os.fsencode(src), os.fsencode(dst), 0) == 0:
                return
            err = ctypes.get_errno()
            raise OSError(err, os.strerror(err), str(dst))

    raise OSError(errno.ENOTSUP, "reflink not supported on this platform", str(dst))


def supports_reflink(source_dir: Path, dest_dir: Path) -> bool:
    """Check whether files in ``source_dir`` can be reflinked into ``dest_dir``.

    Never raises.  Any failure along the way means "unsupported", and
    both temporary artifacts are removed whatever happens.
    """
    try:
        temp = tempfile.NamedTemporaryFile(dir=source_dir, prefix=".reflink-")
    except OSError as e:
        logger.debug("error creating tempfile while checking for reflink support: %s.", e)
        return False

    with temp:
        try:
            temp.write(b"a")
            temp.flush()
        except OSError as e:
            logger.debug("error writing to tempfile while checking for reflink support: %s.", e)
            return False

        try:
            tempdir = tempfile.TemporaryDirectory(dir=dest_dir, prefix=".reflink-")
        except OSError as e:
            logger.debug(
                "error creating destination tempdir while checking for reflink support: %s.", e
            )
            return False

        with tempdir:
            try:
                reflink(Path(temp.name), Path(tempdir.name) / "b")
            except OSError as e:
                logger.debug(
                    "reflink support check failed. Files will be hard linked or copied. (%s)", e
                )
                return False

    logger.debug(
        "Verified reflink support. Extracted data will use copy-on-write "
        "reflinks instead of hard links or full copies."
    )
    return True


def same_device(a: Path, b: Path) -> bool:
    """Whether two existing paths live on the same filesystem."""
    try:
        return os.stat(a).st_dev == os.stat(b).st_dev
    except OSError:
        return False


def place_file(src: Path, dst: Path, methods: tuple[PlaceMethod, ...]) -> PlaceMethod:
    """Place one file using the first method in ``methods`` that works.

    Raises:
        PlacementError: Every method failed.
    """
    last_error: BaseException | None = None
    for method in methods:
        try:
            if method == PlaceMethod.REFLINK:
                reflink(src, dst)
            elif method == PlaceMethod.HARDLINK:
                os.link(src, dst)
            else:
                shutil.copy2(src, dst)
            return method
        except OSError as e:
            logger.debug("%s of %s failed: %s", method, src, e)
            last_error = e
    raise PlacementError(src, dst, last_error or OSError("no placement method allowed"))


def place_tree(
    source: Path,
    dest: Path,
    methods: tuple[PlaceMethod, ...],
) -> dict[PlaceMethod, int]:
    """Recreate the tree under ``source`` at ``dest``.

    Directories are created, symlinks are copied as symlinks, and each
    regular file goes through ``place_file``.  Returns how many files
    each method placed.
    """
    used: dict[PlaceMethod, int] = {}
    dest.mkdir(parents=True, exist_ok=True)
    for dirpath, dirnames, filenames in os.walk(source):
        rel = Path(dirpath).relative_to(source)
        target_dir = dest / rel
        for name in dirnames:
            src_entry = Path(dirpath) / name
            if src_entry.is_symlink():
                os.symlink(os.readlink(src_entry), target_dir / name)
            else:
                (target_dir / name).mkdir(exist_ok=True)
        for name in filenames:
            src_entry = Path(dirpath) / name
            if src_entry.is_symlink():
                os.symlink(os.readlink(src_entry), target_dir / name)
                continue
            method = place_file(src_entry, target_dir / name, methods)
            used[method] = used.get(method, 0) + 1
    return used


def tree_digest(path: Path) -> str:
    """sha256 over the relative paths and contents of every file.

    Nested ``node_modules`` and the placement marker are skipped, so the
    digest describes the package's own content only.
    """
    digest = hashlib.sha256()
    for dirpath, dirnames, filenames in os.walk(path):
        dirnames[:] = sorted(d for d in dirnames if d != "node_modules")
        rel_dir = Path(dirpath).relative_to(path)
        for name in sorted(filenames):
            if rel_dir == Path(".") and name == MARKER_FILE:
                continue
            entry = Path(dirpath) / name
            digest.update(str(rel_dir / name).replace(os.sep, "/").encode("utf-8"))
            digest.update(b"\0")
            if entry.is_symlink():
                digest.update(os.readlink(entry).encode("utf-8"))
            else:
                with open(entry, "rb") as f:
                    for chunk in iter(lambda: f.read(65536), b""):
                        digest.update(chunk)
            digest.update(b"\0")
    return digest.hexdigest()


def remove_path(path: Path) -> None:
    """Remove a file, symlink or directory tree."""
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)
