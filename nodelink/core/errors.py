"""
Error taxonomy for the linker.

Every failure the linker propagates is a ``LinkerError``.  Each subclass
carries the context needed to diagnose it without re-running: the path,
the package, the phase, and the underlying cause (also chained with
``raise ... from``).
"""

from __future__ import annotations

from pathlib import Path


class LinkerError(Exception):
    """Base class for all linker failures."""


class GraphError(LinkerError):
    """The dependency graph is malformed (dangling edge, missing root)."""


class IoError(LinkerError):
    """A filesystem operation failed."""

    def __init__(self, operation: str, path: Path | str, cause: BaseException):
        self.operation = operation
        self.path = Path(path)
        self.cause = cause
        super().__init__(f"{operation} failed for {self.path}: {cause}")


class ManifestReadError(LinkerError):
    """A package.json could not be read or parsed."""

    def __init__(self, path: Path | str, cause: BaseException):
        self.path = Path(path)
        self.cause = cause
        super().__init__(f"Failed to read build manifest at {self.path}: {cause}")


class PlacementError(LinkerError):
    """Reflink, hard link and copy all failed for a file."""

    def __init__(self, source: Path, dest: Path, cause: BaseException):
        self.source = source
        self.dest = dest
        self.cause = cause
        super().__init__(f"Could not place {source} at {dest}: {cause}")


class ExtractError(LinkerError):
    """Extraction of a required package failed."""

    def __init__(self, package: str, cause: BaseException):
        self.package = package
        self.cause = cause
        super().__init__(f"Failed to extract {package}: {cause}")


class BinLinkError(LinkerError):
    """Creating a bin entry point failed."""

    def __init__(self, operation: str, path: Path | str, cause: BaseException):
        self.operation = operation
        self.path = Path(path)
        self.cause = cause
        super().__init__(f"bin link {operation} failed for {self.path}: {cause}")


class PackageMissingError(LinkerError):
    """A pending package has no directory on disk.

    Means extract/prune and rebuild ran against inconsistent graphs.
    """

    def __init__(self, package: str, path: Path):
        self.package = package
        self.path = path
        super().__init__(
            f"Package {package} is pending rebuild but {path} does not exist"
        )


class ScriptSpawnError(LinkerError):
    """A lifecycle script process could not be started."""

    def __init__(self, package: str, event: str, cause: BaseException):
        self.package = package
        self.event = event
        self.cause = cause
        super().__init__(f"Failed to spawn {event} script for {package}: {cause}")


class ScriptExitError(LinkerError):
    """A lifecycle script exited unsuccessfully."""

    def __init__(self, package: str, event: str, code: int):
        self.package = package
        self.event = event
        self.code = code
        super().__init__(f"{event} script for {package} exited with code {code}")


class TaskJoinError(LinkerError):
    """An off-loaded worker task failed outside the operation it ran."""

    def __init__(self, what: str, cause: BaseException):
        self.what = what
        self.cause = cause
        super().__init__(f"{what} worker failed: {cause}")
