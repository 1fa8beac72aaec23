"""Engine — the Linker facade and the lifecycle script orchestrator."""

from nodelink.core.engine.linker import Linker, LinkerKind
from nodelink.core.engine.scripts import ScriptRunner

__all__ = [
    "Linker",
    "LinkerKind",
    "ScriptRunner",
]
