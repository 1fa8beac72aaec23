"""
Bin linker — install an executable entry point for a package bin.

Two backends, picked once when this module is imported:

    POSIX    →  chmod the source and create a relative symlink
    Windows  →  write forwarding shims (.cmd, .ps1 and a sh script)

Relative links keep the install tree relocatable.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

from nodelink.core.errors import BinLinkError

logger = logging.getLogger(__name__)

_EXEC_MODE = 0o755

# "#!/usr/bin/env node --flag" → prog="node", args="--flag"
_SHEBANG = re.compile(r"^#!\s*(?:/usr/bin/env\s+(?:-S\s+)?)?(?P<prog>[^\s]+)(?P<args>.*)$")


def _link_bin_posix(source: Path, target: Path) -> None:
    try:
        mode = source.stat().st_mode
    except OSError as e:
        raise BinLinkError("stat", source, e) from e
    try:
        os.chmod(source, (mode & ~0o777) | _EXEC_MODE)
    except OSError as e:
        raise BinLinkError("chmod", source, e) from e

    relative = os.path.relpath(source, target.parent)
    try:
        os.symlink(relative, target)
    except OSError as e:
        raise BinLinkError("symlink", target, e) from e
    logger.debug("Linked bin %s -> %s", target, relative)


def _read_shebang(source: Path) -> tuple[str, str]:
    """Return (program, extra args) named by the source's shebang line."""
    with open(source, "rb") as f:
        first = f.readline(512).decode("utf-8", errors="replace").strip()
    match = _SHEBANG.match(first)
    if not match:
        return "", ""
    prog = match.group("prog").rsplit("/", 1)[-1]
    return prog, match.group("args").strip()


def _shim_bin(source: Path, target: Path) -> None:
    """Write shims at ``target`` that forward execution to ``source``."""
    try:
        prog, args = _read_shebang(source)
    except OSError as e:
        raise BinLinkError("read", source, e) from e

    rel = os.path.relpath(source, target.parent)
    rel_win = rel.replace("/", "\\")
    rel_posix = rel.replace("\\", "/")
    call = f"{prog} {args}".strip()

    if prog:
        cmd = (
            "@ECHO off\r\n"
            "SETLOCAL\r\n"
            f'IF EXIST "%~dp0\\{prog}.exe" (\r\n'
            f'  "%~dp0\\{prog}.exe" {args} "%~dp0\\{rel_win}" %*\r\n'
            ") ELSE (\r\n"
            f'  {call} "%~dp0\\{rel_win}" %*\r\n'
            ")\r\n"
        )
        ps1 = (
            "#!/usr/bin/env pwsh\n"
            "$basedir=Split-Path $MyInvocation.MyCommand.Definition -Parent\n"
            f'& "{prog}" {args} "$basedir/{rel_posix}" $args\n'
            "exit $LASTEXITCODE\n"
        )
        sh = (
            "#!/bin/sh\n"
            'basedir=$(dirname "$(echo "$0" | sed -e \'s,\\\\,/,g\')")\n'
            f'exec {call} "$basedir/{rel_posix}" "$@"\n'
        )
    else:
        cmd = f'@ECHO off\r\n"%~dp0\\{rel_win}" %*\r\n'
        ps1 = (
            "#!/usr/bin/env pwsh\n"
            "$basedir=Split-Path $MyInvocation.MyCommand.Definition -Parent\n"
            f'& "$basedir/{rel_posix}" $args\n'
            "exit $LASTEXITCODE\n"
        )
        sh = (
            "#!/bin/sh\n"
            'basedir=$(dirname "$(echo "$0" | sed -e \'s,\\\\,/,g\')")\n'
            f'exec "$basedir/{rel_posix}" "$@"\n'
        )

    shims = (
        (target.with_name(target.name + ".cmd"), cmd),
        (target.with_name(target.name + ".ps1"), ps1),
        (target, sh),
    )
    for path, content in shims:
        try:
            with open(path, "x", encoding="utf-8", newline="") as f:
                f.write(content)
            os.chmod(path, _EXEC_MODE)
        except OSError as e:
            raise BinLinkError("shim", path, e) from e
    logger.debug("Shimmed bin %s -> %s", target, rel)


def link_bin(source: Path, target: Path) -> None:
    """Create an executable entry point at ``target`` running ``source``.

    Raises:
        BinLinkError: Reading the source, setting its mode, or creating
            the link/shim failed (an existing target included).
    """
    _backend(source, target)


_backend = _shim_bin if os.name == "nt" else _link_bin_posix
