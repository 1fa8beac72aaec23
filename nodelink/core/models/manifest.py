"""
Build manifest — the slice of package.json the linker needs.

Read lazily at rebuild time, straight from the installed package
directory.  Only ``scripts`` and ``bin`` matter here; everything else
in package.json belongs to the resolver.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, ValidationInfo, field_validator

from nodelink.core.errors import ManifestReadError

MANIFEST_FILE = "package.json"


class BuildManifest(BaseModel):
    """Lifecycle scripts and bins declared by one package."""

    name: str = ""
    version: str = ""
    scripts: dict[str, str] = Field(default_factory=dict)
    bin: dict[str, str] = Field(default_factory=dict)

    model_config = {"extra": "ignore"}

    @field_validator("scripts", mode="before")
    @classmethod
    def _keep_string_scripts(cls, value: Any) -> dict[str, str]:
        if not isinstance(value, dict):
            return {}
        return {k: v for k, v in value.items() if isinstance(v, str)}

    @field_validator("bin", mode="before")
    @classmethod
    def _normalize_bin(cls, value: Any, info: ValidationInfo) -> dict[str, str]:
        # "bin": "./cli.js" is shorthand for {"<unscoped name>": "./cli.js"}
        if isinstance(value, str):
            name = (info.data.get("name") or "").rsplit("/", 1)[-1]
            return {name: value} if name else {}
        if not isinstance(value, dict):
            return {}
        return {k: v for k, v in value.items() if isinstance(v, str)}

    @classmethod
    def from_path(cls, path: Path) -> BuildManifest:
        """Read a package.json file.

        Raises:
            ManifestReadError: The file is missing, unreadable or malformed.
        """
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ManifestReadError(path, e) from e
        if not isinstance(data, dict):
            raise ManifestReadError(
                path, ValueError(f"expected a JSON object, got {type(data).__name__}")
            )
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ManifestReadError(path, e) from e

    @classmethod
    def from_dir(cls, package_dir: Path) -> BuildManifest:
        return cls.from_path(package_dir / MANIFEST_FILE)

    def has_script(self, event: str) -> bool:
        return event in self.scripts
