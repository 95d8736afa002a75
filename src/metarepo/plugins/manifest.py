"""Declarative plugin manifests (``plugin.toml`` or ``plugin.json``).

A manifest describes an external plugin without running it:

    [plugin]
    name = "hello"
    version = "0.1.0"
    description = "Says hello"

    [[commands]]
    name = "greet"
    description = "Greet someone"

    [config.execution]
    mode = "process"
    binary = "./bin/hello"
    protocol = "json"

The adapter turns it into the same descriptor and command tree a built-in
gets from ``PluginBuilder``, so help can be rendered without spawning.
"""

from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from .builder import BuiltPlugin, PluginBuilder
from .errors import ManifestError
from .models import CommandNode, ExternalSource

SUPPORTED_MODES = ("process",)
SUPPORTED_PROTOCOLS = ("json", "json-rpc")
MANIFEST_SUFFIXES = (".toml", ".json")


def is_manifest_path(path: Path) -> bool:
    return path.suffix.lower() in MANIFEST_SUFFIXES


@dataclass
class PluginManifest:
    path: Path
    name: str
    version: str
    description: str = ""
    experimental: bool = False
    commands: List[CommandNode] = field(default_factory=list)
    mode: str = "process"
    binary: Optional[str] = None
    protocol: str = "json"

    @classmethod
    def load(cls, path: Path) -> "PluginManifest":
        """Read and validate a manifest file.

        Raises:
            ManifestError: unreadable, malformed or unsupported manifest.
        """
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ManifestError(path.stem, f"cannot read manifest {path}: {e.strerror or e}") from e
        except UnicodeDecodeError as e:
            raise ManifestError(path.stem, f"manifest {path} is not valid UTF-8: {e}") from e

        try:
            if path.suffix.lower() == ".json":
                data = json.loads(text)
            else:
                data = tomllib.loads(text)
        except (json.JSONDecodeError, tomllib.TOMLDecodeError) as e:
            raise ManifestError(path.stem, f"invalid manifest {path}: {e}") from e

        return cls.from_dict(data, path)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], path: Path) -> "PluginManifest":
        if not isinstance(data, dict) or not isinstance(data.get("plugin"), dict):
            raise ManifestError(path.stem, f"{path}: missing [plugin] table")
        info = data["plugin"]
        name = info.get("name")
        if not isinstance(name, str) or not name:
            raise ManifestError(path.stem, f"{path}: plugin name cannot be empty")
        version = info.get("version")
        if not isinstance(version, str) or not version:
            raise ManifestError(name, "plugin version cannot be empty")

        raw_commands = data.get("commands", [])
        if not isinstance(raw_commands, list):
            raise ManifestError(name, "'commands' must be a list of tables")
        try:
            commands = [CommandNode.from_dict(c) for c in raw_commands]
        except (TypeError, ValueError, AttributeError) as e:
            raise ManifestError(name, f"invalid command: {e}") from e

        config = data.get("config") or {}
        if not isinstance(config, dict):
            raise ManifestError(name, "'config' must be a table")
        execution = config.get("execution") or {}
        if not isinstance(execution, dict):
            raise ManifestError(name, "'config.execution' must be a table")
        binary = execution.get("binary")
        if binary is not None and not isinstance(binary, str):
            raise ManifestError(name, "'config.execution.binary' must be a string")

        manifest = cls(
            path=path,
            name=name,
            version=version,
            description=str(info.get("description", "")),
            experimental=bool(info.get("experimental", False)),
            commands=commands,
            mode=str(execution.get("mode", "process")),
            binary=binary,
            protocol=str(execution.get("protocol", "json")),
        )
        manifest.validate()
        return manifest

    def validate(self) -> None:
        if self.mode not in SUPPORTED_MODES:
            raise ManifestError(self.name, f"execution mode '{self.mode}' is not supported")
        if not self.binary:
            raise ManifestError(self.name, "binary path required for process mode")
        if self.protocol not in SUPPORTED_PROTOCOLS:
            raise ManifestError(self.name, f"protocol '{self.protocol}' is not supported")
        for command in self.commands:
            if not command.name:
                raise ManifestError(self.name, "command name cannot be empty")

    def binary_path(self) -> Path:
        """Executable path, relative paths taken from the manifest's directory."""
        binary = Path(self.binary).expanduser()
        if not binary.is_absolute():
            binary = self.path.parent / binary
        return binary

    def to_plugin(self) -> BuiltPlugin:
        """Adapt to a descriptor and command tree. The result has no handlers."""
        builder = (
            PluginBuilder(self.name)
            .version(self.version)
            .description(self.description)
            .experimental(self.experimental)
        )
        try:
            for command in self.commands:
                builder.command(command)
            plugin = builder.build()
        except (TypeError, ValueError, AttributeError) as e:
            raise ManifestError(self.name, f"invalid command tree: {e}") from e
        plugin.descriptor = replace(plugin.descriptor, source=ExternalSource(self.binary_path()))
        return plugin
