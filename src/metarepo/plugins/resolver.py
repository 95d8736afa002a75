"""Resolve plugin declarations to executables and register them.

A declaration in ``.meta`` maps a plugin name to a source spec:

    "file:./tools/hello"        local path (also any value with a path
    "./tools/hello.toml"        separator, or starting with '.' or '~')
    "git+https://host/repo"     git source, installed separately
    "1.2.0"                     published package version

Local paths resolve relative to the directory holding ``.meta``. Git and
package sources resolve to an installed ``metarepo-plugin-<name>`` in the
user plugins directory or on PATH. Nothing is spawned here.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from .errors import RegistrationError
from .manifest import PluginManifest, is_manifest_path
from .models import WorkspaceConfig
from .registry import PluginRegistry

logger = logging.getLogger(__name__)

EXECUTABLE_PREFIX = "metarepo-plugin-"
MANIFEST_NAME = "plugin.toml"


class SourceKind(str, Enum):
    LOCAL = "local"
    GIT = "git"
    PACKAGE = "package"


@dataclass(frozen=True)
class PluginSpec:
    kind: SourceKind
    value: str

    @classmethod
    def parse(cls, spec: str) -> "PluginSpec":
        spec = spec.strip()
        if spec.startswith("file:"):
            return cls(SourceKind.LOCAL, spec[len("file:"):])
        if spec.startswith("git+"):
            return cls(SourceKind.GIT, spec[len("git+"):])
        if "/" in spec or os.sep in spec or spec.startswith((".", "~")):
            return cls(SourceKind.LOCAL, spec)
        return cls(SourceKind.PACKAGE, spec)

    @property
    def version(self) -> Optional[str]:
        return self.value if self.kind == SourceKind.PACKAGE else None


def executable_name(name: str) -> str:
    return f"{EXECUTABLE_PREFIX}{name}"


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def installed_plugin_path(name: str, plugins_dir: Path) -> Optional[Path]:
    """Find an installed plugin in the plugins dir, then on PATH."""
    candidate = plugins_dir / executable_name(name)
    if _is_executable(candidate):
        return candidate
    manifest = plugins_dir / name / MANIFEST_NAME
    if manifest.is_file():
        return manifest
    found = shutil.which(executable_name(name))
    return Path(found) if found else None


def resolve_spec(name: str, spec: str, base_dir: Path, plugins_dir: Path) -> Path:
    """Resolve one declaration to an executable or manifest path.

    Raises:
        RegistrationError: the source cannot be found.
    """
    parsed = PluginSpec.parse(spec)
    if parsed.kind == SourceKind.LOCAL:
        path = Path(parsed.value).expanduser()
        if not path.is_absolute():
            path = base_dir / path
        if path.is_dir():
            manifest = path / MANIFEST_NAME
            path = manifest if manifest.is_file() else path / executable_name(name)
        if not path.exists():
            raise RegistrationError(name, f"plugin source not found: {path}")
        if not is_manifest_path(path) and not _is_executable(path):
            raise RegistrationError(name, f"plugin source is not executable: {path}")
        return path

    installed = installed_plugin_path(name, plugins_dir)
    if installed is None:
        raise RegistrationError(
            name,
            f"'{spec}' is not installed; expected {executable_name(name)} in {plugins_dir} "
            "or on PATH (see 'meta plugin install')",
        )
    return installed


def _register_path(registry: PluginRegistry, name: str, path: Path,
                   declared_version: Optional[str], quiet: bool) -> bool:
    if is_manifest_path(path):
        manifest = PluginManifest.load(path)
        if manifest.name != name:
            raise RegistrationError(name, f"manifest {path} declares plugin '{manifest.name}'")
        plugin = manifest.to_plugin()
        return registry.register_external(
            name,
            plugin.descriptor.source.path,
            declared_version=manifest.version,
            experimental=manifest.experimental,
            tree=plugin.tree,
            description=manifest.description,
            quiet=quiet,
        )
    return registry.register_external(name, path, declared_version=declared_version, quiet=quiet)


def load_external_plugins(registry: PluginRegistry, workspace: WorkspaceConfig,
                          plugins_dir: Path, meta_root: Optional[Path] = None) -> None:
    """Register declared plugins, then anything installed in ``plugins_dir``.

    Failures are recorded on the registry; this never raises for a bad entry.
    """
    base_dir = meta_root or Path.cwd()
    for name, spec in (workspace.plugins or {}).items():
        try:
            path = resolve_spec(name, spec, base_dir, plugins_dir)
            _register_path(registry, name, path, PluginSpec.parse(spec).version, quiet=False)
        except RegistrationError as e:
            registry.record_error(e)

    if not plugins_dir.is_dir():
        return
    for entry in sorted(plugins_dir.iterdir()):
        if entry.is_dir() and (entry / MANIFEST_NAME).is_file():
            name, path = entry.name, entry / MANIFEST_NAME
        elif entry.name.startswith(EXECUTABLE_PREFIX) and _is_executable(entry):
            name, path = entry.name[len(EXECUTABLE_PREFIX):], entry
        else:
            continue
        if name in registry:
            continue
        try:
            _register_path(registry, name, path, None, quiet=True)
        except RegistrationError as e:
            registry.record_error(e)
