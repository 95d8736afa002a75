"""Plugin registry.

Maps command names to plugin sources. Built once per invocation, frozen
before any dispatch, never shared between invocations.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .errors import RegistrationError
from .models import CommandNode, ExternalSource, PluginDescriptor

logger = logging.getLogger(__name__)


@dataclass
class RegistryEntry:
    descriptor: PluginDescriptor
    implementation: Any = None
    tree: Optional[CommandNode] = None


def validate_name(name: str) -> Optional[str]:
    """Return why ``name`` cannot be a command name, or None if it can."""
    if not name or not name.strip():
        return "name is empty"
    if name != name.strip() or any(ch.isspace() for ch in name):
        return "name contains whitespace"
    if name.startswith("-"):
        return "name starts with '-'"
    return None


class PluginRegistry:
    """Built-in and external plugins keyed by unique name.

    Built-ins always win: registering one evicts an external of the same
    name. Among externals the first registration wins; later duplicates are
    recorded as diagnostics and skipped.
    """

    def __init__(self):
        self._entries: Dict[str, RegistryEntry] = {}
        self._diagnostics: List[RegistrationError] = []
        self._frozen = False

    def _check_open(self) -> None:
        if self._frozen:
            raise RuntimeError("plugin registry is frozen")

    def _diagnose(self, name: str, message: str) -> None:
        error = RegistrationError(name, message)
        self._diagnostics.append(error)
        logger.warning("%s", error.message)

    def register_builtin(self, descriptor: PluginDescriptor, implementation: Any,
                         tree: Optional[CommandNode] = None) -> None:
        """Register an in-process plugin.

        Raises:
            ValueError: another built-in already uses the name.
        """
        self._check_open()
        existing = self._entries.get(descriptor.name)
        if existing is not None:
            if existing.descriptor.is_builtin:
                raise ValueError(f"built-in plugin '{descriptor.name}' registered twice")
            self._diagnose(
                descriptor.name,
                f"external plugin at {existing.descriptor.source.describe()} "
                "is shadowed by a built-in of the same name",
            )
            del self._entries[descriptor.name]
        for alias in (tree.aliases if tree is not None else []):
            shadowed = self._entries.get(alias)
            if shadowed is not None and not shadowed.descriptor.is_builtin:
                self._diagnose(
                    alias,
                    f"external plugin at {shadowed.descriptor.source.describe()} "
                    f"is shadowed by an alias of built-in '{descriptor.name}'",
                )
                del self._entries[alias]
        self._entries[descriptor.name] = RegistryEntry(descriptor, implementation, tree)

    def register_external(self, name: str, path: Path, declared_version: Optional[str] = None,
                          experimental: bool = False, tree: Optional[CommandNode] = None,
                          description: str = "", quiet: bool = False) -> bool:
        """Record an external plugin without spawning it.

        Returns False (and records a diagnostic unless ``quiet``) when the
        name is invalid or already taken.
        """
        self._check_open()
        problem = validate_name(name)
        if problem:
            self._diagnose(name, problem)
            return False

        existing = self._entries.get(name)
        if existing is not None:
            if not quiet:
                owner = "a built-in" if existing.descriptor.is_builtin else existing.descriptor.source.describe()
                self._diagnose(name, f"name already registered by {owner}; {path} ignored")
            return False
        builtin = self._builtin_alias_owner(name)
        if builtin is not None:
            if not quiet:
                self._diagnose(name, f"name is an alias of built-in '{builtin}'; {path} ignored")
            return False

        descriptor = PluginDescriptor(
            name=name,
            version=declared_version,
            experimental=experimental,
            source=ExternalSource(Path(path)),
            description=description,
        )
        self._entries[name] = RegistryEntry(descriptor, tree=tree)
        logger.debug("Registered external plugin %s -> %s", name, path)
        return True

    def record_failure(self, name: str, message: str) -> None:
        """Record a plugin that failed before it could be registered."""
        self._check_open()
        self._diagnose(name, message)

    def record_error(self, error: RegistrationError) -> None:
        self.record_failure(error.name, error.detail)

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def diagnostics(self) -> List[RegistrationError]:
        return list(self._diagnostics)

    def resolve(self, name: str) -> Optional[PluginDescriptor]:
        """Find the plugin for a top-level command token.

        Matches registered names first, then aliases declared on the
        command trees of built-in plugins.
        """
        entry = self._entries.get(name)
        if entry is not None:
            return entry.descriptor
        owner = self._builtin_alias_owner(name)
        return self._entries[owner].descriptor if owner is not None else None

    def _builtin_alias_owner(self, alias: str) -> Optional[str]:
        for entry in self._entries.values():
            if entry.descriptor.is_builtin and entry.tree is not None and alias in entry.tree.aliases:
                return entry.descriptor.name
        return None

    def all(self) -> Iterator[PluginDescriptor]:
        """Iterate descriptors in registration order."""
        for entry in list(self._entries.values()):
            yield entry.descriptor

    def names(self) -> List[str]:
        return list(self._entries)

    def implementation(self, name: str) -> Any:
        entry = self._entries.get(name)
        return entry.implementation if entry else None

    def tree(self, name: str) -> Optional[CommandNode]:
        """Command tree known without spawning anything (built-ins and manifests)."""
        entry = self._entries.get(name)
        return entry.tree if entry else None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: str) -> bool:
        return name in self._entries
