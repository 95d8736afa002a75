"""Plugin descriptors, command trees and the runtime configuration payload.

These are plain data types shared by the registry, the router and the
external plugin client. Everything that crosses the process boundary has
a ``to_dict``/``from_dict`` pair; readers ignore unknown keys and fill in
documented defaults for absent optional ones.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union


DEFAULT_IGNORE = [".git", ".vscode", "node_modules", "target", ".DS_Store"]


@dataclass(frozen=True)
class BuiltinSource:
    """Plugin implemented in-process."""

    def describe(self) -> str:
        return "builtin"


@dataclass(frozen=True)
class ExternalSource:
    """Plugin implemented by a separate executable."""
    path: Path

    def describe(self) -> str:
        return str(self.path)


PluginSource = Union[BuiltinSource, ExternalSource]


@dataclass(frozen=True)
class PluginDescriptor:
    """Identity of a registered plugin. ``name`` is the registry key."""
    name: str
    version: Optional[str] = None
    experimental: bool = False
    source: PluginSource = field(default_factory=BuiltinSource)
    description: str = ""

    @property
    def is_builtin(self) -> bool:
        return isinstance(self.source, BuiltinSource)


@dataclass
class ArgumentSpec:
    """One argument of a command. Positional unless ``short``/``long`` is set."""
    name: str
    help: str = ""
    required: bool = False
    short: Optional[str] = None
    long: Optional[str] = None
    takes_value: bool = True
    default: Optional[str] = None
    choices: List[str] = field(default_factory=list)

    @property
    def positional(self) -> bool:
        return self.short is None and self.long is None

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {
            "name": self.name,
            "help": self.help,
            "required": self.required,
            "takes_value": self.takes_value,
        }
        if self.short is not None:
            data["short"] = self.short
        if self.long is not None:
            data["long"] = self.long
        if self.default is not None:
            data["default"] = self.default
        if self.choices:
            data["choices"] = list(self.choices)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ArgumentSpec":
        if not isinstance(data, dict) or not isinstance(data.get("name"), str):
            raise ValueError(f"argument must be an object with a 'name': {data!r}")
        return cls(
            name=data["name"],
            help=str(data.get("help", "")),
            required=bool(data.get("required", False)),
            short=data.get("short"),
            long=data.get("long"),
            takes_value=bool(data.get("takes_value", True)),
            default=data.get("default", data.get("default_value")),
            choices=list(data.get("choices", data.get("possible_values", []))),
        )


@dataclass
class CommandNode:
    """A command and its nested subcommands."""
    name: str
    help: str = ""
    aliases: List[str] = field(default_factory=list)
    arguments: List[ArgumentSpec] = field(default_factory=list)
    children: List["CommandNode"] = field(default_factory=list)

    def child(self, token: str) -> Optional["CommandNode"]:
        """Find a direct child by name or alias."""
        for node in self.children:
            if node.name == token or token in node.aliases:
                return node
        return None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "help": self.help,
            "aliases": list(self.aliases),
            "arguments": [a.to_dict() for a in self.arguments],
            "children": [c.to_dict() for c in self.children],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CommandNode":
        """Parse a tree, accepting the older ``about``/``subcommands``/``args`` keys."""
        if not isinstance(data, dict) or not isinstance(data.get("name"), str):
            raise ValueError(f"command must be an object with a 'name': {data!r}")
        aliases: List[str] = []
        for alias in data.get("aliases", []):
            if alias not in aliases:
                aliases.append(str(alias))
        return cls(
            name=data["name"],
            help=str(data.get("help", data.get("about", data.get("description", "")))),
            aliases=aliases,
            arguments=[ArgumentSpec.from_dict(a) for a in data.get("arguments", data.get("args", []))],
            children=[cls.from_dict(c) for c in data.get("children", data.get("subcommands", []))],
        )


@dataclass
class NestedConfig:
    """Settings for importing nested meta-repositories."""
    recursive_import: bool = False
    max_depth: int = 3
    flatten: bool = False
    cycle_detection: bool = True
    ignore_nested: List[str] = field(default_factory=list)
    namespace_separator: Optional[str] = None
    preserve_structure: bool = False

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {
            "recursive_import": self.recursive_import,
            "max_depth": self.max_depth,
            "flatten": self.flatten,
            "cycle_detection": self.cycle_detection,
            "ignore_nested": list(self.ignore_nested),
            "preserve_structure": self.preserve_structure,
        }
        if self.namespace_separator is not None:
            data["namespace_separator"] = self.namespace_separator
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "NestedConfig":
        return cls(
            recursive_import=bool(data.get("recursive_import", False)),
            max_depth=int(data.get("max_depth", 3)),
            flatten=bool(data.get("flatten", False)),
            cycle_detection=bool(data.get("cycle_detection", True)),
            ignore_nested=list(data.get("ignore_nested", [])),
            namespace_separator=data.get("namespace_separator"),
            preserve_structure=bool(data.get("preserve_structure", False)),
        )


@dataclass
class ProjectEntry:
    """A project in the workspace. Serialized as a bare URL when it has no metadata."""
    url: str
    aliases: List[str] = field(default_factory=list)
    scripts: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)

    def to_value(self) -> Union[str, dict]:
        if not (self.aliases or self.scripts or self.env):
            return self.url
        return {
            "url": self.url,
            "aliases": list(self.aliases),
            "scripts": dict(self.scripts),
            "env": dict(self.env),
        }

    @classmethod
    def from_value(cls, value: Any) -> "ProjectEntry":
        if isinstance(value, str):
            return cls(url=value)
        if isinstance(value, dict) and isinstance(value.get("url"), str):
            return cls(
                url=value["url"],
                aliases=list(value.get("aliases", [])),
                scripts=dict(value.get("scripts", {})),
                env=dict(value.get("env", {})),
            )
        raise ValueError(f"project entry must be a URL or an object with 'url': {value!r}")


@dataclass
class WorkspaceConfig:
    """Contents of a ``.meta`` file."""
    ignore: List[str] = field(default_factory=lambda: list(DEFAULT_IGNORE))
    projects: Dict[str, ProjectEntry] = field(default_factory=dict)
    plugins: Optional[Dict[str, str]] = None
    nested: Optional[NestedConfig] = None
    aliases: Optional[Dict[str, str]] = None
    scripts: Optional[Dict[str, str]] = None

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {
            "ignore": list(self.ignore),
            "projects": {name: entry.to_value() for name, entry in self.projects.items()},
        }
        # Optional sections are omitted rather than written as null
        if self.plugins is not None:
            data["plugins"] = dict(self.plugins)
        if self.nested is not None:
            data["nested"] = self.nested.to_dict()
        if self.aliases is not None:
            data["aliases"] = dict(self.aliases)
        if self.scripts is not None:
            data["scripts"] = dict(self.scripts)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "WorkspaceConfig":
        if not isinstance(data, dict):
            raise ValueError("workspace configuration must be a JSON object")
        nested = data.get("nested")
        plugins = data.get("plugins")
        aliases = data.get("aliases")
        scripts = data.get("scripts")
        return cls(
            ignore=list(data.get("ignore", DEFAULT_IGNORE)),
            projects={
                str(name): ProjectEntry.from_value(value)
                for name, value in data.get("projects", {}).items()
            },
            plugins={str(k): str(v) for k, v in plugins.items()} if plugins is not None else None,
            nested=NestedConfig.from_dict(nested) if nested is not None else None,
            aliases=dict(aliases) if aliases is not None else None,
            scripts=dict(scripts) if scripts is not None else None,
        )


@dataclass
class RuntimeConfig:
    """Snapshot of workspace configuration and invocation context.

    Passed to every plugin exactly once per invocation: directly to
    built-ins, serialized inside ``HandleCommand`` for external plugins.
    """
    workspace_config: WorkspaceConfig
    working_directory: Path
    config_file_path: Optional[Path] = None
    experimental_enabled: bool = False
    non_interactive: bool = False

    def has_meta_file(self) -> bool:
        return self.config_file_path is not None

    def meta_root(self) -> Optional[Path]:
        if self.config_file_path is None:
            return None
        return self.config_file_path.parent

    def resolve_project(self, identifier: str) -> Optional[str]:
        """Resolve a full project name, alias or basename to a project name."""
        projects = self.workspace_config.projects
        if identifier in projects:
            return identifier

        global_aliases = self.workspace_config.aliases or {}
        if identifier in global_aliases:
            return global_aliases[identifier]

        for name, entry in projects.items():
            if identifier in entry.aliases:
                return name

        for name in projects:
            if Path(name).name == identifier:
                return name
        return None

    def to_dict(self) -> dict:
        return {
            "workspaceConfig": self.workspace_config.to_dict(),
            "workingDirectory": str(self.working_directory),
            "configFilePath": str(self.config_file_path) if self.config_file_path else None,
            "experimentalEnabled": self.experimental_enabled,
            "nonInteractive": self.non_interactive,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RuntimeConfig":
        if not isinstance(data, dict) or not isinstance(data.get("workingDirectory"), str):
            raise ValueError("runtime config requires a 'workingDirectory' string")
        config_file = data.get("configFilePath")
        return cls(
            workspace_config=WorkspaceConfig.from_dict(data.get("workspaceConfig", {})),
            working_directory=Path(data["workingDirectory"]),
            config_file_path=Path(config_file) if config_file else None,
            experimental_enabled=bool(data.get("experimentalEnabled", False)),
            non_interactive=bool(data.get("nonInteractive", False)),
        )
