"""Declarative plugin construction.

Built-in plugins and declarative manifests both describe themselves with
``PluginBuilder``: a descriptor, a command tree and, for built-ins, one
handler per command path. ``BuiltPlugin.run`` turns the tree into an
argparse parser, parses argv locally and calls the matching handler.

    plugin = (
        PluginBuilder("greet")
        .description("Say hello")
        .command(CommandBuilder("hello").arg(ArgBuilder("who").required()))
        .handler("hello", lambda args, config: print(args.who))
        .build()
    )
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Union

from .errors import EXIT_OK, UsageError
from .models import ArgumentSpec, CommandNode, PluginDescriptor, RuntimeConfig

Handler = Callable[[argparse.Namespace, RuntimeConfig], Optional[int]]

HANDLER_KEY = "_metarepo_handler"


class ArgBuilder:
    def __init__(self, name: str):
        self._spec = ArgumentSpec(name=name)

    def help(self, text: str) -> "ArgBuilder":
        self._spec.help = text
        return self

    def short(self, letter: str) -> "ArgBuilder":
        self._spec.short = letter
        return self

    def long(self, name: str) -> "ArgBuilder":
        self._spec.long = name
        return self

    def required(self, required: bool = True) -> "ArgBuilder":
        self._spec.required = required
        return self

    def flag(self) -> "ArgBuilder":
        """Option that takes no value."""
        self._spec.takes_value = False
        return self

    def default(self, value: str) -> "ArgBuilder":
        self._spec.default = value
        return self

    def choices(self, *values: str) -> "ArgBuilder":
        self._spec.choices = list(values)
        return self

    def build(self) -> ArgumentSpec:
        return ArgumentSpec(**vars(self._spec))


class CommandBuilder:
    def __init__(self, name: str):
        self._name = name
        self._help = ""
        self._aliases: List[str] = []
        self._args: List[ArgumentSpec] = []
        self._children: List[CommandNode] = []

    def help(self, text: str) -> "CommandBuilder":
        self._help = text
        return self

    def alias(self, *names: str) -> "CommandBuilder":
        for name in names:
            if name not in self._aliases:
                self._aliases.append(name)
        return self

    def arg(self, arg: Union[ArgBuilder, ArgumentSpec]) -> "CommandBuilder":
        self._args.append(arg.build() if isinstance(arg, ArgBuilder) else arg)
        return self

    def subcommand(self, command: Union["CommandBuilder", CommandNode]) -> "CommandBuilder":
        self._children.append(command.build() if isinstance(command, CommandBuilder) else command)
        return self

    def build(self) -> CommandNode:
        return CommandNode(
            name=self._name,
            help=self._help,
            aliases=list(self._aliases),
            arguments=list(self._args),
            children=list(self._children),
        )


class PluginBuilder:
    def __init__(self, name: str):
        self._root = CommandBuilder(name)
        self._name = name
        self._version: Optional[str] = None
        self._description = ""
        self._experimental = False
        self._handlers: Dict[str, Handler] = {}

    def version(self, version: str) -> "PluginBuilder":
        self._version = version
        return self

    def description(self, text: str) -> "PluginBuilder":
        self._description = text
        self._root.help(text)
        return self

    def experimental(self, experimental: bool = True) -> "PluginBuilder":
        self._experimental = experimental
        return self

    def alias(self, *names: str) -> "PluginBuilder":
        self._root.alias(*names)
        return self

    def arg(self, arg: Union[ArgBuilder, ArgumentSpec]) -> "PluginBuilder":
        """Argument of the plugin's top-level command."""
        self._root.arg(arg)
        return self

    def command(self, command: Union[CommandBuilder, CommandNode]) -> "PluginBuilder":
        self._root.subcommand(command)
        return self

    def handler(self, path: str, handler: Handler) -> "PluginBuilder":
        """Attach a handler to a command path such as ``"list"`` or ``"remote add"``.

        The empty path is the plugin's top-level command.
        """
        self._handlers[" ".join(path.split())] = handler
        return self

    def build(self) -> "BuiltPlugin":
        descriptor = PluginDescriptor(
            name=self._name,
            version=self._version,
            experimental=self._experimental,
            description=self._description,
        )
        return BuiltPlugin(descriptor=descriptor, tree=self._root.build(), handlers=dict(self._handlers))


class _ParserExit(Exception):
    def __init__(self, status: int):
        super().__init__(status)
        self.status = status


class CommandArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that reports errors as exceptions instead of exiting."""

    def error(self, message):
        raise UsageError(f"{self.prog}: {message}")

    def exit(self, status=0, message=None):
        if message:
            self._print_message(message, sys.stderr)
        raise _ParserExit(status)


def _add_arguments(parser: argparse.ArgumentParser, arguments: List[ArgumentSpec]) -> None:
    for spec in arguments:
        kwargs = {"help": spec.help or None}
        if spec.choices:
            kwargs["choices"] = spec.choices

        if spec.positional:
            if not spec.required:
                kwargs["nargs"] = "?"
                kwargs["default"] = spec.default
            parser.add_argument(spec.name, **kwargs)
            continue

        flags = []
        if spec.short:
            flags.append(f"-{spec.short}")
        if spec.long:
            flags.append(f"--{spec.long}")
        kwargs["dest"] = spec.name.replace("-", "_")
        if spec.takes_value:
            kwargs["required"] = spec.required
            if spec.default is not None:
                kwargs["default"] = spec.default
        else:
            kwargs.pop("choices", None)
            kwargs["action"] = "store_true"
        parser.add_argument(*flags, **kwargs)


def build_parser(node: CommandNode, prog: str,
                 parser: Optional[argparse.ArgumentParser] = None,
                 path: str = "") -> argparse.ArgumentParser:
    """Build an argparse parser mirroring a command tree.

    Each (sub)parser records its command path under ``HANDLER_KEY`` so the
    parsed namespace says which handler to call.
    """
    if parser is None:
        parser = CommandArgumentParser(prog=prog, description=node.help or None, allow_abbrev=False)
    parser.set_defaults(**{HANDLER_KEY: path})
    _add_arguments(parser, node.arguments)

    if node.children:
        subparsers = parser.add_subparsers(dest=f"{HANDLER_KEY}_{len(path.split())}")
        for child in node.children:
            child_parser = subparsers.add_parser(
                child.name,
                aliases=child.aliases,
                help=child.help or None,
                description=child.help or None,
                allow_abbrev=False,
            )
            child_path = f"{path} {child.name}".strip()
            build_parser(child, prog, child_parser, child_path)
    return parser


@dataclass
class BuiltPlugin:
    """An in-process plugin: descriptor, command tree and handlers."""
    descriptor: PluginDescriptor
    tree: CommandNode
    handlers: Dict[str, Handler] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.descriptor.name

    def parser(self) -> argparse.ArgumentParser:
        return build_parser(self.tree, prog=f"meta {self.name}")

    def run(self, args: List[str], config: RuntimeConfig) -> int:
        """Parse ``args`` against the command tree and call the matching handler.

        Raises:
            UsageError: argv does not match the tree.
        """
        parser = self.parser()
        try:
            namespace = parser.parse_args(list(args))
        except _ParserExit as e:
            return e.status

        path = getattr(namespace, HANDLER_KEY, "")
        handler = self.handlers.get(path)
        if handler is None:
            # A command group without its own handler: show what it contains
            parser.print_help()
            return EXIT_OK
        result = handler(namespace, config)
        return EXIT_OK if result is None else int(result)
