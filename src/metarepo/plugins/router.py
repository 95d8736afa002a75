"""Command router.

Maps argv to one plugin and dispatches it: built-ins are called in
process, externals go through ``ExternalPluginClient``. Every failure is
turned into one printed message and one exit code here and nowhere else.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, List, Optional

from rich.console import Console
from rich.markup import escape

from .. import __version__
from .client import ExternalPluginClient, StepTimeouts
from .errors import (
    EXIT_FAILURE,
    EXIT_OK,
    ExperimentalGateClosed,
    HostError,
    PluginReportedError,
    UnknownCommandError,
    UsageError,
)
from .help import HelpEntry, render_command_help, render_root_help
from .models import PluginDescriptor, RuntimeConfig
from .registry import PluginRegistry

logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)

HELP_FLAGS = ("--help", "-h")
VERSION_FLAGS = ("--version", "-V")

ClientFactory = Callable[[str, Path, StepTimeouts], ExternalPluginClient]


class CommandRouter:
    """Resolve the first argv token to a plugin and run it."""

    def __init__(self, registry: PluginRegistry, config: RuntimeConfig,
                 timeouts: Optional[StepTimeouts] = None,
                 client_factory: Optional[ClientFactory] = None,
                 version: str = __version__):
        self.registry = registry
        self.config = config
        self.timeouts = timeouts or StepTimeouts()
        self.client_factory = client_factory or ExternalPluginClient
        self.version = version

    def route(self, argv: List[str]) -> int:
        """Run one invocation and return its process exit code."""
        try:
            return self._route(list(argv))
        except PluginReportedError as e:
            err_console.print(str(e), markup=False, highlight=False, soft_wrap=True)
            return e.exit_code
        except HostError as e:
            err_console.print(f"[red]error:[/red] {escape(e.message)}", highlight=False, soft_wrap=True)
            return e.exit_code

    def _route(self, argv: List[str]) -> int:
        if not self.registry.frozen:
            raise RuntimeError("plugin registry must be frozen before dispatch")

        if not argv:
            self.show_help()
            return EXIT_OK

        head, rest = argv[0], argv[1:]
        if head in HELP_FLAGS:
            if rest:
                return self.show_command_help(rest[0])
            self.show_help()
            return EXIT_OK
        if head in VERSION_FLAGS:
            console.print(f"meta {self.version}", highlight=False)
            return EXIT_OK
        if head.startswith("-"):
            raise UsageError(f"unknown option '{head}' (global options go before the command)")

        descriptor = self.registry.resolve(head)
        if descriptor is None:
            raise UnknownCommandError(head, self.registry.names())

        if len(rest) == 1 and rest[0] in HELP_FLAGS:
            return self.show_command_help(descriptor.name)

        if descriptor.experimental and not self.config.experimental_enabled:
            raise ExperimentalGateClosed(descriptor.name)
        return self.dispatch(descriptor, rest)

    def dispatch(self, descriptor: PluginDescriptor, args: List[str]) -> int:
        if descriptor.is_builtin:
            return self._run_builtin(descriptor, args)

        client = self.client_factory(descriptor.name, descriptor.source.path, self.timeouts)
        outcome = client.handle_command(args, self.config)
        if outcome.message:
            console.print(outcome.message, markup=False, highlight=False, soft_wrap=True)
        return outcome.exit_code

    def _run_builtin(self, descriptor: PluginDescriptor, args: List[str]) -> int:
        implementation = self.registry.implementation(descriptor.name)
        logger.debug("Dispatching %s to built-in with %d args", descriptor.name, len(args))
        try:
            return implementation.run(args, self.config)
        except HostError:
            raise
        except Exception as e:
            logger.debug("Built-in %s raised", descriptor.name, exc_info=True)
            err_console.print(
                f"[red]error:[/red] {escape(descriptor.name)}: {escape(str(e))}",
                highlight=False, soft_wrap=True,
            )
            return EXIT_FAILURE

    def help_entry(self, descriptor: PluginDescriptor) -> HelpEntry:
        """Collect one plugin's command tree, spawning an external only if needed."""
        tree = self.registry.tree(descriptor.name)
        if tree is not None or descriptor.is_builtin:
            return HelpEntry(descriptor, tree=tree)
        if descriptor.experimental and not self.config.experimental_enabled:
            return HelpEntry(descriptor, error="experimental; rerun with --experimental")

        client = self.client_factory(descriptor.name, descriptor.source.path, self.timeouts)
        try:
            tree = client.fetch_commands(
                experimental_enabled=self.config.experimental_enabled,
                cwd=self.config.working_directory,
            )
        except HostError as e:
            logger.debug("Help for %s failed: %s", descriptor.name, e)
            return HelpEntry(descriptor, error=str(e))
        return HelpEntry(descriptor, tree=tree)

    def show_help(self) -> None:
        entries = [
            self.help_entry(d)
            for d in self.registry.all()
            if self.config.experimental_enabled or not d.experimental
        ]
        render_root_help(entries, self.version, self.registry.diagnostics)

    def show_command_help(self, name: str) -> int:
        descriptor = self.registry.resolve(name)
        if descriptor is None:
            raise UnknownCommandError(name, self.registry.names())
        render_command_help(self.help_entry(descriptor))
        return EXIT_OK
