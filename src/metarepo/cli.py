"""meta CLI - extensible multi-repository workspace host.

Usage:
    meta [--experimental] [--non-interactive] [-v] COMMAND [ARGS]...
    meta --help [COMMAND]   # Merged help for built-in and external plugins
    meta --version

Built-in commands:
    meta init               # Create a .meta workspace file
    meta plugin ...         # Manage external plugins

Every other command is resolved against the plugins declared in .meta or
installed in the user plugins directory.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from .builtins import register_builtins
from .config import HostSettings, build_runtime_config
from .plugins.client import StepTimeouts
from .plugins.errors import HostError
from .plugins.models import WorkspaceConfig
from .plugins.registry import PluginRegistry
from .plugins.resolver import load_external_plugins
from .plugins.router import CommandRouter

err_console = Console(stderr=True)


def _setup_logger(verbose: bool) -> logging.Logger:
    logger = logging.getLogger("metarepo")
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    handler = RichHandler(console=err_console, show_time=verbose, show_path=verbose, markup=False)
    handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.handlers[:] = [handler]
    logger.propagate = False
    return logger


@dataclass
class GlobalOptions:
    experimental: bool = False
    non_interactive: bool = False
    verbose: bool = False


def split_global_options(argv: List[str]) -> Tuple[GlobalOptions, List[str]]:
    """Consume host options that precede the command name.

    Everything from the first other token on is left for the router.
    """
    options = GlobalOptions()
    index = 0
    while index < len(argv):
        token = argv[index]
        if token == "--experimental":
            options.experimental = True
        elif token == "--non-interactive":
            options.non_interactive = True
        elif token in ("-v", "--verbose"):
            options.verbose = True
        else:
            break
        index += 1
    return options, argv[index:]


def build_registry(settings: HostSettings, workspace: WorkspaceConfig, meta_root: Optional[Path],
                   timeouts: StepTimeouts) -> PluginRegistry:
    """Built-ins first, then declared and installed externals; frozen on return."""
    registry = PluginRegistry()
    register_builtins(registry, settings, timeouts)
    load_external_plugins(registry, workspace, settings.plugins_dir, meta_root)
    registry.freeze()
    return registry


def run(argv: Optional[List[str]] = None, cwd: Optional[Path] = None) -> int:
    """Run one invocation and return its exit code."""
    argv = sys.argv[1:] if argv is None else list(argv)
    options, rest = split_global_options(argv)
    logger = _setup_logger(options.verbose)

    try:
        settings = HostSettings.load()
        config = build_runtime_config(
            settings,
            cwd=cwd,
            experimental=options.experimental,
            non_interactive=options.non_interactive,
        )
    except HostError as e:
        err_console.print(f"[red]error:[/red] {escape(e.message)}", highlight=False, soft_wrap=True)
        return e.exit_code

    timeouts = StepTimeouts().with_override(settings.plugin_timeout_s)
    registry = build_registry(
        settings, config.workspace_config, config.meta_root() or config.working_directory, timeouts
    )
    logger.debug("Registry: %s", ", ".join(registry.names()))

    router = CommandRouter(registry, config, timeouts=timeouts)
    return router.route(rest)


def main() -> None:
    try:
        code = run()
    except KeyboardInterrupt:
        code = 130
    raise SystemExit(code)
