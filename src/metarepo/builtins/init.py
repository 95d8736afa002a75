"""``meta init``: create a workspace ``.meta`` file."""

from __future__ import annotations

import argparse

from rich.console import Console
from rich.markup import escape

from ..config import META_FILE, write_meta_json
from ..plugins.builder import ArgBuilder, BuiltPlugin, PluginBuilder
from ..plugins.models import RuntimeConfig, WorkspaceConfig

console = Console()


def cmd_init(args: argparse.Namespace, config: RuntimeConfig) -> int:
    """Write a default .meta in the working directory."""
    path = config.working_directory / META_FILE
    if path.exists() and not args.force:
        console.print(f"[yellow]{escape(str(path))} already exists.[/yellow]")
        console.print("Use --force to overwrite.")
        return 1

    write_meta_json(path, WorkspaceConfig().to_dict())
    console.print(f"[green]Initialized workspace in {escape(str(config.working_directory))}[/green]")
    return 0


def create_init_plugin() -> BuiltPlugin:
    return (
        PluginBuilder("init")
        .description("Initialize a new workspace (.meta) in the current directory")
        .arg(ArgBuilder("force").long("force").flag().help("Overwrite an existing .meta"))
        .handler("", cmd_init)
        .build()
    )
