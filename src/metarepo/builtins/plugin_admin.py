"""Plugin Admin built-in.

Provides commands for managing plugins:
- meta plugin list
- meta plugin add NAME SPEC
- meta plugin remove NAME
- meta plugin install NAME URL
- meta plugin doctor
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Optional

import requests
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ..config import HostSettings, remove_plugin_declaration, set_plugin_declaration
from ..plugins.builder import ArgBuilder, BuiltPlugin, CommandBuilder, PluginBuilder
from ..plugins.client import ExternalPluginClient, StepTimeouts
from ..plugins.errors import ConfigError, HostError, UsageError
from ..plugins.models import RuntimeConfig
from ..plugins.registry import PluginRegistry, validate_name
from ..plugins.resolver import executable_name

console = Console()

DOWNLOAD_TIMEOUT_S = 60


def _require_meta_file(config: RuntimeConfig) -> Path:
    if config.config_file_path is None:
        raise ConfigError("no .meta file found; run 'meta init' first")
    return config.config_file_path


def _check_name(name: str) -> None:
    problem = validate_name(name)
    if problem:
        raise UsageError(f"invalid plugin name '{name}': {problem}")


class PluginAdmin:
    """Handlers for ``meta plugin``; bound to this invocation's registry."""

    def __init__(self, registry: PluginRegistry, settings: HostSettings,
                 timeouts: Optional[StepTimeouts] = None):
        self.registry = registry
        self.settings = settings
        self.timeouts = timeouts or StepTimeouts()

    def cmd_list(self, args: argparse.Namespace, config: RuntimeConfig) -> int:
        """List registered plugins and load failures."""
        table = Table(title="Registered Plugins")
        table.add_column("Name", style="cyan")
        table.add_column("Version")
        table.add_column("Source")
        table.add_column("Experimental", justify="center")

        for d in self.registry.all():
            table.add_row(
                escape(d.name),
                escape(d.version or "-"),
                escape(d.source.describe()),
                "[yellow]Yes[/yellow]" if d.experimental else "[dim]No[/dim]",
            )
        console.print(table)

        diagnostics = self.registry.diagnostics
        if diagnostics:
            console.print("\n[yellow]Not loaded:[/yellow]")
            for error in diagnostics:
                console.print(f"  [yellow]-[/yellow] {escape(error.message)}")
        return 0

    def cmd_add(self, args: argparse.Namespace, config: RuntimeConfig) -> int:
        """Declare a plugin in .meta."""
        _check_name(args.name)
        meta_file = _require_meta_file(config)
        set_plugin_declaration(meta_file, args.name, args.spec)
        console.print(f"[green]Plugin '{escape(args.name)}' added to {escape(str(meta_file))}.[/green]")
        return 0

    def cmd_remove(self, args: argparse.Namespace, config: RuntimeConfig) -> int:
        """Remove a plugin declaration from .meta."""
        meta_file = _require_meta_file(config)
        if not remove_plugin_declaration(meta_file, args.name):
            console.print(f"[red]Plugin '{escape(args.name)}' is not declared in {escape(str(meta_file))}.[/red]")
            return 1
        console.print(f"[green]Plugin '{escape(args.name)}' removed.[/green]")
        return 0

    def cmd_install(self, args: argparse.Namespace, config: RuntimeConfig) -> int:
        """Download a plugin executable into the plugins directory."""
        _check_name(args.name)
        plugins_dir = self.settings.plugins_dir
        target = plugins_dir / executable_name(args.name)
        if target.exists() and not args.force:
            raise UsageError(f"{target} already exists; use --force to overwrite")

        plugins_dir.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(target.name + ".part")
        console.print(f"Downloading {escape(args.url)}...")
        try:
            with requests.get(args.url, stream=True, timeout=DOWNLOAD_TIMEOUT_S) as response:
                response.raise_for_status()
                with open(partial, "wb") as f:
                    for chunk in response.iter_content(chunk_size=64 * 1024):
                        if chunk:
                            f.write(chunk)
            os.chmod(partial, 0o755)
            os.replace(partial, target)
        except requests.exceptions.RequestException as e:
            raise HostError(f"download failed: {e}") from e
        except OSError as e:
            raise HostError(f"cannot install {target}: {e.strerror or e}") from e
        finally:
            partial.unlink(missing_ok=True)
        console.print(f"[green]Installed {escape(str(target))}[/green]")

        if config.config_file_path is not None:
            set_plugin_declaration(config.config_file_path, args.name, args.version)
            console.print(f"Declared '{escape(args.name)}' = '{escape(args.version)}' in {escape(str(config.config_file_path))}")
        return 0

    def cmd_doctor(self, args: argparse.Namespace, config: RuntimeConfig) -> int:
        """Handshake every external plugin and report its status."""
        externals = [d for d in self.registry.all() if not d.is_builtin]
        if not externals and not self.registry.diagnostics:
            console.print("[yellow]No external plugins configured.[/yellow]")
            return 0

        table = Table(title="Plugin Status")
        table.add_column("Plugin", style="cyan")
        table.add_column("Status")
        table.add_column("Details")

        failed = 0
        for d in externals:
            client = ExternalPluginClient(d.name, d.source.path, self.timeouts)
            try:
                info = client.probe(cwd=config.working_directory)
            except HostError as e:
                failed += 1
                table.add_row(escape(d.name), "[red]Error[/red]", escape(str(e)))
                continue
            details = f"version {info.version or '?'}"
            if info.experimental:
                details += ", experimental"
            table.add_row(escape(d.name), "[green]OK[/green]", escape(details))

        for error in self.registry.diagnostics:
            failed += 1
            table.add_row(escape(error.name), "[red]Not loaded[/red]", escape(error.detail))

        console.print(table)
        return 1 if failed else 0


def create_plugin_admin(registry: PluginRegistry, settings: HostSettings,
                        timeouts: Optional[StepTimeouts] = None) -> BuiltPlugin:
    admin = PluginAdmin(registry, settings, timeouts)
    return (
        PluginBuilder("plugin")
        .description("Manage external plugins")
        .alias("plugins")
        .command(CommandBuilder("list").alias("ls").help("List registered plugins"))
        .command(
            CommandBuilder("add")
            .help("Declare a plugin in .meta")
            .arg(ArgBuilder("name").required().help("Plugin name"))
            .arg(ArgBuilder("spec").required().help("Path, git+URL or version"))
        )
        .command(
            CommandBuilder("remove")
            .alias("rm")
            .help("Remove a plugin declaration from .meta")
            .arg(ArgBuilder("name").required().help("Plugin name"))
        )
        .command(
            CommandBuilder("install")
            .help("Download a plugin executable into the plugins directory")
            .arg(ArgBuilder("name").required().help("Plugin name"))
            .arg(ArgBuilder("url").required().help("Download URL of the executable"))
            .arg(ArgBuilder("version").long("version").default("latest").help("Version to declare in .meta"))
            .arg(ArgBuilder("force").long("force").flag().help("Overwrite an installed executable"))
        )
        .command(CommandBuilder("doctor").help("Check every external plugin"))
        .handler("", admin.cmd_list)
        .handler("list", admin.cmd_list)
        .handler("add", admin.cmd_add)
        .handler("remove", admin.cmd_remove)
        .handler("install", admin.cmd_install)
        .handler("doctor", admin.cmd_doctor)
        .build()
    )
