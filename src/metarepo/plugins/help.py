"""Merged help rendering for built-in and external plugins."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from .errors import RegistrationError
from .models import ArgumentSpec, CommandNode, PluginDescriptor

console = Console()

GLOBAL_OPTIONS = [
    ("--experimental", "Enable experimental plugins"),
    ("--non-interactive", "Never prompt; also set by METAREPO_NON_INTERACTIVE or CI"),
    ("-v, --verbose", "Debug logging on stderr"),
    ("-h, --help [COMMAND]", "Show help for the host or one command"),
    ("-V, --version", "Show the host version"),
]


@dataclass
class HelpEntry:
    """One plugin's contribution to help: its tree, or why it is missing."""
    descriptor: PluginDescriptor
    tree: Optional[CommandNode] = None
    error: Optional[str] = None


def _argument_label(arg: ArgumentSpec) -> str:
    if arg.positional:
        label = arg.name.upper()
        return label if arg.required else f"[{label}]"
    flags = ", ".join(
        f for f in (f"-{arg.short}" if arg.short else "", f"--{arg.long}" if arg.long else "") if f
    )
    if arg.takes_value:
        flags += f" <{arg.name.upper()}>"
    return flags


def _add_node(parent: Tree, node: CommandNode) -> None:
    label = f"[cyan]{escape(node.name)}[/cyan]"
    if node.aliases:
        label += f" [dim]({escape(', '.join(node.aliases))})[/dim]"
    if node.help:
        label += f"  {escape(node.help)}"
    branch = parent.add(label)
    for arg in node.arguments:
        text = f"[green]{escape(_argument_label(arg))}[/green]"
        if arg.help:
            text += f"  [dim]{escape(arg.help)}[/dim]"
        branch.add(text)
    for child in node.children:
        _add_node(branch, child)


def command_tree(entry: HelpEntry) -> Tree:
    descriptor = entry.descriptor
    title = f"[bold]{escape(descriptor.name)}[/bold]"
    if descriptor.version:
        title += f" [dim]{escape(descriptor.version)}[/dim]"
    if descriptor.experimental:
        title += " [yellow](experimental)[/yellow]"
    tree = Tree(title)

    if entry.error:
        tree.add(f"[red]help unavailable: {escape(entry.error)}[/red]")
        return tree
    if entry.tree is None:
        return tree

    if entry.tree.help:
        tree.add(escape(entry.tree.help))
    for arg in entry.tree.arguments:
        tree.add(f"[green]{escape(_argument_label(arg))}[/green]  [dim]{escape(arg.help)}[/dim]")
    for child in entry.tree.children:
        _add_node(tree, child)
    return tree


def render_root_help(entries: List[HelpEntry], version: str,
                     diagnostics: Optional[List[RegistrationError]] = None) -> None:
    console.print(Panel.fit(
        f"[bold]meta[/bold] {escape(version)}\n"
        + escape("Usage: meta [OPTIONS] COMMAND [ARGS]..."),
        title="metarepo",
    ))

    table = Table(title="Commands", show_lines=False)
    table.add_column("Command", style="cyan")
    table.add_column("Source")
    table.add_column("Description")
    for entry in entries:
        d = entry.descriptor
        name = escape(d.name)
        if d.experimental:
            name += " [yellow](experimental)[/yellow]"
        description = d.description or (entry.tree.help if entry.tree else "")
        table.add_row(name, "builtin" if d.is_builtin else "external", escape(description))
    console.print(table)

    options = Table(title="Global options", show_header=False, box=None)
    options.add_column("Option", style="green")
    options.add_column("Description")
    for flag, text in GLOBAL_OPTIONS:
        options.add_row(escape(flag), text)
    console.print(options)

    for entry in entries:
        console.print(command_tree(entry))

    if diagnostics:
        console.print("\n[yellow]Plugins not loaded:[/yellow]")
        for error in diagnostics:
            console.print(f"  [yellow]-[/yellow] {escape(error.message)}")


def render_command_help(entry: HelpEntry) -> None:
    console.print(escape(f"Usage: meta {entry.descriptor.name} [ARGS]..."))
    console.print(command_tree(entry))
