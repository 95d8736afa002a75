"""metarepo plugin system.

Lets the ``meta`` host run two kinds of plugins behind one command surface:
- Built-in plugins, compiled into the host and called in process
- External plugins, separate executables speaking line-delimited JSON on stdio

Admin commands:
- meta plugin list      - List registered plugins and load failures
- meta plugin add       - Declare a plugin in .meta
- meta plugin remove    - Remove a declaration from .meta
- meta plugin install   - Download a plugin executable into the plugins dir
- meta plugin doctor    - Handshake every external plugin
"""

from .builder import ArgBuilder, BuiltPlugin, CommandBuilder, PluginBuilder
from .client import CommandOutcome, ExternalPluginClient, StepTimeouts
from .models import (
    ArgumentSpec,
    CommandNode,
    PluginDescriptor,
    RuntimeConfig,
    WorkspaceConfig,
)
from .registry import PluginRegistry
from .router import CommandRouter

__all__ = [
    "ArgBuilder",
    "ArgumentSpec",
    "BuiltPlugin",
    "CommandBuilder",
    "CommandNode",
    "CommandOutcome",
    "CommandRouter",
    "ExternalPluginClient",
    "PluginBuilder",
    "PluginDescriptor",
    "PluginRegistry",
    "RuntimeConfig",
    "StepTimeouts",
    "WorkspaceConfig",
]
