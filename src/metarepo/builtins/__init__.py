"""Plugins compiled into the host."""

from __future__ import annotations

from typing import Optional

from ..config import HostSettings
from ..plugins.client import StepTimeouts
from ..plugins.registry import PluginRegistry
from .init import create_init_plugin
from .plugin_admin import create_plugin_admin


def register_builtins(registry: PluginRegistry, settings: HostSettings,
                      timeouts: Optional[StepTimeouts] = None) -> None:
    for plugin in (create_init_plugin(), create_plugin_admin(registry, settings, timeouts)):
        registry.register_builtin(plugin.descriptor, plugin, tree=plugin.tree)
