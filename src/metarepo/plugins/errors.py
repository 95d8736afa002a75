"""Error taxonomy for the plugin host.

Every failure the router can surface is a ``HostError`` carrying the
process exit code it maps to. Registration errors are the exception:
they are recorded as diagnostics and never reach the router.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_UNKNOWN_COMMAND = 3
EXIT_PLUGIN_FAILED = 4


class FailureReason(str, Enum):
    """Why an external plugin session ended in the Failed state."""
    SPAWN_FAILED = "spawn-failed"
    PROTOCOL_VIOLATION = "protocol-violation"
    NAME_MISMATCH = "name-mismatch"
    EXPERIMENTAL_GATE_CLOSED = "experimental-gate-closed"
    TIMEOUT = "timeout"
    PROCESS_EXITED = "process-exited"
    PLUGIN_ERROR = "plugin-error"


class HostError(Exception):
    """Base class for failures reported to the user with an exit code."""
    exit_code = EXIT_FAILURE

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class UsageError(HostError):
    """Malformed invocation of the host or of a built-in command."""
    exit_code = EXIT_USAGE


class ConfigError(HostError):
    """The workspace configuration could not be read or written."""
    exit_code = EXIT_USAGE


class UnknownCommandError(HostError):
    """No plugin is registered under the requested command name."""
    exit_code = EXIT_UNKNOWN_COMMAND

    def __init__(self, name: str, known: Optional[list] = None):
        known_str = ", ".join(known) if known else "(none)"
        super().__init__(f"unknown command '{name}' (available: {known_str})")
        self.name = name


class RegistrationError(HostError):
    """A plugin entry was rejected while populating the registry."""

    def __init__(self, name: str, message: str):
        super().__init__(f"plugin '{name}': {message}")
        self.name = name
        self.detail = message


class ManifestError(RegistrationError):
    """A declarative plugin manifest is malformed or unsupported."""


class PluginFailure(HostError):
    """An external plugin session failed on the host side of the boundary."""
    exit_code = EXIT_PLUGIN_FAILED
    reason = FailureReason.PROTOCOL_VIOLATION

    def __init__(self, plugin: str, message: str):
        super().__init__(f"plugin '{plugin}' failed: {message}")
        self.plugin = plugin


class PluginSpawnError(PluginFailure):
    reason = FailureReason.SPAWN_FAILED


class ProtocolViolation(PluginFailure):
    reason = FailureReason.PROTOCOL_VIOLATION


class NameMismatchError(PluginFailure):
    reason = FailureReason.NAME_MISMATCH

    def __init__(self, plugin: str, reported: str):
        super().__init__(plugin, f"executable identifies itself as '{reported}'")
        self.reported = reported


class ExperimentalGateClosed(PluginFailure):
    reason = FailureReason.EXPERIMENTAL_GATE_CLOSED

    def __init__(self, plugin: str):
        super().__init__(
            plugin,
            "plugin is experimental; rerun with --experimental to enable it",
        )


class PluginTimeoutError(PluginFailure):
    reason = FailureReason.TIMEOUT

    def __init__(self, plugin: str, step: str, timeout_s: float):
        super().__init__(plugin, f"timed out after {timeout_s:g}s waiting for {step}")
        self.step = step
        self.timeout_s = timeout_s


class PluginCrashedError(PluginFailure):
    reason = FailureReason.PROCESS_EXITED

    def __init__(self, plugin: str, returncode: Optional[int]):
        super().__init__(
            plugin,
            f"process exited (code {returncode}) without sending a response",
        )
        self.returncode = returncode


class PluginReportedError(HostError):
    """An ``Error`` message sent by the plugin itself.

    This is the only category whose text is plugin-controlled; it is
    rendered with a ``[<plugin>]`` prefix instead of the host's ``error:``.
    """
    reason = FailureReason.PLUGIN_ERROR

    def __init__(self, plugin: str, message: str):
        super().__init__(message)
        self.plugin = plugin

    def __str__(self) -> str:
        return f"[{self.plugin}] {self.message}"
