"""Tests for the command router."""

from pathlib import Path
from unittest.mock import MagicMock, Mock

import pytest

from metarepo.plugins.builder import ArgBuilder, CommandBuilder, PluginBuilder
from metarepo.plugins.client import CommandOutcome, ExternalPluginClient, StepTimeouts
from metarepo.plugins.errors import (
    EXIT_PLUGIN_FAILED,
    EXIT_UNKNOWN_COMMAND,
    EXIT_USAGE,
    PluginTimeoutError,
)
from metarepo.plugins.models import CommandNode, RuntimeConfig, WorkspaceConfig
from metarepo.plugins.registry import PluginRegistry
from metarepo.plugins.router import CommandRouter


def _config(tmp_path, experimental=False):
    return RuntimeConfig(
        workspace_config=WorkspaceConfig(),
        working_directory=tmp_path,
        experimental_enabled=experimental,
    )


def _alpha(handler):
    return (
        PluginBuilder("alpha")
        .description("Built-in alpha")
        .alias("a")
        .command(CommandBuilder("run").arg(ArgBuilder("target").required()))
        .handler("run", handler)
        .build()
    )


def _registry(alpha=None, externals=(), experimental_builtin=False):
    registry = PluginRegistry()
    alpha = alpha or _alpha(Mock(return_value=None))
    registry.register_builtin(alpha.descriptor, alpha, tree=alpha.tree)
    if experimental_builtin:
        lab = PluginBuilder("lab").experimental().handler("", Mock(return_value=None)).build()
        registry.register_builtin(lab.descriptor, lab, tree=lab.tree)
    for name, path in externals:
        registry.register_external(name, path)
    registry.freeze()
    return registry


class TestDispatch:
    """Tests for routing argv to plugins."""

    def test_alpha_beta_end_to_end(self, make_plugin, tmp_path, capsys):
        """Test meta beta x y reaches the external plugin and exits 0."""
        alpha_handler = Mock(return_value=None)
        beta = make_plugin("beta")
        registry = _registry(_alpha(alpha_handler), externals=[("beta", beta.path)])
        router = CommandRouter(registry, _config(tmp_path))

        assert router.route(["beta", "x", "y"]) == 0

        handled = [e for e in beta.received() if e["type"] == "HandleCommand"]
        assert len(handled) == 1
        assert handled[0]["args"] == ["x", "y"]
        assert "ok: x y" in capsys.readouterr().out
        alpha_handler.assert_not_called()

    def test_builtin_in_process(self, tmp_path):
        """Test a built-in receives its remaining argv and the config."""
        handler = Mock(return_value=None)
        config = _config(tmp_path)
        router = CommandRouter(_registry(_alpha(handler)), config)
        assert router.route(["alpha", "run", "web"]) == 0
        args, passed = handler.call_args[0]
        assert args.target == "web"
        assert passed is config

    def test_builtin_alias(self, tmp_path):
        """Test the top-level alias of a built-in dispatches to it."""
        handler = Mock(return_value=5)
        router = CommandRouter(_registry(_alpha(handler)), _config(tmp_path))
        assert router.route(["a", "run", "web"]) == 5

    def test_external_args_verbatim(self, tmp_path):
        """Test externals get argv untouched, including help-looking tokens."""
        client = MagicMock()
        client.handle_command.return_value = CommandOutcome(exit_code=0)
        factory = Mock(return_value=client)
        config = _config(tmp_path)
        router = CommandRouter(
            _registry(externals=[("beta", Path("/bin/beta"))]), config,
            timeouts=StepTimeouts(command=3), client_factory=factory,
        )

        assert router.route(["beta", "--verbose", "-h", "x"]) == 0
        factory.assert_called_once_with("beta", Path("/bin/beta"), StepTimeouts(command=3))
        client.handle_command.assert_called_once_with(["--verbose", "-h", "x"], config)

    def test_success_exit_code_propagates(self, tmp_path):
        """Test Success{exitCode:n} exits n."""
        client = MagicMock()
        client.handle_command.return_value = CommandOutcome(exit_code=9)
        router = CommandRouter(
            _registry(externals=[("beta", Path("/bin/beta"))]), _config(tmp_path),
            client_factory=Mock(return_value=client),
        )
        assert router.route(["beta"]) == 9

    def test_unfrozen_registry(self, tmp_path):
        """Test dispatch requires a frozen registry."""
        router = CommandRouter(PluginRegistry(), _config(tmp_path))
        with pytest.raises(RuntimeError):
            router.route(["alpha"])


class TestErrors:
    """Tests for mapping failures to messages and exit codes."""

    def test_unknown_command(self, tmp_path, capsys):
        """Test an unknown name exits 3 without spawning anything."""
        factory = Mock()
        router = CommandRouter(
            _registry(externals=[("beta", Path("/bin/beta"))]), _config(tmp_path),
            client_factory=factory,
        )
        assert router.route(["gamma"]) == EXIT_UNKNOWN_COMMAND
        factory.assert_not_called()
        err = capsys.readouterr().err
        assert "error:" in err
        assert "unknown command 'gamma'" in err
        assert "beta" in err

    def test_unknown_option(self, tmp_path):
        """Test an option before the command is a usage error."""
        router = CommandRouter(_registry(), _config(tmp_path))
        assert router.route(["--bogus"]) == EXIT_USAGE

    def test_builtin_usage_error(self, tmp_path, capsys):
        """Test bad argv for a built-in exits 2."""
        router = CommandRouter(_registry(), _config(tmp_path))
        assert router.route(["alpha", "run"]) == EXIT_USAGE
        assert "error:" in capsys.readouterr().err

    def test_builtin_exception(self, tmp_path, capsys):
        """Test an unexpected exception in a built-in exits 1."""
        router = CommandRouter(_registry(_alpha(Mock(side_effect=RuntimeError("disk on fire")))),
                               _config(tmp_path))
        assert router.route(["alpha", "run", "x"]) == 1
        assert "disk on fire" in capsys.readouterr().err

    def test_client_failure(self, tmp_path, capsys):
        """Test host-side plugin failures exit 4."""
        client = MagicMock()
        client.handle_command.side_effect = PluginTimeoutError("beta", "command result", 1)
        router = CommandRouter(
            _registry(externals=[("beta", Path("/bin/beta"))]), _config(tmp_path),
            client_factory=Mock(return_value=client),
        )
        assert router.route(["beta"]) == EXIT_PLUGIN_FAILED
        assert "timed out" in capsys.readouterr().err

    def test_plugin_reported_error(self, make_plugin, tmp_path, capsys):
        """Test a plugin Error is printed verbatim with its prefix and exits 1."""
        beta = make_plugin("beta", mode="error")
        router = CommandRouter(_registry(externals=[("beta", beta.path)]), _config(tmp_path))
        assert router.route(["beta"]) == 1
        err = capsys.readouterr().err
        assert "[beta] something went wrong [bold]" in err
        assert "error:" not in err

    def test_experimental_builtin_gated(self, tmp_path):
        """Test experimental built-ins need experimental mode."""
        registry = _registry(experimental_builtin=True)
        assert CommandRouter(registry, _config(tmp_path)).route(["lab"]) == EXIT_PLUGIN_FAILED
        assert CommandRouter(registry, _config(tmp_path, experimental=True)).route(["lab"]) == 0


class TestHelpAndVersion:
    """Tests for host-handled flags."""

    @pytest.mark.parametrize("flag", ["--version", "-V"])
    def test_version(self, tmp_path, capsys, flag):
        """Test the version flag prints the host version."""
        router = CommandRouter(_registry(), _config(tmp_path), version="9.9.9")
        assert router.route([flag]) == 0
        assert "meta 9.9.9" in capsys.readouterr().out

    def test_empty_argv_shows_help(self, tmp_path, capsys):
        """Test no arguments renders root help."""
        router = CommandRouter(_registry(), _config(tmp_path))
        assert router.route([]) == 0
        assert "alpha" in capsys.readouterr().out

    def test_root_help_spawns_externals(self, make_plugin, tmp_path, capsys):
        """Test root help asks externals for their commands and never runs them."""
        beta = make_plugin("beta")
        router = CommandRouter(_registry(externals=[("beta", beta.path)]), _config(tmp_path))
        assert router.route(["--help"]) == 0
        assert beta.received_types() == ["GetInfo", "RegisterCommands"]
        assert "greet" in capsys.readouterr().out

    def test_help_failure_inline(self, tmp_path, capsys):
        """Test one plugin failing to describe itself does not fail help."""
        client = MagicMock()
        client.fetch_commands.side_effect = PluginTimeoutError("beta", "CommandsResponse", 1)
        router = CommandRouter(
            _registry(externals=[("beta", Path("/bin/beta"))]), _config(tmp_path),
            client_factory=Mock(return_value=client),
        )
        assert router.route(["-h"]) == 0
        out = capsys.readouterr().out
        assert "help unavailable" in out
        assert "alpha" in out

    def test_declared_tree_not_spawned(self, tmp_path):
        """Test a plugin whose tree is known is not spawned for help."""
        registry = PluginRegistry()
        registry.register_external("beta", Path("/bin/beta"), tree=CommandNode(name="beta"))
        registry.freeze()
        factory = Mock()
        router = CommandRouter(registry, _config(tmp_path), client_factory=factory)
        assert router.route(["--help", "beta"]) == 0
        factory.assert_not_called()

    def test_command_help_after_name(self, tmp_path, capsys):
        """Test meta NAME --help is handled by the host."""
        handler = Mock()
        router = CommandRouter(_registry(_alpha(handler)), _config(tmp_path))
        assert router.route(["alpha", "--help"]) == 0
        handler.assert_not_called()
        assert "run" in capsys.readouterr().out

    def test_help_unknown_command(self, tmp_path):
        """Test help for an unknown name exits 3."""
        router = CommandRouter(_registry(), _config(tmp_path))
        assert router.route(["--help", "nope"]) == EXIT_UNKNOWN_COMMAND
