"""Tests for the plugin registry."""

import itertools
import logging
from pathlib import Path

import pytest

from metarepo.plugins.builder import PluginBuilder
from metarepo.plugins.models import CommandNode, PluginDescriptor
from metarepo.plugins.registry import PluginRegistry, validate_name


def _builtin(name, aliases=()):
    return PluginBuilder(name).alias(*aliases).build()


class TestValidateName:
    """Tests for command name validation."""

    @pytest.mark.parametrize("name", ["", "   ", "-x", "has space", " lead"])
    def test_invalid(self, name):
        """Test names that cannot be typed as a command."""
        assert validate_name(name) is not None

    @pytest.mark.parametrize("name", ["git", "my-plugin", "x2"])
    def test_valid(self, name):
        """Test ordinary names."""
        assert validate_name(name) is None


class TestRegistration:
    """Tests for registering plugins."""

    def test_builtin_and_external(self):
        """Test both kinds resolve to their descriptors."""
        registry = PluginRegistry()
        alpha = _builtin("alpha")
        registry.register_builtin(alpha.descriptor, alpha, tree=alpha.tree)
        assert registry.register_external("beta", Path("/bin/beta"), declared_version="1.0")

        assert registry.resolve("alpha").is_builtin
        beta = registry.resolve("beta")
        assert not beta.is_builtin
        assert beta.version == "1.0"
        assert registry.implementation("alpha") is alpha
        assert registry.resolve("gamma") is None

    def test_duplicate_builtin_raises(self):
        """Test two built-ins with one name is a programming error."""
        registry = PluginRegistry()
        registry.register_builtin(PluginDescriptor(name="init"), object())
        with pytest.raises(ValueError):
            registry.register_builtin(PluginDescriptor(name="init"), object())

    def test_external_collision_is_diagnostic(self, caplog):
        """Test a second external with the same name is skipped, not fatal."""
        registry = PluginRegistry()
        with caplog.at_level(logging.WARNING, logger="metarepo"):
            assert registry.register_external("beta", Path("/first"))
            assert not registry.register_external("beta", Path("/second"))
        assert registry.resolve("beta").source.path == Path("/first")
        assert len(registry.diagnostics) == 1
        assert "beta" in registry.diagnostics[0].message
        assert "already registered" in caplog.text

    def test_builtin_evicts_external(self):
        """Test a built-in registered after an external replaces it."""
        registry = PluginRegistry()
        registry.register_external("init", Path("/bin/init"))
        registry.register_builtin(PluginDescriptor(name="init"), object())
        assert registry.resolve("init").is_builtin
        assert len(registry) == 1
        assert "shadowed" in registry.diagnostics[0].message

    def test_external_after_builtin_rejected(self):
        """Test an external cannot take a built-in's name."""
        registry = PluginRegistry()
        registry.register_builtin(PluginDescriptor(name="init"), object())
        assert not registry.register_external("init", Path("/bin/init"))
        assert registry.resolve("init").is_builtin

    def test_quiet_collision(self):
        """Test quiet registrations skip taken names without diagnostics."""
        registry = PluginRegistry()
        registry.register_external("beta", Path("/a"))
        assert not registry.register_external("beta", Path("/b"), quiet=True)
        assert registry.diagnostics == []

    @pytest.mark.parametrize("name", ["", " ", "-bad"])
    def test_invalid_external_name(self, name):
        """Test invalid names are rejected non-fatally."""
        registry = PluginRegistry()
        assert not registry.register_external(name, Path("/x"))
        assert len(registry) == 0
        assert len(registry.diagnostics) == 1

    def test_record_failure(self):
        """Test failures before registration are kept as diagnostics."""
        registry = PluginRegistry()
        registry.record_failure("broken", "bad manifest")
        assert registry.diagnostics[0].name == "broken"
        assert registry.diagnostics[0].detail == "bad manifest"

    def test_order_preserved(self):
        """Test all() yields registration order."""
        registry = PluginRegistry()
        for name in ["c", "a", "b"]:
            registry.register_external(name, Path(f"/{name}"))
        assert [d.name for d in registry.all()] == ["c", "a", "b"]
        assert registry.names() == ["c", "a", "b"]


class TestUniqueness:
    """Names stay unique for any order of registrations."""

    OPERATIONS = [
        ("builtin", "git"),
        ("external", "git"),
        ("external", "git"),
        ("external", "exec"),
        ("builtin", "exec"),
        ("external", "rules"),
    ]

    @pytest.mark.parametrize("order", list(itertools.permutations(range(6))))
    def test_permutations(self, order):
        """Test one entry per name and built-ins always win."""
        registry = PluginRegistry()
        for index in order:
            kind, name = self.OPERATIONS[index]
            if kind == "builtin":
                registry.register_builtin(PluginDescriptor(name=name), object())
            else:
                registry.register_external(name, Path(f"/bin/{name}-{index}"))

        names = [d.name for d in registry.all()]
        assert sorted(names) == ["exec", "git", "rules"]
        assert registry.resolve("git").is_builtin
        assert registry.resolve("exec").is_builtin
        assert not registry.resolve("rules").is_builtin


class TestAliasesAndFreeze:
    """Tests for alias resolution and freezing."""

    def test_builtin_alias(self):
        """Test top-level aliases of built-in trees resolve."""
        registry = PluginRegistry()
        plugin = _builtin("plugin", aliases=["plugins"])
        registry.register_builtin(plugin.descriptor, plugin, tree=plugin.tree)
        assert registry.resolve("plugins").name == "plugin"

    def test_external_cannot_take_builtin_alias(self):
        """Test an external named like a built-in alias is rejected."""
        registry = PluginRegistry()
        plugin = _builtin("plugin", aliases=["plugins"])
        registry.register_builtin(plugin.descriptor, plugin, tree=plugin.tree)
        assert not registry.register_external("plugins", Path("/bin/plugins"))
        assert registry.resolve("plugins").is_builtin
        assert registry.names() == ["plugin"]
        assert "alias of built-in 'plugin'" in registry.diagnostics[0].message

    def test_builtin_alias_evicts_external(self):
        """Test a built-in registered later evicts an external named like its alias."""
        registry = PluginRegistry()
        registry.register_external("plugins", Path("/bin/plugins"))
        plugin = _builtin("plugin", aliases=["plugins"])
        registry.register_builtin(plugin.descriptor, plugin, tree=plugin.tree)
        assert registry.resolve("plugins").name == "plugin"
        assert registry.names() == ["plugin"]
        assert "shadowed" in registry.diagnostics[0].message

    def test_external_tree_alias_not_resolved(self):
        """Test aliases only come from built-in trees."""
        registry = PluginRegistry()
        registry.register_external("beta", Path("/b"), tree=CommandNode(name="beta", aliases=["b"]))
        assert registry.resolve("b") is None
        assert registry.tree("beta").aliases == ["b"]

    def test_frozen_rejects_registration(self):
        """Test any registration after freeze() raises."""
        registry = PluginRegistry()
        registry.freeze()
        assert registry.frozen
        with pytest.raises(RuntimeError):
            registry.register_external("beta", Path("/b"))
        with pytest.raises(RuntimeError):
            registry.register_builtin(PluginDescriptor(name="init"), object())
        with pytest.raises(RuntimeError):
            registry.record_failure("x", "late")
