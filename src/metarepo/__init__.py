"""metarepo - an extensible command-line host for multi-repository workspaces."""

__version__ = "0.4.0"
