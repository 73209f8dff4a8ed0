"""CLI entrypoints for confguard."""

from confguard.cli.deploy import app, run_cli

__all__ = ["app", "run_cli"]
