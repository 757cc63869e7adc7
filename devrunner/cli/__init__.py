"""DevRunner command-line interface."""

from devrunner.cli.main import cli

__all__ = ["cli"]
