"""
CLI layer for pulse.

Provides a Typer application whose commands delegate to
``pulse.core.scheduling``.  This package handles only terminal transport:
argument parsing, coloured output, and table formatting.

Entry point::

    pulse --help
"""

from pulse.cli.app import app

__all__ = ["app"]
