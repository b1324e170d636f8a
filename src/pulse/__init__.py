"""
Pulse - single-leader heartbeat scheduling over a shared state directory.

- pulse.core: lease lock, channels, scheduler, executor and ambient stack
- pulse.cli: Typer command line (``pulse status``, ``pulse trigger``, ...)
"""

__version__ = "0.1.0"
