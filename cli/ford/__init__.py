"""Ford CLI.

Command-line interface for inspecting and steering the orchestrator.
"""

__version__ = "0.1.0"

from cli.ford.cli import app, main

__all__ = ["__version__", "app", "main"]
