"""
MedRefer CLI - Command-line interface.
"""

from medrefer.cli.main import cli, main

__all__ = ["cli", "main"]
