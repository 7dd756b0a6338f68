"""
CLI MODULE
==========

Command-line interface for taskloop.

Usage:
    python -m taskloop.cli stats
    python -m taskloop.cli process-tasks --stores-dir ./stores
    python -m taskloop.cli serve
"""

from .main import main, cli_stats, cli_cleanup, cli_config, cli_process_tasks

__all__ = [
    'main',
    'cli_stats',
    'cli_cleanup',
    'cli_config',
    'cli_process_tasks',
]
