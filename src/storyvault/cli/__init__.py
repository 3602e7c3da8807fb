"""
storyvault CLI.

Command-line interface for inspecting and maintaining save slots.

Usage:
    storyvault saves list --page 2
    storyvault saves show 1
    storyvault saves delete 3 --yes
    storyvault saves migrate
    storyvault config --show
"""

from storyvault.cli.main import app

__all__ = ["app"]
