"""
Detour CLI - Command-line interface for detour processor control.

This package provides a CLI for sending MQTT commands to the detour
processor without manually writing JSON, and for watching detour events.

Usage:
    detour-cli status
    detour-cli list-detours
    detour-cli history --limit 20
    detour-cli evidence 8A
    detour-cli watch
"""

__version__ = "1.0.0"
