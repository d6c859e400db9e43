"""Launcher for the Claude Code development container."""
