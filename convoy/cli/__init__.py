"""Convoy CLI — Typer-based command-line interface.

Provides the ``convoy`` command with subcommands for starting and
cancelling rollouts, inspecting rollout status, listing hosts and
reading a host's deployment history.

All output uses Rich for formatted terminal display.
"""
