"""Iterative task execution engine for external AI coding agents."""

__version__ = "0.3.0"
