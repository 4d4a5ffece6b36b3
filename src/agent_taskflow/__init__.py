"""Resumable coding-agent task runner."""

__version__ = "0.1.0"
