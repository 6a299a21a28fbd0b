"""Fail-closed orchestration of untrusted coding-agent executors."""

__version__ = "0.3.0"
