"""Rigging - disposable test environment orchestration."""

__version__ = "0.4.0"
