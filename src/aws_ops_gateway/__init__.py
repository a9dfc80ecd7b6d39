"""Unified AWS operations gateway with a credential broker and execution registry."""

__version__ = "0.1.0"
