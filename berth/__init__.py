"""Berth - per-user persistent development sandboxes."""

__version__ = "0.1.0"
