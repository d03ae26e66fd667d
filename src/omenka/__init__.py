"""Omenka — screenplay document state and local/remote synchronization."""

__version__ = "0.1.0"
