"""Synchronization engine: initial load, debounced commits and save status."""
