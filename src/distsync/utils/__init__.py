"""Shared helpers: logging, environment and time."""
