"""Portkeeper: start, stop and restart local development servers by port."""

__version__ = "0.1.0"
