"""
Local package for Portkeeper.

This package provides application-level global configuration through the
app_globals module, the entry model and its persistence store, the process
supervisor and the management console.
"""

from .global_config import app_globals

__all__ = ["app_globals"]
