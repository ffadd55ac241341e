"""
Middleware package for the HTTP API.

This package contains middleware classes that restrict the API to local
clients and harden its responses.
"""

from .security import LoopbackOnlyMiddleware, SecurityHeadersMiddleware

__all__ = ["LoopbackOnlyMiddleware", "SecurityHeadersMiddleware"]
