"""
Web application package for Portkeeper.

This package contains the HTTP API that exposes the lifecycle manager to
the console and other local clients, and the Hypercorn entry point that
serves it.
"""
