"""
Resilient base HTTP client for building API clients.

This package provides an extensible base class for creating async HTTP
clients with built-in rate limiting, retry with backoff, base URL
rotation and error mapping.
"""

from .client import BaseClient as Client

__version__ = "0.1.0"
__all__ = [
    "Client",
]
