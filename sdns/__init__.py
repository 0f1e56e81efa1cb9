"""Caches, DNS message utilities and a middleware chain for a recursive resolver."""

__version__ = "0.1.0"