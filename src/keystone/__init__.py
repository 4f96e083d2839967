"""KEYSTONE — query orchestration & caching engine."""

__version__ = "0.1.0"
