"""
Routers package for FastAPI endpoints.

- processing: run listing, progress, aggregate, run detail, process and cancel
"""

from . import processing

__all__ = ["processing"]
