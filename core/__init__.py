# kktreg/core/__init__.py
"""Core computational modules for kktreg."""
from . import errors, linalg

__all__ = ["errors", "linalg"]
