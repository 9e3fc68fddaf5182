"""
Mock utilities for testing.

This package provides fake worker processes so compiler behaviour can be
tested without spawning a Python runtime.
"""

from .process import FakeCompiler, FakeProcessHandle

__all__ = [
    "FakeCompiler",
    "FakeProcessHandle",
]
