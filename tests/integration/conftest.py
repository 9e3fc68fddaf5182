"""Pytest configuration for integration tests.

These tests spawn the real worker under the current interpreter, so they
need libsass installed next to it.
"""

import sys
from collections.abc import Iterator

import pytest  # pyright: ignore[reportMissingImports]

from sassbridge.compiler import Compiler
from sassbridge.process import ProcessRegistry


@pytest.fixture
def compiler() -> Iterator[Compiler]:
    """Real compiler bound to this interpreter with its own process cache."""
    pytest.importorskip("sass")  # pyright: ignore[reportUnknownMemberType]
    instance = Compiler(runtime_path=sys.executable, registry=ProcessRegistry(), timeout=60, response_timeout=60)
    try:
        yield instance
    finally:
        instance.close()
