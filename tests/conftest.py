"""Pytest configuration and fixtures."""

from collections.abc import Iterator

import pytest  # pyright: ignore[reportMissingImports]

from sassbridge.process import shared_registry


@pytest.fixture(autouse=True)  # pyright: ignore[reportUnknownMemberType, reportUntypedFunctionDecorator]
def reset_shared_registry() -> Iterator[None]:
    """Start every test with an empty process-wide cache."""
    shared_registry.clear()
    yield
    shared_registry.clear()
