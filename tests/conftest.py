"""Pytest configuration and shared fixtures."""

import pytest

from factories import InMemoryJobRepository


@pytest.fixture
def repository() -> InMemoryJobRepository:
    return InMemoryJobRepository()
