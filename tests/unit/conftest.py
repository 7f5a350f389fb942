"""Pytest configuration and fixtures."""

import pytest

from fakes import FakeDigitalOcean, FakeKube


@pytest.fixture
def do():
    return FakeDigitalOcean()


@pytest.fixture
def kube():
    return FakeKube()
