"""Pytest configuration for envctl tests."""
import sys
from pathlib import Path

# Add src/ to path for src-layout imports
_SRC = Path(__file__).parent.parent / 'src'
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

import pytest

from envctl.inmemory import (
    InMemoryComputeGateway,
    InMemoryDnsGateway,
    InMemoryEnvironmentRepository,
)


@pytest.fixture
def repo():
    return InMemoryEnvironmentRepository()


@pytest.fixture
def compute():
    return InMemoryComputeGateway(ipv4='10.0.0.5')


@pytest.fixture
def dns():
    return InMemoryDnsGateway()
