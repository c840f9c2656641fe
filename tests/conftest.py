"""
Gov Voter Test Configuration

Shared fixtures. Nothing here talks to the network: REST calls are stubbed
at ProposalQueryClient._get, Telegram and the signer are fakes (tests/helpers.py).
"""

import os
import sys

# Add project root to path FIRST
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from bots.gov_voter.database import ProposalStore
from tests.helpers import SETTING_ENV_VARS, FakeClock, FakeTransport


@pytest.fixture
def store(tmp_path):
    return ProposalStore(tmp_path / "db" / "gov_voter.sqlite")


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def clean_env(monkeypatch):
    """Remove bot settings from the environment; restored afterwards."""
    for key in SETTING_ENV_VARS:
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)
    return monkeypatch
