"""Pytest configuration and fixtures

Provides shared fixtures for all tests: an in-process voting target and
factories for clients pointed at it.
"""

import sys
from pathlib import Path

import pytest

# Add project root to sys.path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from votesim.fixtures.voting_target import VotingFixtureServer  # noqa: E402


# ============================================================================
# VOTING TARGET FIXTURES
# ============================================================================


@pytest.fixture
def voting_target():
    """
    Provide an in-memory voting API on an ephemeral port.

    Voting windows run at real speed (60 wall-clock seconds per minute).
    Use ``voting_target.state`` to inspect or tamper with agendas.

    Usage:
        async def test_vote(voting_target):
            async with TargetClient(voting_target.base_url) as client:
                ...

    Returns:
        VotingFixtureServer: started server; stopped after the test
    """
    server = VotingFixtureServer()
    server.start()

    yield server

    server.stop()


@pytest.fixture
def fast_voting_target():
    """
    Voting target whose windows expire quickly.

    One "minute" of voting window lasts 0.2 wall-clock seconds, so expiry
    paths can be exercised without waiting.
    """
    server = VotingFixtureServer(seconds_per_minute=0.2)
    server.start()

    yield server

    server.stop()
