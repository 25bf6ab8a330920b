"""In-process voting target for CI-safe simulation runs."""

from __future__ import annotations

__all__ = ["VotingFixtureServer", "VotingState"]

from votesim.fixtures.voting_target import VotingFixtureServer, VotingState
