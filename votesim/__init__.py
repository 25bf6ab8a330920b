"""Load generator and consistency verifier for vote-casting APIs.

Drives many concurrent actors against a voting API, keeps a local ledger of
every submission and cross-checks it against the tally the target reports.
"""

from __future__ import annotations

__all__ = []
