"""Workload engine, target client, ledger and consistency verifier."""
