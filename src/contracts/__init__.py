"""Contracts package.

This package defines *public* cross-service contracts: topic names, partitioning,
the wire format of events and its strict validation. Producer and consumer may
only share types via `src.core` and `src.contracts`.
"""
