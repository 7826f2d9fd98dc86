"""
Test fixtures for the master server.

Provides reusable test data and a settable clock.
"""

from .registry_fixtures import (
    ADDRESS_A,
    ADDRESS_B,
    EPOCH,
    FakeClock,
    RegistryFixtures,
)

__all__ = [
    "ADDRESS_A",
    "ADDRESS_B",
    "EPOCH",
    "FakeClock",
    "RegistryFixtures",
]
