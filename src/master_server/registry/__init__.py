"""
Server registry for the master server.

This package provides:
- Persistent storage of registrations
- The registry service (register, heartbeat, update, deregister, list)
- The reaper that removes long-dead registrations
"""

from .storage import RegistryStorage, RegistrationEntry
from .service import RegistryService, RegisterOutcome, RegisterResult
from .cleaner import RegistryCleaner, ReapStats

__all__ = [
    # Storage
    'RegistryStorage',
    'RegistrationEntry',

    # Service
    'RegistryService',
    'RegisterOutcome',
    'RegisterResult',

    # Reaper
    'RegistryCleaner',
    'ReapStats',
]
