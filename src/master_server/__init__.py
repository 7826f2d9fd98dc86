"""
Master Server - a registry of live game servers.

Game servers register themselves over HTTP, prove liveness with periodic
heartbeats and deregister on shutdown. Clients list the servers that
heartbeated recently. This package provides:
- The registry service and its SQLite store
- The reaper that removes long-dead registrations
- The aiohttp HTTP binding
- A client for game servers
"""

__version__ = "0.1.0"
__author__ = "Master Server Team"

__all__ = [
    '__version__',
]
