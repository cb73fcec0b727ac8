"""Asyncio peer-to-peer toolkit: identities, discovery, connections, NAT traversal, files and updates."""

__version__ = "0.1.0"