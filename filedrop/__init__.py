"""Signaling relay and chunked peer-to-peer file transfer."""

__version__ = "1.0.0"
