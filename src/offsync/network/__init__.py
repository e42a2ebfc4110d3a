"""
Network module for offsync.

Local WebSocket bridge for UI adapters running on the same device.
"""

from .ws_local import LocalBridge

__all__ = ['LocalBridge']
